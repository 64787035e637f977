"""
Period inference.

Resolves the sampling-frequency bucket of a time-series, first from its
declared computation period and otherwise from the spacing of its most
recent points.
"""

from __future__ import annotations

from datetime import timedelta

from sos_exporter.config import ComputationPeriod
from sos_exporter.models import Signal, TimeSeriesDescription

# Points needed before the spacing is trusted
MINIMUM_POINT_COUNT = 100

# Nominal spacing of each bucket, smallest first
PERIOD_DURATIONS: list[tuple[ComputationPeriod, timedelta]] = [
    (ComputationPeriod.MINUTES, timedelta(minutes=1)),
    (ComputationPeriod.HOURLY, timedelta(hours=1)),
    (ComputationPeriod.DAILY, timedelta(days=1)),
    (ComputationPeriod.WEEKLY, timedelta(days=7)),
    (ComputationPeriod.MONTHLY, timedelta(days=28)),
    (ComputationPeriod.ANNUAL, timedelta(days=365)),
]


def resolve_period(
    period: ComputationPeriod | None,
    retention: dict[ComputationPeriod, int],
) -> ComputationPeriod:
    """Normalize a period; anything without a retention entry becomes Unknown."""
    if period is None:
        return ComputationPeriod.UNKNOWN
    period = period.normalized()
    return period if period in retention else ComputationPeriod.UNKNOWN


def declared_period(
    description: TimeSeriesDescription,
    retention: dict[ComputationPeriod, int],
) -> ComputationPeriod:
    """Period hint from the time-series description."""
    return resolve_period(
        ComputationPeriod.parse(description.computation_period_identifier),
        retention,
    )


def smallest_spacing(signal: Signal, point_count: int = MINIMUM_POINT_COUNT) -> timedelta | None:
    """Smallest gap between consecutive points among the most recent ones."""
    recent = signal.points[-point_count:]
    gaps = [
        later.timestamp - earlier.timestamp
        for earlier, later in zip(recent, recent[1:])
    ]
    return min(gaps) if gaps else None


def period_for_spacing(spacing: timedelta) -> ComputationPeriod:
    """Largest bucket whose nominal spacing fits in the observed spacing."""
    period = ComputationPeriod.MINUTES
    for candidate, duration in PERIOD_DURATIONS:
        if spacing >= duration:
            period = candidate
    return period


def infer_period_from_recent_points(
    signal: Signal,
    retention: dict[ComputationPeriod, int],
) -> ComputationPeriod:
    """
    Infer the sampling period of a signal.

    Returns Unknown when there are too few points to trust the spacing, or
    when the inferred period has no retention entry.
    """
    if signal.num_points < MINIMUM_POINT_COUNT:
        return ComputationPeriod.UNKNOWN

    spacing = smallest_spacing(signal)
    if spacing is None:
        return ComputationPeriod.UNKNOWN

    return resolve_period(period_for_spacing(spacing), retention)
