"""
Retention trimming.

Drops points older than the retention window of the signal's period,
measured back from its last point.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sos_exporter.models import Signal, subtract_days


@dataclass
class TrimResult:
    signal: Signal
    trimmed_count: int
    cutoff: datetime | None


def retention_cutoff(last_timestamp: datetime, maximum_days: int) -> datetime:
    return subtract_days(last_timestamp, maximum_days)


def trim_signal(signal: Signal, maximum_days: int) -> TrimResult:
    """
    Keep only points at or after last point minus maximum_days.

    A retention of 0 means unlimited and leaves the signal untouched, as
    does an empty signal.
    """
    if maximum_days <= 0 or not signal.points:
        return TrimResult(signal, 0, None)

    cutoff = retention_cutoff(signal.points[-1].timestamp, maximum_days)
    remaining = [p for p in signal.points if p.timestamp >= cutoff]

    return TrimResult(
        signal.with_points(remaining),
        signal.num_points - len(remaining),
        cutoff,
    )
