"""
Adaptive Fetch - Windowed retrieval of enough history for a time-series.

A changed time-series often needs more points than the ones that changed:
enough to infer its sampling period and enough to fill its retention
window. When a single request cannot be proven sufficient, requests walk
further into the past over a fixed escalating schedule whose last entry is
an unbounded fetch, so the number of requests per time-series is bounded.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

from sos_exporter.config import ComputationPeriod
from sos_exporter.core.period import MINIMUM_POINT_COUNT, infer_period_from_recent_points
from sos_exporter.exceptions import ExportLogicError
from sos_exporter.models import Signal, TimeSeriesDescription, format_timestamp, subtract_days
from sos_exporter.utils.logger import get_logger

logger = get_logger(__name__)

# None is the unbounded window: fetch from the first point of the time-series
FETCH_WINDOWS: tuple[timedelta | None, ...] = (
    (timedelta(days=90),) * 3
    + (timedelta(days=365),) * 4
    + (timedelta(days=5 * 365),) * 4
    + (None,)
)

MAX_FETCH_REQUESTS = len(FETCH_WINDOWS)

INITIAL_WINDOW = timedelta(days=90)


class PointSource(Protocol):
    """The source operation the fetcher needs."""

    def get_corrected_data(
        self,
        description: TimeSeriesDescription,
        query_from: datetime | None,
        apply_rounding: bool = True,
    ) -> Signal: ...


@dataclass
class FetchResult:
    """Signal retrieved for a time-series and the period it was judged by."""

    signal: Signal
    period: ComputationPeriod
    requests: int


def retrieved_duration(signal: Signal, query_from: datetime | None) -> timedelta:
    """Span covered by a response; unbounded requests cover everything."""
    if query_from is None:
        return timedelta.max
    if signal.num_points <= 0:
        return timedelta.min
    return signal.points[-1].timestamp - query_from


def start_of_today(now: datetime, description: TimeSeriesDescription) -> datetime:
    """Midnight of the current UTC date, in the time-series' UTC offset."""
    today = now.astimezone(timezone.utc).date()
    return datetime(
        today.year,
        today.month,
        today.day,
        tzinfo=timezone(description.utc_offset),
    )


class WindowSchedule:
    """
    Position in FETCH_WINDOWS for one time-series.

    The period-inference pass and the retention pass share one schedule, so
    together they never issue more than MAX_FETCH_REQUESTS requests.
    """

    def __init__(
        self,
        source: PointSource,
        description: TimeSeriesDescription,
        query_from: datetime,
    ) -> None:
        self.source = source
        self.description = description
        self.query_from: datetime | None = query_from
        self.signal: Signal | None = None
        self.requests = 0
        self._windows = iter(FETCH_WINDOWS)
        self._unspent: timedelta | None = None

    def fetch_until(
        self,
        is_complete: Callable[[Signal], bool],
        progress_message: str,
    ) -> Signal:
        """
        Fetch further into the past until is_complete holds or the unbounded window is used.

        Raises:
            ExportLogicError: If no response was ever obtained
        """
        if self.signal is not None:
            if self.query_from is None or is_complete(self.signal):
                return self.signal
            if self._unspent is not None:
                # The window of the previous early stop was never stepped over
                self.query_from = subtract_days(self.query_from, self._unspent.days)
                self._unspent = None

        for window in self._windows:
            if window is None:
                self.query_from = None

            logger.info(
                f"Fetching more than changed points from '{self.description.identifier}' "
                f"with QueryFrom={format_timestamp(self.query_from)} {progress_message} ..."
            )
            self.signal = self.source.get_corrected_data(self.description, self.query_from)
            self.requests += 1

            if window is None:
                break

            if is_complete(self.signal):
                self._unspent = window
                break

            self.query_from = subtract_days(self.query_from, window.days)  # type: ignore[arg-type]

        if self.signal is None:
            raise ExportLogicError(
                f"Logic error: Can't fetch time-series data of "
                f"'{self.description.identifier}' {progress_message}"
            )

        return self.signal


class AdaptiveFetcher:
    """
    Retrieves enough of a time-series to satisfy its retention policy.

    Example:
        fetcher = AdaptiveFetcher(aquarius, settings.maximum_point_days)

        result = fetcher.fetch(description, event.first_point_changed, period)
        signal, period = result.signal, result.period
    """

    def __init__(
        self,
        source: PointSource,
        retention: dict[ComputationPeriod, int],
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the fetcher.

        Args:
            source: Corrected point data provider
            retention: Maximum days to export per period (0 = all)
            clock: Current UTC time provider
        """
        self.source = source
        self.retention = retention
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def fetch(
        self,
        description: TimeSeriesDescription,
        query_from: datetime | None,
        period: ComputationPeriod,
    ) -> FetchResult:
        """
        Fetch a signal for the time-series.

        Args:
            description: Time-series to fetch
            query_from: Earliest changed point, or None to fetch everything
            period: Known period, or Unknown

        Returns:
            FetchResult with the signal and the (possibly inferred) period
        """
        maximum_days = self.retention[period]

        if (
            query_from is not None
            and period != ComputationPeriod.UNKNOWN
            and maximum_days > 0
            and self.clock() - query_from < timedelta(days=maximum_days)
        ):
            # The changed points lie within the retention window: one request is enough
            signal = self.source.get_corrected_data(description, query_from)
            return FetchResult(signal, period, requests=1)

        schedule = WindowSchedule(
            self.source,
            description,
            query_from or start_of_today(self.clock(), description) - INITIAL_WINDOW,
        )

        if period == ComputationPeriod.UNKNOWN:
            signal = schedule.fetch_until(
                lambda s: s.num_points >= MINIMUM_POINT_COUNT,
                "to determine signal frequency",
            )

            period = infer_period_from_recent_points(signal, self.retention)
            maximum_days = self.retention[period]

            if schedule.query_from is None:
                # Everything has already been fetched
                return FetchResult(signal, period, schedule.requests)

            if (
                maximum_days > 0
                and retrieved_duration(signal, schedule.query_from) >= timedelta(days=maximum_days)
            ):
                return FetchResult(signal, period, schedule.requests)

        required = timedelta(days=maximum_days) if maximum_days > 0 else None

        signal = schedule.fetch_until(
            lambda s: required is not None
            and retrieved_duration(s, schedule.query_from) >= required,
            f"with Frequency={period.value}",
        )

        return FetchResult(signal, period, schedule.requests)
