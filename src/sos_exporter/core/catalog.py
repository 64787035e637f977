"""
Source Catalog - What changed since the last run.

Wraps the changed-time-series query with the token rules:
- an expired token triggers a full resync unless resyncs are disabled
- a missing next token is bootstrapped from the response time, minus the
  request duration and a one minute clock-skew margin
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sos_exporter.config import FilterConfig
from sos_exporter.connectors.aquarius import AquariusClient
from sos_exporter.models import ChangeEvent, TimeSeriesDescription, format_timestamp
from sos_exporter.utils.logger import get_logger

logger = get_logger(__name__)

DESCRIPTION_BATCH_SIZE = 400

CLOCK_SKEW_MARGIN = timedelta(minutes=1)


@dataclass(frozen=True)
class ChangeQuery:
    """Parameters of a changed-time-series query. Filter values must already be validated."""

    token: datetime | None = None
    location_identifier: str | None = None
    parameter: str | None = None
    publish: bool | None = None
    change_event_type: str | None = None
    computation_identifier: str | None = None
    computation_period_identifier: str | None = None
    extended_filters: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_filters(
        cls,
        filters: FilterConfig,
        token: datetime | None,
        location_identifier: str | None,
    ) -> "ChangeQuery":
        return cls(
            token=token,
            location_identifier=location_identifier,
            parameter=filters.parameter,
            publish=filters.publish,
            change_event_type=filters.change_event_type.value if filters.change_event_type else None,
            computation_identifier=filters.computation_identifier,
            computation_period_identifier=filters.computation_period_identifier,
            extended_filters=dict(filters.extended_filters),
        )

    def without_token(self) -> "ChangeQuery":
        return replace(self, token=None)

    def to_params(self) -> dict[str, Any]:
        return {
            "ChangesSinceToken": self.token,
            "LocationIdentifier": self.location_identifier,
            "ChangeEventType": self.change_event_type,
            "Publish": self.publish,
            "Parameter": self.parameter,
            "ComputationIdentifier": self.computation_identifier,
            "ComputationPeriodIdentifier": self.computation_period_identifier,
            "ExtendedFilters": self.extended_filters or None,
        }

    def summary(self) -> str:
        """Human-readable description of the query for progress logging."""
        text = (
            f"location '{self.location_identifier}'"
            if self.location_identifier
            else "all locations"
        )

        filters = []
        if self.publish is not None:
            filters.append(f"Publish={self.publish}")
        if self.parameter:
            filters.append(f"Parameter={self.parameter}")
        if self.computation_identifier:
            filters.append(f"ComputationIdentifier={self.computation_identifier}")
        if self.computation_period_identifier:
            filters.append(f"ComputationPeriodIdentifier={self.computation_period_identifier}")
        if self.change_event_type:
            filters.append(f"ChangeEventType={self.change_event_type}")
        if self.extended_filters:
            pairs = ", ".join(f"{k}={v}" for k, v in self.extended_filters.items())
            filters.append(f"ExtendedFilters={pairs}")

        if filters:
            text += f" with {' and '.join(filters)}"

        text += " for time-series"

        if self.token is not None:
            text += f" change since {format_timestamp(self.token)}"

        return text


@dataclass
class CatalogResult:
    """Changes to export and the token that follows them."""

    query: ChangeQuery
    events: list[ChangeEvent]
    next_token: datetime
    token_expired: bool = False
    bootstrapped: bool = False

    @property
    def is_full_resync(self) -> bool:
        """True when no token constrained the query that produced the events."""
        return self.query.token is None


class SourceCatalog:
    """
    Changed time-series and their descriptions.

    Example:
        catalog = SourceCatalog(aquarius, never_resync=False)

        result = catalog.list_changes(ChangeQuery(token=token))
        descriptions = catalog.describe_series([e.unique_id for e in result.events])
    """

    def __init__(
        self,
        aquarius: AquariusClient,
        never_resync: bool = False,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the catalog.

        Args:
            aquarius: Source client
            never_resync: Keep using an expired token instead of resyncing
            timer: Monotonic seconds provider used to time the request
        """
        self.aquarius = aquarius
        self.never_resync = never_resync
        self.timer = timer

    def list_changes(self, query: ChangeQuery) -> CatalogResult:
        """
        Query changes since the token, applying the expiry and bootstrap rules.
        """
        logger.info(f"Checking {query.summary()} ...")

        started = self.timer()
        response = self.aquarius.get_changes(query.to_params())
        token_expired = response.token_expired

        if token_expired:
            if self.never_resync:
                logger.warning("Skipping a recommended resync.")
            else:
                logger.warning(
                    f"The ChangesSinceToken of {format_timestamp(query.token)} has expired. "
                    "Forcing a full resync. You may need to run the exporter more frequently."
                )
                query = query.without_token()
                response = self.aquarius.get_changes(query.to_params())

        elapsed = timedelta(seconds=self.timer() - started)
        response_time = response.response_time or datetime.now(timezone.utc)
        bootstrap_token = response_time - elapsed - CLOCK_SKEW_MARGIN

        return CatalogResult(
            query=query,
            events=response.events,
            next_token=response.next_token or bootstrap_token,
            token_expired=token_expired,
            bootstrapped=response.next_token is None,
        )

    def describe_series(self, unique_ids: list[str]) -> list[TimeSeriesDescription]:
        """
        Fetch descriptions in batches, sorted by location then identifier.
        """
        logger.info(f"Fetching descriptions of {len(unique_ids)} changed time-series ...")

        descriptions: list[TimeSeriesDescription] = []
        for start in range(0, len(unique_ids), DESCRIPTION_BATCH_SIZE):
            batch = unique_ids[start:start + DESCRIPTION_BATCH_SIZE]
            descriptions.extend(self.aquarius.get_time_series_descriptions(batch))

        return sorted(descriptions, key=lambda d: (d.location_identifier, d.identifier))
