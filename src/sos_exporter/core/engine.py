"""
Export Engine - Main orchestration of an export run.

Coordinates all components to mirror changed time-series into the SOS:
- Change token store for the changes-since token
- Source catalog for changed time-series and their descriptions
- Adaptive fetcher and retention trimmer for each signal
- Sensor reconciler for the SOS side

The run is strictly sequential. Any error aborts it before the token is
saved, so the failed time-series and every one after it are retried on
the next run.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from sos_exporter.config import Settings
from sos_exporter.connectors.aquarius import AquariusClient, parse_version
from sos_exporter.connectors.sos import SosClient, procedure_identifier
from sos_exporter.core.catalog import CatalogResult, ChangeQuery, SourceCatalog
from sos_exporter.core.fetcher import AdaptiveFetcher
from sos_exporter.core.filters import FilterResolver, PointFilter, filter_time_series
from sos_exporter.core.location_cache import LocationCache
from sos_exporter.core.period import declared_period
from sos_exporter.core.reconciler import SensorReconciler
from sos_exporter.core.retention import trim_signal
from sos_exporter.core.state import ChangeTokenStore
from sos_exporter.exceptions import ExpectedError
from sos_exporter.models import (
    ChangeEvent,
    ExistingSensor,
    TimeSeriesDescription,
    format_timestamp,
)
from sos_exporter.utils.logger import get_logger, log_dry_run

logger = get_logger(__name__)

MINIMUM_SERVER_VERSION = "17.2"


@dataclass
class ExportStats:
    """Statistics for an export run."""

    dry_run: bool = False
    full_resync: bool = False
    changed_time_series_count: int = 0
    exported_time_series_count: int = 0
    exported_point_count: int = 0
    trimmed_point_count: int = 0
    filtered_point_count: int = 0
    fetch_requests: int = 0
    next_token: datetime | None = None
    token_saved: bool = False
    start_time: float = 0.0
    end_time: float = 0.0
    actions: dict[str, str] = field(default_factory=dict)
    sensors: dict[str, ExistingSensor] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        """Duration in seconds."""
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        if self.start_time:
            return time.time() - self.start_time
        return 0.0


class ExportEngine:
    """
    Main export engine coordinating one run.

    Example:
        with create_aquarius_client(settings) as aquarius, create_sos_client(settings) as sos:
            engine = ExportEngine(settings, aquarius, sos)
            stats = engine.run()
            print(f"{stats.exported_point_count} points exported")
    """

    def __init__(
        self,
        settings: Settings,
        aquarius: AquariusClient,
        sos: SosClient,
        token_store: ChangeTokenStore | None = None,
        clock: Callable[[], datetime] | None = None,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize export engine.

        Args:
            settings: Application settings
            aquarius: Connected source client
            sos: Target client
            token_store: Token persistence (defaults to the configured state file)
            clock: Current UTC time provider
            timer: Monotonic seconds provider used to time the change query
        """
        self.settings = settings
        self.aquarius = aquarius
        self.sos = sos
        self.token_store = token_store or ChangeTokenStore(settings.export.state_file)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.timer = timer
        self.fetcher = AdaptiveFetcher(aquarius, settings.maximum_point_days, self.clock)
        self.reconciler = SensorReconciler(sos, dry_run=settings.export.dry_run)
        self.point_filter = PointFilter(settings.filters)

    def run(self) -> ExportStats:
        """
        Export everything that changed since the saved token.

        Raises:
            ExpectedError: On an unsupported server or invalid filters
        """
        version = self.aquarius.get_server_version()
        logger.info(
            f"Connected to {self.settings.aquarius.server} (v{version}) "
            f"as {self.settings.aquarius.username}"
        )

        if parse_version(version) < parse_version(MINIMUM_SERVER_VERSION):
            raise ExpectedError(
                f"This utility requires AQTS v{MINIMUM_SERVER_VERSION} or greater."
            )

        stats = ExportStats(dry_run=self.settings.export.dry_run)
        stats.start_time = time.time()

        self.run_once(stats)

        stats.end_time = time.time()
        logger.info(
            f"Successfully exported {stats.exported_point_count} points from "
            f"{stats.exported_time_series_count} time-series in {stats.duration_seconds:.1f}s"
        )
        return stats

    def run_once(self, stats: ExportStats) -> None:
        options = self.settings.export

        resolver = FilterResolver(self.aquarius, self.settings.filters)
        resolver.validate()
        location_identifier = resolver.resolve_location_identifier()

        token = self.token_store.load()

        if options.force_resync:
            logger.warning("Forcing a full time-series resync.")
            token = None
        elif options.changes_since is not None:
            logger.warning(
                f"Overriding current ChangesSinceToken='{format_timestamp(token)}' "
                f"with '{format_timestamp(options.changes_since)}'"
            )
            token = options.changes_since

        query = ChangeQuery.from_filters(self.settings.filters, token, location_identifier)
        catalog = SourceCatalog(self.aquarius, options.never_resync, self.timer)

        result = catalog.list_changes(query)
        stats.full_resync = result.is_full_resync
        stats.changed_time_series_count = len(result.events)
        stats.next_token = result.next_token

        if result.bootstrapped:
            logger.info(
                f"No NextToken returned, next run starts from ChangesSinceToken="
                f"{format_timestamp(result.next_token)}"
            )

        descriptions = catalog.describe_series([e.unique_id for e in result.events])

        logger.info(f"Exporting to {self.settings.sos.server} as {self.settings.sos.username}")
        self.export_to_sos(result, descriptions, stats)

        self.save_token(result.next_token, stats)

    def export_to_sos(
        self,
        result: CatalogResult,
        descriptions: list[TimeSeriesDescription],
        stats: ExportStats,
    ) -> None:
        filtered = filter_time_series(descriptions, self.settings.filters.time_series)
        check_sensor_identities(filtered)

        logger.info(f"Exporting {len(filtered)} time-series ...")

        datasource_cleared = result.is_full_resync and not self.settings.filters.has_series_filters()
        if datasource_cleared:
            self.clear_exported_data()

        events = {e.unique_id: e for e in result.events}
        locations = LocationCache(self.aquarius)

        for description in filtered:
            self.export_time_series(
                result.is_full_resync,
                events[description.unique_id],
                description,
                locations,
                stats,
                datasource_cleared,
            )

    def clear_exported_data(self) -> None:
        if self.settings.export.dry_run:
            log_dry_run(logger, "Would have cleared the SOS database of all existing data.")
            return

        logger.warning("Clearing the SOS database of all existing data.")
        self.sos.clear_datasource()
        self.sos.delete_deleted_observations()

    def export_time_series(
        self,
        full_resync: bool,
        event: ChangeEvent,
        description: TimeSeriesDescription,
        locations: LocationCache,
        stats: ExportStats,
        datasource_cleared: bool = False,
    ) -> ExistingSensor:
        logger.info(
            f"Fetching changes from '{description.identifier}' "
            f"FirstPointChanged={format_timestamp(event.first_point_changed)} "
            f"HasAttributeChanged={event.has_attribute_change} ..."
        )

        period = declared_period(description, self.settings.maximum_point_days)

        fetched = self.fetcher.fetch(description, event.first_point_changed, period)
        stats.fetch_requests += fetched.requests

        existing = self.sos.find_existing_sensor(fetched.signal)
        if datasource_cleared:
            # No sensor survives the clear, even when a dry run only pretended to clear
            existing = None
        plan = self.reconciler.plan(existing, full_resync, event.first_point_changed)

        if plan.refetch_all:
            # We'll need the entire signal again to rebuild the sensor
            fetched = self.fetcher.fetch(description, None, fetched.period)
            stats.fetch_requests += fetched.requests

        trimmed = trim_signal(fetched.signal, self.settings.retention_days(fetched.period))
        if trimmed.cutoff is not None:
            logger.info(
                f"Trimming '{description.identifier}' {trimmed.trimmed_count} points before "
                f"{format_timestamp(trimmed.cutoff)} with {trimmed.signal.num_points} points "
                f"remaining with Frequency={fetched.period.value}"
            )
        stats.trimmed_point_count += trimmed.trimmed_count

        signal, filtered_count = self.point_filter.filter_signal(trimmed.signal)
        if filtered_count:
            logger.info(f"Filtered {filtered_count} points from '{description.identifier}'")
        stats.filtered_point_count += filtered_count

        stats.exported_time_series_count += 1
        stats.exported_point_count += signal.num_points

        sensor = self.reconciler.apply(plan, signal, description, locations, fetched.period)

        stats.actions[description.identifier] = plan.action
        stats.sensors[description.identifier] = sensor
        return sensor

    def save_token(self, next_token: datetime, stats: ExportStats) -> None:
        options = self.settings.export

        if options.dry_run:
            log_dry_run(logger, f"Would have saved ChangesSinceToken={format_timestamp(next_token)}")
            return

        stats.next_token = self.token_store.save(
            next_token,
            allow_regress=options.force_resync or options.changes_since is not None,
            exported_point_count=stats.exported_point_count,
            exported_time_series_count=stats.exported_time_series_count,
        )
        stats.token_saved = True


def check_sensor_identities(descriptions: list[TimeSeriesDescription]) -> None:
    """
    Raises:
        ExpectedError: If two time-series would be exported to the same sensor
    """
    owners: dict[str, TimeSeriesDescription] = {}
    for description in descriptions:
        procedure = procedure_identifier(description)
        other = owners.get(procedure)
        if other is not None:
            raise ExpectedError(
                f"Time-series '{other.identifier}' ({other.unique_id}) and "
                f"'{description.identifier}' ({description.unique_id}) "
                f"both map to sensor '{procedure}'"
            )
        owners[procedure] = description
