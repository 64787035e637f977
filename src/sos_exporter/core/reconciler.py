"""
Sensor Reconciler - Aligns the SOS with a freshly fetched signal.

For every exported time-series exactly one of three actions is taken:
- append: observations are added to the existing sensor
- create: a new sensor is inserted, then observations
- delete+create: the stale sensor and its observations are purged first
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sos_exporter.config import ComputationPeriod
from sos_exporter.connectors.sos import SosClient, offering_identifier, procedure_identifier
from sos_exporter.core.location_cache import LocationCache
from sos_exporter.models import ExistingSensor, Signal, TimeSeriesDescription, format_timestamp
from sos_exporter.utils.logger import get_logger, log_dry_run

logger = get_logger(__name__)

APPEND = "append"
CREATE = "create"
DELETE_AND_CREATE = "delete+create"


@dataclass(frozen=True)
class ReconcilePlan:
    """Decision taken for one time-series before anything is uploaded."""

    existing: ExistingSensor | None
    delete_existing: bool = False
    refetch_all: bool = False

    @property
    def create_sensor(self) -> bool:
        return self.existing is None or self.delete_existing

    @property
    def action(self) -> str:
        if self.delete_existing:
            return DELETE_AND_CREATE
        if self.create_sensor:
            return CREATE
        return APPEND


class SensorReconciler:
    """
    Plans and applies sensor changes in the SOS.

    In dry-run mode every read still happens, but mutations are only logged.

    Example:
        reconciler = SensorReconciler(sos, dry_run=False)

        plan = reconciler.plan(existing, full_resync, event.first_point_changed)
        state = reconciler.apply(plan, signal, description, locations, period)
    """

    def __init__(self, sos: SosClient, dry_run: bool = False) -> None:
        self.sos = sos
        self.dry_run = dry_run

    def plan(
        self,
        existing: ExistingSensor | None,
        full_resync: bool,
        first_point_changed: datetime | None,
    ) -> ReconcilePlan:
        """
        Decide whether the existing sensor survives.

        Args:
            existing: Current downstream sensor, if any
            full_resync: True when no token constrained the change query
            first_point_changed: Earliest changed point of the time-series
        """
        if existing is None:
            return ReconcilePlan(existing=None)

        if (
            existing.last_observed is not None
            and first_point_changed is not None
            and existing.last_observed >= first_point_changed
        ):
            # A point changed at or before the last exported observation,
            # so the whole sensor must be rebuilt from a full signal
            return ReconcilePlan(existing, delete_existing=True, refetch_all=True)

        return ReconcilePlan(existing, delete_existing=full_resync)

    def apply(
        self,
        plan: ReconcilePlan,
        signal: Signal,
        description: TimeSeriesDescription,
        locations: LocationCache,
        period: ComputationPeriod,
    ) -> ExistingSensor:
        """
        Apply the plan and upload the signal.

        Returns:
            The downstream sensor state after the export
        """
        location = locations.get(description.location_identifier)

        summary = (
            f"{signal.num_points} points "
            f"[{format_timestamp(signal.first_timestamp)} to {format_timestamp(signal.last_timestamp)}] "
            f"from '{description.identifier}' with Frequency={period.value}"
        )

        procedure = procedure_identifier(signal)
        offering = plan.existing.offering if plan.existing and not plan.create_sensor else None

        if self.dry_run:
            if plan.delete_existing and plan.existing is not None:
                log_dry_run(logger, f"Would delete existing sensor '{plan.existing.offering}'")

            if plan.create_sensor:
                log_dry_run(logger, f"Would create new sensor for '{description.identifier}'")

            log_dry_run(logger, f"Would export {summary}.")
            return self._state_after(plan, procedure, offering or offering_identifier(procedure), signal)

        logger.info(f"Exporting {summary} ...")

        if plan.delete_existing:
            self.sos.delete_sensor(signal)
            self.sos.delete_deleted_observations()

        if plan.create_sensor:
            sensor = self.sos.insert_sensor(signal)
            offering = sensor.assigned_offering

        self.sos.insert_observation(
            offering,  # type: ignore[arg-type]
            location.data,
            location.description,
            signal,
            description,
        )

        return self._state_after(plan, procedure, offering, signal)  # type: ignore[arg-type]

    @staticmethod
    def _state_after(
        plan: ReconcilePlan,
        procedure: str,
        offering: str,
        signal: Signal,
    ) -> ExistingSensor:
        start = signal.first_timestamp
        if plan.action == APPEND and plan.existing is not None and plan.existing.phenomenon_start:
            start = plan.existing.phenomenon_start
        end = signal.last_timestamp
        if end is None and plan.action == APPEND and plan.existing is not None:
            end = plan.existing.phenomenon_end
        return ExistingSensor(
            procedure=procedure,
            offering=offering,
            phenomenon_start=start,
            phenomenon_end=end,
        )
