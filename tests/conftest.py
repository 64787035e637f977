"""Shared fixtures: in-memory source and target servers recording every call."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from sos_exporter.config import DEFAULT_MAXIMUM_POINT_DAYS, Settings
from sos_exporter.connectors.sos import InsertedSensor, SosError, offering_identifier, procedure_identifier
from sos_exporter.models import (
    ChangeEvent,
    ChangesResponse,
    ExistingSensor,
    LocationData,
    LocationDescription,
    Signal,
    TimePoint,
    TimeSeriesDescription,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_points(count: int, end: datetime, spacing: timedelta = timedelta(days=1)) -> list[TimePoint]:
    """count points ending at end, oldest first."""
    return [
        TimePoint(end - spacing * (count - 1 - i), float(i))
        for i in range(count)
    ]


class FakeAquarius:
    """Source server holding descriptions, points and location metadata."""

    def __init__(self) -> None:
        self.version = "20.1.0"
        self.change_responses: list[ChangesResponse] = []
        self.descriptions: dict[str, TimeSeriesDescription] = {}
        self.points: dict[str, list[TimePoint]] = {}
        self.locations: dict[str, str] = {}
        self.approvals: list[dict[str, Any]] = []
        self.grades: list[dict[str, Any]] = []
        self.qualifiers: list[dict[str, Any]] = []
        self.calls: list[tuple[str, Any]] = []

    def __enter__(self) -> "FakeAquarius":
        return self

    def __exit__(self, *args: Any) -> None:
        pass

    def add_series(
        self,
        unique_id: str,
        identifier: str,
        location: str = "LOC1",
        points: list[TimePoint] | None = None,
        period: str = "",
    ) -> TimeSeriesDescription:
        description = TimeSeriesDescription(
            unique_id=unique_id,
            identifier=identifier,
            location_identifier=location,
            parameter="Stage",
            unit="m",
            label=identifier.split("@")[0],
            computation_period_identifier=period,
        )
        self.descriptions[unique_id] = description
        self.points[unique_id] = points or []
        self.locations.setdefault(location, f"{location} name")
        return description

    def respond(
        self,
        *events: ChangeEvent,
        next_token: datetime | None = NOW,
        token_expired: bool = False,
    ) -> None:
        self.change_responses.append(ChangesResponse(
            events=list(events),
            next_token=next_token,
            token_expired=token_expired,
            response_time=NOW,
        ))

    @property
    def corrected_requests(self) -> list[tuple[str, datetime | None]]:
        return [args for name, args in self.calls if name == "get_corrected_data"]

    def get_server_version(self) -> str:
        self.calls.append(("get_server_version", None))
        return self.version

    def get_changes(self, params: dict[str, Any]) -> ChangesResponse:
        self.calls.append(("get_changes", dict(params)))
        return self.change_responses.pop(0)

    def get_time_series_descriptions(self, unique_ids: list[str]) -> list[TimeSeriesDescription]:
        self.calls.append(("get_time_series_descriptions", list(unique_ids)))
        return [self.descriptions[u] for u in unique_ids if u in self.descriptions]

    def get_corrected_data(
        self,
        description: TimeSeriesDescription,
        query_from: datetime | None,
        apply_rounding: bool = True,
    ) -> Signal:
        self.calls.append(("get_corrected_data", (description.unique_id, query_from)))
        points = [
            p for p in self.points.get(description.unique_id, [])
            if query_from is None or p.timestamp >= query_from
        ]
        return Signal(
            unique_id=description.unique_id,
            identifier=description.identifier,
            location_identifier=description.location_identifier,
            parameter=description.parameter,
            unit=description.unit,
            label=description.label,
            points=points,
        )

    def get_location_descriptions(self, location_identifier: str) -> list[LocationDescription]:
        self.calls.append(("get_location_descriptions", location_identifier))
        matches = [k for k in self.locations if k.lower() == location_identifier.lower()]
        return [LocationDescription(k, self.locations[k]) for k in matches]

    def get_location_data(self, location_identifier: str) -> LocationData:
        self.calls.append(("get_location_data", location_identifier))
        return LocationData(location_identifier, self.locations[location_identifier], 49.5, -123.1)

    def get_approvals(self) -> list[dict[str, Any]]:
        self.calls.append(("get_approvals", None))
        return self.approvals

    def get_grades(self) -> list[dict[str, Any]]:
        self.calls.append(("get_grades", None))
        return self.grades

    def get_qualifiers(self) -> list[dict[str, Any]]:
        self.calls.append(("get_qualifiers", None))
        return self.qualifiers


class FakeSos:
    """Target server keeping sensors and observations in memory."""

    READS = {"find_existing_sensor"}

    def __init__(self) -> None:
        self.sensors: dict[str, ExistingSensor] = {}
        self.observations: dict[str, list[TimePoint]] = {}
        self.calls: list[tuple[str, str | None]] = []
        self.fail_on: str | None = None

    def __enter__(self) -> "FakeSos":
        return self

    def __exit__(self, *args: Any) -> None:
        pass

    @property
    def mutations(self) -> list[tuple[str, str | None]]:
        return [c for c in self.calls if c[0] not in self.READS]

    @property
    def reads(self) -> list[tuple[str, str | None]]:
        return [c for c in self.calls if c[0] in self.READS]

    def add_sensor(self, procedure: str, start: datetime, end: datetime) -> ExistingSensor:
        sensor = ExistingSensor(procedure, offering_identifier(procedure), start, end)
        self.sensors[procedure] = sensor
        return sensor

    def find_existing_sensor(self, signal: Signal) -> ExistingSensor | None:
        procedure = procedure_identifier(signal)
        self.calls.append(("find_existing_sensor", procedure))
        return self.sensors.get(procedure)

    def insert_sensor(self, signal: Signal) -> InsertedSensor:
        procedure = procedure_identifier(signal)
        self.calls.append(("insert_sensor", procedure))
        self.sensors[procedure] = ExistingSensor(procedure, offering_identifier(procedure))
        self.observations[procedure] = []
        return InsertedSensor(procedure, offering_identifier(procedure))

    def delete_sensor(self, signal: Signal) -> None:
        procedure = procedure_identifier(signal)
        self.calls.append(("delete_sensor", procedure))
        self.sensors.pop(procedure, None)
        self.observations.pop(procedure, None)

    def delete_deleted_observations(self) -> None:
        self.calls.append(("delete_deleted_observations", None))

    def clear_datasource(self) -> None:
        self.calls.append(("clear_datasource", None))
        self.sensors.clear()
        self.observations.clear()

    def insert_observation(
        self,
        offering: str,
        location_data: LocationData,
        location_description: LocationDescription,
        signal: Signal,
        description: TimeSeriesDescription,
    ) -> int:
        procedure = procedure_identifier(signal)
        self.calls.append(("insert_observation", procedure))
        if self.fail_on == procedure:
            raise SosError(f"InsertObservation failed for {procedure}", "NoApplicableCode", 500)
        self.observations.setdefault(procedure, []).extend(signal.points)
        return signal.num_points


@pytest.fixture
def fake_aquarius() -> FakeAquarius:
    return FakeAquarius()


@pytest.fixture
def fake_sos() -> FakeSos:
    return FakeSos()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Complete settings with the state file in a temp directory."""
    return Settings(
        aquarius={"server": "aqts.example.com", "username": "admin", "password": "secret"},
        sos={"server": "http://sos.example.com/52n-sos-webapp", "username": "admin", "password": "secret"},
        maximum_point_days=dict(DEFAULT_MAXIMUM_POINT_DAYS),
        export={"state_file": tmp_path / "state.json"},
    )
