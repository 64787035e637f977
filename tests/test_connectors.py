"""Wire-level tests for the AQUARIUS and SOS clients."""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from sos_exporter.config import Settings
from sos_exporter.connectors.aquarius import (
    AquariusClient,
    AquariusError,
    create_aquarius_client,
    format_extended_filters,
    parse_version,
)
from sos_exporter.connectors.sos import (
    SosClient,
    SosError,
    build_sensor_description,
    create_sos_client,
    offering_identifier,
    procedure_identifier,
)
from sos_exporter.core.chunker import ObservationChunker
from sos_exporter.models import (
    LocationData,
    LocationDescription,
    Signal,
    TimePoint,
    TimeSeriesDescription,
    parse_timestamp,
)

T0 = datetime(2024, 5, 1, tzinfo=timezone.utc)

DESCRIPTION = TimeSeriesDescription(
    unique_id="abc123",
    identifier="Stage.Working@LOC1",
    location_identifier="LOC1",
    parameter="Stage",
    unit="m",
    label="Working",
)


def signal_with(count: int) -> Signal:
    return Signal(
        unique_id="abc123",
        identifier="Stage.Working@LOC1",
        parameter="Stage",
        unit="m",
        points=[TimePoint(T0 + timedelta(hours=i), float(i)) for i in range(count)],
    )


class Recorder:
    """MockTransport handler recording requests and replying from a routing function."""

    def __init__(self, route) -> None:
        self.route = route
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.route(request)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


def aquarius_route(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path.endswith("/session"):
        return httpx.Response(200, text="session-token")
    if path == AquariusClient.VERSION_PATH:
        return httpx.Response(200, json={"ApiVersion": "19.4.53"})
    if path.endswith("/GetTimeSeriesUniqueIdList"):
        return httpx.Response(200, json={
            "ResponseTime": "2024-05-01T10:00:00.1234567Z",
            "NextToken": "2024-05-01T09:59:00Z",
            "TokenExpired": False,
            "TimeSeriesUniqueIds": [
                {"UniqueId": "abc123", "FirstPointChanged": "2024-04-01T00:00:00Z", "HasAttributeChange": True},
            ],
        })
    if path.endswith("/GetTimeSeriesDescriptionListByUniqueId"):
        ids = json.loads(request.content)["TimeSeriesUniqueIds"]
        return httpx.Response(200, json={"TimeSeriesDescriptions": [
            {
                "UniqueId": unique_id,
                "Identifier": f"Stage.{unique_id}@LOC1",
                "LocationIdentifier": "LOC1",
                "UtcOffset": -8.0,
                "ComputationPeriodIdentifier": "Daily",
            }
            for unique_id in ids
        ]})
    if path.endswith("/GetTimeSeriesCorrectedData"):
        return httpx.Response(200, json={
            "UniqueId": "abc123",
            "Parameter": "Stage",
            "Unit": "m",
            "Points": [
                {"Timestamp": "2024-05-01T01:00:00Z", "Value": {"Numeric": 2.0}},
                {"Timestamp": "2024-05-01T00:00:00Z", "Value": {"Numeric": 1.0}},
            ],
            "Approvals": [
                {"StartTime": "2024-01-01T00:00:00Z", "EndTime": "2025-01-01T00:00:00Z", "ApprovalLevel": 1200},
            ],
        })
    if path.endswith("/GetLocationDescriptionList"):
        return httpx.Response(200, json={"LocationDescriptions": [{"Identifier": "LOC1", "Name": "Creek"}]})
    if path.endswith("/GetApprovalList"):
        return httpx.Response(401, json={"ResponseStatus": {"ErrorCode": "Unauthorized", "Message": "No session"}})
    return httpx.Response(404)


@pytest.fixture
def aquarius_transport() -> Recorder:
    return Recorder(aquarius_route)


@pytest.fixture
def aquarius(aquarius_transport: Recorder) -> AquariusClient:
    client = AquariusClient("aqts.example.com", "admin", "secret", transport=httpx.MockTransport(aquarius_transport))
    return client.connect()


class TestAquariusClient:
    """Test AquariusClient over a mock transport."""

    def test_connect_sets_session_header(self, aquarius: AquariusClient, aquarius_transport: Recorder) -> None:
        """Test authentication stores the session token."""
        login = aquarius_transport.requests[0]
        assert login.method == "POST"
        assert json.loads(login.content) == {"Username": "admin", "EncryptedPassword": "secret"}
        assert aquarius.base_url == "https://aqts.example.com"

        aquarius.get_server_version()
        assert aquarius_transport.requests[-1].headers["X-Authentication-Token"] == "session-token"

    def test_server_version(self, aquarius: AquariusClient) -> None:
        """Test the version is read and compared numerically."""
        assert aquarius.get_server_version() == "19.4.53"
        assert parse_version("19.4.53") > parse_version("17.2")
        assert parse_version("17.1.999") < parse_version("17.2")

    def test_get_changes(self, aquarius: AquariusClient, aquarius_transport: Recorder) -> None:
        """Test change query parameters and response parsing."""
        response = aquarius.get_changes({
            "ChangesSinceToken": T0,
            "Publish": True,
            "Parameter": None,
            "ExtendedFilters": {"Region": "North"},
        })

        params = aquarius_transport.requests[-1].url.params
        assert params["ChangesSinceToken"] == T0.isoformat()
        assert params["Publish"] == "true"
        assert "Parameter" not in params
        assert params["ExtendedFilters"] == "[{FilterName:Region,FilterValue:North}]"

        assert response.next_token == datetime(2024, 5, 1, 9, 59, tzinfo=timezone.utc)
        assert response.response_time == datetime(2024, 5, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)
        assert response.events[0].unique_id == "abc123"
        assert response.events[0].has_attribute_change is True

    def test_descriptions_use_method_override(self, aquarius: AquariusClient, aquarius_transport: Recorder) -> None:
        """Test description batches travel in a POST body with GET semantics."""
        descriptions = aquarius.get_time_series_descriptions(["a", "b"])

        request = aquarius_transport.requests[-1]
        assert request.method == "POST"
        assert request.headers["X-HTTP-Method-Override"] == "GET"
        assert [d.unique_id for d in descriptions] == ["a", "b"]
        assert descriptions[0].utc_offset == timedelta(hours=-8)
        assert descriptions[0].computation_period_identifier == "Daily"

    def test_corrected_data(self, aquarius: AquariusClient, aquarius_transport: Recorder) -> None:
        """Test points are parsed and ordered."""
        signal = aquarius.get_corrected_data(DESCRIPTION, T0)

        params = aquarius_transport.requests[-1].url.params
        assert params["TimeSeriesUniqueId"] == "abc123"
        assert params["QueryFrom"] == T0.isoformat()
        assert params["ApplyRounding"] == "true"
        assert signal.identifier == "Stage.Working@LOC1"
        assert [p.value for p in signal.points] == [1.0, 2.0]
        assert signal.approvals[0].approval_level == 1200

    def test_corrected_data_unbounded(self, aquarius: AquariusClient, aquarius_transport: Recorder) -> None:
        """Test an unbounded request omits QueryFrom."""
        aquarius.get_corrected_data(DESCRIPTION, None)
        assert "QueryFrom" not in aquarius_transport.requests[-1].url.params

    def test_location_descriptions(self, aquarius: AquariusClient) -> None:
        """Test location descriptions are parsed."""
        locations = aquarius.get_location_descriptions("LOC1")
        assert locations == [LocationDescription("LOC1", "Creek")]

    def test_error_status(self, aquarius: AquariusClient) -> None:
        """Test server errors carry the response status."""
        with pytest.raises(AquariusError) as excinfo:
            aquarius.get_approvals()

        assert excinfo.value.code == "Unauthorized"
        assert excinfo.value.status == 401
        assert "No session" in str(excinfo.value)

    def test_close_ends_session(self, aquarius: AquariusClient, aquarius_transport: Recorder) -> None:
        """Test closing deletes the session."""
        aquarius.close()
        assert aquarius_transport.requests[-1].method == "DELETE"

    def test_transport_error(self) -> None:
        """Test connection failures become AquariusError."""
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = AquariusClient("aqts.example.com", "admin", "secret", transport=httpx.MockTransport(refuse))
        with pytest.raises(AquariusError, match="Connection error"):
            client.connect()

    def test_create_closes_on_failed_login(self, settings: Settings, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the factory closes the HTTP client when authentication fails."""
        closed: list[AquariusClient] = []
        original_close = AquariusClient.close

        def recording_close(self: AquariusClient) -> None:
            closed.append(self)
            original_close(self)

        monkeypatch.setattr(AquariusClient, "close", recording_close)

        def reject(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                401, json={"ResponseStatus": {"ErrorCode": "Unauthorized", "Message": "Bad password"}}
            )

        with pytest.raises(AquariusError, match="Bad password"):
            create_aquarius_client(settings, transport=httpx.MockTransport(reject))

        assert len(closed) == 1
        assert closed[0]._client.is_closed

    def test_create_from_settings(self, settings: Settings) -> None:
        """Test the factory connects with the configured credentials."""
        recorder = Recorder(aquarius_route)
        client = create_aquarius_client(settings, transport=httpx.MockTransport(recorder))

        assert client.base_url == "https://aqts.example.com"
        assert json.loads(recorder.requests[0].content)["Username"] == "admin"

    def test_format_extended_filters(self) -> None:
        """Test extended filter encoding."""
        assert format_extended_filters({"A": "1", "B": "2"}) == (
            "[{FilterName:A,FilterValue:1},{FilterName:B,FilterValue:2}]"
        )


def sos_route(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path.endswith("/j_spring_security_check"):
        return httpx.Response(302, headers={"location": "http://sos.example.com/52n-sos-webapp/admin"})
    if path.startswith("/52n-sos-webapp/admin/"):
        return httpx.Response(200)

    body = json.loads(request.content)
    operation = body["request"]
    if operation == "GetDataAvailability":
        if body["procedure"] == ["Missing@LOC1"]:
            return httpx.Response(400, json={"exceptions": [
                {"code": "InvalidParameterValue", "locator": "procedure", "text": "unknown procedure"},
            ]})
        if body["procedure"] == ["Empty@LOC1"]:
            return httpx.Response(200, json={"request": operation, "dataAvailability": []})
        return httpx.Response(200, json={"request": operation, "dataAvailability": [
            {
                "procedure": body["procedure"][0],
                "offering": "Stage.Working@LOC1/offering",
                "phenomenonTime": ["2024-01-01T00:00:00Z", "2024-04-01T00:00:00Z"],
            },
            {
                "procedure": body["procedure"][0],
                "offering": "Stage.Working@LOC1/offering",
                "phenomenonTime": ["2023-01-01T00:00:00Z", "2024-05-01T00:00:00Z"],
            },
        ]})
    if operation == "InsertSensor":
        return httpx.Response(200, json={
            "request": operation,
            "assignedProcedure": "Stage.Working@LOC1",
            "assignedOffering": "Stage.Working@LOC1/offering",
        })
    if operation == "DeleteSensor":
        return httpx.Response(200, json={"request": operation, "deletedProcedure": body["procedure"]})
    if operation == "InsertObservation":
        return httpx.Response(200, json={"request": operation})
    return httpx.Response(400, json={"exceptions": [{"code": "OperationNotSupported", "text": operation}]})


@pytest.fixture
def sos_transport() -> Recorder:
    return Recorder(sos_route)


@pytest.fixture
def sos(sos_transport: Recorder) -> SosClient:
    return SosClient(
        "http://sos.example.com/52n-sos-webapp/",
        "admin",
        "secret",
        max_observations_per_request=2,
        transport=httpx.MockTransport(sos_transport),
    )


class TestSosClient:
    """Test SosClient over a mock transport."""

    def test_find_existing_sensor(self, sos: SosClient, sos_transport: Recorder) -> None:
        """Test the sensor span covers every availability entry."""
        existing = sos.find_existing_sensor(signal_with(1))

        body = json.loads(sos_transport.requests[-1].content)
        assert body["service"] == "SOS"
        assert body["version"] == "2.0.0"
        assert existing is not None
        assert existing.offering == "Stage.Working@LOC1/offering"
        assert existing.phenomenon_start == parse_timestamp("2023-01-01T00:00:00Z")
        assert existing.last_observed == parse_timestamp("2024-05-01T00:00:00Z")

    def test_unknown_procedure(self, sos: SosClient) -> None:
        """Test a procedure the SOS never saw has no sensor."""
        signal = Signal(unique_id="x", identifier="Missing@LOC1")
        assert sos.find_existing_sensor(signal) is None

    def test_empty_availability(self, sos: SosClient) -> None:
        """Test an empty availability list has no sensor."""
        signal = Signal(unique_id="x", identifier="Empty@LOC1")
        assert sos.find_existing_sensor(signal) is None

    def test_insert_sensor(self, sos: SosClient, sos_transport: Recorder) -> None:
        """Test the sensor description declares procedure and offering."""
        inserted = sos.insert_sensor(signal_with(1))

        body = json.loads(sos_transport.requests[-1].content)
        assert body["observableProperty"] == ["Stage"]
        assert "Stage.Working@LOC1/offering" in body["procedureDescription"]
        assert inserted.assigned_offering == "Stage.Working@LOC1/offering"

    def test_insert_observation_chunks(self, sos: SosClient, sos_transport: Recorder) -> None:
        """Test observations are split by the per-request limit."""
        sent = sos.insert_observation(
            "Stage.Working@LOC1/offering",
            LocationData("LOC1", "Creek", 49.5, -123.1),
            LocationDescription("LOC1", "Creek"),
            signal_with(5),
            DESCRIPTION,
        )

        bodies = [json.loads(r.content) for r in sos_transport.requests]
        assert sent == 5
        assert [len(b["observation"]) for b in bodies] == [2, 2, 1]
        observation = bodies[0]["observation"][0]
        assert observation["procedure"] == "Stage.Working@LOC1"
        assert observation["result"] == {"uom": "m", "value": 0.0}
        assert observation["featureOfInterest"]["geometry"]["coordinates"] == [49.5, -123.1]

    def test_admin_operations_log_in_once(self, sos: SosClient, sos_transport: Recorder) -> None:
        """Test admin maintenance authenticates before the first call only."""
        sos.clear_datasource()
        sos.delete_deleted_observations()

        assert sos_transport.paths() == [
            "/52n-sos-webapp/j_spring_security_check",
            "/52n-sos-webapp/admin/datasource/clear",
            "/52n-sos-webapp/admin/datasource/deleteDeletedObservations",
        ]

    def test_exception_report(self, sos: SosClient) -> None:
        """Test SOS exception reports raise with their code."""
        with pytest.raises(SosError) as excinfo:
            sos._service({"request": "GetCapabilities"})

        assert excinfo.value.code == "OperationNotSupported"
        assert excinfo.value.status == 400

    def test_create_from_settings(self, settings: Settings) -> None:
        """Test the factory applies the configured batch size."""
        settings.sos.max_observations_per_request = 250
        client = create_sos_client(settings)
        assert client.chunker.max_observations == 250
        client.close()


class TestSensorIdentity:
    """Test procedure and offering naming."""

    def test_identifier_is_procedure(self) -> None:
        """Test the time-series identifier names the sensor."""
        assert procedure_identifier(DESCRIPTION) == "Stage.Working@LOC1"
        assert offering_identifier("Stage.Working@LOC1") == "Stage.Working@LOC1/offering"

    def test_unique_id_fallback(self) -> None:
        """Test the unique ID is used without an identifier."""
        assert procedure_identifier(Signal(unique_id="abc123")) == "abc123"

    def test_sensor_description_escapes(self) -> None:
        """Test markup in names is escaped."""
        signal = Signal(unique_id="x", identifier="A<B>@LOC1", parameter='Temp "air"', unit="°C")
        text = build_sensor_description(signal, "A<B>@LOC1", "A<B>@LOC1/offering")
        assert "A&lt;B&gt;@LOC1" in text
        assert "&quot;air&quot;" in text


class TestObservationChunker:
    """Test ObservationChunker class."""

    def test_skips_missing_values(self) -> None:
        """Test points without a value are not sent."""
        points = [TimePoint(T0, 1.0), TimePoint(T0 + timedelta(hours=1), None), TimePoint(T0 + timedelta(hours=2), 3.0)]
        chunks = list(ObservationChunker(10).chunk_points(points))

        assert len(chunks) == 1
        assert [p.value for p in chunks[0].points] == [1.0, 3.0]

    def test_invalid_limit(self) -> None:
        """Test the limit must be positive."""
        with pytest.raises(ValueError):
            ObservationChunker(0)


class TestTimePoint:
    """Test TimePoint parsing."""

    def test_numeric_value(self) -> None:
        """Test the usual Numeric wrapper is unpacked."""
        point = TimePoint.from_dict({"Timestamp": "2024-05-01T00:00:00Z", "Value": {"Numeric": 1.5}})
        assert point.timestamp == T0
        assert point.value == 1.5

    def test_bare_zero_value(self) -> None:
        """Test a bare zero is kept as a value and exported."""
        point = TimePoint.from_dict({"Timestamp": "2024-05-01T00:00:00Z", "Value": 0})

        assert point.value == 0.0
        assert list(ObservationChunker(10).chunk_points([point]))[0].points == [point]

    def test_missing_value(self) -> None:
        """Test a point without a value has none."""
        point = TimePoint.from_dict({"Timestamp": "2024-05-01T00:00:00Z", "Value": {}})
        assert point.value is None
