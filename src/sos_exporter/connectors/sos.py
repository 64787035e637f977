"""
52°North SOS Client.

Provides the target-side operations of the exporter:
- Sensor lookup via GetDataAvailability
- InsertSensor / DeleteSensor through the JSON binding
- Batched InsertObservation
- Admin datasource maintenance (clear, delete deleted observations)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from xml.sax.saxutils import escape

import httpx

from sos_exporter.config import Settings
from sos_exporter.core.chunker import ObservationChunker
from sos_exporter.exceptions import ServiceError
from sos_exporter.models import (
    ExistingSensor,
    LocationData,
    LocationDescription,
    Signal,
    TimePoint,
    TimeSeriesDescription,
    format_timestamp,
    parse_timestamp,
)
from sos_exporter.utils.logger import get_logger

logger = get_logger(__name__)

SOS_SERVICE = "SOS"
SOS_VERSION = "2.0.0"

MEASUREMENT_TYPE = "http://www.opengis.net/def/observationType/OGC-OM/2.0/OM_Measurement"
SAMPLING_POINT_TYPE = "http://www.opengis.net/def/samplingFeatureType/OGC-OM/2.0/SF_SamplingPoint"
SENSORML_FORMAT = "http://www.opengis.net/sensorml/2.0"
UNKNOWN_CODESPACE = "http://www.opengis.net/def/nil/OGC/0/unknown"


class SosError(ServiceError):
    """Raised when the SOS returns an exception report or HTTP error."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status: int | None = None,
        locator: str | None = None,
    ) -> None:
        super().__init__(message, code, status)
        self.locator = locator


@dataclass(frozen=True)
class InsertedSensor:
    """Identifiers assigned by InsertSensor."""

    assigned_procedure: str
    assigned_offering: str


def procedure_identifier(series: Signal | TimeSeriesDescription) -> str:
    """Downstream sensor identity of a time-series."""
    return series.identifier or series.unique_id


def offering_identifier(procedure: str) -> str:
    return f"{procedure}/offering"


class SosClient:
    """
    52°North SOS client using the JSON binding.

    Admin operations need an authenticated session, established lazily on
    first use.

    Example:
        with SosClient("http://host/52n-sos-webapp", "admin", "secret") as sos:
            existing = sos.find_existing_sensor(signal)
    """

    def __init__(
        self,
        server: str,
        username: str,
        password: str,
        timeout: float = 300.0,
        max_observations_per_request: int = 1000,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            server: Base URL of the SOS webapp
            username: Admin username
            password: Admin password
            timeout: Seconds allowed for each request
            max_observations_per_request: Batch limit for InsertObservation
            transport: Optional httpx transport (used by tests)
        """
        self.server = server.rstrip("/")
        self.username = username
        self.password = password
        self.chunker = ObservationChunker(max_observations_per_request)
        self._client = httpx.Client(
            base_url=self.server,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self._logged_in = False

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "SosClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # =========================================================================
    # Transport
    # =========================================================================

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise SosError(f"Connection error: {method} {url}: {e}")
        return response

    def _service(self, request: dict[str, Any]) -> dict[str, Any]:
        """POST a JSON binding request, raising SosError on exception reports."""
        body = {"service": SOS_SERVICE, "version": SOS_VERSION, **request}
        logger.debug(f"SOS {body['request']}")
        response = self._send(
            "POST",
            "/service",
            json=body,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )

        try:
            data = response.json()
        except ValueError:
            if response.is_error:
                raise SosError(
                    f"{body['request']} failed ({response.status_code}): {response.reason_phrase}",
                    status=response.status_code,
                )
            raise SosError(f"{body['request']} returned a non-JSON response")

        exceptions = data.get("exceptions") if isinstance(data, dict) else None
        if exceptions:
            first = exceptions[0]
            raise SosError(
                f"{body['request']} failed: {first.get('text', 'Unknown error')}",
                first.get("code"),
                response.status_code,
                first.get("locator"),
            )
        if response.is_error:
            raise SosError(
                f"{body['request']} failed ({response.status_code})",
                status=response.status_code,
            )
        return data

    def _login(self) -> None:
        if self._logged_in:
            return
        response = self._send(
            "POST",
            "/j_spring_security_check",
            data={"j_username": self.username, "j_password": self.password},
        )
        if response.is_error or "login?error" in str(response.headers.get("location", "")):
            raise SosError(f"Could not log in to {self.server} as {self.username}", status=response.status_code)
        self._logged_in = True

    def _admin(self, path: str) -> None:
        self._login()
        response = self._send("POST", f"/admin/{path}")
        if response.is_error:
            raise SosError(f"/admin/{path} failed ({response.status_code})", status=response.status_code)

    # =========================================================================
    # Sensor operations
    # =========================================================================

    def find_existing_sensor(self, signal: Signal) -> ExistingSensor | None:
        """Return the downstream sensor of a signal, or None when it was never exported."""
        procedure = procedure_identifier(signal)
        try:
            data = self._service({
                "request": "GetDataAvailability",
                "procedure": [procedure],
            })
        except SosError as e:
            # The SOS rejects procedures it has never seen
            if e.code == "InvalidParameterValue" and e.locator == "procedure":
                return None
            raise

        availability = data.get("dataAvailability") or []
        if not availability:
            return None

        starts: list[datetime] = []
        ends: list[datetime] = []
        offering = None
        for entry in availability:
            offering = offering or _reference(entry.get("offering"))
            phenomenon_time = entry.get("phenomenonTime") or []
            if len(phenomenon_time) == 2:
                starts.append(parse_timestamp(phenomenon_time[0]))  # type: ignore[arg-type]
                ends.append(parse_timestamp(phenomenon_time[1]))  # type: ignore[arg-type]

        return ExistingSensor(
            procedure=procedure,
            offering=offering or offering_identifier(procedure),
            phenomenon_start=min(starts) if starts else None,
            phenomenon_end=max(ends) if ends else None,
        )

    def insert_sensor(self, signal: Signal) -> InsertedSensor:
        procedure = procedure_identifier(signal)
        offering = offering_identifier(procedure)
        data = self._service({
            "request": "InsertSensor",
            "procedureDescriptionFormat": SENSORML_FORMAT,
            "procedureDescription": build_sensor_description(signal, procedure, offering),
            "observableProperty": [signal.parameter or signal.label],
            "observationType": [MEASUREMENT_TYPE],
            "featureOfInterestType": SAMPLING_POINT_TYPE,
        })
        return InsertedSensor(
            assigned_procedure=data.get("assignedProcedure", procedure),
            assigned_offering=data.get("assignedOffering", offering),
        )

    def delete_sensor(self, signal: Signal) -> None:
        self._service({
            "request": "DeleteSensor",
            "procedure": procedure_identifier(signal),
        })

    def delete_deleted_observations(self) -> None:
        """Purge observations the SOS only marked as deleted."""
        self._admin("datasource/deleteDeletedObservations")

    def clear_datasource(self) -> None:
        """Remove every sensor and observation from the SOS."""
        self._admin("datasource/clear")

    def insert_observation(
        self,
        offering: str,
        location_data: LocationData,
        location_description: LocationDescription,
        signal: Signal,
        description: TimeSeriesDescription,
    ) -> int:
        """
        Upload the signal's points as measurements under the offering.

        Returns:
            Number of observations sent
        """
        feature = build_feature_of_interest(location_data, location_description)
        procedure = procedure_identifier(signal)
        observed_property = signal.parameter or description.parameter
        unit = signal.unit or description.unit

        sent = 0
        for chunk in self.chunker.chunk_points(signal.points):
            self._service({
                "request": "InsertObservation",
                "offering": [offering],
                "observation": [
                    build_measurement(procedure, observed_property, unit, feature, point)
                    for point in chunk.points
                ],
            })
            sent += chunk.point_count
            logger.debug(
                f"Inserted points {chunk.start_offset}-{chunk.end_offset} of '{description.identifier}'"
            )
        return sent


def _reference(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("href") or value.get("title")
    return value


def build_feature_of_interest(
    location_data: LocationData,
    location_description: LocationDescription,
) -> dict[str, Any]:
    feature: dict[str, Any] = {
        "identifier": {"codespace": UNKNOWN_CODESPACE, "value": location_description.identifier},
        "name": [{"codespace": UNKNOWN_CODESPACE, "value": location_description.name or location_data.name}],
        "sampledFeature": [UNKNOWN_CODESPACE],
    }
    if location_data.latitude is not None and location_data.longitude is not None:
        feature["geometry"] = {
            "type": "Point",
            "coordinates": [location_data.latitude, location_data.longitude],
            "crs": {"type": "name", "properties": {"name": "EPSG:4326"}},
        }
    return feature


def build_measurement(
    procedure: str,
    observed_property: str,
    unit: str,
    feature: dict[str, Any],
    point: TimePoint,
) -> dict[str, Any]:
    timestamp = format_timestamp(point.timestamp)
    return {
        "type": MEASUREMENT_TYPE,
        "procedure": procedure,
        "observedProperty": observed_property,
        "featureOfInterest": feature,
        "phenomenonTime": timestamp,
        "resultTime": timestamp,
        "result": {"uom": unit, "value": point.value},
    }


def build_sensor_description(signal: Signal, procedure: str, offering: str) -> str:
    """Minimal SensorML 2.0 PhysicalSystem declaring the procedure and its offering."""
    observed_property = escape(signal.parameter or signal.label, {'"': "&quot;"})
    unit = escape(signal.unit, {'"': "&quot;"})
    return (
        '<sml:PhysicalSystem xmlns:sml="http://www.opengis.net/sensorml/2.0" '
        'xmlns:gml="http://www.opengis.net/gml/3.2" '
        'xmlns:swe="http://www.opengis.net/swe/2.0" '
        'gml:id="procedure">'
        f'<gml:identifier codeSpace="uniqueID">{escape(procedure)}</gml:identifier>'
        '<sml:capabilities name="offerings"><sml:CapabilityList>'
        '<sml:capability name="offeringID">'
        f'<swe:Text definition="urn:ogc:def:identifier:OGC:offeringID"><swe:value>{escape(offering)}</swe:value></swe:Text>'
        '</sml:capability>'
        '</sml:CapabilityList></sml:capabilities>'
        '<sml:outputs><sml:OutputList>'
        f'<sml:output name="{observed_property}"><swe:Quantity definition="{observed_property}">'
        f'<swe:uom code="{unit}"/></swe:Quantity></sml:output>'
        '</sml:OutputList></sml:outputs>'
        '</sml:PhysicalSystem>'
    )


# Convenience function for creating client from settings
def create_sos_client(
    settings: Settings,
    transport: httpx.BaseTransport | None = None,
) -> SosClient:
    """Create a SosClient from settings."""
    return SosClient(
        server=settings.sos.server,
        username=settings.sos.username,
        password=settings.sos.password.get_secret_value(),
        timeout=settings.timeout_seconds,
        max_observations_per_request=settings.sos.max_observations_per_request,
        transport=transport,
    )
