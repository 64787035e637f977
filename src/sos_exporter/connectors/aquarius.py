"""
AQUARIUS Time-Series Publish API Client.

Provides the read-only source operations the exporter needs:
- Session authentication and server version discovery
- Changed time-series list (changes-since token)
- Batched time-series descriptions (POST with GET semantics)
- Corrected point data
- Location, approval, grade and qualifier metadata
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx

from sos_exporter.config import Settings
from sos_exporter.exceptions import ServiceError
from sos_exporter.models import (
    ChangesResponse,
    LocationData,
    LocationDescription,
    Signal,
    TimeSeriesDescription,
    format_timestamp,
)
from sos_exporter.utils.logger import get_logger

logger = get_logger(__name__)


class AquariusError(ServiceError):
    """Raised when the AQUARIUS server rejects a request."""


class AquariusClient:
    """
    AQUARIUS Time-Series Publish API client.

    Every call is blocking and bounded by the configured timeout.

    Example:
        with AquariusClient("aqts.example.com", "admin", "secret") as client:
            print(client.get_server_version())
            response = client.get_changes({"ChangesSinceToken": token})
    """

    PUBLISH_PATH = "/AQUARIUS/Publish/v2"
    VERSION_PATH = "/AQUARIUS/apps/v1/version"

    def __init__(
        self,
        server: str,
        username: str,
        password: str,
        timeout: float = 300.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            server: Host name or base URL of the AQTS server
            username: AQTS username
            password: AQTS password
            timeout: Seconds allowed for each request
            transport: Optional httpx transport (used by tests)
        """
        self.server = server
        self.base_url = server.rstrip("/") if "://" in server else f"https://{server.rstrip('/')}"
        self.username = username
        self.password = password
        self._client = httpx.Client(
            base_url=self.base_url,
            headers={"Accept": "application/json"},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self._authenticated = False
        self._server_version: str | None = None

    def connect(self) -> "AquariusClient":
        """Authenticate and keep the session token for subsequent requests."""
        response = self._send(
            "POST",
            f"{self.PUBLISH_PATH}/session",
            json={"Username": self.username, "EncryptedPassword": self.password},
        )
        self._client.headers["X-Authentication-Token"] = response.text.strip().strip('"')
        self._authenticated = True
        return self

    def close(self) -> None:
        """End the session and close the HTTP client."""
        if self._authenticated:
            try:
                self._send("DELETE", f"{self.PUBLISH_PATH}/session")
            except AquariusError as e:
                logger.warning(f"Could not end the AQTS session: {e}")
            self._authenticated = False
        self._client.close()

    def __enter__(self) -> "AquariusClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, translating transport and HTTP failures into AquariusError."""
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise AquariusError(f"Connection error: {method} {url}: {e}")

        if response.is_error:
            message = response.reason_phrase
            code = None
            try:
                status = response.json().get("ResponseStatus") or {}
                message = status.get("Message") or message
                code = status.get("ErrorCode")
            except ValueError:
                pass
            raise AquariusError(
                f"{method} {url} failed ({response.status_code}): {message}",
                code,
                response.status_code,
            )
        return response

    def _get(self, operation: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        logger.debug(f"GET {operation} {params or ''}")
        response = self._send("GET", f"{self.PUBLISH_PATH}/{operation}", params=params)
        return response.json()

    def get_server_version(self) -> str:
        """Server API version, e.g. '17.2.123'."""
        if self._server_version is None:
            data = self._send("GET", self.VERSION_PATH).json()
            self._server_version = str(data.get("ApiVersion", "0"))
        return self._server_version

    def get_changes(self, params: dict[str, Any]) -> ChangesResponse:
        """
        List time-series changed since a token.

        Args:
            params: Request parameters (ChangesSinceToken, LocationIdentifier, ...)

        Returns:
            Parsed ChangesResponse
        """
        query = {}
        for key, value in params.items():
            if value is None:
                continue
            if isinstance(value, datetime):
                value = format_timestamp(value)
            elif isinstance(value, bool):
                value = "true" if value else "false"
            elif key == "ExtendedFilters":
                value = format_extended_filters(value)
            query[key] = value
        return ChangesResponse.from_dict(self._get("GetTimeSeriesUniqueIdList", query))

    def get_time_series_descriptions(self, unique_ids: list[str]) -> list[TimeSeriesDescription]:
        """
        Fetch descriptions for one batch of unique IDs.

        The IDs travel in a POST body with a GET method override so that
        large batches do not overflow the URL length limit.
        """
        response = self._send(
            "POST",
            f"{self.PUBLISH_PATH}/GetTimeSeriesDescriptionListByUniqueId",
            json={"TimeSeriesUniqueIds": unique_ids},
            headers={"X-HTTP-Method-Override": "GET"},
        )
        data = response.json()
        return [
            TimeSeriesDescription.from_dict(d)
            for d in data.get("TimeSeriesDescriptions") or []
        ]

    def get_corrected_data(
        self,
        description: TimeSeriesDescription,
        query_from: datetime | None,
        apply_rounding: bool = True,
    ) -> Signal:
        """Fetch corrected points from query_from (None = from the first point)."""
        params: dict[str, Any] = {
            "TimeSeriesUniqueId": description.unique_id,
            "ApplyRounding": "true" if apply_rounding else "false",
        }
        if query_from is not None:
            params["QueryFrom"] = format_timestamp(query_from)
        data = self._get("GetTimeSeriesCorrectedData", params)
        return Signal.from_dict(data, description=description)

    def get_location_descriptions(self, location_identifier: str) -> list[LocationDescription]:
        data = self._get(
            "GetLocationDescriptionList",
            {"LocationIdentifier": location_identifier},
        )
        return [
            LocationDescription.from_dict(d)
            for d in data.get("LocationDescriptions") or []
        ]

    def get_location_data(self, location_identifier: str) -> LocationData:
        data = self._get("GetLocationData", {"LocationIdentifier": location_identifier})
        return LocationData.from_dict(data)

    def get_approvals(self) -> list[dict[str, Any]]:
        return self._get("GetApprovalList").get("Approvals") or []

    def get_grades(self) -> list[dict[str, Any]]:
        return self._get("GetGradeList").get("Grades") or []

    def get_qualifiers(self) -> list[dict[str, Any]]:
        return self._get("GetQualifierList").get("Qualifiers") or []


def format_extended_filters(filters: dict[str, str]) -> str:
    """Encode extended attribute filters in the query-string list syntax."""
    items = ",".join(
        f"{{FilterName:{name},FilterValue:{value}}}" for name, value in filters.items()
    )
    return f"[{items}]"


def parse_version(version: str) -> tuple[int, ...]:
    """'17.2.123' -> (17, 2, 123); non-numeric parts count as 0."""
    parts = []
    for part in version.split("."):
        digits = "".join(ch for ch in part if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


# Convenience function for creating client from settings
def create_aquarius_client(
    settings: Settings,
    transport: httpx.BaseTransport | None = None,
) -> AquariusClient:
    """Create a connected AquariusClient from settings."""
    client = AquariusClient(
        server=settings.aquarius.server,
        username=settings.aquarius.username,
        password=settings.aquarius.password.get_secret_value(),
        timeout=settings.timeout_seconds,
        transport=transport,
    )
    try:
        return client.connect()
    except Exception:
        client.close()
        raise
