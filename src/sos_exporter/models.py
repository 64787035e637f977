"""
Data model shared by the source connector, the sync core and the SOS connector.

Wire payloads are parsed into plain dataclasses at the connector boundary
so the core never touches raw JSON.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

# Earliest representable aware instant, used when subtracting would underflow
MIN_TIMESTAMP = datetime.min.replace(tzinfo=timezone.utc)

_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse an ISO 8601 timestamp as returned by the source server.

    Handles 'Z' suffixes and the 7-digit fractional seconds the server emits.
    Naive values are assumed to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime | None) -> str | None:
    """Format an aware timestamp in round-trippable ISO 8601."""
    if value is None:
        return None
    return value.isoformat()


def subtract_days(value: datetime, days: int) -> datetime:
    """Subtract days, saturating at the minimum representable instant."""
    span = timedelta(days=days)
    if value - MIN_TIMESTAMP <= span:
        return MIN_TIMESTAMP
    return value - span


@dataclass(frozen=True)
class ChangeEvent:
    """One time-series reported as changed since the token."""

    unique_id: str
    first_point_changed: datetime | None = None
    has_attribute_change: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeEvent":
        return cls(
            unique_id=data["UniqueId"],
            first_point_changed=parse_timestamp(data.get("FirstPointChanged")),
            has_attribute_change=bool(data.get("HasAttributeChange", False)),
        )


@dataclass
class ChangesResponse:
    """Result of a changed-time-series query."""

    events: list[ChangeEvent] = field(default_factory=list)
    next_token: datetime | None = None
    token_expired: bool = False
    response_time: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangesResponse":
        return cls(
            events=[ChangeEvent.from_dict(e) for e in data.get("TimeSeriesUniqueIds") or []],
            next_token=parse_timestamp(data.get("NextToken")),
            token_expired=bool(data.get("TokenExpired") or False),
            response_time=parse_timestamp(data.get("ResponseTime")),
        )


@dataclass(frozen=True)
class TimeSeriesDescription:
    """Immutable metadata describing a source time-series."""

    unique_id: str
    identifier: str
    location_identifier: str
    parameter: str = ""
    unit: str = ""
    label: str = ""
    utc_offset: timedelta = timedelta(0)
    computation_identifier: str = ""
    computation_period_identifier: str = ""
    publish: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TimeSeriesDescription":
        return cls(
            unique_id=data["UniqueId"],
            identifier=data.get("Identifier", ""),
            location_identifier=data.get("LocationIdentifier", ""),
            parameter=data.get("Parameter", ""),
            unit=data.get("Unit", ""),
            label=data.get("Label", ""),
            utc_offset=timedelta(hours=float(data.get("UtcOffset") or 0)),
            computation_identifier=data.get("ComputationIdentifier") or "",
            computation_period_identifier=data.get("ComputationPeriodIdentifier") or "",
            publish=bool(data.get("Publish", True)),
        )


@dataclass(frozen=True)
class TimePoint:
    """A single corrected point."""

    timestamp: datetime
    value: float | None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TimePoint":
        value = data.get("Value")
        numeric = value.get("Numeric") if isinstance(value, dict) else value
        return cls(
            timestamp=parse_timestamp(data["Timestamp"]),  # type: ignore[arg-type]
            value=float(numeric) if numeric is not None else None,
        )


@dataclass(frozen=True)
class MetadataRange:
    """A [start, end) span carrying point metadata."""

    start_time: datetime
    end_time: datetime

    def contains(self, timestamp: datetime) -> bool:
        return self.start_time <= timestamp < self.end_time


@dataclass(frozen=True)
class ApprovalRange(MetadataRange):
    approval_level: int = 0
    level_description: str = ""


@dataclass(frozen=True)
class GradeRange(MetadataRange):
    grade_code: int = 0


@dataclass(frozen=True)
class QualifierRange(MetadataRange):
    identifier: str = ""


def _ranges(data: dict[str, Any], key: str) -> list[tuple[datetime, datetime, dict[str, Any]]]:
    ranges = []
    for item in data.get(key) or []:
        ranges.append((
            parse_timestamp(item["StartTime"]),
            parse_timestamp(item["EndTime"]),
            item,
        ))
    return ranges  # type: ignore[return-value]


@dataclass
class Signal:
    """
    Corrected points of one time-series.

    Points are kept strictly time-ordered and unique by timestamp; the
    point count is always derived from the points themselves.
    """

    unique_id: str
    identifier: str = ""
    location_identifier: str = ""
    parameter: str = ""
    unit: str = ""
    label: str = ""
    points: list[TimePoint] = field(default_factory=list)
    approvals: list[ApprovalRange] = field(default_factory=list)
    grades: list[GradeRange] = field(default_factory=list)
    qualifiers: list[QualifierRange] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.points = self.normalize_points(self.points)

    @staticmethod
    def normalize_points(points: list[TimePoint]) -> list[TimePoint]:
        """Sort by timestamp; the last point wins for duplicate timestamps."""
        by_timestamp: dict[datetime, TimePoint] = {}
        for point in points:
            by_timestamp[point.timestamp] = point
        return [by_timestamp[ts] for ts in sorted(by_timestamp)]

    @property
    def num_points(self) -> int:
        return len(self.points)

    @property
    def first_timestamp(self) -> datetime | None:
        return self.points[0].timestamp if self.points else None

    @property
    def last_timestamp(self) -> datetime | None:
        return self.points[-1].timestamp if self.points else None

    def with_points(self, points: list[TimePoint]) -> "Signal":
        """Copy of this signal holding a different set of points."""
        return replace(self, points=list(points))

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        description: TimeSeriesDescription | None = None,
    ) -> "Signal":
        return cls(
            unique_id=data.get("UniqueId") or (description.unique_id if description else ""),
            identifier=description.identifier if description else data.get("Label", ""),
            location_identifier=data.get("LocationIdentifier", ""),
            parameter=data.get("Parameter", ""),
            unit=data.get("Unit", ""),
            label=data.get("Label", ""),
            points=[TimePoint.from_dict(p) for p in data.get("Points") or []],
            approvals=[
                ApprovalRange(start, end, int(item.get("ApprovalLevel", 0)), item.get("LevelDescription", ""))
                for start, end, item in _ranges(data, "Approvals")
            ],
            grades=[
                GradeRange(start, end, int(item.get("GradeCode", 0)))
                for start, end, item in _ranges(data, "Grades")
            ],
            qualifiers=[
                QualifierRange(start, end, item.get("Identifier", ""))
                for start, end, item in _ranges(data, "Qualifiers")
            ],
        )


@dataclass(frozen=True)
class LocationDescription:
    identifier: str
    name: str = ""
    unique_id: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LocationDescription":
        return cls(
            identifier=data["Identifier"],
            name=data.get("Name", ""),
            unique_id=data.get("UniqueId", ""),
        )


@dataclass(frozen=True)
class LocationData:
    identifier: str
    name: str = ""
    latitude: float | None = None
    longitude: float | None = None
    elevation: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LocationData":
        def number(key: str) -> float | None:
            value = data.get(key)
            return float(value) if value is not None else None

        return cls(
            identifier=data.get("Identifier", ""),
            name=data.get("LocationName", ""),
            latitude=number("Latitude"),
            longitude=number("Longitude"),
            elevation=number("Elevation"),
        )


@dataclass(frozen=True)
class LocationInfo:
    """Location metadata resolved once per run."""

    description: LocationDescription
    data: LocationData


@dataclass(frozen=True)
class ExistingSensor:
    """Downstream state of an exported time-series."""

    procedure: str
    offering: str
    phenomenon_start: datetime | None = None
    phenomenon_end: datetime | None = None

    @property
    def last_observed(self) -> datetime | None:
        return self.phenomenon_end
