"""
SOS Exporter Configuration System.

This module provides a type-safe configuration system using Pydantic.
Settings can be loaded from:
1. Environment variables (prefixed with SOS_EXPORTER_)
2. Config file (TOML or JSON)
3. CLI arguments (highest priority)

Example usage:
    from sos_exporter.config import Settings

    # Load from environment
    settings = Settings()

    # Or with explicit values
    settings = Settings(
        aquarius={"server": "aqts.example.com", "username": "admin"},
        sos={"server": "http://sos.example.com/52n-sos-webapp"},
    )
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ComputationPeriod(str, Enum):
    """Sampling-frequency bucket of a time-series."""

    UNKNOWN = "Unknown"
    ANNUAL = "Annual"
    WATER_YEAR = "WaterYear"
    MONTHLY = "Monthly"
    WEEKLY = "Weekly"
    DAILY = "Daily"
    HOURLY = "Hourly"
    MINUTES = "Minutes"

    @classmethod
    def parse(cls, text: str | None) -> ComputationPeriod | None:
        """Case-insensitive lookup, returning None for unrecognized text."""
        if not text:
            return None
        for member in cls:
            if member.value.lower() == text.strip().lower():
                return member
        return None

    def normalized(self) -> ComputationPeriod:
        """WaterYear and Annual are the same frequency."""
        return ComputationPeriod.ANNUAL if self == ComputationPeriod.WATER_YEAR else self


ALL_DAYS = "All"

DEFAULT_MAXIMUM_POINT_DAYS: dict[ComputationPeriod, int] = {
    ComputationPeriod.UNKNOWN: 0,
    ComputationPeriod.ANNUAL: 0,
    ComputationPeriod.MONTHLY: 0,
    ComputationPeriod.WEEKLY: 3650,
    ComputationPeriod.DAILY: 3650,
    ComputationPeriod.HOURLY: 365,
    ComputationPeriod.MINUTES: 90,
}


class ChangeEventType(str, Enum):
    """Kind of change reported by the source change list."""

    DATA = "Data"
    ATTRIBUTE = "Attribute"


class Comparison(str, Enum):
    """Comparison applied by approval and grade point filters."""

    LESS_THAN = "LessThan"
    LESS_THAN_EQUAL = "LessThanEqual"
    EQUAL = "Equal"
    GREATER_THAN_EQUAL = "GreaterThanEqual"
    GREATER_THAN = "GreaterThan"


class FilterItem(BaseModel):
    """A single include/exclude filter. A leading '-' in the text means exclude."""

    text: str
    exclude: bool = False

    @model_validator(mode="before")
    @classmethod
    def parse_exclusion(cls, data: Any) -> Any:
        """Accept bare strings and the '-text' exclusion shorthand."""
        if isinstance(data, str):
            data = {"text": data}
        if isinstance(data, dict):
            text = str(data.get("text", "")).strip()
            if text.startswith("-"):
                data = {**data, "text": text[1:].strip(), "exclude": True}
        return data


class TimeSeriesFilter(FilterItem):
    """Regular expression matched against a time-series identifier."""


class QualifierFilter(FilterItem):
    """Qualifier identifier or code."""


class ApprovalFilter(FilterItem):
    """Approval display name or identifier, compared by approval level."""

    comparison: Comparison = Comparison.EQUAL
    approval_level: int | None = Field(
        default=None,
        description="Resolved approval level (filled in by validation)",
    )


class GradeFilter(FilterItem):
    """Grade display name or identifier, compared by grade code."""

    comparison: Comparison = Comparison.EQUAL
    grade_code: int | None = Field(
        default=None,
        description="Resolved grade code (filled in by validation)",
    )


class AquariusConfig(BaseModel):
    """Source time-series server connection."""

    server: str = Field(default="", description="AQTS server host or URL")
    username: str = Field(default="", description="AQTS username")
    password: SecretStr = Field(default=SecretStr(""), description="AQTS password")


class SosConfig(BaseModel):
    """Target SOS server connection."""

    server: str = Field(
        default="",
        description="Base URL of the SOS webapp (e.g. http://host/52n-sos-webapp)",
    )
    username: str = Field(default="", description="SOS admin username")
    password: SecretStr = Field(default=SecretStr(""), description="SOS admin password")
    max_observations_per_request: int = Field(
        default=1000,
        ge=1,
        le=100_000,
        description="Maximum observations sent in one InsertObservation request",
    )


class FilterConfig(BaseModel):
    """Filters limiting which time-series and points are exported."""

    location_identifier: str | None = None
    parameter: str | None = None
    publish: bool | None = None
    change_event_type: ChangeEventType | None = None
    computation_identifier: str | None = None
    computation_period_identifier: str | None = None
    extended_filters: dict[str, str] = Field(default_factory=dict)
    time_series: list[TimeSeriesFilter] = Field(default_factory=list)
    approvals: list[ApprovalFilter] = Field(default_factory=list)
    grades: list[GradeFilter] = Field(default_factory=list)
    qualifiers: list[QualifierFilter] = Field(default_factory=list)

    def has_series_filters(self) -> bool:
        """True when anything narrows the set of exported time-series."""
        return any([
            self.location_identifier,
            self.parameter,
            self.publish is not None,
            self.change_event_type is not None,
            self.computation_identifier,
            self.computation_period_identifier,
            self.extended_filters,
            self.time_series,
        ])


class ExportOptions(BaseModel):
    """Options controlling export behavior."""

    dry_run: bool = Field(
        default=False,
        description="Perform every read but no SOS changes",
    )
    force_resync: bool = Field(
        default=False,
        description="Ignore the saved changes-since token and export everything",
    )
    never_resync: bool = Field(
        default=False,
        description="Never fall back to a full resync when the token has expired",
    )
    changes_since: datetime | None = Field(
        default=None,
        description="Explicit changes-since token override",
    )
    state_file: Path = Field(
        default=Path(".sos-exporter-state.json"),
        description="Path to the file holding the changes-since token",
    )

    @field_validator("changes_since")
    @classmethod
    def require_timezone(cls, v: datetime | None) -> datetime | None:
        """Tokens are UTC instants; naive values are rejected."""
        if v is not None and v.tzinfo is None:
            raise ValueError("changes_since must include a UTC offset")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Log level",
    )
    file: Path | None = Field(
        default=None,
        description="Log file path (None = console only)",
    )
    format: str = Field(
        default="rich",
        pattern="^(rich|json|simple)$",
        description="Log format: rich (colored), json, or simple",
    )
    max_file_size_mb: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Max log file size before rotation",
    )
    backup_count: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Number of rotated log files to keep",
    )


class Settings(BaseSettings):
    """
    Main settings class for SOS Exporter.

    Settings are loaded in this priority (highest first):
    1. Explicit constructor arguments
    2. Environment variables (SOS_EXPORTER_* prefix)
    3. Config file (if specified)
    4. Defaults

    Example:
        # From environment
        export SOS_EXPORTER_AQUARIUS__SERVER="aqts.example.com"
        export SOS_EXPORTER_AQUARIUS__PASSWORD="secret"
        settings = Settings()

        # From config file
        settings = Settings.from_file("config.toml")
    """

    model_config = SettingsConfigDict(
        env_prefix="SOS_EXPORTER_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    aquarius: AquariusConfig = Field(default_factory=AquariusConfig)
    sos: SosConfig = Field(default_factory=SosConfig)

    timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Timeout applied to every HTTP request",
    )

    # Retention table: 0 means export all points
    maximum_point_days: dict[ComputationPeriod, int] = Field(
        default_factory=lambda: dict(DEFAULT_MAXIMUM_POINT_DAYS),
    )

    filters: FilterConfig = Field(default_factory=FilterConfig)
    export: ExportOptions = Field(default_factory=ExportOptions)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("maximum_point_days", mode="before")
    @classmethod
    def parse_point_days(cls, v: Any) -> Any:
        """Accept 'All' as a synonym for unlimited retention."""
        if not isinstance(v, dict):
            return v
        parsed: dict[Any, Any] = {}
        for key, days in v.items():
            period = ComputationPeriod.parse(key) if isinstance(key, str) else key
            if period is None:
                raise ValueError(f"Unknown computation period: {key}")
            if isinstance(days, str) and days.strip().lower() == ALL_DAYS.lower():
                days = 0
            parsed[period] = days
        return parsed

    @field_validator("maximum_point_days")
    @classmethod
    def validate_point_days(
        cls, v: dict[ComputationPeriod, int]
    ) -> dict[ComputationPeriod, int]:
        """Normalize WaterYear, forbid negatives, and guarantee an Unknown entry."""
        table: dict[ComputationPeriod, int] = {}
        for period, days in v.items():
            if days < 0:
                raise ValueError(f"{period.value} days must not be negative")
            table[period.normalized()] = days
        table.setdefault(ComputationPeriod.UNKNOWN, 0)
        return table

    @classmethod
    def from_file(cls, path: Path | str) -> "Settings":
        """Load settings from a TOML or JSON config file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        content = path.read_text()

        if path.suffix in (".toml", ".tml"):
            import tomllib
            data = tomllib.loads(content)
        elif path.suffix == ".json":
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")

        return cls.model_validate(data)

    def to_file(self, path: Path | str) -> None:
        """Save current settings to a config file."""
        path = Path(path)
        data = self.model_dump(mode="json", exclude_none=True)

        # Mask sensitive data
        for group in ("aquarius", "sos"):
            if data.get(group, {}).get("password") is not None:
                data[group]["password"] = "***REDACTED***"

        if path.suffix in (".toml", ".tml"):
            # Basic TOML serialization
            lines = []
            tables = []
            for key, value in data.items():
                if isinstance(value, dict):
                    tables.append((key, value))
                else:
                    lines.append(f"{key} = {json.dumps(value)}")
            for key, value in tables:
                lines.append(f"\n[{key}]")
                for k, v in value.items():
                    lines.append(f"{json.dumps(k)} = {_toml_value(v)}")
            path.write_text("\n".join(lines) + "\n")
        else:
            path.write_text(json.dumps(data, indent=2))

    def retention_days(self, period: ComputationPeriod) -> int:
        """Maximum days of points to export for the period (0 = all)."""
        return self.maximum_point_days[period]

    def validate_credentials(self) -> list[str]:
        """Validate that required connection settings are present. Returns list of errors."""
        errors = []
        if not self.aquarius.server:
            errors.append("aquarius.server is required")
        if not self.aquarius.username:
            errors.append("aquarius.username is required")
        if not self.sos.server:
            errors.append("sos.server is required")
        if not self.sos.username:
            errors.append("sos.username is required")
        return errors


def _toml_value(value: Any) -> str:
    """Render a JSON-compatible value as a TOML inline value."""
    if isinstance(value, dict):
        items = ", ".join(f"{json.dumps(k)} = {_toml_value(v)}" for k, v in value.items())
        return f"{{ {items} }}" if items else "{}"
    if isinstance(value, list):
        return f"[{', '.join(_toml_value(v) for v in value)}]"
    return json.dumps(value)


# Convenience function for loading settings
def load_settings(
    config_file: Path | str | None = None,
    **overrides: Any,
) -> Settings:
    """
    Load settings with optional config file and overrides.

    Args:
        config_file: Optional path to config file
        **overrides: Settings to override (highest priority)

    Returns:
        Configured Settings instance
    """
    if config_file:
        settings = Settings.from_file(config_file)
        if overrides:
            data = settings.model_dump()
            data.update(overrides)
            return Settings.model_validate(data)
        return settings
    return Settings(**overrides)
