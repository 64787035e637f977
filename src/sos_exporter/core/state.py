"""
Change Token Store - Persistence of the changes-since token.

The token marks how far source changes have been consumed. It is read at
the start of a run and written only after every changed time-series has
been exported.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sos_exporter.models import format_timestamp, parse_timestamp
from sos_exporter.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ExportState:
    """Persisted exporter state."""

    changes_since_token: str | None = None
    updated_at: str = ""
    exported_point_count: int = 0
    exported_time_series_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExportState":
        """Create from dictionary."""
        return cls(
            changes_since_token=data.get("changes_since_token"),
            updated_at=data.get("updated_at", ""),
            exported_point_count=int(data.get("exported_point_count", 0)),
            exported_time_series_count=int(data.get("exported_time_series_count", 0)),
        )

    @property
    def token(self) -> datetime | None:
        return parse_timestamp(self.changes_since_token)


class ChangeTokenStore:
    """
    JSON file persistence of the changes-since token.

    A missing or unreadable state file means "no prior token", which makes
    the next run a full export. Saving never moves the token backwards
    unless explicitly allowed.

    Example:
        store = ChangeTokenStore(Path(".sos-exporter-state.json"))

        token = store.load()
        ...
        store.save(next_token)
    """

    def __init__(self, state_file: Path | str) -> None:
        self.state_file = Path(state_file)
        self._state: ExportState | None = None

    @property
    def state(self) -> ExportState | None:
        """Last loaded or saved state."""
        return self._state

    def load_state(self) -> ExportState | None:
        """Load state from file if it exists and is readable."""
        if not self.state_file.exists():
            return None

        try:
            data = json.loads(self.state_file.read_text())
            self._state = ExportState.from_dict(data)
            return self._state
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Could not load state file {self.state_file}: {e}")
            return None

    def load(self) -> datetime | None:
        """The persisted token, or None when there is no usable prior token."""
        state = self.load_state()
        if state is None:
            return None
        try:
            return state.token
        except ValueError as e:
            logger.warning(f"Ignoring malformed ChangesSinceToken in {self.state_file}: {e}")
            return None

    def save(
        self,
        token: datetime,
        allow_regress: bool = False,
        exported_point_count: int = 0,
        exported_time_series_count: int = 0,
    ) -> datetime:
        """
        Persist the token.

        Args:
            token: Token to persist
            allow_regress: Permit saving a token older than the persisted one
            exported_point_count: Points exported by the run
            exported_time_series_count: Time-series exported by the run

        Returns:
            The token actually persisted
        """
        previous = self.load()
        if previous is not None and token < previous and not allow_regress:
            logger.warning(
                f"Keeping ChangesSinceToken={format_timestamp(previous)} "
                f"instead of older {format_timestamp(token)}"
            )
            token = previous

        self._state = ExportState(
            changes_since_token=format_timestamp(token),
            updated_at=datetime.now(timezone.utc).isoformat(),
            exported_point_count=exported_point_count,
            exported_time_series_count=exported_time_series_count,
        )
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self.state_file.write_text(json.dumps(self._state.to_dict(), indent=2))
        logger.info(f"Saved ChangesSinceToken={self._state.changes_since_token}")
        return token

    def get_summary(self) -> dict[str, Any]:
        """Get a summary of the persisted state for display."""
        state = self._state or self.load_state()
        if state is None:
            return {}
        return state.to_dict()
