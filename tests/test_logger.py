"""Tests for logging setup."""

import json
import logging
from pathlib import Path
from typing import Iterator

import pytest

from sos_exporter.utils.logger import (
    JsonFormatter,
    get_logger,
    log_dry_run,
    setup_logging,
)


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    """Undo handler and level changes made by setup_logging."""
    names = ("sos_exporter", "httpx", "httpcore")
    saved = {n: (list(logging.getLogger(n).handlers), logging.getLogger(n).level) for n in names}
    yield
    for name, (handlers, level) in saved.items():
        logging.getLogger(name).handlers[:] = handlers
        logging.getLogger(name).setLevel(level)


class TestDryRunLogging:
    """Test log_dry_run."""

    def test_prefix_and_level(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test dry-run records are warnings with the Dry-run prefix."""
        with caplog.at_level(logging.INFO, logger="sos_exporter"):
            log_dry_run(get_logger("sos_exporter.core.engine"), "Would have saved the token")

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert record.getMessage() == "Dry-run: Would have saved the token"
        assert record.dry_run is True

    def test_json_flag(self) -> None:
        """Test the JSON formatter marks dry-run records."""
        record = logging.LogRecord("sos_exporter", logging.WARNING, __file__, 1, "Dry-run: x", None, None)
        record.dry_run = True

        data = json.loads(JsonFormatter().format(record))

        assert data["dry_run"] is True
        assert data["level"] == "WARNING"
        assert data["logger"] == "sos_exporter"

    def test_json_without_flag(self) -> None:
        """Test ordinary records carry no dry-run key."""
        record = logging.LogRecord("sos_exporter", logging.INFO, __file__, 1, "Exporting", None, None)
        assert "dry_run" not in json.loads(JsonFormatter().format(record))


class TestSetupLogging:
    """Test setup_logging."""

    def test_replaces_handlers(self) -> None:
        """Test repeated setup does not stack handlers."""
        setup_logging(level="INFO", format_style="simple")
        setup_logging(level="INFO", format_style="json")

        package_logger = logging.getLogger("sos_exporter")
        assert len(package_logger.handlers) == 1
        assert isinstance(package_logger.handlers[0].formatter, JsonFormatter)

    def test_file_handler(self, tmp_path: Path) -> None:
        """Test a rotating file handler writes to the configured path."""
        log_file = tmp_path / "logs" / "export.log"
        setup_logging(level="INFO", log_file=log_file, format_style="simple")

        get_logger("sos_exporter.test").info("Exported 5 points")
        for handler in logging.getLogger("sos_exporter").handlers:
            handler.flush()

        assert "Exported 5 points" in log_file.read_text()

    def test_http_loggers_quieted(self) -> None:
        """Test per-request HTTP logging is hidden unless debugging."""
        setup_logging(level="INFO", format_style="simple")
        assert logging.getLogger("httpx").level == logging.WARNING

        setup_logging(level="DEBUG", format_style="simple")
        assert logging.getLogger("httpx").level == logging.DEBUG
