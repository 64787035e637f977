"""
SOS Exporter CLI - Command Line Interface.

Mirrors AQUARIUS time-series changes into a 52°North SOS.

Commands:
    export  Export changed time-series to the SOS
    status  Show the persisted changes-since token
    config  Manage configuration
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import typer
from pydantic import SecretStr, ValidationError
from rich.console import Console
from rich.table import Table

from sos_exporter import __version__
from sos_exporter.config import (
    ApprovalFilter,
    ChangeEventType,
    GradeFilter,
    QualifierFilter,
    Settings,
    TimeSeriesFilter,
    load_settings,
)
from sos_exporter.connectors.aquarius import create_aquarius_client
from sos_exporter.connectors.sos import create_sos_client
from sos_exporter.core.engine import ExportEngine, ExportStats
from sos_exporter.core.state import ChangeTokenStore
from sos_exporter.exceptions import ExpectedError, ServiceError
from sos_exporter.models import format_timestamp, parse_timestamp
from sos_exporter.utils.display import (
    print_actions,
    print_summary,
    print_error,
    print_success,
    print_info,
    print_warning,
)
from sos_exporter.utils.logger import setup_logging


# Create the Typer app
app = typer.Typer(
    name="sos-exporter",
    help="Export AQUARIUS time-series changes to a 52°North SOS.",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]sos-exporter[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """SOS Exporter - AQUARIUS to 52°North SOS synchronization."""
    pass


# =============================================================================
# EXPORT Command
# =============================================================================
@app.command()
def export(
    config_file: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config file.",
        exists=True,
    ),
    aquarius_server: str = typer.Option(
        None,
        "--aquarius-server",
        help="AQTS server (overrides config).",
    ),
    aquarius_username: str = typer.Option(
        None,
        "--aquarius-username",
        help="AQTS username (overrides config).",
    ),
    aquarius_password: str = typer.Option(
        None,
        "--aquarius-password",
        envvar="SOS_EXPORTER_AQUARIUS__PASSWORD",
        help="AQTS password.",
    ),
    sos_server: str = typer.Option(
        None,
        "--sos-server",
        help="SOS webapp base URL (overrides config).",
    ),
    sos_username: str = typer.Option(
        None,
        "--sos-username",
        help="SOS admin username (overrides config).",
    ),
    sos_password: str = typer.Option(
        None,
        "--sos-password",
        envvar="SOS_EXPORTER_SOS__PASSWORD",
        help="SOS admin password.",
    ),
    location: str = typer.Option(
        None,
        "--location",
        help="Only export time-series at this location.",
    ),
    parameter: str = typer.Option(
        None,
        "--parameter",
        help="Only export time-series of this parameter.",
    ),
    publish: Optional[bool] = typer.Option(
        None,
        "--publish/--no-publish",
        help="Only export published (or unpublished) time-series.",
    ),
    change_event_type: Optional[ChangeEventType] = typer.Option(
        None,
        "--change-event-type",
        help="Only export time-series with this kind of change.",
    ),
    time_series: Optional[list[str]] = typer.Option(
        None,
        "--time-series",
        help="Time-series identifier regex; prefix with '-' to exclude (can be repeated).",
    ),
    approvals: Optional[list[str]] = typer.Option(
        None,
        "--approval",
        help="Approval point filter; prefix with '-' to exclude (can be repeated).",
    ),
    grades: Optional[list[str]] = typer.Option(
        None,
        "--grade",
        help="Grade point filter; prefix with '-' to exclude (can be repeated).",
    ),
    qualifiers: Optional[list[str]] = typer.Option(
        None,
        "--qualifier",
        help="Qualifier point filter; prefix with '-' to exclude (can be repeated).",
    ),
    changes_since: str = typer.Option(
        None,
        "--changes-since",
        help="Override the saved changes-since token (ISO 8601, UTC if no offset).",
    ),
    state_file: Path = typer.Option(
        None,
        "--state-file",
        help="Path to the token state file.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Timeout in seconds for every request.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        "-n",
        help="Perform every read but make no SOS changes.",
    ),
    force_resync: bool = typer.Option(
        False,
        "--force-resync",
        help="Ignore the saved token and export everything.",
    ),
    never_resync: bool = typer.Option(
        False,
        "--never-resync",
        help="Keep using an expired token instead of resyncing.",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Minimal output.",
    ),
) -> None:
    """
    Export changed AQUARIUS time-series to the SOS.

    Example:
        sos-exporter export --config config.toml --dry-run
    """
    # Build settings
    try:
        settings = _build_settings(
            config_file=config_file,
            aquarius_server=aquarius_server,
            aquarius_username=aquarius_username,
            aquarius_password=aquarius_password,
            sos_server=sos_server,
            sos_username=sos_username,
            sos_password=sos_password,
            location=location,
            parameter=parameter,
            publish=publish,
            change_event_type=change_event_type,
            time_series=time_series,
            approvals=approvals,
            grades=grades,
            qualifiers=qualifiers,
            changes_since=changes_since,
            state_file=state_file,
            timeout=timeout,
            dry_run=dry_run,
            force_resync=force_resync,
            never_resync=never_resync,
        )
    except (ValueError, ValidationError) as e:
        print_error(str(e))
        raise typer.Exit(1)

    # Validate credentials
    errors = settings.validate_credentials()
    if errors:
        for err in errors:
            print_error(err)
        print_info("Use --help for configuration options.")
        raise typer.Exit(1)

    # Setup logging
    setup_logging(
        level="WARNING" if quiet else settings.logging.level,
        log_file=settings.logging.file,
        format_style=settings.logging.format,
        max_file_size_mb=settings.logging.max_file_size_mb,
        backup_count=settings.logging.backup_count,
    )

    if settings.export.dry_run:
        print_warning("DRY RUN - No changes will be made to the SOS")

    try:
        with create_aquarius_client(settings) as aquarius, create_sos_client(settings) as sos:
            stats = ExportEngine(settings, aquarius, sos).run()
    except ExpectedError as e:
        print_error(str(e))
        raise typer.Exit(1)
    except ServiceError as e:
        print_error(str(e))
        raise typer.Exit(1)

    # Print summary
    if not quiet:
        console.print()
        print_summary(_summary(stats))
        print_actions(stats.actions)

    print_success("Export completed successfully!")


def _summary(stats: ExportStats) -> dict[str, Any]:
    return {
        "dry_run": stats.dry_run,
        "duration": stats.duration_seconds,
        "full_resync": stats.full_resync,
        "changed_time_series_count": stats.changed_time_series_count,
        "exported_time_series_count": stats.exported_time_series_count,
        "exported_point_count": stats.exported_point_count,
        "trimmed_point_count": stats.trimmed_point_count,
        "filtered_point_count": stats.filtered_point_count,
        "fetch_requests": stats.fetch_requests,
        "next_token": format_timestamp(stats.next_token),
        "token_saved": stats.token_saved,
    }


# =============================================================================
# STATUS Command
# =============================================================================
@app.command()
def status(
    config_file: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config file.",
        exists=True,
    ),
    state_file: Path = typer.Option(
        None,
        "--state-file",
        help="Path to state file (overrides config).",
    ),
) -> None:
    """Show the persisted changes-since token."""
    try:
        settings = load_settings(config_file)
    except (ValueError, ValidationError) as e:
        print_error(str(e))
        raise typer.Exit(1)

    store = ChangeTokenStore(state_file or settings.export.state_file)
    summary = store.get_summary()

    if not summary:
        print_info("No saved token found. The next export will be a full resync.")
        raise typer.Exit(0)

    table = Table(title="Export Status", border_style="blue")
    table.add_column("Property", style="cyan")
    table.add_column("Value")

    table.add_row("ChangesSinceToken", summary.get("changes_since_token") or "[dim]none[/dim]")
    table.add_row("Updated", summary.get("updated_at") or "")
    table.add_row("Points Exported", f"{summary.get('exported_point_count', 0):,}")
    table.add_row("Time-Series Exported", f"{summary.get('exported_time_series_count', 0):,}")

    console.print(table)


# =============================================================================
# CONFIG Command
# =============================================================================
@app.command()
def config(
    show: bool = typer.Option(
        False,
        "--show",
        help="Show current configuration.",
    ),
    init: bool = typer.Option(
        False,
        "--init",
        help="Initialize example config file.",
    ),
    config_file: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="Config file to show.",
        exists=True,
    ),
    output: Path = typer.Option(
        Path("config.toml"),
        "--output",
        "-o",
        help="Output path for config file.",
    ),
) -> None:
    """Manage configuration."""
    if init:
        settings = Settings()
        settings.to_file(output)
        print_success(f"Generated config file: {output}")
        return

    if show:
        settings = load_settings(config_file)
        table = Table(title="Current Configuration", border_style="cyan")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")

        table.add_row("AQTS Server", settings.aquarius.server or "[dim]not set[/dim]")
        table.add_row("AQTS Username", settings.aquarius.username or "[dim]not set[/dim]")
        table.add_row("SOS Server", settings.sos.server or "[dim]not set[/dim]")
        table.add_row("SOS Username", settings.sos.username or "[dim]not set[/dim]")
        table.add_row("Max Observations", f"{settings.sos.max_observations_per_request} per request")
        table.add_row("Timeout", f"{settings.timeout_seconds:g}s")
        table.add_row("State File", str(settings.export.state_file))
        for period, days in settings.maximum_point_days.items():
            table.add_row(f"Max {period.value} Days", str(days) if days else "All")

        console.print(table)
        return

    # Default: show help
    console.print("Use --show to view config or --init to create config file.")


# =============================================================================
# Helper Functions
# =============================================================================
def _build_settings(
    config_file: Path | None = None,
    **overrides: Any,
) -> Settings:
    """Build settings from config file and overrides."""
    # Load from file or create default
    if config_file:
        settings = load_settings(config_file)
    else:
        settings = Settings()

    # Apply CLI overrides
    if overrides.get("aquarius_server"):
        settings.aquarius.server = overrides["aquarius_server"]
    if overrides.get("aquarius_username"):
        settings.aquarius.username = overrides["aquarius_username"]
    if overrides.get("aquarius_password"):
        settings.aquarius.password = SecretStr(overrides["aquarius_password"])
    if overrides.get("sos_server"):
        settings.sos.server = overrides["sos_server"]
    if overrides.get("sos_username"):
        settings.sos.username = overrides["sos_username"]
    if overrides.get("sos_password"):
        settings.sos.password = SecretStr(overrides["sos_password"])
    if overrides.get("timeout"):
        settings.timeout_seconds = overrides["timeout"]

    filters = settings.filters
    if overrides.get("location"):
        filters.location_identifier = overrides["location"]
    if overrides.get("parameter"):
        filters.parameter = overrides["parameter"]
    if overrides.get("publish") is not None:
        filters.publish = overrides["publish"]
    if overrides.get("change_event_type"):
        filters.change_event_type = overrides["change_event_type"]
    if overrides.get("time_series"):
        filters.time_series = [TimeSeriesFilter.model_validate(t) for t in overrides["time_series"]]
    if overrides.get("approvals"):
        filters.approvals = [ApprovalFilter.model_validate(t) for t in overrides["approvals"]]
    if overrides.get("grades"):
        filters.grades = [GradeFilter.model_validate(t) for t in overrides["grades"]]
    if overrides.get("qualifiers"):
        filters.qualifiers = [QualifierFilter.model_validate(t) for t in overrides["qualifiers"]]

    options = settings.export
    if overrides.get("changes_since"):
        options.changes_since = parse_timestamp(overrides["changes_since"])
    if overrides.get("state_file"):
        options.state_file = overrides["state_file"]
    if overrides.get("dry_run"):
        options.dry_run = True
    if overrides.get("force_resync"):
        options.force_resync = True
    if overrides.get("never_resync"):
        options.never_resync = True

    return settings


if __name__ == "__main__":
    app()
