"""Exception hierarchy for sos_exporter."""

from __future__ import annotations


class ExporterError(Exception):
    """Base exception for all exporter errors."""


class ExpectedError(ExporterError):
    """A condition the operator must fix (bad filter, old server, ...).

    Reported without a traceback and aborts the run before anything is exported.
    """


class ExportLogicError(ExporterError):
    """An internal invariant was violated."""


class ServiceError(ExporterError):
    """HTTP or service-level failure talking to a remote server."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status = status
