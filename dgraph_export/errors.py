"""Error taxonomy for the export tool.

Invocation failures (ExportError subclasses) propagate unchanged from the
export client through the orchestrator to whichever trigger started the run.
Busy and CleanupFailure never describe the export itself.
"""

from __future__ import annotations

from pathlib import Path


class ExportToolError(Exception):
    """Base error for the export tool."""

    status_code = 500


class ExportError(ExportToolError):
    """An export invocation failed."""

    status_code = 502


class ConfigInvalid(ExportError):
    """Endpoint, destination or settings are malformed."""

    status_code = 500


class TransportFailure(ExportError):
    """Export request could not be delivered or answered."""

    pass


class RemoteRejected(ExportError):
    """Dgraph reported a non-success status for the export."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f'export finished with unsuccessful code "{code}": {message}')


class Busy(ExportToolError):
    """Another export invocation is in flight."""

    status_code = 409

    def __init__(self, message: str = "export already in progress on this instance"):
        super().__init__(message)


class CleanupFailure(ExportToolError):
    """Temporary export directories could not be swept."""

    def __init__(
        self,
        message: str,
        errors: list[tuple[Path, OSError]] | None = None,
        removed: list[Path] | None = None,
    ):
        self.errors = errors or []
        self.removed = removed or []
        super().__init__(message)


class LeaseStoreError(ExportToolError):
    """Lease backing store could not be opened or initialized."""

    pass


__all__ = [
    "Busy",
    "CleanupFailure",
    "ConfigInvalid",
    "ExportError",
    "ExportToolError",
    "LeaseStoreError",
    "RemoteRejected",
    "TransportFailure",
]
