"""Export tool configuration.

Environment variables for the leader-elected export service.
Values are validated for well-formedness only; reachability of the
endpoint and lease store is checked at startup.
"""

from __future__ import annotations

import logging
import os
import re
import socket
from dataclasses import dataclass
from functools import lru_cache

from dgraph_export.errors import ConfigInvalid
from dgraph_export.export import validate_destination
from dgraph_export.export import validate_endpoint

EXPORT_FORMATS = ("rdf", "json")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigInvalid(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigInvalid(f"{name} must be a number, got {raw!r}") from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigInvalid(f"{name} must be a boolean, got {raw!r}")


def default_identity() -> str:
    """Return the lease identity for this replica (its hostname)."""
    return socket.gethostname()


@dataclass(frozen=True)
class ExportSettings:
    """Settings for the export service."""

    # Dgraph export
    endpoint_url: str = "http://localhost:8080/admin"
    export_dest: str = ""
    export_format: str = "rdf"
    export_period_seconds: float = 3600.0
    export_timeout_seconds: float = 1800.0
    access_key: str | None = None
    secret_key: str | None = None
    session_token: str | None = None
    anonymous: bool = False
    namespace: int | None = None

    # Temporary export dirs left by Dgraph
    tmp_prefix: str = "/tmp"
    tmp_pattern: str = r"export[0-9]+"
    tmp_cleanup: bool = False
    cleanup_on_failure: bool = False

    # Leader election
    lease_db_url: str = "sqlite:///./dgraph-export-lease.db"
    lease_name: str = "dgraph-export-tool"
    lease_identity: str = ""
    lease_duration_seconds: float = 15.0
    renew_deadline_seconds: float = 10.0
    retry_period_seconds: float = 2.0

    # API settings
    api_host: str = "0.0.0.0"
    api_port: int = 8081

    log_level: str = "INFO"

    def validate(self) -> "ExportSettings":
        """Check well-formedness. Raises ConfigInvalid."""
        validate_endpoint(self.endpoint_url)
        validate_destination(self.export_dest)

        if self.export_format not in EXPORT_FORMATS:
            raise ConfigInvalid(f"export format must be one of {EXPORT_FORMATS}, got {self.export_format!r}")

        for name in (
            "export_period_seconds",
            "export_timeout_seconds",
            "lease_duration_seconds",
            "renew_deadline_seconds",
            "retry_period_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ConfigInvalid(f"{name} must be positive")

        if self.lease_duration_seconds <= self.renew_deadline_seconds:
            raise ConfigInvalid("lease duration must be greater than renew deadline")
        if self.renew_deadline_seconds <= self.retry_period_seconds:
            raise ConfigInvalid("renew deadline must be greater than retry period")

        if not self.lease_name:
            raise ConfigInvalid("lease name must not be empty")
        if not self.lease_identity:
            raise ConfigInvalid("lease identity must not be empty")

        try:
            re.compile(self.tmp_pattern)
        except re.error as e:
            raise ConfigInvalid(f"invalid temporary dir pattern {self.tmp_pattern!r}: {e}") from e

        if not 0 < self.api_port < 65536:
            raise ConfigInvalid(f"API port out of range: {self.api_port}")

        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ConfigInvalid(f"unknown log level: {self.log_level!r}")

        return self


def load_settings() -> ExportSettings:
    """Load settings from environment variables."""
    namespace = os.getenv("DGRAPH_EXPORT_NAMESPACE")
    return ExportSettings(
        # Dgraph export
        endpoint_url=os.getenv("DGRAPH_ENDPOINT_URL", "http://localhost:8080/admin"),
        export_dest=os.getenv("DGRAPH_EXPORT_DEST", ""),
        export_format=os.getenv("DGRAPH_EXPORT_FORMAT", "rdf").lower(),
        export_period_seconds=_env_float("DGRAPH_EXPORT_PERIOD_SECONDS", 3600.0),
        export_timeout_seconds=_env_float("DGRAPH_EXPORT_TIMEOUT_SECONDS", 1800.0),
        access_key=os.getenv("AWS_ACCESS_KEY_ID"),
        secret_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        session_token=os.getenv("AWS_SESSION_TOKEN"),
        anonymous=_env_bool("DGRAPH_EXPORT_ANONYMOUS", False),
        namespace=_env_int("DGRAPH_EXPORT_NAMESPACE", 0) if namespace else None,
        # Temporary dirs
        tmp_prefix=os.getenv("DGRAPH_EXPORT_TMP_PREFIX", "/tmp"),
        tmp_pattern=os.getenv("DGRAPH_EXPORT_TMP_PATTERN", r"export[0-9]+"),
        tmp_cleanup=_env_bool("DGRAPH_EXPORT_TMP_CLEANUP", False),
        cleanup_on_failure=_env_bool("DGRAPH_EXPORT_CLEANUP_ON_FAILURE", False),
        # Leader election
        lease_db_url=os.getenv("LEASE_DB_URL", "sqlite:///./dgraph-export-lease.db"),
        lease_name=os.getenv("LEASE_NAME", "dgraph-export-tool"),
        lease_identity=os.getenv("LEASE_IDENTITY") or default_identity(),
        lease_duration_seconds=_env_float("LEADERELECTION_LEASE_DURATION_SECONDS", 15.0),
        renew_deadline_seconds=_env_float("LEADERELECTION_RENEW_DEADLINE_SECONDS", 10.0),
        retry_period_seconds=_env_float("LEADERELECTION_RETRY_PERIOD_SECONDS", 2.0),
        # API
        api_host=os.getenv("API_HOST", "0.0.0.0"),
        api_port=_env_int("API_PORT", 8081),
        # Logging
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


@lru_cache
def get_settings() -> ExportSettings:
    """Load settings once per process."""
    return load_settings()
