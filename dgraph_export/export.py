"""Dgraph export client.

Performs one `export` admin mutation against a Dgraph alpha and classifies
the outcome:
- ConfigInvalid: malformed endpoint or destination (raised at construction)
- TransportFailure: connection errors, timeouts, non-2xx or unreadable replies
- RemoteRejected: GraphQL errors or a response code other than "Success"

No retries happen here; a failed export waits for the next trigger.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError
from pydantic import field_validator

from dgraph_export.errors import ConfigInvalid
from dgraph_export.errors import RemoteRejected
from dgraph_export.errors import TransportFailure

logger = logging.getLogger(__name__)

SUCCESS_CODE = "Success"

EXPORT_MUTATION = """
mutation export($input: ExportInput!) {
  export(input: $input) {
    response {
      message
      code
    }
    exportedFiles
  }
}
"""


class ExportStatus(BaseModel):
    """Status block of the export payload."""

    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(default="", validation_alias="message", serialization_alias="Message")
    code: str = Field(default="", validation_alias="code", serialization_alias="Code")


class ExportOutput(BaseModel):
    """Export payload returned by Dgraph.

    Validates from the GraphQL shape (`response`, `exportedFiles`) and
    serializes as `{"Response": {...}, "ExportedFiles": [...]}`.
    """

    model_config = ConfigDict(populate_by_name=True)

    response: ExportStatus = Field(
        default_factory=ExportStatus, validation_alias="response", serialization_alias="Response"
    )
    exported_files: list[str] = Field(
        default_factory=list, validation_alias="exportedFiles", serialization_alias="ExportedFiles"
    )

    @field_validator("response", "exported_files", mode="before")
    @classmethod
    def _null_as_default(cls, value: Any, info) -> Any:
        # Dgraph sends null exportedFiles when the export fails
        if value is None:
            return {} if info.field_name == "response" else []
        return value

    @property
    def files(self) -> list[str]:
        return list(self.exported_files)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def validate_endpoint(endpoint: str) -> str:
    """Return the endpoint if it is an absolute http(s) URL, else raise ConfigInvalid."""
    try:
        parsed = urlparse(endpoint)
    except ValueError as e:
        raise ConfigInvalid(f"invalid endpoint URL {endpoint!r}: {e}") from e
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigInvalid(f"endpoint URL must be an absolute http(s) URL: {endpoint!r}")
    return endpoint


def validate_destination(dest: str) -> str:
    if any(ch.isspace() or not ch.isprintable() for ch in dest):
        raise ConfigInvalid(f"export destination contains whitespace or control characters: {dest!r}")
    return dest


class ExportClient:
    """Client for the Dgraph `export` admin mutation."""

    def __init__(
        self,
        endpoint: str,
        dest: str,
        *,
        export_format: str = "rdf",
        access_key: str | None = None,
        secret_key: str | None = None,
        session_token: str | None = None,
        anonymous: bool = False,
        namespace: int | None = None,
        timeout: float = 1800.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoint = validate_endpoint(endpoint)
        self.dest = validate_destination(dest)
        self.timeout = timeout
        self._transport = transport

        self._input: dict[str, Any] = {
            "format": export_format,
            "destination": dest,
        }
        if access_key:
            self._input["accessKey"] = access_key
        if secret_key:
            self._input["secretKey"] = secret_key
        if session_token:
            self._input["sessionToken"] = session_token
        if anonymous:
            self._input["anonymous"] = True
        if namespace is not None:
            self._input["namespace"] = namespace

    @classmethod
    def from_settings(cls, settings, transport: httpx.AsyncBaseTransport | None = None) -> "ExportClient":
        return cls(
            settings.endpoint_url,
            settings.export_dest,
            export_format=settings.export_format,
            access_key=settings.access_key,
            secret_key=settings.secret_key,
            session_token=settings.session_token,
            anonymous=settings.anonymous,
            namespace=settings.namespace,
            timeout=settings.export_timeout_seconds,
            transport=transport,
        )

    def _payload(self) -> dict[str, Any]:
        return {"query": EXPORT_MUTATION, "variables": {"input": self._input}}

    async def export(self) -> ExportOutput:
        """Run one export. Raises TransportFailure or RemoteRejected."""
        logger.info("Requesting export from %s (destination=%r)", self.endpoint, self.dest or "<local>")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.endpoint, json=self._payload())
        except httpx.TimeoutException as e:
            raise TransportFailure(f"export request timed out after {self.timeout}s: {e}") from e
        except httpx.HTTPError as e:
            raise TransportFailure(f"export request failed: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            raise TransportFailure(f"HTTP {response.status_code} from {self.endpoint}: {response.text[:500]}")

        try:
            body = response.json()
        except ValueError as e:
            raise TransportFailure(f"unreadable export response: {response.text[:500]}") from e

        if not isinstance(body, dict):
            raise TransportFailure(f"unexpected export response: {response.text[:500]}")

        errors = body.get("errors")
        if errors:
            messages = [str(err.get("message", err)) if isinstance(err, dict) else str(err) for err in errors]
            raise RemoteRejected("Error", "; ".join(messages))

        data = (body.get("data") or {}).get("export")
        if data is None:
            raise TransportFailure(f"export response missing data: {response.text[:500]}")

        try:
            output = ExportOutput.model_validate(data)
        except ValidationError as e:
            raise TransportFailure(f"malformed export payload: {e}") from e

        if output.response.code != SUCCESS_CODE:
            raise RemoteRejected(output.response.code, output.response.message)

        logger.info("Export completed: %s", output.response.message or output.response.code)
        return output


__all__ = [
    "EXPORT_MUTATION",
    "ExportClient",
    "ExportOutput",
    "ExportStatus",
    "validate_destination",
    "validate_endpoint",
]
