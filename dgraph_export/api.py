"""HTTP API for the export service.

Minimal FastAPI endpoints for:
- Liveness (independent of leadership)
- On-demand export (runs on this replica, leader or not)
- Orchestrator status
"""

from __future__ import annotations

import logging
from datetime import UTC
from datetime import datetime

from fastapi import FastAPI
from fastapi import Response
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from dgraph_export.election import LeaderElector
from dgraph_export.errors import ExportToolError
from dgraph_export.export import ExportOutput
from dgraph_export.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


class StatusResponse(BaseModel):
    """Orchestrator status response."""

    version: str
    timestamp: str
    identity: str | None
    state: str
    leader: str | None
    in_flight: bool
    current: dict | None
    last_invocation: dict | None
    counters: dict[str, int]


def create_app(orchestrator: Orchestrator, elector: LeaderElector | None = None, lifespan=None) -> FastAPI:
    """Build the API around a running orchestrator."""
    from dgraph_export import __version__

    app = FastAPI(
        title="Dgraph Export Tool",
        description="Leader-elected periodic Dgraph export with on-demand trigger",
        version=__version__,
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health() -> Response:
        """Liveness probe."""
        return Response(status_code=200)

    @app.post("/api/v1/export", response_model=ExportOutput)
    async def export():
        """Run an export now and return its output.

        Errors (including an export already in flight) come back as a
        plain-text line.
        """
        try:
            return await orchestrator.on_demand_invoke()
        except ExportToolError as e:
            logger.error("On-demand export failed: %s", e)
            return PlainTextResponse(f"{e}\n", status_code=e.status_code)

    @app.get("/status", response_model=StatusResponse)
    async def status() -> StatusResponse:
        """Current leadership state, in-flight export and counters."""
        snapshot = orchestrator.snapshot()
        leader = snapshot["leader"]
        identity = None
        if elector is not None:
            identity = elector.config.identity
            leader = elector.observed_leader

        return StatusResponse(
            version=__version__,
            timestamp=datetime.now(UTC).isoformat(),
            identity=identity,
            state=snapshot["state"],
            leader=leader,
            in_flight=snapshot["in_flight"],
            current=snapshot["current"],
            last_invocation=snapshot["last_invocation"],
            counters=snapshot["counters"],
        )

    return app
