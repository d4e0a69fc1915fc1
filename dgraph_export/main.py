"""Export service entrypoint.

Runs three things concurrently in one event loop:
- Leader election over the lease store
- APScheduler interval job that ticks the orchestrator
- FastAPI server for health, status and on-demand exports

The scheduler and elector live in the FastAPI lifespan. On SIGINT/SIGTERM
the in-flight export is cancelled immediately, before uvicorn drains open
connections; the lifespan shutdown then stops the scheduler and the
elector, which releases the lease.
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from types import FrameType

import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from dotenv import load_dotenv
from fastapi import FastAPI

from dgraph_export.api import create_app
from dgraph_export.cleanup import CleanupSweeper
from dgraph_export.config import ExportSettings
from dgraph_export.config import get_settings
from dgraph_export.election import ElectionConfig
from dgraph_export.election import LeaderElector
from dgraph_export.errors import ConfigInvalid
from dgraph_export.errors import LeaseStoreError
from dgraph_export.export import ExportClient
from dgraph_export.lease import LeaseStore
from dgraph_export.lease import SQLiteLeaseStore
from dgraph_export.orchestrator import Exporter
from dgraph_export.orchestrator import Orchestrator

EXPORT_JOB_ID = "dgraph-export"
API_SHUTDOWN_TIMEOUT_SECONDS = 10


def configure_logging(level: str = "INFO") -> None:
    """Configure logging with standard format."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )


logger = logging.getLogger(__name__)


@dataclass
class Service:
    """Wired components of a running replica."""

    settings: ExportSettings
    orchestrator: Orchestrator
    elector: LeaderElector
    scheduler: AsyncIOScheduler
    app: FastAPI | None = None
    elector_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the interval job and leader election."""
        self.scheduler.start()
        self.elector_task = asyncio.create_task(self.elector.run(), name="leader-election")

    async def stop(self) -> None:
        """Stop ticking, cancel the in-flight export, release the lease."""
        logger.info("Shutting down...")
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.orchestrator.shutdown()

        if self.elector_task is not None:
            self.elector_task.cancel()
            results = await asyncio.gather(self.elector_task, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error("Leader election stopped with error: %s", result)
            self.elector_task = None
        logger.info("Goodbye!")


def service_lifespan(service: Service):
    """FastAPI lifespan that runs the service alongside the API."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        await service.start()
        try:
            yield
        finally:
            # Shutdown
            await service.stop()

    return lifespan


def build_sweeper(settings: ExportSettings) -> CleanupSweeper | None:
    if not settings.tmp_cleanup:
        return None
    return CleanupSweeper(settings.tmp_prefix, settings.tmp_pattern)


async def build_service(
    settings: ExportSettings,
    store: LeaseStore | None = None,
    invoker: Exporter | None = None,
) -> Service:
    """Validate settings and wire components.

    Raises ConfigInvalid or LeaseStoreError; both are fatal at startup.
    """
    settings.validate()

    invoker = invoker or ExportClient.from_settings(settings)

    store = store or SQLiteLeaseStore(settings.lease_db_url)
    await store.initialize()

    orchestrator = Orchestrator(
        invoker,
        build_sweeper(settings),
        cleanup_on_failure=settings.cleanup_on_failure,
    )
    elector = LeaderElector(store, ElectionConfig.from_settings(settings), orchestrator)

    scheduler = AsyncIOScheduler(timezone="UTC")
    # First tick fires one period after start. Overlapping ticks still reach
    # the orchestrator, which drops them while an export is in flight.
    scheduler.add_job(
        orchestrator.on_timer_tick,
        IntervalTrigger(seconds=settings.export_period_seconds),
        id=EXPORT_JOB_ID,
        name="Dgraph export tick",
        max_instances=2,
        coalesce=True,
    )

    service = Service(
        settings=settings,
        orchestrator=orchestrator,
        elector=elector,
        scheduler=scheduler,
    )
    service.app = create_app(orchestrator, elector, lifespan=service_lifespan(service))
    return service


class ExportServer(uvicorn.Server):
    """uvicorn server that cancels the in-flight export on the exit signal.

    uvicorn drains open connections before the lifespan shutdown runs, and
    an on-demand request stays open until its export finishes.
    """

    def __init__(self, config: uvicorn.Config, orchestrator: Orchestrator):
        super().__init__(config)
        self.orchestrator = orchestrator
        self._loop: asyncio.AbstractEventLoop | None = None
        self._abort: asyncio.Task | None = None

    async def serve(self, sockets=None) -> None:
        self._loop = asyncio.get_running_loop()
        await super().serve(sockets=sockets)

    def handle_exit(self, sig: int, frame: FrameType | None) -> None:
        super().handle_exit(sig, frame)
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._abort_export)

    def _abort_export(self) -> None:
        if self._abort is None:
            self._abort = self._loop.create_task(self.orchestrator.shutdown(), name="abort-export")


def build_server(service: Service) -> ExportServer:
    settings = service.settings
    config = uvicorn.Config(
        service.app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
        lifespan="on",
        timeout_graceful_shutdown=API_SHUTDOWN_TIMEOUT_SECONDS,
    )
    return ExportServer(config, service.orchestrator)


async def run_service(settings: ExportSettings) -> None:
    """Run election, scheduler and API until the API server exits."""
    service = await build_service(settings)

    logger.info("=" * 60)
    logger.info("Starting Dgraph export tool")
    logger.info(f"Endpoint: {settings.endpoint_url}")
    logger.info(f"Destination: {settings.export_dest or '<dgraph local export dir>'}")
    logger.info(f"Period: {settings.export_period_seconds}s")
    logger.info(f"Lease: {settings.lease_name} as {settings.lease_identity}")
    logger.info(
        f"Temp cleanup: {'enabled' if settings.tmp_cleanup else 'disabled'}"
        f" ({settings.tmp_prefix}/{settings.tmp_pattern})"
    )
    logger.info("=" * 60)

    await build_server(service).serve()


def run(settings: ExportSettings) -> int:
    """Run the service; return the process exit status."""
    try:
        asyncio.run(run_service(settings))
    except (ConfigInvalid, LeaseStoreError) as e:
        logger.error("Startup failed: %s", e)
        return 1
    except KeyboardInterrupt:
        # uvicorn re-raises SIGINT after its shutdown has completed
        pass
    return 0


def main() -> None:
    """Main entry point."""
    # Load .env for local dev
    load_dotenv()

    try:
        settings = get_settings()
    except ConfigInvalid as e:
        configure_logging()
        logger.error("Invalid configuration: %s", e)
        raise SystemExit(1) from e

    configure_logging(settings.log_level)
    raise SystemExit(run(settings))


if __name__ == "__main__":
    main()
