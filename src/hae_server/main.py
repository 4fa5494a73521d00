"""Main entry point for the Health Auto Export server."""

import asyncio
import platform
import signal
import sys

import structlog
from opentelemetry.sdk.trace import TracerProvider
from pymongo.errors import PyMongoError

from . import __version__
from .config import get_settings
from .http_handler import HTTPHandler
from .ingest import IngestionOrchestrator
from .logging import setup_logging
from .metrics import SERVICE_INFO
from .mongo_writer import BatchUpsertWriter, MongoStore, create_store
from .normalizers import MetricKindRegistry, WorkoutNormalizer
from .queries import MetricQueries
from .tracing import setup_tracing
from .types import ServiceStatusSnapshot

logger = structlog.get_logger(__name__)


class HAEServer:
    """Wires the document store, ingestion pipeline and HTTP API together."""

    def __init__(self) -> None:
        """Initialize the server from global settings."""
        self._settings = get_settings()
        self._store: MongoStore | None = None
        self._writer: BatchUpsertWriter | None = None
        self._http_handler: HTTPHandler | None = None
        self._tracer_provider: TracerProvider | None = None
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Connect the store and start serving."""
        self._tracer_provider = setup_tracing(self._settings.tracing)
        logger.info("service_starting", version=__version__)
        SERVICE_INFO.info({"version": __version__, "python": platform.python_version()})

        self._store = MongoStore(self._settings.mongo)
        await self._store.connect()

        registry = MetricKindRegistry(default_source=self._settings.app.default_source)
        self._writer = BatchUpsertWriter(self._store.database)
        orchestrator = IngestionOrchestrator(
            self._writer,
            registry=registry,
            workout_normalizer=WorkoutNormalizer(),
            debug=self._settings.app.debug,
        )

        if self._settings.http.enabled:
            self._http_handler = HTTPHandler(
                settings=self._settings.http,
                orchestrator=orchestrator,
                queries=MetricQueries(self._store.database, registry=registry),
                status_provider=self._status_snapshot,
            )
            await self._http_handler.start()
        else:
            logger.warning("http_disabled")

        logger.info("service_started")

    async def stop(self) -> None:
        """Stop serving, then close the store."""
        logger.info("service_stopping")
        if self._http_handler:
            await self._http_handler.stop()
            self._http_handler = None
        if self._store:
            await self._store.disconnect()
            self._store = None
        self._writer = None
        if self._tracer_provider:
            self._tracer_provider.shutdown()
            self._tracer_provider = None
        logger.info("service_stopped")

    def _status_snapshot(self) -> ServiceStatusSnapshot:
        if self._store is None or self._writer is None or not self._store.is_connected:
            return {"status": "starting", "components": {"mongodb": "disconnected"}}
        return {"status": "ok", "components": {"mongodb": self._writer.status()}}

    async def run_until_shutdown(self) -> None:
        """Run the service until shutdown signal received."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request service shutdown."""
        self._shutdown_event.set()


async def main() -> None:
    """Main entry point."""
    settings = get_settings()
    setup_logging(settings.app)

    service = HAEServer()

    # Set up signal handlers
    loop = asyncio.get_running_loop()

    def signal_handler() -> None:
        logger.info("shutdown_signal_received")
        service.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await service.start()
        await service.run_until_shutdown()
    except Exception as e:
        logger.exception("service_error", error=str(e))
        raise
    finally:
        await service.stop()


def run() -> None:
    """Entry point for the CLI."""
    asyncio.run(main())


def health_check_cli() -> None:
    """Health check CLI for Docker HEALTHCHECK.

    Verifies that the service can:
    1. Load configuration
    2. Reach MongoDB

    Exits with code 0 on success, 1 on failure.
    """

    async def check() -> bool:
        try:
            settings = get_settings()
            async with create_store(settings.mongo) as store:
                health = await store.health_check()
        except (PyMongoError, ValueError) as e:
            print(f"Health check failed: {e}")
            return False

        if not health["healthy"]:
            print(f"Health check failed: {health.get('error', 'unknown error')}")
            return False
        print(f"Health check passed (database: {health['database']})")
        return True

    success = asyncio.run(check())
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    run()
