"""MongoDB store with idempotent per-collection bulk upserts."""

import asyncio
import time
from collections.abc import Hashable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog
from bson.errors import BSONError
from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode
from pymongo import ASCENDING, AsyncMongoClient, ReplaceOne
from pymongo.errors import ConnectionFailure, PyMongoError

from .config import MongoSettings
from .errors import StoreNotConnectedError
from .metrics import STORE_DOCUMENTS_UPSERTED, STORE_WRITE_DURATION, STORE_WRITES
from .normalizers import ROUTES_COLLECTION, WORKOUTS_COLLECTION, NormalizedMetric
from .normalizers.workout import NormalizedRoute, NormalizedWorkout
from .types import StoreStatus

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

NO_RECORDS = "no records"

# Identity fields per record family
METRIC_KEY = ("source", "date")
WORKOUT_KEY = ("workoutId",)

# Driver and encoding failures that fail one collection's write
WRITE_ERRORS = (PyMongoError, BSONError)


class StoreRecord(Protocol):
    """Anything the writer can upsert."""

    def identity(self) -> Hashable: ...

    def to_document(self) -> dict[str, Any]: ...


@dataclass(frozen=True)
class WriteOutcome:
    """Result of one collection's bulk upsert."""

    success: bool
    message: str | None = None
    error: str | None = None
    count: int = 0


class MongoStore:
    """Owns the MongoDB client and database handle."""

    def __init__(self, settings: MongoSettings) -> None:
        """Initialize the store.

        Args:
            settings: MongoDB connection settings.
        """
        self._settings = settings
        self._client: AsyncMongoClient | None = None
        self._database = None

    async def connect(self) -> None:
        """Connect to MongoDB and verify the server answers."""
        logger.info(
            "mongodb_connecting",
            host=self._settings.host if not self._settings.uri else "uri",
            database=self._settings.db,
        )

        self._client = AsyncMongoClient(
            self._settings.connection_uri(),
            tz_aware=True,
            serverSelectionTimeoutMS=self._settings.server_selection_timeout_ms,
        )
        try:
            await self._client.admin.command("ping")
        except PyMongoError:
            await self._client.close()
            self._client = None
            raise

        self._database = self._client[self._settings.db]
        logger.info("mongodb_connected")

    async def disconnect(self) -> None:
        """Close the client."""
        if self._client:
            await self._client.close()
            self._client = None
            self._database = None
            logger.info("mongodb_disconnected")

    @property
    def is_connected(self) -> bool:
        return self._database is not None

    @property
    def database(self):
        """The connected database handle.

        Raises:
            StoreNotConnectedError: If connect() has not completed.
        """
        if self._database is None:
            raise StoreNotConnectedError("MongoDB client not connected")
        return self._database

    async def health_check(self) -> dict[str, Any]:
        """Check MongoDB connection health."""
        if not self._client:
            return {"healthy": False, "error": "Not connected"}
        try:
            await self._client.admin.command("ping")
            return {"healthy": True, "database": self._settings.db}
        except PyMongoError as e:
            return {"healthy": False, "error": str(e)}


class BatchUpsertWriter:
    """Writes normalized records as idempotent upserts.

    Every collection gets exactly one unordered bulk write of full-document
    replacements keyed by the record identity. Collections are written
    concurrently and independently: one failure never aborts or rolls back
    another. There is no read-before-write and no retry; a repeated identity
    simply replaces the stored document (last write wins).
    """

    def __init__(self, database: Any) -> None:
        """Initialize the writer.

        Args:
            database: Async database handle (``db[name]`` yields a collection).
        """
        self._db = database
        self._indexed: set[str] = set()
        self._index_locks: dict[str, asyncio.Lock] = {}

    @property
    def indexed_collections(self) -> int:
        return len(self._indexed)

    def status(self) -> StoreStatus:
        return {
            "connected": True,
            "database": getattr(self._db, "name", "unknown"),
            "collections_indexed": len(self._indexed),
        }

    async def write_metrics(
        self, groups: Mapping[str, Sequence[NormalizedMetric]]
    ) -> dict[str, WriteOutcome]:
        """Upsert metric groups, one bulk write per collection.

        Args:
            groups: Normalized metrics keyed by collection name.

        Returns:
            Outcome per collection.
        """
        collections = list(groups)
        outcomes = await asyncio.gather(
            *(self._upsert(name, groups[name], METRIC_KEY) for name in collections)
        )
        return dict(zip(collections, outcomes, strict=True))

    async def write_workouts(
        self,
        workouts: Sequence[NormalizedWorkout],
        routes: Sequence[NormalizedRoute],
    ) -> dict[str, WriteOutcome]:
        """Upsert workouts and their routes into their own collections."""
        workout_outcome, route_outcome = await asyncio.gather(
            self._upsert(WORKOUTS_COLLECTION, workouts, WORKOUT_KEY),
            self._upsert(ROUTES_COLLECTION, routes, WORKOUT_KEY),
        )
        return {WORKOUTS_COLLECTION: workout_outcome, ROUTES_COLLECTION: route_outcome}

    async def _upsert(
        self,
        collection: str,
        records: Sequence[StoreRecord],
        key_fields: tuple[str, ...],
    ) -> WriteOutcome:
        if not records:
            return WriteOutcome(success=True, message=NO_RECORDS)

        # Repeated identities inside one request collapse to the last one
        latest: dict[Hashable, StoreRecord] = {}
        for record in records:
            latest[record.identity()] = record

        now = datetime.now(UTC)
        operations = []
        for record in latest.values():
            document = record.to_document()
            document["updatedAt"] = now
            operations.append(
                ReplaceOne({key: document[key] for key in key_fields}, document, upsert=True)
            )

        with tracer.start_as_current_span("mongodb.bulk_write", kind=SpanKind.CLIENT) as span:
            span.set_attribute("db.system", "mongodb")
            span.set_attribute("db.operation", "bulk_write")
            span.set_attribute("db.mongodb.collection", collection)
            span.set_attribute("documents.count", len(operations))

            started = time.perf_counter()
            try:
                await self._ensure_index(collection, key_fields)
                result = await self._db[collection].bulk_write(operations, ordered=False)
            except WRITE_ERRORS as e:
                STORE_WRITES.labels(collection=collection, status="error").inc()
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                logger.error(
                    "bulk_upsert_failed",
                    collection=collection,
                    count=len(operations),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return WriteOutcome(success=False, error=str(e))
            finally:
                STORE_WRITE_DURATION.observe(time.perf_counter() - started)

        STORE_WRITES.labels(collection=collection, status="success").inc()
        STORE_DOCUMENTS_UPSERTED.inc(result.upserted_count + result.modified_count)
        logger.info(
            "bulk_upsert_complete",
            collection=collection,
            count=len(operations),
            inserted=result.upserted_count,
            replaced=result.modified_count,
        )
        return WriteOutcome(success=True, count=len(operations))

    async def _ensure_index(self, collection: str, key_fields: tuple[str, ...]) -> None:
        """Create the unique identity index once per collection per process.

        Raises:
            ConnectionFailure: If the store is unreachable; the write is not
                attempted in that case.
        """
        if collection in self._indexed:
            return
        async with self._index_locks.setdefault(collection, asyncio.Lock()):
            if collection in self._indexed:
                return
            try:
                await self._db[collection].create_index(
                    [(key, ASCENDING) for key in key_fields],
                    unique=True,
                    name="_".join(key_fields) + "_unique",
                )
            except ConnectionFailure:
                raise
            except PyMongoError as e:
                # Upserts stay correct without the index; try again next write
                logger.warning(
                    "index_create_failed",
                    collection=collection,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return
            self._indexed.add(collection)


@asynccontextmanager
async def create_store(settings: MongoSettings):
    """Context manager for a connected MongoDB store.

    Args:
        settings: MongoDB connection settings.

    Yields:
        Connected MongoStore instance.
    """
    store = MongoStore(settings)
    await store.connect()
    try:
        yield store
    finally:
        await store.disconnect()
