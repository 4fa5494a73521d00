"""Read side: time-ranged queries over stored metrics and workouts."""

from collections.abc import Iterable
from datetime import datetime
from typing import Any

import structlog
from pymongo import ASCENDING

from .normalizers import ROUTES_COLLECTION, WORKOUTS_COLLECTION, MetricKindRegistry
from .types import Document

logger = structlog.get_logger(__name__)

# Internal fields never returned to API consumers
_HIDDEN_FIELDS = {"_id": 0}


def parse_field_list(raw: str | None) -> list[str]:
    """Split a comma-separated ``include``/``exclude`` parameter."""
    if not raw:
        return []
    return [field.strip() for field in raw.split(",") if field.strip()]


def filter_fields(
    document: Document,
    include: Iterable[str] | None = None,
    exclude: Iterable[str] | None = None,
) -> Document:
    """Project a document onto the requested fields.

    ``include`` wins when both lists are given: only listed fields that exist
    on the document are kept. Otherwise ``exclude`` removes listed fields.
    """
    include = list(include or ())
    if include:
        return {field: document[field] for field in include if field in document}
    exclude = set(exclude or ())
    if exclude:
        return {key: value for key, value in document.items() if key not in exclude}
    return document


def _range_query(field: str, start: datetime | None, end: datetime | None) -> dict[str, Any]:
    bounds: dict[str, datetime] = {}
    if start is not None:
        bounds["$gte"] = start
    if end is not None:
        bounds["$lte"] = end
    return {field: bounds} if bounds else {}


class MetricQueries:
    """Queries against the document store."""

    def __init__(self, database: Any, registry: MetricKindRegistry | None = None) -> None:
        self._db = database
        self._registry = registry or MetricKindRegistry()

    async def get_metrics(
        self,
        kind: str,
        start: datetime | None = None,
        end: datetime | None = None,
        include: Iterable[str] | None = None,
        exclude: Iterable[str] | None = None,
    ) -> list[Document]:
        """Fetch one metric kind, ordered by date.

        Raises:
            UnknownMetricKindError: If the kind identifier cannot be resolved.
        """
        spec = self._registry.resolve(kind)
        documents = await self._find(spec.collection, _range_query("date", start, end), "date")
        logger.debug("metrics_queried", collection=spec.collection, count=len(documents))
        return [filter_fields(doc, include, exclude) for doc in documents]

    async def get_workouts(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        include: Iterable[str] | None = None,
        exclude: Iterable[str] | None = None,
    ) -> list[Document]:
        """Fetch workouts whose start falls within the range."""
        documents = await self._find(
            WORKOUTS_COLLECTION, _range_query("start", start, end), "start"
        )
        logger.debug("workouts_queried", count=len(documents))
        return [filter_fields(doc, include, exclude) for doc in documents]

    async def get_route(self, workout_id: str) -> Document | None:
        """Fetch the route of one workout, or None if it has none."""
        return await self._db[ROUTES_COLLECTION].find_one({"workoutId": workout_id}, _HIDDEN_FIELDS)

    async def _find(self, collection: str, query: dict[str, Any], sort_key: str) -> list[Document]:
        cursor = self._db[collection].find(query, _HIDDEN_FIELDS).sort(sort_key, ASCENDING)
        return await cursor.to_list(length=None)
