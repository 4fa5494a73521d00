"""Ingestion orchestrator: validate, normalize, write, classify."""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Any

import structlog
from opentelemetry import trace
from pydantic import ValidationError

from .errors import IngestionRequestError, UnknownMetricKindError, WorkoutValidationError
from .metrics import INGEST_REQUESTS, RECORDS_DROPPED, RECORDS_NORMALIZED
from .mongo_writer import NO_RECORDS, BatchUpsertWriter, WriteOutcome
from .normalizers import (
    ROUTES_COLLECTION,
    WORKOUTS_COLLECTION,
    MetricKindRegistry,
    NormalizedMetric,
    NormalizedRoute,
    NormalizedWorkout,
    RawMetricBatch,
    WorkoutNormalizer,
)
from .types import GroupOutcomePayload, IngestResponsePayload

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

METRICS_GROUP = "metrics"
WORKOUTS_GROUP = "workouts"


class OutcomeClass(StrEnum):
    """Overall result of one ingestion call."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES = {
    OutcomeClass.SUCCESS: 200,
    OutcomeClass.PARTIAL: 207,
    OutcomeClass.FAILURE: 500,
}


@dataclass(frozen=True)
class GroupOutcome:
    """Outcome of one logical record group (metrics or workouts)."""

    success: bool
    message: str | None = None
    error: str | None = None
    # False when the group had no records to write
    attempted: bool = True

    def to_dict(self) -> GroupOutcomePayload:
        payload: GroupOutcomePayload = {"success": self.success}
        if self.message is not None:
            payload["message"] = self.message
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class IngestionOutcome:
    """Immutable per-group outcomes of an ingestion call."""

    groups: Mapping[str, GroupOutcome]

    def __post_init__(self) -> None:
        object.__setattr__(self, "groups", MappingProxyType(dict(self.groups)))

    @property
    def metrics(self) -> GroupOutcome:
        return self.groups[METRICS_GROUP]

    @property
    def workouts(self) -> GroupOutcome:
        return self.groups[WORKOUTS_GROUP]

    @property
    def outcome_class(self) -> OutcomeClass:
        """Classify over the groups that had records; empty groups do not count."""
        results = [group.success for group in self.groups.values() if group.attempted]
        if all(results):
            return OutcomeClass.SUCCESS
        if any(results):
            return OutcomeClass.PARTIAL
        return OutcomeClass.FAILURE

    @property
    def status_code(self) -> int:
        return self.outcome_class.status_code

    def to_dict(self) -> IngestResponsePayload:
        return {"metrics": self.metrics.to_dict(), "workouts": self.workouts.to_dict()}


def _group_list(data: Mapping[str, Any], key: str) -> list[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise IngestionRequestError(f"'data.{key}' must be an array")
    return value


def _combine_failures(outcomes: Mapping[str, WriteOutcome]) -> str | None:
    failed = [
        f"{name}: {outcome.error}" for name, outcome in outcomes.items() if not outcome.success
    ]
    return "; ".join(failed) if failed else None


class IngestionOrchestrator:
    """Runs one ingestion request through normalization and storage.

    The metric and workout groups are processed concurrently and never
    affect each other: a failure in one is reported in its own outcome while
    the other is still written.
    """

    def __init__(
        self,
        writer: BatchUpsertWriter,
        registry: MetricKindRegistry | None = None,
        workout_normalizer: WorkoutNormalizer | None = None,
        debug: bool = False,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            writer: Batch upsert writer bound to the document store.
            registry: Metric kind registry (default source applies).
            workout_normalizer: Workout normalizer.
            debug: Log full payloads and outcomes at debug level.
        """
        self._writer = writer
        self._registry = registry or MetricKindRegistry()
        self._workout_normalizer = workout_normalizer or WorkoutNormalizer()
        self._debug = debug

    async def ingest(self, payload: Any) -> IngestionOutcome:
        """Ingest one Health Auto Export request body.

        Args:
            payload: Decoded JSON body, ``{"data": {"metrics": [...], "workouts": [...]}}``.

        Returns:
            Per-group outcomes.

        Raises:
            IngestionRequestError: If the request is structurally invalid.
                Nothing is written in that case.
        """
        try:
            raw_metrics, raw_workouts = self._validate(payload)
        except IngestionRequestError as e:
            INGEST_REQUESTS.labels(outcome="invalid").inc()
            logger.warning("ingest_request_invalid", error=str(e))
            raise

        if self._debug:
            logger.debug("ingest_payload", payload=payload)

        with tracer.start_as_current_span("ingest") as span:
            span.set_attribute("ingest.metric_batches", len(raw_metrics))
            span.set_attribute("ingest.workouts", len(raw_workouts))

            metrics_outcome, workouts_outcome = await asyncio.gather(
                self._ingest_metrics(raw_metrics),
                self._ingest_workouts(raw_workouts),
            )
            outcome = IngestionOutcome(
                {METRICS_GROUP: metrics_outcome, WORKOUTS_GROUP: workouts_outcome}
            )
            span.set_attribute("ingest.outcome", outcome.outcome_class.value)

        INGEST_REQUESTS.labels(outcome=outcome.outcome_class.value).inc()
        logger.info(
            "ingest_complete",
            outcome=outcome.outcome_class.value,
            metrics_success=metrics_outcome.success,
            workouts_success=workouts_outcome.success,
        )
        if self._debug:
            logger.debug("ingest_outcome", outcome=outcome.to_dict())
        return outcome

    @staticmethod
    def _validate(payload: Any) -> tuple[list[Any], list[Any]]:
        if not isinstance(payload, Mapping):
            raise IngestionRequestError("Request body must be a JSON object")
        data = payload.get("data")
        if not isinstance(data, Mapping):
            raise IngestionRequestError("Request body has no 'data' object")
        return _group_list(data, "metrics"), _group_list(data, "workouts")

    async def _ingest_metrics(self, raw_metrics: list[Any]) -> GroupOutcome:
        groups: dict[str, list[NormalizedMetric]] = {}

        for raw in raw_metrics:
            try:
                batch = RawMetricBatch.model_validate(raw)
            except ValidationError as e:
                RECORDS_DROPPED.labels(group=METRICS_GROUP, reason="invalid_batch").inc()
                logger.warning("metric_batch_skipped", reason="invalid_batch", error=str(e))
                continue
            try:
                spec, records = self._registry.normalize(batch)
            except UnknownMetricKindError as e:
                RECORDS_DROPPED.labels(group=METRICS_GROUP, reason="unknown_kind").inc(
                    len(batch.data)
                )
                logger.warning("metric_batch_skipped", reason="unknown_kind", kind=repr(e.kind))
                continue
            if records:
                groups.setdefault(spec.collection, []).extend(records)

        total = sum(len(records) for records in groups.values())
        if not total:
            return GroupOutcome(success=True, message=NO_RECORDS, attempted=False)
        RECORDS_NORMALIZED.labels(group=METRICS_GROUP).inc(total)

        outcomes = await self._writer.write_metrics(groups)
        error = _combine_failures(outcomes)
        if error:
            return GroupOutcome(success=False, error=error)
        saved = sum(outcome.count for outcome in outcomes.values())
        return GroupOutcome(success=True, message=f"{saved} metrics saved successfully")

    async def _ingest_workouts(self, raw_workouts: list[Any]) -> GroupOutcome:
        workouts: list[NormalizedWorkout] = []
        routes: list[NormalizedRoute] = []

        for raw in raw_workouts:
            try:
                workout, route = self._workout_normalizer.normalize(raw)
            except WorkoutValidationError as e:
                RECORDS_DROPPED.labels(group=WORKOUTS_GROUP, reason=e.reason).inc()
                logger.warning("workout_rejected", workout_id=e.workout_id, reason=e.reason)
                continue
            except ValidationError as e:
                RECORDS_DROPPED.labels(group=WORKOUTS_GROUP, reason="invalid_workout").inc()
                logger.warning("workout_rejected", reason="invalid_workout", error=str(e))
                continue
            workouts.append(workout)
            if route is not None:
                routes.append(route)

        if not workouts:
            return GroupOutcome(success=True, message=NO_RECORDS, attempted=False)
        RECORDS_NORMALIZED.labels(group=WORKOUTS_GROUP).inc(len(workouts))

        outcomes = await self._writer.write_workouts(workouts, routes)
        error = _combine_failures(outcomes)
        if error:
            return GroupOutcome(success=False, error=error)
        saved = outcomes[WORKOUTS_COLLECTION].count
        message = f"{saved} workouts saved successfully"
        routes_saved = outcomes[ROUTES_COLLECTION].count
        if routes_saved:
            message += f" ({routes_saved} routes)"
        return GroupOutcome(success=True, message=message)
