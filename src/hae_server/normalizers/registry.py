"""Metric kind registry: kind identifier -> collection and shape."""

import re
from dataclasses import dataclass

import structlog

from ..errors import UnknownMetricKindError
from .base import BaseNormalizer, MetricShape, NormalizedMetric, RawMetricBatch
from .blood_pressure import BloodPressureNormalizer
from .heart_rate import HeartRateNormalizer
from .quantity import QuantityNormalizer
from .sleep import SleepNormalizer

logger = structlog.get_logger(__name__)

BLOOD_PRESSURE = "blood_pressure"
HEART_RATE = "heart_rate"
SLEEP_ANALYSIS = "sleep_analysis"

# Kinds with a dedicated shape; the collection is named after the kind
FIXED_KINDS: dict[str, MetricShape] = {
    BLOOD_PRESSURE: MetricShape.BLOOD_PRESSURE,
    HEART_RATE: MetricShape.HEART_RATE,
    SLEEP_ANALYSIS: MetricShape.SLEEP,
}

WORKOUTS_COLLECTION = "workouts"
ROUTES_COLLECTION = "workout_routes"

# Metric collections must never land on these
RESERVED_COLLECTIONS = frozenset({WORKOUTS_COLLECTION, ROUTES_COLLECTION})

_MAX_KIND_LEN = 120


@dataclass(frozen=True)
class KindSpec:
    """Where and how a metric kind is stored."""

    kind: str
    collection: str
    shape: MetricShape


def canonical_kind(name: str) -> str:
    """Canonicalize a kind identifier to snake_case.

    ``heartRate``, ``Heart Rate`` and ``heart-rate`` all become ``heart_rate``.
    Characters outside ``[a-z0-9_]`` are removed.
    """
    truncated = name[:_MAX_KIND_LEN]

    # camelCase -> snake_case
    s1 = re.sub(r"(.)([A-Z][a-z]+)", r"\1_\2", truncated)
    s2 = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", s1)

    result = s2.replace(" ", "_").replace("-", "_").lower()
    result = re.sub(r"[^a-z0-9_]", "", result)
    result = re.sub(r"_+", "_", result)
    return result.strip("_")


class MetricKindRegistry:
    """Resolves metric kinds at call time and dispatches to normalizers.

    Three kinds have fixed shapes. Every other identifier is accepted as a
    generic quantity kind stored in a collection named after it, so new
    kinds need no code change.
    """

    def __init__(self, default_source: str = "health_auto_export") -> None:
        """Initialize registry with one normalizer per shape."""
        self._default_source = default_source
        self._normalizers: dict[MetricShape, BaseNormalizer] = {
            MetricShape.BLOOD_PRESSURE: BloodPressureNormalizer(default_source),
            MetricShape.HEART_RATE: HeartRateNormalizer(default_source),
            MetricShape.SLEEP: SleepNormalizer(default_source),
            MetricShape.QUANTITY: QuantityNormalizer(default_source),
        }

    def resolve(self, kind: str) -> KindSpec:
        """Resolve a kind identifier to its collection and shape.

        Args:
            kind: Metric name as sent by the exporter.

        Returns:
            The storage spec for the kind.

        Raises:
            UnknownMetricKindError: If the identifier has no usable characters.
        """
        canonical = canonical_kind(kind) if isinstance(kind, str) else ""
        if not canonical:
            raise UnknownMetricKindError(kind)

        shape = FIXED_KINDS.get(canonical)
        if shape is not None:
            return KindSpec(kind=canonical, collection=canonical, shape=shape)

        collection = canonical
        if collection in RESERVED_COLLECTIONS:
            collection = f"metric_{collection}"
        return KindSpec(kind=canonical, collection=collection, shape=MetricShape.QUANTITY)

    def get_normalizer(self, shape: MetricShape) -> BaseNormalizer:
        """Get the normalizer for a shape."""
        return self._normalizers[shape]

    def normalize(self, batch: RawMetricBatch) -> tuple[KindSpec, list[NormalizedMetric]]:
        """Resolve a batch's kind and normalize its records.

        Raises:
            UnknownMetricKindError: If the batch name cannot be resolved.
        """
        spec = self.resolve(batch.name)
        normalizer = self.get_normalizer(spec.shape)
        logger.debug(
            "normalizer_selected",
            metric_name=batch.name,
            collection=spec.collection,
            normalizer=normalizer.__class__.__name__,
        )
        return spec, normalizer.normalize(batch)
