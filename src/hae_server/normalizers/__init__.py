"""Normalizers for Health Auto Export metrics and workouts."""

from .base import (
    BaseNormalizer,
    BloodPressureMetric,
    HeartRateMetric,
    MetricShape,
    NormalizedMetric,
    QuantityMetric,
    RawMetricBatch,
    SleepMetric,
)
from .blood_pressure import BloodPressureNormalizer
from .heart_rate import HeartRateNormalizer
from .quantity import QuantityNormalizer
from .registry import (
    ROUTES_COLLECTION,
    WORKOUTS_COLLECTION,
    KindSpec,
    MetricKindRegistry,
    canonical_kind,
)
from .sleep import SleepNormalizer
from .workout import (
    HeartRateSample,
    Location,
    NormalizedRoute,
    NormalizedWorkout,
    QuantitySample,
    WorkoutNormalizer,
)

__all__ = [
    "BaseNormalizer",
    "BloodPressureMetric",
    "BloodPressureNormalizer",
    "HeartRateMetric",
    "HeartRateNormalizer",
    "HeartRateSample",
    "KindSpec",
    "Location",
    "MetricKindRegistry",
    "MetricShape",
    "NormalizedMetric",
    "NormalizedRoute",
    "NormalizedWorkout",
    "QuantityMetric",
    "QuantityNormalizer",
    "QuantitySample",
    "ROUTES_COLLECTION",
    "RawMetricBatch",
    "SleepMetric",
    "SleepNormalizer",
    "WORKOUTS_COLLECTION",
    "WorkoutNormalizer",
    "canonical_kind",
]
