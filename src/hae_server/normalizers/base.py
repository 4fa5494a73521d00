"""Base normalizer class and common metric models."""

import math
from abc import ABC, abstractmethod
from datetime import datetime
from enum import StrEnum
from typing import Any, ClassVar, TypeAlias

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..dates import parse_date
from ..metrics import RECORDS_DROPPED

logger = structlog.get_logger(__name__)


class MetricShape(StrEnum):
    """Closed set of stored metric shapes."""

    QUANTITY = "quantity"
    HEART_RATE = "heart_rate"
    BLOOD_PRESSURE = "blood_pressure"
    SLEEP = "sleep"


class RawMetricBatch(BaseModel):
    """One named metric series as sent by Health Auto Export."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(description="Metric kind identifier")
    units: str | None = Field(default=None, description="Units shared by the series")
    data: list[Any] = Field(default_factory=list, description="Raw records")


class MetricRecord(BaseModel):
    """Fields shared by every stored metric. Identity is (source, date)."""

    shape: ClassVar[MetricShape]

    date: datetime = Field(description="Resolved measurement time (UTC)")
    source: str = Field(description="Device or app that produced the measurement")
    units: str | None = Field(default=None, description="Unit of measurement")

    def identity(self) -> tuple[str, datetime]:
        """Natural key of the record within its collection."""
        return (self.source, self.date)

    def to_document(self) -> dict[str, Any]:
        """Render the record as a store document."""
        return self.model_dump(exclude_none=True)


class QuantityMetric(MetricRecord):
    """Generic single-value metric (step count, weight, energy, ...)."""

    shape = MetricShape.QUANTITY

    qty: float = Field(description="Quantity value")
    metadata: dict[str, str] | None = Field(default=None, description="Free-form metadata")


class HeartRateMetric(MetricRecord):
    """Heart rate summary over an interval."""

    shape = MetricShape.HEART_RATE

    Min: float | None = None
    Avg: float | None = None
    Max: float | None = None


class BloodPressureMetric(MetricRecord):
    """Paired systolic/diastolic reading."""

    shape = MetricShape.BLOOD_PRESSURE

    systolic: float | None = None
    diastolic: float | None = None


class SleepMetric(MetricRecord):
    """Sleep session with per-stage durations."""

    shape = MetricShape.SLEEP

    asleep: float | None = None
    core: float | None = None
    deep: float | None = None
    rem: float | None = None
    awake: float | None = None
    inBed: float | None = None
    totalSleep: float | None = None
    sleepStart: datetime | None = None
    sleepEnd: datetime | None = None
    inBedStart: datetime | None = None
    inBedEnd: datetime | None = None


NormalizedMetric: TypeAlias = QuantityMetric | HeartRateMetric | BloodPressureMetric | SleepMetric


def coerce_float(value: Any) -> float | None:
    """Coerce a raw numeric field, returning None for anything unusable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        try:
            number = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def stringify_metadata(raw: Any) -> dict[str, str] | None:
    """Flatten a free-form metadata object to string values."""
    if not isinstance(raw, dict) or not raw:
        return None
    return {str(key): str(value) for key, value in raw.items() if value is not None}


def first_present(item: dict[str, Any], keys: tuple[str, ...]) -> Any:
    """Return the first non-None value among alternative field names."""
    for key in keys:
        value = item.get(key)
        if value is not None:
            return value
    return None


class BaseNormalizer(ABC):
    """Base class for metric normalizers.

    Subclasses only map value-bearing fields; date resolution, source
    defaulting and skip accounting happen here.
    """

    shape: MetricShape

    def __init__(self, default_source: str = "health_auto_export") -> None:
        """Initialize normalizer with default source."""
        self._default_source = default_source

    @abstractmethod
    def _build(
        self,
        item: dict[str, Any],
        date: datetime,
        source: str,
        units: str | None,
    ) -> NormalizedMetric | None:
        """Map one raw record to a typed metric.

        Returns:
            The metric, or None if the record carries no usable value.
        """

    def normalize(self, batch: RawMetricBatch) -> list[NormalizedMetric]:
        """Normalize every record of a batch, skipping the unusable ones.

        Args:
            batch: Raw metric series.

        Returns:
            Typed metric records, in input order.
        """
        records: list[NormalizedMetric] = []

        for item in batch.data:
            if not isinstance(item, dict):
                self._log_skip(batch.name, "not_an_object", {"value": repr(item)[:100]})
                continue

            date = parse_date(first_present(item, ("date", "timestamp")))
            if date is None:
                self._log_skip(batch.name, "invalid_date", item)
                continue

            units = item.get("units") or batch.units
            try:
                record = self._build(item, date, self._get_source(item), units)
            except (ValidationError, TypeError, ValueError) as e:
                self._log_normalize_error(e, batch.name, item)
                continue

            if record is None:
                self._log_skip(batch.name, "no_values", item)
                continue
            records.append(record)

        return records

    def _get_source(self, item: dict[str, Any]) -> str:
        """Extract source from data or use default."""
        source = item.get("source")
        if isinstance(source, str) and source.strip():
            return source.strip()
        return self._default_source

    def _log_skip(self, metric_name: str, reason: str, item: dict[str, Any]) -> None:
        RECORDS_DROPPED.labels(group="metrics", reason=reason).inc()
        logger.warning(
            "metric_record_skipped",
            normalizer=self.__class__.__name__,
            metric_name=metric_name,
            reason=reason,
            metric_date=str(first_present(item, ("date", "timestamp"))),
        )

    def _log_normalize_error(
        self,
        error: Exception,
        metric_name: str,
        item: dict[str, Any],
    ) -> None:
        """Log a normalization error with context."""
        RECORDS_DROPPED.labels(group="metrics", reason="invalid_record").inc()
        logger.warning(
            "normalize_failed",
            normalizer=self.__class__.__name__,
            shape=self.shape.value,
            error=str(error),
            error_type=type(error).__name__,
            metric_name=metric_name,
            metric_date=str(item.get("date", "unknown")),
        )
