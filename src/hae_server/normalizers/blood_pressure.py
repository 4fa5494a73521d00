"""Blood pressure normalizer."""

from datetime import datetime
from typing import Any

from .base import BaseNormalizer, BloodPressureMetric, MetricShape, coerce_float


class BloodPressureNormalizer(BaseNormalizer):
    """Normalizer for combined systolic/diastolic readings."""

    shape = MetricShape.BLOOD_PRESSURE

    def _build(
        self,
        item: dict[str, Any],
        date: datetime,
        source: str,
        units: str | None,
    ) -> BloodPressureMetric | None:
        systolic = coerce_float(item.get("systolic"))
        diastolic = coerce_float(item.get("diastolic"))
        if systolic is None and diastolic is None:
            return None
        return BloodPressureMetric(
            date=date,
            source=source,
            units=units,
            systolic=systolic,
            diastolic=diastolic,
        )
