"""Heart rate normalizer."""

from datetime import datetime
from typing import Any

from .base import BaseNormalizer, HeartRateMetric, MetricShape, coerce_float


class HeartRateNormalizer(BaseNormalizer):
    """Normalizer for heart rate summaries (Min/Avg/Max per interval)."""

    shape = MetricShape.HEART_RATE

    def _build(
        self,
        item: dict[str, Any],
        date: datetime,
        source: str,
        units: str | None,
    ) -> HeartRateMetric | None:
        stats = {key: coerce_float(item.get(key)) for key in ("Min", "Avg", "Max")}
        if all(value is None for value in stats.values()):
            return None
        return HeartRateMetric(date=date, source=source, units=units, **stats)
