"""Generic normalizer for single-value metrics."""

from datetime import datetime
from typing import Any

from .base import (
    BaseNormalizer,
    MetricShape,
    QuantityMetric,
    coerce_float,
    first_present,
    stringify_metadata,
)


class QuantityNormalizer(BaseNormalizer):
    """Fallback normalizer for every kind without a dedicated shape."""

    shape = MetricShape.QUANTITY

    def _build(
        self,
        item: dict[str, Any],
        date: datetime,
        source: str,
        units: str | None,
    ) -> QuantityMetric | None:
        qty = coerce_float(first_present(item, ("qty", "value")))
        if qty is None:
            return None
        return QuantityMetric(
            date=date,
            source=source,
            units=units,
            qty=qty,
            metadata=stringify_metadata(item.get("metadata")),
        )
