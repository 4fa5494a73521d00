"""Sleep analysis normalizer."""

from datetime import datetime
from typing import Any

from ..dates import parse_date
from .base import BaseNormalizer, MetricShape, SleepMetric, coerce_float

# Stage and total durations, stored in the units the exporter sent
SLEEP_DURATION_FIELDS = ("asleep", "core", "deep", "rem", "awake", "inBed", "totalSleep")

SLEEP_TIME_FIELDS = ("sleepStart", "sleepEnd", "inBedStart", "inBedEnd")


class SleepNormalizer(BaseNormalizer):
    """Normalizer for aggregated sleep analysis records."""

    shape = MetricShape.SLEEP

    def _build(
        self,
        item: dict[str, Any],
        date: datetime,
        source: str,
        units: str | None,
    ) -> SleepMetric | None:
        durations = {name: coerce_float(item.get(name)) for name in SLEEP_DURATION_FIELDS}
        if all(value is None for value in durations.values()):
            return None

        # A bad session boundary only loses that field
        times = {name: parse_date(item.get(name)) for name in SLEEP_TIME_FIELDS}

        return SleepMetric(
            date=date,
            source=source,
            units=units,
            **durations,
            **times,
        )
