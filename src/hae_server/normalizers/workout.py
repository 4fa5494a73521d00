"""Workout normalizer and workout/route models."""

from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field

from ..dates import parse_date
from ..errors import WorkoutValidationError
from ..metrics import RECORDS_DROPPED
from .base import coerce_float, stringify_metadata

logger = structlog.get_logger(__name__)


class QuantitySample(BaseModel):
    """A quantity attached to a workout (distance, energy, cadence, ...)."""

    qty: float
    units: str | None = None
    date: datetime | None = None
    source: str | None = None


class ElevationSample(BaseModel):
    """Elevation change over a workout."""

    ascent: float | None = None
    descent: float | None = None
    qty: float | None = None
    units: str | None = None
    date: datetime | None = None
    source: str | None = None


class HeartRateSample(BaseModel):
    """One heart rate summary inside a workout series."""

    Min: float | None = None
    Avg: float | None = None
    Max: float | None = None
    units: str | None = None
    date: datetime | None = None
    source: str | None = None


class Location(BaseModel):
    """One GPS fix of a workout route."""

    latitude: float
    longitude: float
    timestamp: datetime
    altitude: float | None = None
    course: float | None = None
    courseAccuracy: float | None = None
    speed: float | None = None
    speedAccuracy: float | None = None
    horizontalAccuracy: float | None = None
    verticalAccuracy: float | None = None


class NormalizedWorkout(BaseModel):
    """A workout session keyed by its exporter-assigned identifier."""

    workoutId: str = Field(min_length=1)
    name: str
    start: datetime
    end: datetime
    duration: float = Field(ge=0, description="Duration in seconds")

    distance: QuantitySample | None = None
    activeEnergyBurned: QuantitySample | None = None
    activeEnergy: QuantitySample | list[QuantitySample] | None = None
    totalEnergy: QuantitySample | None = None
    stepCadence: QuantitySample | None = None
    totalSwimmingStrokeCount: QuantitySample | None = None
    swimCadence: QuantitySample | None = None
    speed: QuantitySample | None = None
    flightsClimbed: QuantitySample | None = None
    temperature: QuantitySample | None = None
    humidity: QuantitySample | None = None
    intensity: QuantitySample | None = None
    elevation: ElevationSample | None = None

    heartRateData: list[HeartRateSample] | None = None
    heartRateRecovery: list[HeartRateSample] | None = None
    stepCount: list[QuantitySample] | None = None

    maxHeartRate: float | None = None
    avgHeartRate: float | None = None

    location: str | None = None
    isIndoor: bool | None = None
    metadata: dict[str, str] | None = None

    def identity(self) -> str:
        return self.workoutId

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class NormalizedRoute(BaseModel):
    """GPS track of a workout, stored apart from the workout itself."""

    workoutId: str = Field(min_length=1)
    locations: list[Location] = Field(min_length=1)

    def identity(self) -> str:
        return self.workoutId

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


# Single quantity sub-records converted with the shared date rule
QUANTITY_FIELDS = (
    "distance",
    "activeEnergyBurned",
    "totalEnergy",
    "stepCadence",
    "totalSwimmingStrokeCount",
    "swimCadence",
    "speed",
    "flightsClimbed",
    "temperature",
    "humidity",
    "intensity",
)

HEART_RATE_SERIES_FIELDS = ("heartRateData", "heartRateRecovery")

_LOCATION_OPTIONAL_FIELDS = (
    "altitude",
    "course",
    "courseAccuracy",
    "speed",
    "speedAccuracy",
    "horizontalAccuracy",
    "verticalAccuracy",
)

# Sentinel for "date present but unparseable"
_BAD_DATE = object()


def _optional_date(raw: dict[str, Any]) -> datetime | None | object:
    value = raw.get("date")
    if value is None or value == "":
        return None
    parsed = parse_date(value)
    return _BAD_DATE if parsed is None else parsed


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _workout_id(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    return _optional_str(value)


def _scalar(value: Any) -> float | None:
    """Read a number sent either bare or as a ``{qty, units}`` object."""
    if isinstance(value, dict):
        return coerce_float(value.get("qty"))
    return coerce_float(value)


class WorkoutNormalizer:
    """Converts raw workouts into a workout record plus an optional route."""

    def normalize(self, raw: Any) -> tuple[NormalizedWorkout, NormalizedRoute | None]:
        """Normalize one raw workout.

        Args:
            raw: Workout object as sent by Health Auto Export.

        Returns:
            The workout and its route (None when the workout has no GPS data).

        Raises:
            WorkoutValidationError: If the workout has no identifier or no
                usable start/end time.
        """
        if not isinstance(raw, dict):
            raise WorkoutValidationError("workout is not an object")

        workout_id = _workout_id(raw.get("id"))
        if workout_id is None:
            raise WorkoutValidationError("missing workout id")

        start = parse_date(raw.get("start"))
        end = parse_date(raw.get("end"))
        if start is None or end is None:
            raise WorkoutValidationError("invalid start or end", workout_id)
        if end < start:
            raise WorkoutValidationError("end precedes start", workout_id)

        duration = coerce_float(raw.get("duration"))
        if duration is None or duration < 0:
            duration = (end - start).total_seconds()

        fields: dict[str, Any] = {
            name: self._quantity(raw.get(name), workout_id, name) for name in QUANTITY_FIELDS
        }
        fields["activeEnergy"] = self._quantity_or_series(
            raw.get("activeEnergy"), workout_id, "activeEnergy"
        )
        fields["elevation"] = self._elevation(raw.get("elevation"), workout_id)
        for name in HEART_RATE_SERIES_FIELDS:
            fields[name] = self._heart_rate_series(raw.get(name), workout_id, name)
        fields["stepCount"] = self._quantity_series(raw.get("stepCount"), workout_id, "stepCount")

        heart_rate_data: list[HeartRateSample] = fields["heartRateData"] or []
        max_hr = _scalar(raw.get("maxHeartRate"))
        avg_hr = _scalar(raw.get("avgHeartRate"))

        # Derive summary fields only when the exporter left them out
        if max_hr is None:
            maxes = [s.Max for s in heart_rate_data if s.Max is not None]
            if maxes:
                max_hr = max(maxes)
        if avg_hr is None:
            avgs = [s.Avg for s in heart_rate_data if s.Avg is not None]
            if avgs:
                avg_hr = round(sum(avgs) / len(avgs), 2)

        is_indoor = raw.get("isIndoor")
        workout = NormalizedWorkout(
            workoutId=workout_id,
            name=_optional_str(raw.get("name")) or "unknown",
            start=start,
            end=end,
            duration=duration,
            maxHeartRate=max_hr,
            avgHeartRate=avg_hr,
            location=_optional_str(raw.get("location")),
            isIndoor=is_indoor if isinstance(is_indoor, bool) else None,
            metadata=stringify_metadata(raw.get("metadata")),
            **fields,
        )
        return workout, self._route(raw.get("route"), workout_id)

    def _quantity(self, raw: Any, workout_id: str, field: str) -> QuantitySample | None:
        if raw is None:
            return None
        if not isinstance(raw, dict):
            qty = coerce_float(raw)
            if qty is None:
                self._log_dropped(workout_id, field, "invalid_qty")
                return None
            return QuantitySample(qty=qty)

        qty = coerce_float(raw.get("qty"))
        date = _optional_date(raw)
        if qty is None or date is _BAD_DATE:
            self._log_dropped(workout_id, field, "invalid_qty" if qty is None else "invalid_date")
            return None
        return QuantitySample(
            qty=qty,
            units=_optional_str(raw.get("units")),
            date=date,
            source=_optional_str(raw.get("source")),
        )

    def _quantity_series(
        self, raw: Any, workout_id: str, field: str
    ) -> list[QuantitySample] | None:
        if not isinstance(raw, list):
            return None
        samples = [
            sample
            for item in raw
            if (sample := self._quantity(item, workout_id, field)) is not None
        ]
        return samples or None

    def _quantity_or_series(
        self, raw: Any, workout_id: str, field: str
    ) -> QuantitySample | list[QuantitySample] | None:
        if isinstance(raw, list):
            return self._quantity_series(raw, workout_id, field)
        return self._quantity(raw, workout_id, field)

    def _elevation(self, raw: Any, workout_id: str) -> ElevationSample | None:
        if not isinstance(raw, dict):
            return None
        values = {key: coerce_float(raw.get(key)) for key in ("ascent", "descent", "qty")}
        date = _optional_date(raw)
        if all(v is None for v in values.values()) or date is _BAD_DATE:
            self._log_dropped(workout_id, "elevation", "invalid_values")
            return None
        return ElevationSample(
            units=_optional_str(raw.get("units")),
            date=date,
            source=_optional_str(raw.get("source")),
            **values,
        )

    def _heart_rate_series(
        self, raw: Any, workout_id: str, field: str
    ) -> list[HeartRateSample] | None:
        if not isinstance(raw, list):
            return None

        samples: list[HeartRateSample] = []
        for item in raw:
            if not isinstance(item, dict):
                self._log_dropped(workout_id, field, "not_an_object")
                continue
            stats = {key: coerce_float(item.get(key)) for key in ("Min", "Avg", "Max")}
            date = _optional_date(item)
            if date is _BAD_DATE or all(v is None for v in stats.values()):
                self._log_dropped(workout_id, field, "invalid_sample")
                continue
            samples.append(
                HeartRateSample(
                    units=_optional_str(item.get("units")),
                    date=date,
                    source=_optional_str(item.get("source")),
                    **stats,
                )
            )
        return samples or None

    def _route(self, raw: Any, workout_id: str) -> NormalizedRoute | None:
        if not isinstance(raw, list) or not raw:
            return None

        locations: list[Location] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            latitude = coerce_float(item.get("latitude"))
            longitude = coerce_float(item.get("longitude"))
            timestamp = parse_date(item.get("timestamp"))
            if latitude is None or longitude is None or timestamp is None:
                continue
            locations.append(
                Location(
                    latitude=latitude,
                    longitude=longitude,
                    timestamp=timestamp,
                    **{key: coerce_float(item.get(key)) for key in _LOCATION_OPTIONAL_FIELDS},
                )
            )

        dropped = len(raw) - len(locations)
        if dropped:
            self._log_dropped(workout_id, "route", "invalid_location", count=dropped)
        if not locations:
            return None
        return NormalizedRoute(workoutId=workout_id, locations=locations)

    def _log_dropped(self, workout_id: str, field: str, reason: str, count: int = 1) -> None:
        RECORDS_DROPPED.labels(group="workouts", reason=reason).inc(count)
        logger.warning(
            "workout_field_dropped",
            workout_id=workout_id,
            field=field,
            reason=reason,
            count=count,
        )
