"""Reader for Apple Health ``export.zip`` / ``export.xml`` files.

The reader streams the XML and produces the same raw payload shape Health
Auto Export sends, so exported history can go through the regular ingestion
pipeline.
"""

import math
import zipfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any
from xml.etree.ElementTree import Element, iterparse

import structlog

from .dates import parse_date
from .normalizers import canonical_kind

logger = structlog.get_logger(__name__)

EXPORT_XML = "export.xml"
DEFAULT_SOURCE = "Apple Health"

_TYPE_PREFIXES = (
    "HKQuantityTypeIdentifier",
    "HKCategoryTypeIdentifier",
    "HKDataTypeIdentifier",
)
_ACTIVITY_PREFIX = "HKWorkoutActivityType"

# Seconds per unit of a workout's durationUnit attribute
DURATION_UNITS = {
    "s": 1.0,
    "sec": 1.0,
    "min": 60.0,
    "h": 3600.0,
    "hr": 3600.0,
}

# Top-level elements sit at depth 2 (HealthData is depth 1)
_TOP_LEVEL_DEPTH = 2


@dataclass
class ExportData:
    """Raw metric batches and workouts read from an export."""

    metrics: dict[str, dict[str, Any]] = field(default_factory=dict)
    workouts: list[dict[str, Any]] = field(default_factory=list)
    skipped_records: int = 0
    skipped_workouts: int = 0

    @property
    def record_count(self) -> int:
        return sum(len(batch["data"]) for batch in self.metrics.values())


def transform_type(type_identifier: str) -> str:
    """Turn a HealthKit type identifier into a metric kind name.

    ``HKQuantityTypeIdentifierStepCount`` becomes ``step_count``.
    """
    for prefix in _TYPE_PREFIXES:
        if type_identifier.startswith(prefix):
            type_identifier = type_identifier[len(prefix) :]
            break
    return canonical_kind(type_identifier)


def _number(raw: str | None) -> float | None:
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def _metadata(element: Element) -> dict[str, str]:
    return {
        entry.get("key", ""): entry.get("value", "")
        for entry in element.findall("MetadataEntry")
        if entry.get("key")
    }


@contextmanager
def open_export(path: Path) -> Iterator[IO[bytes]]:
    """Open the ``export.xml`` inside a zip archive, a directory or a plain file.

    Raises:
        FileNotFoundError: If no export.xml can be found.
    """
    if path.is_dir():
        for candidate in sorted(path.rglob("*")):
            if candidate.is_file() and candidate.name.lower() == EXPORT_XML:
                with candidate.open("rb") as stream:
                    yield stream
                return
        raise FileNotFoundError(f"{EXPORT_XML} not found in {path}")

    if zipfile.is_zipfile(path):
        with zipfile.ZipFile(path) as archive:
            for member in archive.namelist():
                if Path(member).name.lower() == EXPORT_XML:
                    with archive.open(member) as stream:
                        yield stream
                    return
        raise FileNotFoundError(f"{EXPORT_XML} not found in archive {path}")

    with path.open("rb") as stream:
        yield stream


class ExportReader:
    """Streams an export into raw metric batches and raw workouts."""

    def __init__(self, default_source: str = DEFAULT_SOURCE) -> None:
        self._default_source = default_source

    def read(self, stream: IO[bytes]) -> ExportData:
        """Parse an export.xml stream.

        Elements are cleared as soon as they are consumed, so memory use is
        bounded by the collected payloads rather than by the XML tree.
        """
        data = ExportData()
        depth = 0
        root: Element | None = None
        top_level: Element | None = None

        for event, element in iterparse(stream, events=("start", "end")):
            if event == "start":
                depth += 1
                if depth == 1:
                    root = element
                elif depth == _TOP_LEVEL_DEPTH:
                    top_level = element
                continue

            if depth == _TOP_LEVEL_DEPTH and element is top_level:
                if element.tag == "Record":
                    self._add_record(element, data)
                elif element.tag == "Workout":
                    self._add_workout(element, data)
                if root is not None:
                    root.clear()
            depth -= 1

        logger.info(
            "export_read",
            metric_kinds=len(data.metrics),
            records=data.record_count,
            workouts=len(data.workouts),
            skipped_records=data.skipped_records,
            skipped_workouts=data.skipped_workouts,
        )
        return data

    def _add_record(self, element: Element, data: ExportData) -> None:
        name = transform_type(element.get("type", ""))
        qty = _number(element.get("value"))
        date = element.get("startDate")
        if not name or qty is None or not date:
            data.skipped_records += 1
            return

        units = element.get("unit", "")
        record: dict[str, Any] = {
            "qty": qty,
            "units": units,
            "date": date,
            "source": element.get("sourceName") or self._default_source,
        }
        metadata = _metadata(element)
        if metadata:
            record["metadata"] = metadata

        batch = data.metrics.setdefault(name, {"name": name, "units": units, "data": []})
        batch["data"].append(record)

    def _add_workout(self, element: Element, data: ExportData) -> None:
        start = element.get("startDate")
        end = element.get("endDate")
        if parse_date(start) is None or parse_date(end) is None:
            data.skipped_workouts += 1
            return

        activity = element.get("workoutActivityType", "")
        source = element.get("sourceName") or self._default_source
        workout: dict[str, Any] = {
            "id": element.get("uuid") or f"{activity}_{start}",
            "name": activity.removeprefix(_ACTIVITY_PREFIX) or "unknown",
            "start": start,
            "end": end,
        }

        duration = _number(element.get("duration"))
        factor = DURATION_UNITS.get(element.get("durationUnit", ""))
        if duration is not None and factor is not None:
            workout["duration"] = duration * factor

        def quantity(value: float | None, units: str | None) -> dict[str, Any] | None:
            if value is None:
                return None
            return {"qty": value, "units": units or "", "date": end, "source": source}

        statistics = {
            transform_type(stat.get("type", "")): stat
            for stat in element.findall("WorkoutStatistics")
        }

        energy = statistics.get("active_energy_burned")
        active_energy = (
            quantity(_number(energy.get("sum")), energy.get("unit"))
            if energy is not None
            else quantity(
                _number(element.get("totalEnergyBurned")), element.get("totalEnergyBurnedUnit")
            )
        )
        if active_energy:
            workout["activeEnergyBurned"] = active_energy

        distance_stat = next(
            (stat for kind, stat in statistics.items() if kind.startswith("distance_")), None
        )
        distance = (
            quantity(_number(distance_stat.get("sum")), distance_stat.get("unit"))
            if distance_stat is not None
            else quantity(_number(element.get("totalDistance")), element.get("totalDistanceUnit"))
        )
        if distance:
            workout["distance"] = distance

        heart_rate = statistics.get("heart_rate")
        if heart_rate is not None:
            units = heart_rate.get("unit")
            average = quantity(_number(heart_rate.get("average")), units)
            maximum = quantity(_number(heart_rate.get("maximum")), units)
            if average:
                workout["avgHeartRate"] = average
            if maximum:
                workout["maxHeartRate"] = maximum

        metadata = _metadata(element)
        indoor = metadata.pop("HKIndoorWorkout", None)
        if indoor in ("0", "1"):
            workout["isIndoor"] = indoor == "1"
        if metadata:
            workout["metadata"] = metadata

        data.workouts.append(workout)


def iter_payloads(export: ExportData, chunk_size: int) -> Iterator[dict[str, Any]]:
    """Split an export into ingestion request bodies.

    Each metric kind is sent in chunks of ``chunk_size`` records, followed by
    the workouts in chunks of the same size.
    """
    for batch in export.metrics.values():
        records = batch["data"]
        for offset in range(0, len(records), chunk_size):
            chunk = {
                "name": batch["name"],
                "units": batch["units"],
                "data": records[offset : offset + chunk_size],
            }
            yield {"data": {"metrics": [chunk], "workouts": []}}

    for offset in range(0, len(export.workouts), chunk_size):
        yield {"data": {"metrics": [], "workouts": export.workouts[offset : offset + chunk_size]}}
