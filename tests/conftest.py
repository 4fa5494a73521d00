"""Pytest configuration and fixtures."""

import asyncio
import copy
import itertools
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from hae_server.ingest import IngestionOrchestrator  # noqa: E402
from hae_server.mongo_writer import BatchUpsertWriter  # noqa: E402
from hae_server.normalizers import MetricKindRegistry  # noqa: E402


@dataclass
class FakeBulkWriteResult:
    upserted_count: int
    modified_count: int
    matched_count: int


def _matches(document: dict[str, Any], query: dict[str, Any]) -> bool:
    for key, condition in query.items():
        value = document.get(key)
        if isinstance(condition, dict):
            if value is None:
                return False
            if "$gte" in condition and not value >= condition["$gte"]:
                return False
            if "$lte" in condition and not value <= condition["$lte"]:
                return False
        elif value != condition:
            return False
    return True


def _project(document: dict[str, Any], projection: dict[str, Any] | None) -> dict[str, Any]:
    result = copy.deepcopy(document)
    if projection and projection.get("_id") == 0:
        result.pop("_id", None)
    return result


class FakeCursor:
    """Minimal async cursor: sort() and to_list()."""

    def __init__(self, documents: list[dict[str, Any]]) -> None:
        self._documents = documents

    def sort(self, key: str, direction: int = 1) -> "FakeCursor":
        self._documents.sort(key=lambda doc: doc[key], reverse=direction < 0)
        return self

    async def to_list(self, length: int | None = None) -> list[dict[str, Any]]:
        return self._documents if length is None else self._documents[:length]


class FakeCollection:
    """In-memory stand-in for a pymongo async collection."""

    _ids = itertools.count(1)

    def __init__(self, name: str) -> None:
        self.name = name
        self.documents: list[dict[str, Any]] = []
        self.indexes: list[dict[str, Any]] = []
        self.bulk_calls: list[list[Any]] = []
        self.fail_with: Exception | None = None
        self.index_fail_with: Exception | None = None
        self.delay = 0.0

    async def create_index(self, keys, unique: bool = False, name: str | None = None) -> str:
        if self.index_fail_with:
            raise self.index_fail_with
        self.indexes.append({"keys": list(keys), "unique": unique, "name": name})
        return name or "index"

    async def bulk_write(self, requests, ordered: bool = True) -> FakeBulkWriteResult:
        self.bulk_calls.append(list(requests))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with:
            raise self.fail_with

        upserted = modified = 0
        for op in requests:
            replacement = copy.deepcopy(op._doc)
            for position, existing in enumerate(self.documents):
                if _matches(existing, op._filter):
                    replacement["_id"] = existing["_id"]
                    self.documents[position] = replacement
                    modified += 1
                    break
            else:
                assert op._upsert
                replacement["_id"] = next(self._ids)
                self.documents.append(replacement)
                upserted += 1
        return FakeBulkWriteResult(
            upserted_count=upserted, modified_count=modified, matched_count=modified
        )

    def find(self, query: dict[str, Any] | None = None, projection=None) -> FakeCursor:
        return FakeCursor(
            [_project(doc, projection) for doc in self.documents if _matches(doc, query or {})]
        )

    async def find_one(self, query: dict[str, Any], projection=None) -> dict[str, Any] | None:
        for doc in self.documents:
            if _matches(doc, query):
                return _project(doc, projection)
        return None


class FakeDatabase:
    """In-memory stand-in for a pymongo async database."""

    name = "test-db"

    def __init__(self) -> None:
        self.collections: dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def writer(fake_db) -> BatchUpsertWriter:
    return BatchUpsertWriter(fake_db)


@pytest.fixture
def orchestrator(writer) -> IngestionOrchestrator:
    return IngestionOrchestrator(writer, registry=MetricKindRegistry(default_source="test"))


@pytest.fixture
def heart_rate_series():
    """Workout heart rate samples as sent by Health Auto Export."""
    return [
        {"Min": 60, "Avg": 70, "Max": 90, "units": "bpm", "date": "2024-01-15 08:00:00 +0000"},
        {"Min": 62, "Avg": 74, "Max": 95, "units": "bpm", "date": "2024-01-15 08:01:00 +0000"},
    ]


@pytest.fixture
def sample_workout(heart_rate_series):
    """A running workout with heart rate data and a short route."""
    return {
        "id": "5A3C6D2E-0001",
        "name": "Outdoor Run",
        "start": "2024-01-15 08:00:00 +0000",
        "end": "2024-01-15 08:30:00 +0000",
        "duration": 1800,
        "distance": {"qty": 5.2, "units": "km"},
        "activeEnergyBurned": {"qty": 350, "units": "kcal"},
        "heartRateData": heart_rate_series,
        "route": [
            {
                "latitude": 52.52,
                "longitude": 13.405,
                "altitude": 34.0,
                "timestamp": "2024-01-15 08:00:05 +0000",
            },
            {
                "latitude": 52.521,
                "longitude": 13.406,
                "altitude": 35.0,
                "timestamp": "2024-01-15 08:00:10 +0000",
            },
        ],
    }


@pytest.fixture
def sample_payload(sample_workout):
    """A complete ingestion request with three metric kinds and one workout."""
    return {
        "data": {
            "metrics": [
                {
                    "name": "step_count",
                    "units": "count",
                    "data": [
                        {"qty": 1200, "date": "2024-01-15 08:00:00 +0000", "source": "iPhone"},
                        {"qty": 900, "date": "2024-01-15 09:00:00 +0000", "source": "iPhone"},
                    ],
                },
                {
                    "name": "heart_rate",
                    "units": "bpm",
                    "data": [
                        {
                            "Min": 55,
                            "Avg": 68,
                            "Max": 110,
                            "date": "2024-01-15 08:00:00 +0000",
                            "source": "Apple Watch",
                        }
                    ],
                },
                {
                    "name": "blood_pressure",
                    "units": "mmHg",
                    "data": [
                        {
                            "systolic": 120,
                            "diastolic": 80,
                            "date": "2024-01-15 07:00:00 +0000",
                            "source": "Omron",
                        }
                    ],
                },
            ],
            "workouts": [sample_workout],
        }
    }
