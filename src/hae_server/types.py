"""Shared type aliases and typed dictionaries."""

from __future__ import annotations

from typing import Any, NotRequired, TypeAlias

from typing_extensions import TypedDict

JSONValue: TypeAlias = (
    str | int | float | bool | None | list["JSONValue"] | dict[str, "JSONValue"]
)

# A document as handed to / returned by the store driver
Document: TypeAlias = dict[str, Any]


class GroupOutcomePayload(TypedDict):
    """Wire shape of one logical group in an ingestion response."""

    success: bool
    message: NotRequired[str]
    error: NotRequired[str]


class IngestResponsePayload(TypedDict, total=False):
    """Wire shape of an ingestion response."""

    metrics: GroupOutcomePayload
    workouts: GroupOutcomePayload


class StoreStatus(TypedDict):
    """Document store readiness payload."""

    connected: bool
    database: str
    collections_indexed: int


class ServiceStatusSnapshot(TypedDict):
    """Service readiness snapshot payload."""

    status: str
    components: dict[str, StoreStatus | str]
