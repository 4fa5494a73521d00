"""Exception types raised by the ingestion pipeline."""


class IngestionRequestError(Exception):
    """Raised when an ingestion request is structurally invalid.

    Nothing has been normalized or written when this is raised.
    """


class UnknownMetricKindError(ValueError):
    """Raised when a metric kind identifier cannot be mapped to a collection."""

    def __init__(self, kind: object) -> None:
        super().__init__(f"Cannot resolve metric kind {kind!r}")
        self.kind = kind


class WorkoutValidationError(ValueError):
    """Raised when a raw workout cannot be normalized at all."""

    def __init__(self, reason: str, workout_id: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.workout_id = workout_id


class StoreNotConnectedError(RuntimeError):
    """Raised when the document store is used before connect()."""
