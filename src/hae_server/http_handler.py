"""HTTP API for Health Auto Export ingestion and queries."""

from __future__ import annotations

import asyncio
import hmac
import json
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError

from . import __version__
from .config import HTTPSettings
from .dates import parse_date
from .errors import IngestionRequestError, UnknownMetricKindError
from .ingest import IngestionOrchestrator
from .metrics import HTTP_REQUESTS_TOTAL
from .queries import MetricQueries, parse_field_list
from .tracing import record_ingest_outcome, request_span
from .types import JSONValue, ServiceStatusSnapshot, StoreStatus

logger = structlog.get_logger(__name__)


def _log_task_exception(task: asyncio.Task) -> None:
    """Log exceptions from background tasks that would otherwise be silently lost."""
    if not task.cancelled() and task.exception():
        logger.error("background_task_failed", error=str(task.exception()))


class GroupOutcomeModel(BaseModel):
    """Outcome of one record group."""

    success: bool
    message: str | None = None
    error: str | None = None


class IngestResponse(BaseModel):
    """Per-group ingestion outcome."""

    metrics: GroupOutcomeModel
    workouts: GroupOutcomeModel


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    message: str | None = None
    max_bytes: int | None = None


class ReadyResponse(BaseModel):
    """Readiness response."""

    status: str
    components: dict[str, StoreStatus | str] = Field(default_factory=dict)


class InfoResponse(BaseModel):
    """Service info response."""

    name: str
    version: str


def _presented_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return request.headers.get("api-key")


class _InvalidQueryError(ValueError):
    pass


def _query_date(request: Request, name: str) -> datetime | None:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return None
    parsed = parse_date(raw)
    if parsed is None:
        raise _InvalidQueryError(f"Invalid '{name}' date: {raw}")
    return parsed


class HTTPHandler:
    """Serves the ingestion endpoint and the read-side query endpoints.

    Ingestion requires the write token and queries require the read token.
    An empty configured token disables the corresponding check.
    """

    def __init__(
        self,
        settings: HTTPSettings,
        orchestrator: IngestionOrchestrator | None = None,
        queries: MetricQueries | None = None,
        status_provider: Callable[[], ServiceStatusSnapshot] | None = None,
    ) -> None:
        self._settings = settings
        self._orchestrator = orchestrator
        self._queries = queries
        self._status_provider = status_provider
        self._app: FastAPI | None = None
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task | None = None

    @staticmethod
    def _check_token(request: Request, expected: str) -> bool:
        """Validate the caller's token against the configured one."""
        if not expected:
            return True  # No token configured = auth disabled
        presented = _presented_token(request)
        if not presented:
            return False
        return hmac.compare_digest(presented.encode(), expected.encode())

    def _build_app(self) -> FastAPI:
        app = FastAPI(
            title="Health Auto Export Server",
            version=__version__,
            description="Ingestion and query API for Health Auto Export payloads.",
        )

        def error_response(
            status_code: int,
            error: str,
            message: str | None = None,
            max_bytes: int | None = None,
        ) -> JSONResponse:
            payload: dict[str, JSONValue] = {"error": error}
            if message is not None:
                payload["message"] = message
            if max_bytes is not None:
                payload["max_bytes"] = max_bytes
            return JSONResponse(status_code=status_code, content=payload)

        def count(method: str, path: str, status_code: int) -> None:
            HTTP_REQUESTS_TOTAL.labels(method=method, path=path, status=str(status_code)).inc()

        @app.post(
            "/api/data",
            response_model=IngestResponse,
            responses={
                207: {"model": IngestResponse},
                400: {"model": ErrorResponse},
                401: {"model": ErrorResponse},
                413: {"model": ErrorResponse},
                500: {"model": ErrorResponse},
                503: {"model": ErrorResponse},
            },
            summary="Ingest Health Auto Export payloads",
        )
        async def ingest(request: Request):
            """Handle POST /api/data -- normalize and upsert metrics and workouts."""
            path = "/api/data"
            with request_span("POST", path, request.headers) as span:
                logger.info(
                    "http_ingest_received",
                    client_host=request.client.host if request.client else None,
                    user_agent=request.headers.get("user-agent"),
                    content_length=request.headers.get("content-length"),
                )

                if not self._check_token(request, self._settings.write_token):
                    count("POST", path, 401)
                    return error_response(
                        status.HTTP_401_UNAUTHORIZED, "Unauthorized: Invalid write token"
                    )

                if self._orchestrator is None:
                    count("POST", path, 503)
                    return error_response(status.HTTP_503_SERVICE_UNAVAILABLE, "Service not ready")

                content_length = request.headers.get("content-length", "")
                limit = self._settings.max_request_size
                if content_length.isdigit() and int(content_length) > limit:
                    count("POST", path, 413)
                    return error_response(
                        status.HTTP_413_CONTENT_TOO_LARGE,
                        "Request body too large",
                        max_bytes=self._settings.max_request_size,
                    )

                raw_body = await request.body()
                if len(raw_body) > self._settings.max_request_size:
                    count("POST", path, 413)
                    return error_response(
                        status.HTTP_413_CONTENT_TOO_LARGE,
                        "Request body too large",
                        max_bytes=self._settings.max_request_size,
                    )
                span.set_attribute("payload.size", len(raw_body))

                try:
                    payload = json.loads(raw_body)
                except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                    logger.warning("http_payload_parse_error", error=str(exc))
                    count("POST", path, 400)
                    return error_response(status.HTTP_400_BAD_REQUEST, "Invalid JSON")

                try:
                    outcome = await self._orchestrator.ingest(payload)
                except IngestionRequestError as exc:
                    count("POST", path, 500)
                    return error_response(
                        status.HTTP_500_INTERNAL_SERVER_ERROR,
                        "Failed to process request",
                        message=str(exc),
                    )
                except Exception as exc:
                    logger.exception("http_ingest_error", error=str(exc))
                    count("POST", path, 500)
                    return error_response(
                        status.HTTP_500_INTERNAL_SERVER_ERROR,
                        "Failed to process request",
                        message=str(exc),
                    )

                record_ingest_outcome(span, outcome)
                count("POST", path, outcome.status_code)
                return JSONResponse(status_code=outcome.status_code, content=outcome.to_dict())

        @app.get(
            "/api/metrics/{metric}",
            responses={
                400: {"model": ErrorResponse},
                401: {"model": ErrorResponse},
                404: {"model": ErrorResponse},
                500: {"model": ErrorResponse},
                503: {"model": ErrorResponse},
            },
            summary="Query one metric kind",
        )
        async def get_metrics(request: Request, metric: str):
            """Handle GET /api/metrics/{metric} -- metric records in a date range."""
            path = "/api/metrics/{metric}"
            if not self._check_token(request, self._settings.read_token):
                count("GET", path, 401)
                return error_response(
                    status.HTTP_401_UNAUTHORIZED, "Unauthorized: Invalid read token"
                )
            if self._queries is None:
                count("GET", path, 503)
                return error_response(status.HTTP_503_SERVICE_UNAVAILABLE, "Service not ready")

            try:
                start = _query_date(request, "from")
                end = _query_date(request, "to")
            except _InvalidQueryError as exc:
                count("GET", path, 400)
                return error_response(status.HTTP_400_BAD_REQUEST, str(exc))

            try:
                documents = await self._queries.get_metrics(
                    metric,
                    start=start,
                    end=end,
                    include=parse_field_list(request.query_params.get("include")),
                    exclude=parse_field_list(request.query_params.get("exclude")),
                )
            except UnknownMetricKindError as exc:
                count("GET", path, 404)
                return error_response(status.HTTP_404_NOT_FOUND, "Unknown metric", message=str(exc))
            except PyMongoError as exc:
                logger.error("metrics_query_failed", metric=metric, error=str(exc))
                count("GET", path, 500)
                return error_response(
                    status.HTTP_500_INTERNAL_SERVER_ERROR, "Error getting metrics", message=str(exc)
                )

            count("GET", path, 200)
            return JSONResponse(content=jsonable_encoder(documents))

        @app.get(
            "/api/workouts",
            responses={
                400: {"model": ErrorResponse},
                401: {"model": ErrorResponse},
                500: {"model": ErrorResponse},
                503: {"model": ErrorResponse},
            },
            summary="Query workouts",
        )
        async def get_workouts(request: Request):
            """Handle GET /api/workouts -- workouts starting in a date range."""
            path = "/api/workouts"
            if not self._check_token(request, self._settings.read_token):
                count("GET", path, 401)
                return error_response(
                    status.HTTP_401_UNAUTHORIZED, "Unauthorized: Invalid read token"
                )
            if self._queries is None:
                count("GET", path, 503)
                return error_response(status.HTTP_503_SERVICE_UNAVAILABLE, "Service not ready")

            try:
                start = _query_date(request, "from")
                end = _query_date(request, "to")
            except _InvalidQueryError as exc:
                count("GET", path, 400)
                return error_response(status.HTTP_400_BAD_REQUEST, str(exc))

            try:
                documents = await self._queries.get_workouts(
                    start=start,
                    end=end,
                    include=parse_field_list(request.query_params.get("include")),
                    exclude=parse_field_list(request.query_params.get("exclude")),
                )
            except PyMongoError as exc:
                logger.error("workouts_query_failed", error=str(exc))
                count("GET", path, 500)
                return error_response(
                    status.HTTP_500_INTERNAL_SERVER_ERROR,
                    "Error getting workouts",
                    message=str(exc),
                )

            count("GET", path, 200)
            return JSONResponse(content=jsonable_encoder(documents))

        @app.get(
            "/api/workouts/{workout_id}/route",
            responses={
                401: {"model": ErrorResponse},
                404: {"model": ErrorResponse},
                500: {"model": ErrorResponse},
                503: {"model": ErrorResponse},
            },
            summary="Fetch a workout route",
        )
        async def get_route(request: Request, workout_id: str):
            """Handle GET /api/workouts/{workout_id}/route -- GPS track of one workout."""
            path = "/api/workouts/{workout_id}/route"
            if not self._check_token(request, self._settings.read_token):
                count("GET", path, 401)
                return error_response(
                    status.HTTP_401_UNAUTHORIZED, "Unauthorized: Invalid read token"
                )
            if self._queries is None:
                count("GET", path, 503)
                return error_response(status.HTTP_503_SERVICE_UNAVAILABLE, "Service not ready")

            try:
                route = await self._queries.get_route(workout_id)
            except PyMongoError as exc:
                logger.error("route_query_failed", workout_id=workout_id, error=str(exc))
                count("GET", path, 500)
                return error_response(
                    status.HTTP_500_INTERNAL_SERVER_ERROR, "Error getting route", message=str(exc)
                )

            if route is None:
                count("GET", path, 404)
                return error_response(status.HTTP_404_NOT_FOUND, "Route not found")
            count("GET", path, 200)
            return JSONResponse(content=jsonable_encoder(route))

        @app.get(
            "/health",
            response_model=dict[str, str],
            summary="Health check",
        )
        async def health() -> dict[str, str]:
            """Handle GET /health -- returns service liveness status."""
            count("GET", "/health", 200)
            return {"status": "ok"}

        @app.get(
            "/ready",
            response_model=ReadyResponse,
            responses={
                503: {"model": ErrorResponse},
            },
            summary="Readiness check",
        )
        async def ready():
            """Handle GET /ready -- returns readiness of dependencies."""
            components: dict[str, Any]
            if self._status_provider:
                status_payload = self._status_provider()
                readiness_status = status_payload.get("status", "unknown")
                components = dict(status_payload.get("components", {}))
            else:
                readiness_status = "ok" if self._orchestrator else "starting"
                components = {"ingestion": "ready" if self._orchestrator else "not_ready"}
            if readiness_status != "ok":
                count("GET", "/ready", 503)
                return JSONResponse(
                    status_code=503,
                    content={"status": readiness_status, "components": components},
                )
            count("GET", "/ready", 200)
            return ReadyResponse(status=readiness_status, components=components)

        @app.get(
            "/info",
            response_model=InfoResponse,
            summary="Service info",
        )
        async def info() -> InfoResponse:
            """Handle GET /info -- returns service metadata."""
            count("GET", "/info", 200)
            return InfoResponse(name="hae-server", version=__version__)

        @app.get(
            "/metrics",
            summary="Prometheus metrics",
        )
        async def metrics() -> Response:
            """Handle GET /metrics -- returns Prometheus metrics."""
            count("GET", "/metrics", 200)
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self._build_app()
        config = uvicorn.Config(
            self._app,
            host=self._settings.host,
            port=self._settings.port,
            log_level="info",
        )
        self._server = uvicorn.Server(config)
        self._server_task = asyncio.create_task(self._server.serve())
        self._server_task.add_done_callback(_log_task_exception)
        logger.info(
            "http_server_started",
            host=self._settings.host,
            port=self._settings.port,
        )

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._server:
            self._server.should_exit = True
        if self._server_task:
            await self._server_task
            self._server_task = None
        logger.info("http_server_stopped")

    @property
    def app(self) -> FastAPI:
        """Expose the FastAPI app for testing."""
        if not self._app:
            self._app = self._build_app()
        return self._app
