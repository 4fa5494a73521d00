"""Tests for HTTP handler."""

from collections.abc import Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pymongo.errors import ServerSelectionTimeoutError

from hae_server.config import HTTPSettings
from hae_server.http_handler import HTTPHandler
from hae_server.ingest import IngestionOrchestrator
from hae_server.queries import MetricQueries

WRITE = {"Authorization": "Bearer write-token"}
READ = {"Authorization": "Bearer read-token"}


def _make_settings(
    write_token: str = "write-token",
    read_token: str = "read-token",
    max_request_size: int = 10_485_760,
) -> HTTPSettings:
    """Create HTTPSettings isolated from env vars."""
    return HTTPSettings(
        _env_file=None,
        enabled=True,
        host="127.0.0.1",
        port=8080,
        write_token=write_token,
        read_token=read_token,
        max_request_size=max_request_size,
    )


def _make_handler(
    orchestrator: IngestionOrchestrator | None = None,
    queries: MetricQueries | None = None,
    status_provider: Callable[[], dict[str, object]] | None = None,
    **settings_overrides,
) -> HTTPHandler:
    """Create an HTTPHandler with test settings."""
    return HTTPHandler(
        settings=_make_settings(**settings_overrides),
        orchestrator=orchestrator,
        queries=queries,
        status_provider=status_provider,
    )


@pytest.fixture
def handler(orchestrator, fake_db) -> HTTPHandler:
    return _make_handler(orchestrator=orchestrator, queries=MetricQueries(fake_db))


async def _client_for(handler: HTTPHandler) -> AsyncClient:
    transport = ASGITransport(app=handler.app)
    return AsyncClient(transport=transport, base_url="http://test")


class TestIngestEndpoint:
    """Tests for POST /api/data."""

    @pytest.mark.asyncio
    async def test_valid_payload_returns_200(self, handler, fake_db, sample_payload):
        async with await _client_for(handler) as client:
            resp = await client.post("/api/data", json=sample_payload, headers=WRITE)

        assert resp.status_code == 200
        body = resp.json()
        assert body["metrics"] == {"success": True, "message": "4 metrics saved successfully"}
        assert body["workouts"]["success"] is True
        assert len(fake_db["step_count"].documents) == 2

    @pytest.mark.asyncio
    async def test_api_key_header_accepted(self, handler, sample_payload):
        async with await _client_for(handler) as client:
            resp = await client.post(
                "/api/data", json=sample_payload, headers={"api-key": "write-token"}
            )

        assert resp.status_code == 200

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "headers",
        [
            {},
            {"Authorization": "Bearer wrong"},
            {"Authorization": "Bearer read-token"},
            {"api-key": "nope"},
        ],
    )
    async def test_bad_write_token_returns_401(self, handler, fake_db, sample_payload, headers):
        async with await _client_for(handler) as client:
            resp = await client.post("/api/data", json=sample_payload, headers=headers)

        assert resp.status_code == 401
        assert resp.json()["error"] == "Unauthorized: Invalid write token"
        assert fake_db.collections == {}

    @pytest.mark.asyncio
    async def test_empty_write_token_disables_auth(self, orchestrator, sample_payload):
        handler = _make_handler(orchestrator=orchestrator, write_token="")
        async with await _client_for(handler) as client:
            resp = await client.post("/api/data", json=sample_payload)

        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_invalid_json_returns_400(self, handler):
        async with await _client_for(handler) as client:
            resp = await client.post(
                "/api/data",
                content=b"{not json",
                headers={**WRITE, "Content-Type": "application/json"},
            )

        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid JSON"

    @pytest.mark.asyncio
    async def test_oversized_body_returns_413(self, orchestrator):
        handler = _make_handler(orchestrator=orchestrator, max_request_size=1024)
        async with await _client_for(handler) as client:
            resp = await client.post(
                "/api/data",
                content=b"x" * 2048,
                headers={**WRITE, "Content-Type": "application/json"},
            )

        assert resp.status_code == 413
        assert resp.json()["max_bytes"] == 1024

    @pytest.mark.asyncio
    async def test_structural_error_returns_500(self, handler, fake_db):
        async with await _client_for(handler) as client:
            resp = await client.post("/api/data", json={"nothing": True}, headers=WRITE)

        assert resp.status_code == 500
        body = resp.json()
        assert body["error"] == "Failed to process request"
        assert "data" in body["message"]
        assert fake_db.collections == {}

    @pytest.mark.asyncio
    async def test_partial_failure_returns_207(self, handler, fake_db, sample_payload):
        fake_db["workouts"].fail_with = ServerSelectionTimeoutError("store unreachable")
        async with await _client_for(handler) as client:
            resp = await client.post("/api/data", json=sample_payload, headers=WRITE)

        assert resp.status_code == 207
        body = resp.json()
        assert body["metrics"]["success"] is True
        assert body["workouts"]["success"] is False
        assert "store unreachable" in body["workouts"]["error"]

    @pytest.mark.asyncio
    async def test_metrics_only_failure_returns_500(self, handler, fake_db):
        fake_db["step_count"].fail_with = ServerSelectionTimeoutError("down")
        batch = {"name": "step_count", "data": [{"qty": 1, "date": "2024-01-15"}]}
        payload = {"data": {"metrics": [batch]}}
        async with await _client_for(handler) as client:
            resp = await client.post("/api/data", json=payload, headers=WRITE)

        assert resp.status_code == 500
        assert resp.json() == {
            "metrics": {"success": False, "error": "step_count: down"},
            "workouts": {"success": True, "message": "no records"},
        }

    @pytest.mark.asyncio
    async def test_not_ready_returns_503(self, sample_payload):
        handler = _make_handler()
        async with await _client_for(handler) as client:
            resp = await client.post("/api/data", json=sample_payload, headers=WRITE)

        assert resp.status_code == 503


class TestQueryEndpoints:
    """Tests for the read-side endpoints."""

    @pytest_asyncio.fixture(autouse=True)
    async def _seed(self, orchestrator, sample_payload):
        await orchestrator.ingest(sample_payload)

    @pytest.mark.asyncio
    async def test_get_metrics_sorted_by_date(self, handler):
        async with await _client_for(handler) as client:
            resp = await client.get("/api/metrics/step_count", headers=READ)

        assert resp.status_code == 200
        records = resp.json()
        assert [r["qty"] for r in records] == [1200, 900]
        assert "_id" not in records[0]
        assert records[0]["date"].startswith("2024-01-15T08:00:00")

    @pytest.mark.asyncio
    async def test_get_metrics_with_range_and_fields(self, handler):
        async with await _client_for(handler) as client:
            resp = await client.get(
                "/api/metrics/stepCount",
                params={"from": "2024-01-15 08:30:00 +0000", "include": "qty,source"},
                headers=READ,
            )

        assert resp.status_code == 200
        assert resp.json() == [{"qty": 900, "source": "iPhone"}]

    @pytest.mark.asyncio
    async def test_get_metrics_exclude(self, handler):
        async with await _client_for(handler) as client:
            resp = await client.get(
                "/api/metrics/heart_rate", params={"exclude": "Min,Max"}, headers=READ
            )

        record = resp.json()[0]
        assert "Min" not in record
        assert record["Avg"] == 68

    @pytest.mark.asyncio
    async def test_bad_date_returns_400(self, handler):
        async with await _client_for(handler) as client:
            resp = await client.get(
                "/api/metrics/step_count", params={"from": "yesterday"}, headers=READ
            )

        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_metric_returns_404(self, handler):
        async with await _client_for(handler) as client:
            resp = await client.get("/api/metrics/%21%21%21", headers=READ)

        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_bad_read_token_returns_401(self, handler):
        async with await _client_for(handler) as client:
            resp = await client.get("/api/metrics/step_count", headers=WRITE)

        assert resp.status_code == 401
        assert resp.json()["error"] == "Unauthorized: Invalid read token"

    @pytest.mark.asyncio
    async def test_get_workouts(self, handler):
        async with await _client_for(handler) as client:
            resp = await client.get(
                "/api/workouts",
                params={"from": "2024-01-15", "to": "2024-01-16"},
                headers=READ,
            )

        assert resp.status_code == 200
        workouts = resp.json()
        assert len(workouts) == 1
        assert workouts[0]["workoutId"] == "5A3C6D2E-0001"
        assert workouts[0]["maxHeartRate"] == 95

    @pytest.mark.asyncio
    async def test_get_workouts_outside_range(self, handler):
        async with await _client_for(handler) as client:
            resp = await client.get("/api/workouts", params={"to": "2024-01-14"}, headers=READ)

        assert resp.json() == []

    @pytest.mark.asyncio
    async def test_get_route(self, handler):
        async with await _client_for(handler) as client:
            resp = await client.get("/api/workouts/5A3C6D2E-0001/route", headers=READ)

        assert resp.status_code == 200
        assert len(resp.json()["locations"]) == 2

    @pytest.mark.asyncio
    async def test_missing_route_returns_404(self, handler):
        async with await _client_for(handler) as client:
            resp = await client.get("/api/workouts/unknown/route", headers=READ)

        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_queries_not_configured_returns_503(self, orchestrator):
        handler = _make_handler(orchestrator=orchestrator)
        async with await _client_for(handler) as client:
            resp = await client.get("/api/workouts", headers=READ)

        assert resp.status_code == 503


class TestServiceEndpoints:
    """Tests for health, readiness, info and metrics endpoints."""

    @pytest.mark.asyncio
    async def test_health(self):
        async with await _client_for(_make_handler()) as client:
            resp = await client.get("/health")

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_ready_without_orchestrator_returns_503(self):
        async with await _client_for(_make_handler()) as client:
            resp = await client.get("/ready")

        assert resp.status_code == 503
        assert resp.json()["status"] == "starting"

    @pytest.mark.asyncio
    async def test_ready_uses_status_provider(self):
        def provider():
            return {
                "status": "ok",
                "components": {
                    "mongodb": {"connected": True, "database": "health", "collections_indexed": 3}
                },
            }

        async with await _client_for(_make_handler(status_provider=provider)) as client:
            resp = await client.get("/ready")

        assert resp.status_code == 200
        assert resp.json()["components"]["mongodb"]["database"] == "health"

    @pytest.mark.asyncio
    async def test_info(self):
        async with await _client_for(_make_handler()) as client:
            resp = await client.get("/info")

        assert resp.json()["name"] == "hae-server"

    @pytest.mark.asyncio
    async def test_prometheus_metrics(self):
        async with await _client_for(_make_handler()) as client:
            await client.get("/health")
            resp = await client.get("/metrics")

        assert resp.status_code == 200
        assert "hae_http_requests_total" in resp.text
