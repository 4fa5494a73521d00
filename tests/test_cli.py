"""Tests for the export import CLI helpers."""

import httpx
import pytest

from hae_server.cli import (
    ExportUploader,
    ServerUnavailableError,
    UploadAuthError,
    _failed_groups,
    _upload,
)

API_URL = "http://hae-server:3001/api/data"
PAYLOAD = {"data": {"metrics": [{"name": "step_count", "data": [{"qty": 1}]}], "workouts": []}}
OK_BODY = {
    "metrics": {"success": True, "message": "1 metrics saved successfully"},
    "workouts": {"success": True, "message": "no records"},
}


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _uploader(client: httpx.AsyncClient) -> ExportUploader:
    return ExportUploader(client, API_URL, "secret", max_retries=3, retry_delay_seconds=0)


class TestExportUploader:
    """Tests for ExportUploader.post."""

    @pytest.mark.asyncio
    async def test_posts_with_bearer_token(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=OK_BODY)

        async with _client(handler) as client:
            body = await _uploader(client).post(PAYLOAD)

        assert body == OK_BODY
        assert seen[0].headers["Authorization"] == "Bearer secret"
        assert seen[0].url == API_URL

    @pytest.mark.asyncio
    async def test_partial_body_returned(self):
        partial = {**OK_BODY, "workouts": {"success": False, "error": "workouts: down"}}

        async with _client(lambda request: httpx.Response(207, json=partial)) as client:
            body = await _uploader(client).post(PAYLOAD)

        assert body == partial

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        responses = iter([httpx.Response(500, text="boom"), httpx.Response(200, json=OK_BODY)])

        async with _client(lambda request: next(responses)) as client:
            body = await _uploader(client).post(PAYLOAD)

        assert body == OK_BODY

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(503, text="unavailable")

        async with _client(handler) as client:
            with pytest.raises(ServerUnavailableError):
                await _uploader(client).post(PAYLOAD)

        assert calls == 3

    @pytest.mark.asyncio
    async def test_retries_transport_errors(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise httpx.ConnectError("connection refused")
            return httpx.Response(200, json=OK_BODY)

        async with _client(handler) as client:
            assert await _uploader(client).post(PAYLOAD) == OK_BODY

        assert calls == 2

    @pytest.mark.asyncio
    async def test_unauthorized_is_not_retried(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(401, json={"error": "Unauthorized: Invalid write token"})

        async with _client(handler) as client:
            with pytest.raises(UploadAuthError):
                await _uploader(client).post(PAYLOAD)

        assert calls == 1

    @pytest.mark.asyncio
    async def test_client_error_raises(self):
        async with _client(lambda request: httpx.Response(400, json={})) as client:
            with pytest.raises(httpx.HTTPStatusError):
                await _uploader(client).post(PAYLOAD)


def test_failed_groups():
    body = {
        "metrics": {"success": True, "message": "1 metrics saved successfully"},
        "workouts": {"success": False, "error": "workouts: down"},
    }

    assert _failed_groups(body) == ["workouts: workouts: down"]


def test_no_failed_groups():
    assert _failed_groups(OK_BODY) == []


@pytest.mark.asyncio
async def test_upload_counts_partial_failures(monkeypatch, capsys):
    partial = {**OK_BODY, "metrics": {"success": False, "error": "step_count: down"}}
    transport = httpx.MockTransport(lambda request: httpx.Response(207, json=partial))
    real_client = httpx.AsyncClient

    monkeypatch.setattr(httpx, "AsyncClient", lambda: real_client(transport=transport))

    failures = await _upload([PAYLOAD, PAYLOAD], API_URL, "secret")

    assert failures == 2
    assert "Partial failure for step_count (1 records)" in capsys.readouterr().err
