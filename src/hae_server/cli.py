"""CLI for importing an Apple Health export into the server."""

import argparse
import asyncio
import os
import sys
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import get_settings
from .export_reader import ExportData, ExportReader, iter_payloads, open_export
from .ingest import IngestionOrchestrator
from .logging import setup_logging
from .mongo_writer import BatchUpsertWriter, create_store
from .normalizers import MetricKindRegistry

DEFAULT_FILE = "/data/export.zip"
DEFAULT_API_URL = "http://hae-server:3001/api/data"
DEFAULT_CHUNK_SIZE = 1000


class UploadAuthError(Exception):
    """Raised when the server rejects the API key."""


class ServerUnavailableError(Exception):
    """Raised on a server-side failure worth retrying."""


class ExportUploader:
    """Posts ingestion payloads to a running server."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_url: str,
        api_key: str,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
    ) -> None:
        self._client = client
        self._api_url = api_url
        self._api_key = api_key
        self._max_retries = max_retries
        self._retry_delay_seconds = retry_delay_seconds

    async def post(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Post one payload, retrying transport errors and server failures.

        Returns:
            The per-group outcome body from the server.

        Raises:
            UploadAuthError: If the server answers 401.
            ServerUnavailableError: If every attempt failed server-side.
            httpx.HTTPError: On a transport failure after the last attempt.
        """
        async for attempt_state in AsyncRetrying(
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(
                multiplier=self._retry_delay_seconds,
                min=self._retry_delay_seconds,
                max=30,
            ),
            retry=retry_if_exception_type((httpx.TransportError, ServerUnavailableError)),
            reraise=True,
        ):
            with attempt_state:
                response = await self._client.post(
                    self._api_url,
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json",
                    },
                    timeout=120.0,
                )
                if response.status_code == 401:
                    raise UploadAuthError("Server rejected the API key")
                if response.status_code in (200, 207):
                    return response.json()
                if response.status_code >= 500:
                    raise ServerUnavailableError(
                        f"Server returned {response.status_code}: {response.text[:200]}"
                    )
                response.raise_for_status()
                return response.json()
        raise ServerUnavailableError("Retries exhausted")


def _failed_groups(body: dict[str, Any]) -> list[str]:
    return [
        f"{name}: {outcome.get('error', 'unknown error')}"
        for name, outcome in body.items()
        if isinstance(outcome, dict) and not outcome.get("success", False)
    ]


def _describe(payload: dict[str, Any]) -> str:
    data = payload["data"]
    if data["metrics"]:
        batch = data["metrics"][0]
        return f"{batch['name']} ({len(batch['data'])} records)"
    return f"workouts ({len(data['workouts'])})"


async def _upload(payloads: Iterable[dict[str, Any]], api_url: str, api_key: str) -> int:
    failures = 0
    async with httpx.AsyncClient() as client:
        uploader = ExportUploader(client, api_url, api_key)
        for payload in payloads:
            try:
                body = await uploader.post(payload)
            except UploadAuthError as e:
                print(f"Error: {e}", file=sys.stderr)
                return failures + 1
            except (httpx.HTTPError, ServerUnavailableError) as e:
                failures += 1
                print(f"Failed to post {_describe(payload)}: {e}", file=sys.stderr)
                continue
            for failure in _failed_groups(body):
                failures += 1
                print(f"Partial failure for {_describe(payload)}: {failure}", file=sys.stderr)
            print(f"  posted {_describe(payload)}")
    return failures


async def _ingest_direct(payloads: Iterable[dict[str, Any]]) -> int:
    settings = get_settings()
    failures = 0
    async with create_store(settings.mongo) as store:
        orchestrator = IngestionOrchestrator(
            BatchUpsertWriter(store.database),
            registry=MetricKindRegistry(default_source=settings.app.default_source),
        )
        for payload in payloads:
            outcome = await orchestrator.ingest(payload)
            for failure in _failed_groups(dict(outcome.to_dict())):
                failures += 1
                print(f"Failed to store {_describe(payload)}: {failure}", file=sys.stderr)
            print(f"  stored {_describe(payload)}")
    return failures


def _print_summary(export: ExportData) -> None:
    print(f"Parsed {len(export.metrics)} metric kinds and {len(export.workouts)} workouts")
    for name, batch in sorted(export.metrics.items()):
        print(f"  {name}: {len(batch['data'])} records")
    if export.skipped_records or export.skipped_workouts:
        print(
            f"Skipped {export.skipped_records} records and "
            f"{export.skipped_workouts} workouts without usable values"
        )


def import_export() -> None:
    """CLI entry point for importing an Apple Health export.

    Usage:
        hae-import-export --file export.zip [--api-url URL --api-key KEY | --direct]
    """
    parser = argparse.ArgumentParser(
        description="Import an Apple Health export.zip through the ingestion pipeline"
    )
    parser.add_argument(
        "--file",
        type=Path,
        default=Path(os.getenv("EXPORT_FILE", DEFAULT_FILE)),
        help=f"Export zip, directory or export.xml (default: $EXPORT_FILE or {DEFAULT_FILE})",
    )
    parser.add_argument(
        "--api-url",
        default=os.getenv("API_URL", DEFAULT_API_URL),
        help=f"Ingestion endpoint (default: $API_URL or {DEFAULT_API_URL})",
    )
    parser.add_argument(
        "--api-key",
        default=os.getenv("API_KEY") or os.getenv("HTTP_WRITE_TOKEN"),
        help="Write token (default: $API_KEY or $HTTP_WRITE_TOKEN)",
    )
    parser.add_argument(
        "--direct",
        action="store_true",
        help="Write straight to MongoDB instead of posting to the server",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=DEFAULT_CHUNK_SIZE,
        help=f"Records per request (default: {DEFAULT_CHUNK_SIZE})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse the export and print a summary without sending anything",
    )

    args = parser.parse_args()

    if args.chunk_size < 1:
        print("Error: --chunk-size must be at least 1", file=sys.stderr)
        sys.exit(1)
    if not (args.dry_run or args.direct or args.api_key):
        print(
            "Error: no API key given (use --api-key, $API_KEY or $HTTP_WRITE_TOKEN)",
            file=sys.stderr,
        )
        sys.exit(1)

    setup_logging(get_settings().app)

    print(f"Reading Apple Health export from {args.file}")
    try:
        with open_export(args.file) as stream:
            export = ExportReader().read(stream)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    _print_summary(export)
    if args.dry_run:
        return

    payloads = iter_payloads(export, args.chunk_size)
    if args.direct:
        failures = asyncio.run(_ingest_direct(payloads))
    else:
        print(f"Posting to {args.api_url}")
        failures = asyncio.run(_upload(payloads, args.api_url, args.api_key))

    if failures:
        print(f"\nImport finished with {failures} failures", file=sys.stderr)
        sys.exit(1)
    print("\nImport finished successfully")
