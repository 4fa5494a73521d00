"""Health Auto Export server.

A service that receives health data from the Health Auto Export iOS app via
REST API, normalizes metrics and workouts into typed records, and upserts
them idempotently into MongoDB.

Modules:
    config: Configuration management using pydantic-settings
    http_handler: REST API for ingestion and queries
    ingest: Ingestion orchestrator with per-group outcomes
    mongo_writer: Idempotent bulk upserts into MongoDB
    normalizers: Normalization of the different metric shapes and workouts
    export_reader: Apple Health export.zip reader

Example:
    Run the server::

        $ hae-server

    Import a full Apple Health export::

        $ hae-import-export --file export.zip --direct
"""

__version__ = "0.1.0"

from .config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
