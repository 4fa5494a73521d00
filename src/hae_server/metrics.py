"""Prometheus metrics definitions for the ingestion server."""

from prometheus_client import Counter, Histogram, Info

# -- Service info --
SERVICE_INFO = Info("hae_server", "Health Auto Export server info")

# -- Ingestion --
INGEST_REQUESTS = Counter(
    "hae_ingest_requests_total",
    "Total ingestion calls by outcome class",
    ["outcome"],
)
RECORDS_NORMALIZED = Counter(
    "hae_records_normalized_total",
    "Records that passed normalization",
    ["group"],
)
RECORDS_DROPPED = Counter(
    "hae_records_dropped_total",
    "Records dropped during normalization",
    ["group", "reason"],
)

# -- Document store writes --
STORE_WRITES = Counter(
    "hae_store_writes_total",
    "Total bulk upsert operations",
    ["collection", "status"],
)
STORE_DOCUMENTS_UPSERTED = Counter(
    "hae_store_documents_upserted_total",
    "Documents inserted or replaced by bulk upserts",
)
STORE_WRITE_DURATION = Histogram(
    "hae_store_write_duration_seconds",
    "Bulk upsert latency",
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# -- HTTP --
HTTP_REQUESTS_TOTAL = Counter(
    "hae_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
