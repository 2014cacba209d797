"""Prometheus metrics for Slack API traffic and indexing runs.

Nothing is exported over HTTP here; embedders of the indexer can expose the
default registry with `prometheus_client.start_http_server`.
"""

from prometheus_client import Counter, Histogram

API_LABELS = ("source", "source_id", "method", "status")
OP_LABELS = ("source", "source_id", "operation")

# Per request to the Slack Web API (one sample per attempt, retries included)
API_LATENCY = Histogram(
    "source_api_latency_seconds",
    "Slack Web API request latency in seconds",
    API_LABELS,
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float("inf")),
)
API_CALLS = Counter("source_api_calls_total", "Slack Web API requests by method and status", API_LABELS)
API_RETRIES = Counter(
    "source_api_retries_total",
    "Rate limited requests that were retried after a backoff",
    ["operation"],
)

# Per collector or indexer operation (a full pagination walk, a channel run)
OP_LATENCY = Histogram(
    "source_operation_latency_seconds",
    "Wall time of collector and indexer operations",
    OP_LABELS,
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, float("inf")),
)
OP_ITEMS = Histogram(
    "source_operation_items",
    "Messages or channels returned by a collector operation",
    OP_LABELS,
    buckets=(0, 1, 5, 10, 20, 50, 100, 200, 500, 1000, 5000, float("inf")),
)

USER_CACHE_HITS = Counter("slack_user_cache_hits_total", "users.info lookups answered from the cache")
USER_CACHE_MISSES = Counter("slack_user_cache_misses_total", "users.info lookups that went to Slack")

CHUNKS_INDEXED = Counter("indexer_chunks_indexed_total", "Chunks embedded and upserted", ["kind"])
CHUNKS_FAILED = Counter("indexer_chunks_failed_total", "Chunks skipped after an embed or store failure", ["kind"])
