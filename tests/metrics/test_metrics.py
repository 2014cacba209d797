from src.metrics.metrics import (
    API_CALLS,
    API_LATENCY,
    API_RETRIES,
    CHUNKS_FAILED,
    CHUNKS_INDEXED,
    OP_ITEMS,
    OP_LATENCY,
    USER_CACHE_HITS,
)


def test_api_latency_metric():
    assert API_LATENCY._name == "source_api_latency_seconds"
    assert API_LATENCY._labelnames == ("source", "source_id", "method", "status")


def test_api_calls_metric():
    # prometheus_client strips the _total suffix from counter names
    assert API_CALLS._name == "source_api_calls"
    assert API_CALLS._labelnames == ("source", "source_id", "method", "status")


def test_api_retries_metric():
    assert API_RETRIES._name == "source_api_retries"
    assert API_RETRIES._labelnames == ("operation",)


def test_operation_metrics():
    assert OP_LATENCY._name == "source_operation_latency_seconds"
    assert OP_LATENCY._labelnames == ("source", "source_id", "operation")
    assert OP_ITEMS._labelnames == ("source", "source_id", "operation")


def test_user_cache_metric():
    assert USER_CACHE_HITS._name == "slack_user_cache_hits"


def test_chunk_outcome_metrics():
    assert CHUNKS_INDEXED._name == "indexer_chunks_indexed"
    assert CHUNKS_FAILED._name == "indexer_chunks_failed"
    assert CHUNKS_INDEXED._labelnames == ("kind",)


def test_retry_counter_increments():
    before = API_RETRIES.labels(operation="test.metrics")._value.get()
    API_RETRIES.labels(operation="test.metrics").inc()
    assert API_RETRIES.labels(operation="test.metrics")._value.get() == before + 1
