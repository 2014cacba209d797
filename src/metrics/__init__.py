"""Metrics module for Prometheus monitoring."""

from .metrics import (
    API_CALLS,
    API_LATENCY,
    API_RETRIES,
    CHUNKS_FAILED,
    CHUNKS_INDEXED,
    OP_ITEMS,
    OP_LATENCY,
    USER_CACHE_HITS,
    USER_CACHE_MISSES,
)

__all__ = [
    "API_CALLS",
    "API_LATENCY",
    "API_RETRIES",
    "CHUNKS_FAILED",
    "CHUNKS_INDEXED",
    "OP_ITEMS",
    "OP_LATENCY",
    "USER_CACHE_HITS",
    "USER_CACHE_MISSES",
]
