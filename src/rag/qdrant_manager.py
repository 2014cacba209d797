"""Qdrant-based chunk store.

Stores Slack chunks with their embeddings and answers nearest-neighbour queries.
Each chunk maps to exactly one point: the point id is a UUIDv5 of the chunk key,
so re-indexing a range overwrites the same point instead of adding a duplicate.
"""

import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchValue,
    PayloadSchemaType,
    PointIdsList,
    PointStruct,
    VectorParams,
)

from src.models.config import QdrantConfig
from src.models.documents import ChunkSearchResult, SlackChunk, StoredChunk, ts_to_float
from src.models.errors import ConfigurationError, StorageConflictError

logger = logging.getLogger(__name__)

CHUNK_ID_NAMESPACE = uuid.UUID("6f1c2a52-9a55-4d0e-9a3c-51a2c4f0d7b1")
INDEXED_FIELDS = ("channel_id", "chunk_key", "thread_ts")


def chunk_point_id(chunk_key: str) -> str:
    """Deterministic Qdrant point id for a chunk key."""
    return str(uuid.uuid5(CHUNK_ID_NAMESPACE, chunk_key))


def create_qdrant_client(config: QdrantConfig) -> QdrantClient:
    """Create a Qdrant client; ':memory:' gives a local in-process store."""
    if config.url == ":memory:":
        return QdrantClient(location=":memory:")
    api_key = os.getenv("QDRANT_API_KEY")
    return QdrantClient(url=config.url, api_key=api_key, timeout=config.timeout)


def _match(key: str, value: Any) -> FieldCondition:
    return FieldCondition(key=key, match=MatchValue(value=value))


class QdrantChunkStore:
    """Persist chunks and search them by cosine similarity.

    The collection is not created implicitly: call `ensure_collection()` once at
    startup and pass the ready store into the pipeline.

    Args:
        client: Qdrant client.
        collection_name: Collection holding chunk points.
        vector_size: Embedding dimension; every vector must have this length.
    """

    @classmethod
    def from_config(cls, config: QdrantConfig, client: Optional[QdrantClient] = None) -> "QdrantChunkStore":
        """Build a store from configuration."""
        return cls(
            client=client or create_qdrant_client(config),
            collection_name=config.collection_name,
            vector_size=config.vector_size,
        )

    def __init__(self, client: QdrantClient, collection_name: str, vector_size: int):
        """Initialize the store."""
        if vector_size <= 0:
            raise ConfigurationError("vector_size must be positive")
        self.client = client
        self.collection_name = collection_name
        self.vector_size = vector_size

    def ensure_collection(self) -> None:
        """Create the collection and payload indexes if missing.

        Raises:
            ConfigurationError: If the collection exists with another vector size or distance.
        """
        if self.client.collection_exists(self.collection_name):
            info = self.client.get_collection(self.collection_name)
            vectors = info.config.params.vectors
            if not isinstance(vectors, VectorParams):
                raise ConfigurationError(f"Collection {self.collection_name} uses named vectors; expected one vector")
            if vectors.size != self.vector_size:
                raise ConfigurationError(
                    f"Collection {self.collection_name} has vector size {vectors.size}, "
                    f"configured size is {self.vector_size}"
                )
            if vectors.distance != Distance.COSINE:
                raise ConfigurationError(f"Collection {self.collection_name} must use cosine distance")
            return

        self.client.create_collection(
            collection_name=self.collection_name,
            vectors_config=VectorParams(size=self.vector_size, distance=Distance.COSINE),
        )
        for field_name in INDEXED_FIELDS:
            self.client.create_payload_index(
                collection_name=self.collection_name,
                field_name=field_name,
                field_schema=PayloadSchemaType.KEYWORD,
            )
        logger.info(f"Created collection {self.collection_name} (vector size: {self.vector_size})")

    def _check_vector(self, vector: Sequence[float]) -> List[float]:
        if len(vector) != self.vector_size:
            raise ConfigurationError(
                f"Embedding has {len(vector)} dimensions, collection {self.collection_name} expects {self.vector_size}"
            )
        return [float(v) for v in vector]

    def _to_stored(self, point: Any) -> StoredChunk:
        payload = dict(point.payload or {})
        vector = point.vector if isinstance(point.vector, list) else None
        return StoredChunk(id=str(point.id), embedding=vector, **payload)

    def upsert(self, chunk: SlackChunk, embedding: Sequence[float]) -> str:
        """Insert or fully replace the chunk stored under `chunk.chunk_key`.

        Args:
            chunk: The chunk to store.
            embedding: Its embedding vector.

        Returns:
            The stored point id (stable for a given chunk key).
        """
        vector = self._check_vector(embedding)
        point_id = chunk_point_id(chunk.chunk_key)
        payload = chunk.to_payload()
        payload["updated_at"] = datetime.now(timezone.utc).isoformat()
        self.client.upsert(
            collection_name=self.collection_name,
            points=[PointStruct(id=point_id, vector=vector, payload=payload)],
            wait=True,
        )
        logger.debug(f"Upserted chunk {chunk.chunk_key} as {point_id}")
        return point_id

    def search(
        self,
        query_embedding: Sequence[float],
        top_k: int = 5,
        channel_id: Optional[str] = None,
    ) -> List[ChunkSearchResult]:
        """Return up to `top_k` chunks by descending cosine similarity.

        Args:
            query_embedding: Query vector.
            top_k: Maximum number of results.
            channel_id: Restrict to one channel; None searches every chunk.

        Returns:
            List[ChunkSearchResult]: Results with `similarity` = 1 - cosine distance.
        """
        vector = self._check_vector(query_embedding)
        query_filter = Filter(must=[_match("channel_id", channel_id)]) if channel_id else None
        response = self.client.query_points(
            collection_name=self.collection_name,
            query=vector,
            query_filter=query_filter,
            limit=top_k,
            with_payload=True,
            with_vectors=False,
        )
        results = []
        for point in response.points:
            payload = dict(point.payload or {})
            results.append(ChunkSearchResult(id=str(point.id), similarity=float(point.score), **payload))
        return results

    def get(self, chunk_key: str, with_vector: bool = False) -> Optional[StoredChunk]:
        """Return the chunk stored under `chunk_key`, or None.

        Raises:
            StorageConflictError: If more than one point carries the key.
        """
        if self.count_key(chunk_key) > 1:
            raise StorageConflictError(f"More than one stored chunk for key {chunk_key}")
        points = self.client.retrieve(
            collection_name=self.collection_name,
            ids=[chunk_point_id(chunk_key)],
            with_payload=True,
            with_vectors=with_vector,
        )
        return self._to_stored(points[0]) if points else None

    def count_key(self, chunk_key: str) -> int:
        """Number of points carrying `chunk_key` (0 or 1 in a healthy store)."""
        result = self.client.count(
            collection_name=self.collection_name,
            count_filter=Filter(must=[_match("chunk_key", chunk_key)]),
            exact=True,
        )
        return result.count

    def count(self, channel_id: Optional[str] = None) -> int:
        """Number of stored chunks, optionally for one channel."""
        count_filter = Filter(must=[_match("channel_id", channel_id)]) if channel_id else None
        return self.client.count(collection_name=self.collection_name, count_filter=count_filter, exact=True).count

    def _delete(self, points_filter: Filter) -> int:
        matching = self.client.count(
            collection_name=self.collection_name, count_filter=points_filter, exact=True
        ).count
        if matching:
            self.client.delete(
                collection_name=self.collection_name,
                points_selector=FilterSelector(filter=points_filter),
                wait=True,
            )
        return matching

    def prune_thread(self, channel_id: str, thread_ts: str, keep_key: str) -> int:
        """Delete older chunks of a thread that has since grown; keeps `keep_key`.

        Returns:
            Number of chunks deleted.
        """
        deleted = self._delete(
            Filter(
                must=[_match("channel_id", channel_id), _match("thread_ts", thread_ts)],
                must_not=[_match("chunk_key", keep_key)],
            )
        )
        if deleted:
            logger.info(f"Pruned {deleted} superseded chunks of thread {channel_id}/{thread_ts}")
        return deleted

    def prune_windows(self, channel_id: str, since_ts: str, keep_keys: Sequence[str]) -> int:
        """Delete window chunks starting at or after `since_ts` whose key is not in `keep_keys`.

        Used after a range of a channel has been re-chunked, to drop windows
        whose boundaries no longer exist.

        Returns:
            Number of chunks deleted.
        """
        since = ts_to_float(since_ts)
        keep = set(keep_keys)
        window_filter = Filter(must=[_match("channel_id", channel_id), _match("is_thread", False)])
        stale = []
        offset = None
        while True:
            points, offset = self.client.scroll(
                collection_name=self.collection_name,
                scroll_filter=window_filter,
                limit=256,
                offset=offset,
                with_payload=["chunk_key", "start_ts"],
                with_vectors=False,
            )
            for point in points:
                payload = point.payload or {}
                if payload.get("chunk_key") not in keep and ts_to_float(payload.get("start_ts")) >= since:
                    stale.append(point.id)
            if offset is None:
                break
        if stale:
            self.client.delete(
                collection_name=self.collection_name,
                points_selector=PointIdsList(points=stale),
                wait=True,
            )
            logger.info(f"Pruned {len(stale)} superseded window chunks of channel {channel_id}")
        return len(stale)

    def delete_channel(self, channel_id: str) -> int:
        """Delete every chunk of a channel; returns the number deleted."""
        deleted = self._delete(Filter(must=[_match("channel_id", channel_id)]))
        logger.info(f"Deleted {deleted} chunks of channel {channel_id}")
        return deleted

    def stats(self) -> Dict[str, Any]:
        """Aggregate chunk counts per channel.

        Returns:
            Dictionary containing:
            - total_chunks: number of stored points
            - channels: channel_id -> {channel_name, chunks, threads, windows, messages}
        """
        channels: Dict[str, Dict[str, Any]] = {}
        total = 0
        offset = None
        while True:
            points, offset = self.client.scroll(
                collection_name=self.collection_name,
                limit=256,
                offset=offset,
                with_payload=True,
                with_vectors=False,
            )
            for point in points:
                payload = point.payload or {}
                total += 1
                channel_id = str(payload.get("channel_id", "unknown"))
                entry = channels.setdefault(
                    channel_id,
                    {"channel_name": payload.get("channel_name"), "chunks": 0, "threads": 0, "windows": 0, "messages": 0},
                )
                entry["chunks"] += 1
                entry["threads" if payload.get("is_thread") else "windows"] += 1
                entry["messages"] += int(payload.get("message_count") or 0)
            if offset is None:
                break
        return {"total_chunks": total, "channels": channels, "collection": self.collection_name}

    def clear(self) -> None:
        """Drop and recreate the collection."""
        self.client.delete_collection(collection_name=self.collection_name)
        self.ensure_collection()
        logger.info(f"Cleared collection {self.collection_name}")
