"""Similarity retrieval over indexed Slack chunks."""

import logging
from typing import List, Optional

from langchain_core.embeddings import Embeddings

from src.models.documents import ChunkSearchResult
from src.models.errors import ConfigurationError
from src.rag.qdrant_manager import QdrantChunkStore
from src.sources.slack import SlackHistoryCollector, is_channel_id

logger = logging.getLogger(__name__)


class ChunkRetriever:
    """Embed a question and return the closest stored chunks.

    Args:
        store: Chunk store to search.
        embeddings: Embedding provider used for the query text.
        collector: Optional collector, needed only to resolve channel names to ids.
        default_top_k: Number of results when the caller does not specify one.
    """

    def __init__(
        self,
        store: QdrantChunkStore,
        embeddings: Embeddings,
        collector: Optional[SlackHistoryCollector] = None,
        default_top_k: int = 5,
    ):
        """Initialize the retriever."""
        self.store = store
        self.embeddings = embeddings
        self.collector = collector
        self.default_top_k = default_top_k

    def _channel_id(self, channel: Optional[str]) -> Optional[str]:
        if not channel:
            return None
        if is_channel_id(channel):
            return channel
        if self.collector is None:
            raise ConfigurationError(f'Channel name "{channel}" needs a Slack collector to resolve; pass a channel id')
        return self.collector.resolve_channel(channel)["id"]

    def search(
        self,
        query_text: str,
        channel: Optional[str] = None,
        top_k: Optional[int] = None,
    ) -> List[ChunkSearchResult]:
        """Search chunks similar to `query_text`.

        Args:
            query_text: Natural language query.
            channel: Channel id or name to scope the search; None searches all channels.
            top_k: Maximum number of results.

        Returns:
            List[ChunkSearchResult]: Most similar chunks first.

        Raises:
            ConfigurationError: If `channel` is a name and no collector was given.
        """
        k = top_k or self.default_top_k
        channel_id = self._channel_id(channel)
        query_embedding = self.embeddings.embed_query(query_text)
        results = self.store.search(query_embedding, top_k=k, channel_id=channel_id)
        logger.debug(f"search: channel={channel_id or 'all'} k={k} results={len(results)}")
        return results
