"""Index one Slack channel end to end: collect, chunk, embed, store, advance cursor.

Run states:

    resolving_channel -> fetching_history -> partitioning -> embedding_storing
    -> advancing_cursor -> done

`failed` is reachable from any state; the report keeps the stage that failed.
Per-chunk embed/store failures are logged and skipped so one bad chunk does not
block the rest of a backfill. Configuration errors always abort.

A run resumed from the cursor only windows messages newer than the cursor. When
every window of a run is stored, older window chunks starting inside the
rebuilt range are pruned, so a range re-chunked after a failure does not keep
its previous boundaries.
"""

import logging
from enum import Enum
from time import perf_counter
from typing import List, Optional, Sequence

from langchain_core.embeddings import Embeddings

from src.metrics.metrics import CHUNKS_FAILED, CHUNKS_INDEXED, OP_LATENCY
from src.models.documents import IndexingReport, SlackChunk, SlackMessage, ts_to_float
from src.models.errors import ConfigurationError, IndexingError, RemoteNotFoundError, StorageConflictError
from src.rag.qdrant_manager import QdrantChunkStore
from src.sources.checkpoint import CursorStore
from src.sources.chunker import SlackChunker, partition_messages
from src.sources.slack import SlackHistoryCollector

logger = logging.getLogger(__name__)

FATAL_ERRORS = (ConfigurationError, StorageConflictError)


class IndexingStage(str, Enum):
    """States of a channel indexing run."""

    resolving_channel = "resolving_channel"
    fetching_history = "fetching_history"
    partitioning = "partitioning"
    embedding_storing = "embedding_storing"
    advancing_cursor = "advancing_cursor"
    done = "done"
    failed = "failed"


def next_cursor(
    messages: Sequence[SlackMessage],
    failed_start_ts: Sequence[str],
    current: Optional[str],
) -> Optional[str]:
    """Pick the cursor value after a run.

    Without failures this is the newest fetched message. With failures the
    cursor only moves up to the newest message strictly older than the earliest
    failed chunk, so the failed range is fetched again next time. The cursor
    never moves backwards.

    Args:
        messages: Fetched history in chronological order.
        failed_start_ts: Start timestamps of chunks that failed to store.
        current: Cursor stored before the run.

    Returns:
        The new cursor, or `current` if it should not move.
    """
    if not messages:
        return current
    if failed_start_ts:
        barrier = min(ts_to_float(ts) for ts in failed_start_ts)
        candidates = [m.ts for m in messages if m.ts_float < barrier]
        candidate = candidates[-1] if candidates else None
    else:
        candidate = messages[-1].ts
    if candidate is None:
        return current
    if current is not None and ts_to_float(candidate) <= ts_to_float(current):
        return current
    return candidate


class ChannelIndexer:
    """Drive the indexing pipeline for Slack channels.

    Args:
        collector: Slack history collector.
        store: Chunk store, already initialised with `ensure_collection()`.
        embeddings: Embedding provider.
        cursors: Cursor store.
        max_messages_per_window: Window bound on message count.
        max_window_minutes: Window bound on time span.
        use_cursor: Resume from the stored cursor when `oldest` is not given.
    """

    def __init__(
        self,
        collector: SlackHistoryCollector,
        store: QdrantChunkStore,
        embeddings: Embeddings,
        cursors: CursorStore,
        max_messages_per_window: int = 20,
        max_window_minutes: float = 10,
        use_cursor: bool = True,
    ):
        """Initialize the indexer."""
        self.collector = collector
        self.store = store
        self.embeddings = embeddings
        self.cursors = cursors
        self.max_messages_per_window = max_messages_per_window
        self.max_window_minutes = max_window_minutes
        self.use_cursor = use_cursor

    def _make_chunker(self, bot_user_id: Optional[str]) -> SlackChunker:
        resolver = self.collector.user_resolver
        return SlackChunker(
            resolve_display_name=resolver.display_name if resolver else None,
            bot_user_id=bot_user_id,
        )

    def _store_chunk(self, chunk: SlackChunk, kind: str) -> bool:
        """Embed and upsert one chunk; False if it failed and was skipped."""
        try:
            embedding = self.embeddings.embed_query(chunk.text)
            self.store.upsert(chunk, embedding)
            if chunk.is_thread and chunk.thread_ts:
                self.store.prune_thread(chunk.channel_id, chunk.thread_ts, chunk.chunk_key)
        except FATAL_ERRORS:
            raise
        except Exception as e:
            CHUNKS_FAILED.labels(kind=kind).inc()
            logger.error(f"Failed to index {kind} chunk {chunk.chunk_key}: {e}")
            return False
        CHUNKS_INDEXED.labels(kind=kind).inc()
        return True

    def index_channel(
        self,
        channel: str,
        oldest: Optional[str] = None,
        use_cursor: Optional[bool] = None,
    ) -> IndexingReport:
        """Index one channel by id or name.

        Args:
            channel: Channel id (e.g. C0123ABCD) or name (with or without '#').
            oldest: Inclusive lower bound timestamp; overrides the cursor.
            use_cursor: Resume from the stored cursor when `oldest` is None
                (defaults to the indexer setting).

        Returns:
            IndexingReport: Counts and final cursor, or the failed stage and error.

        Raises:
            ConfigurationError: On invalid credentials or vector size mismatch.
        """
        report = IndexingReport()
        stage = IndexingStage.resolving_channel
        started = perf_counter()
        try:
            identity = self.collector.identify()
            team_id = identity.get("team_id") or "unknown"
            report.team_id = team_id
            channel_obj = self.collector.resolve_channel(channel)
            channel_id = channel_obj["id"]
            channel_name = channel_obj.get("name") or channel_id
            report.channel_id, report.channel_name = channel_id, channel_name

            current_cursor = self.cursors.get(team_id, channel_id)
            resume = self.use_cursor if use_cursor is None else use_cursor
            effective_oldest = oldest if oldest is not None else (current_cursor if resume else None)
            # The cursor message was already indexed; history is fetched inclusively
            resume_after = effective_oldest if oldest is None else None
            report.oldest = effective_oldest
            logger.info(f"Indexing #{channel_name} ({channel_id}) oldest={effective_oldest or 'beginning'}")

            stage = IndexingStage.fetching_history
            report.stage = stage.value
            messages = self.collector.fetch_history(channel_id, oldest=effective_oldest)
            report.messages_fetched = len(messages)
            logger.info(f"Fetched {len(messages)} messages from #{channel_name}")

            stage = IndexingStage.partitioning
            report.stage = stage.value
            thread_roots, non_thread = partition_messages(messages)
            if resume_after is not None:
                boundary = ts_to_float(resume_after)
                non_thread = [m for m in non_thread if m.ts_float > boundary]
            logger.info(f"Found {len(thread_roots)} thread roots and {len(non_thread)} non-thread messages")

            stage = IndexingStage.embedding_storing
            report.stage = stage.value
            chunker = self._make_chunker(identity.get("user_id"))
            failed_start: List[str] = []

            for thread_ts in thread_roots:
                try:
                    thread_msgs = self.collector.fetch_thread_replies(channel_id, thread_ts)
                except RemoteNotFoundError as e:
                    logger.warning(f"Thread {channel_id}/{thread_ts} disappeared, skipping: {e}")
                    continue
                except FATAL_ERRORS:
                    raise
                except Exception as e:
                    logger.error(f"Failed to fetch thread {channel_id}/{thread_ts}: {e}")
                    CHUNKS_FAILED.labels(kind="thread").inc()
                    report.threads_attempted += 1
                    report.failed_chunk_keys.append(f"{channel_id}:thread:{thread_ts}")
                    failed_start.append(thread_ts)
                    continue
                chunk = chunker.build_thread_chunk(team_id, channel_id, thread_ts, thread_msgs, channel_name)
                if chunk is None:
                    continue
                report.threads_attempted += 1
                if self._store_chunk(chunk, "thread"):
                    report.threads_indexed += 1
                else:
                    report.failed_chunk_keys.append(chunk.chunk_key)
                    failed_start.append(chunk.start_ts)

            windows = chunker.build_windows(
                team_id,
                channel_id,
                non_thread,
                max_messages=self.max_messages_per_window,
                max_minutes=self.max_window_minutes,
                channel_name=channel_name,
            )
            for chunk in windows:
                report.windows_attempted += 1
                if self._store_chunk(chunk, "window"):
                    report.windows_indexed += 1
                else:
                    report.failed_chunk_keys.append(chunk.chunk_key)
                    failed_start.append(chunk.start_ts)
            if windows and report.windows_indexed == report.windows_attempted:
                self.store.prune_windows(channel_id, windows[0].start_ts, [c.chunk_key for c in windows])

            stage = IndexingStage.advancing_cursor
            report.stage = stage.value
            new_cursor = next_cursor(messages, failed_start, current_cursor)
            if new_cursor is not None and new_cursor != current_cursor:
                self.cursors.set(team_id, channel_id, new_cursor)
            elif failed_start:
                logger.warning(f"Cursor for #{channel_name} held at {current_cursor} because of failed chunks")
            report.cursor = new_cursor

            report.stage = IndexingStage.done.value
            logger.info(
                f"Indexed #{channel_name}: threads={report.threads_indexed}/{report.threads_attempted} "
                f"windows={report.windows_indexed}/{report.windows_attempted} cursor={report.cursor or 'n/a'}"
            )
            return report
        except ConfigurationError:
            raise
        except Exception as e:
            failure = e if isinstance(e, IndexingError) else IndexingError(stage.value, str(e))
            report.failed_stage = failure.stage
            report.stage = IndexingStage.failed.value
            report.error = str(e)
            logger.error(f"Indexing {channel} failed during {failure.stage}: {e}")
            return report
        finally:
            OP_LATENCY.labels(source="slack", source_id=self.collector.source_id, operation="index_channel").observe(
                perf_counter() - started
            )

    def index_all_channels(self, oldest: Optional[str] = None) -> List[IndexingReport]:
        """Index every channel the bot is a member of; a failing channel does not stop the rest."""
        reports = []
        for channel in self.collector.list_channels():
            reports.append(self.index_channel(channel["id"], oldest=oldest))
        return reports
