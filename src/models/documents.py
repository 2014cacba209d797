"""Data models shared by the collector, chunker and chunk store.

Slack timestamps are kept as the strings the API returns ("1700000000.000100");
they sort chronologically once converted with `ts_to_float`.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def ts_to_float(ts: Optional[str]) -> float:
    """Convert a Slack timestamp string to seconds since the epoch."""
    if ts is None or ts == "":
        return 0.0
    return float(ts)


def ts_to_datetime(ts: Optional[str]) -> datetime:
    """Convert a Slack timestamp string to an aware UTC datetime."""
    return datetime.fromtimestamp(ts_to_float(ts), tz=timezone.utc)


def make_chunk_key(channel_id: str, is_thread: bool, anchor_ts: str, end_ts: str) -> str:
    """Build the stable identity of a chunk.

    The anchor is the thread root for thread chunks and the first message for
    window chunks. Re-indexing the same message range always yields the same key.

    Args:
        channel_id: Slack channel id.
        is_thread: Whether the chunk covers a whole thread.
        anchor_ts: `thread_ts` for threads, `start_ts` for windows.
        end_ts: Timestamp of the last message in the chunk.

    Returns:
        A deterministic key such as "C123:thread:1700000000.000100:1700000300.000200".
    """
    kind = "thread" if is_thread else "window"
    return f"{channel_id}:{kind}:{anchor_ts}:{end_ts}"


class SlackMessage(BaseModel):
    """A single message as returned by conversations.history / conversations.replies."""

    model_config = ConfigDict(frozen=True)

    ts: str
    channel: str
    text: str = ""
    user: Optional[str] = None
    thread_ts: Optional[str] = None
    subtype: Optional[str] = None
    bot_id: Optional[str] = None
    username: Optional[str] = None

    @classmethod
    def from_api(cls, raw: Dict[str, Any], channel_id: str) -> "SlackMessage":
        """Build a message from a raw Slack API payload."""
        bot_profile = raw.get("bot_profile") or {}
        return cls(
            ts=str(raw["ts"]),
            channel=raw.get("channel") or channel_id,
            text=raw.get("text") or "",
            user=raw.get("user"),
            thread_ts=raw.get("thread_ts"),
            subtype=raw.get("subtype"),
            bot_id=raw.get("bot_id"),
            username=raw.get("username") or bot_profile.get("name"),
        )

    @property
    def is_thread_root(self) -> bool:
        """True if this message starts a thread."""
        return self.thread_ts is not None and self.thread_ts == self.ts

    @property
    def ts_float(self) -> float:
        """Timestamp in seconds."""
        return ts_to_float(self.ts)


class SlackChunk(BaseModel):
    """A group of messages prepared for embedding and storage."""

    team_id: str
    channel_id: str
    channel_name: Optional[str] = None
    is_thread: bool
    thread_ts: Optional[str] = None
    start_ts: str
    end_ts: str
    text: str
    message_count: int = 0
    chunk_key: str = ""

    @model_validator(mode="after")
    def _fill_chunk_key(self) -> "SlackChunk":
        if not self.chunk_key:
            anchor = self.thread_ts if self.is_thread and self.thread_ts else self.start_ts
            self.chunk_key = make_chunk_key(self.channel_id, self.is_thread, anchor, self.end_ts)
        return self

    def to_payload(self) -> Dict[str, Any]:
        """Return the fields persisted alongside the vector."""
        return self.model_dump()


class StoredChunk(SlackChunk):
    """A chunk as persisted in the vector store."""

    id: str
    embedding: Optional[List[float]] = None
    updated_at: Optional[datetime] = None


class ChunkSearchResult(StoredChunk):
    """A stored chunk returned by similarity search."""

    similarity: float = Field(..., description="1 - cosine distance; higher is more similar")


class IndexingReport(BaseModel):
    """Outcome of one channel indexing run."""

    team_id: Optional[str] = None
    channel_id: Optional[str] = None
    channel_name: Optional[str] = None
    stage: str = "resolving_channel"
    failed_stage: Optional[str] = None
    messages_fetched: int = 0
    threads_attempted: int = 0
    threads_indexed: int = 0
    windows_attempted: int = 0
    windows_indexed: int = 0
    failed_chunk_keys: List[str] = Field(default_factory=list)
    oldest: Optional[str] = None
    cursor: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        """True if the run reached the final state."""
        return self.stage == "done"

    @property
    def chunks_indexed(self) -> int:
        """Total chunks stored in this run."""
        return self.threads_indexed + self.windows_indexed

    @property
    def chunks_attempted(self) -> int:
        """Total non-empty chunks the run tried to store."""
        return self.threads_attempted + self.windows_attempted
