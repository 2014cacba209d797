"""Tests for the channel indexing pipeline."""

import os
from unittest.mock import MagicMock

import pytest

from src.indexer.orchestrator import ChannelIndexer, next_cursor
from src.models.errors import (
    ConfigurationError,
    RateLimitedError,
    RemoteNotFoundError,
    RemoteTransientError,
    StorageConflictError,
)
from src.sources.checkpoint import CursorStore
from tests.helpers import FakeEmbeddings, make_message

BASE = 1700000000
CHANNEL = "C0123ABCD"


def ts(offset):
    return f"{BASE + offset}.000100"


class FailingEmbeddings(FakeEmbeddings):
    """Fails for any text containing 'boom'."""

    def embed_query(self, text):
        if "boom" in text:
            raise RuntimeError("embedding service unavailable")
        return super().embed_query(text)


def make_collector(history, threads=None):
    collector = MagicMock()
    collector.source_id = "test"
    collector.user_resolver = None
    collector.identify.return_value = {"team_id": "T1", "user_id": "UBOT"}
    collector.resolve_channel.return_value = {"id": CHANNEL, "name": "dev"}
    collector.fetch_history.return_value = history
    threads = threads or {}

    def replies(channel_id, thread_ts):
        value = threads[thread_ts]
        if isinstance(value, Exception):
            raise value
        return value

    collector.fetch_thread_replies.side_effect = replies
    return collector


@pytest.fixture
def cursors(temp_dir):
    return CursorStore(os.path.join(temp_dir, "cursors.json"))


def sample_history():
    root = ts(120)
    history = [
        make_message(ts(0), "good morning"),
        make_message(ts(60), "standup in 5"),
        make_message(root, "release checklist?", thread_ts=root),
        make_message(ts(4000), "anyone around?"),
    ]
    thread = [
        make_message(root, "release checklist?", thread_ts=root),
        make_message(ts(180), "see the wiki", user="U2", thread_ts=root),
        make_message(ts(9000), "done, thanks", thread_ts=root),
    ]
    return history, {root: thread}


def make_indexer(collector, store, embeddings, cursors, **kwargs):
    return ChannelIndexer(collector, store, embeddings, cursors, max_messages_per_window=20, max_window_minutes=10, **kwargs)


def test_index_channel_stores_threads_and_windows(memory_store, fake_embeddings, cursors):
    history, threads = sample_history()
    collector = make_collector(history, threads)

    report = make_indexer(collector, memory_store, fake_embeddings, cursors).index_channel("#dev")

    assert report.succeeded
    assert report.messages_fetched == 4
    assert (report.threads_attempted, report.threads_indexed) == (1, 1)
    assert (report.windows_attempted, report.windows_indexed) == (2, 2)
    assert report.failed_chunk_keys == []
    assert memory_store.count(CHANNEL) == 3
    assert report.cursor == ts(4000)
    assert cursors.get("T1", CHANNEL) == ts(4000)

    thread_chunk = memory_store.get(f"{CHANNEL}:thread:{ts(120)}:{ts(9000)}")
    assert thread_chunk is not None
    assert thread_chunk.message_count == 3
    assert thread_chunk.channel_name == "dev"


def test_rerun_is_idempotent(memory_store, fake_embeddings, cursors):
    history, threads = sample_history()
    indexer = make_indexer(make_collector(history, threads), memory_store, fake_embeddings, cursors)

    indexer.index_channel(CHANNEL, use_cursor=False)
    indexer.index_channel(CHANNEL, use_cursor=False)

    assert memory_store.count() == 3


def test_stored_cursor_is_used_as_oldest(memory_store, fake_embeddings, cursors):
    cursors.set("T1", CHANNEL, ts(10))
    collector = make_collector([])

    report = make_indexer(collector, memory_store, fake_embeddings, cursors).index_channel(CHANNEL)

    collector.fetch_history.assert_called_once_with(CHANNEL, oldest=ts(10))
    assert report.oldest == ts(10)
    assert report.cursor == ts(10)
    assert cursors.get("T1", CHANNEL) == ts(10)


def test_incremental_run_does_not_reindex_cursor_message(memory_store, fake_embeddings, cursors):
    first = make_collector([make_message(ts(0), "morning"), make_message(ts(60), "standup")])
    make_indexer(first, memory_store, fake_embeddings, cursors).index_channel(CHANNEL)
    assert cursors.get("T1", CHANNEL) == ts(60)
    assert memory_store.count(CHANNEL) == 1

    # Inclusive oldest returns the cursor message again
    unchanged = make_collector([make_message(ts(60), "standup")])
    report = make_indexer(unchanged, memory_store, fake_embeddings, cursors).index_channel(CHANNEL)

    assert report.windows_attempted == 0
    assert memory_store.count(CHANNEL) == 1

    grown = make_collector([make_message(ts(60), "standup"), make_message(ts(3000), "lunch?")])
    report = make_indexer(grown, memory_store, fake_embeddings, cursors).index_channel(CHANNEL)

    assert report.windows_indexed == 1
    assert memory_store.count(CHANNEL) == 2
    assert memory_store.get(f"{CHANNEL}:window:{ts(3000)}:{ts(3000)}") is not None
    assert cursors.get("T1", CHANNEL) == ts(3000)


def test_rerun_after_failure_replaces_shifted_windows(memory_store, fake_embeddings, cursors):
    history = [
        make_message(ts(0), "all good"),
        make_message(ts(1000), "boom goes the build"),
        make_message(ts(2000), "fixed now"),
    ]
    make_indexer(make_collector(history), memory_store, FailingEmbeddings(), cursors).index_channel(CHANNEL)
    assert cursors.get("T1", CHANNEL) == ts(0)

    # The retry fetches from the cursor; a new message joins the last window
    retry_history = history + [make_message(ts(2100), "deploying again")]
    report = make_indexer(make_collector(retry_history), memory_store, fake_embeddings, cursors).index_channel(CHANNEL)

    assert report.windows_indexed == 2
    assert memory_store.count(CHANNEL) == 3
    assert memory_store.get(f"{CHANNEL}:window:{ts(2000)}:{ts(2000)}") is None
    assert memory_store.get(f"{CHANNEL}:window:{ts(2000)}:{ts(2100)}") is not None
    assert memory_store.get(f"{CHANNEL}:window:{ts(1000)}:{ts(1000)}") is not None
    assert cursors.get("T1", CHANNEL) == ts(2100)


def test_explicit_oldest_overrides_cursor(memory_store, fake_embeddings, cursors):
    cursors.set("T1", CHANNEL, ts(10))
    collector = make_collector([])

    make_indexer(collector, memory_store, fake_embeddings, cursors).index_channel(CHANNEL, oldest=ts(5))

    collector.fetch_history.assert_called_once_with(CHANNEL, oldest=ts(5))


def test_cursor_ignored_when_disabled(memory_store, fake_embeddings, cursors):
    cursors.set("T1", CHANNEL, ts(10))
    collector = make_collector([])

    make_indexer(collector, memory_store, fake_embeddings, cursors, use_cursor=False).index_channel(CHANNEL)

    collector.fetch_history.assert_called_once_with(CHANNEL, oldest=None)


def test_partial_failure_holds_cursor_before_failed_chunk(memory_store, cursors):
    history = [
        make_message(ts(0), "all good"),
        make_message(ts(1000), "boom goes the build"),
        make_message(ts(2000), "fixed now"),
    ]
    collector = make_collector(history)

    report = make_indexer(collector, memory_store, FailingEmbeddings(), cursors).index_channel(CHANNEL)

    assert report.succeeded
    assert report.windows_attempted == 3
    assert report.windows_indexed == 2
    assert report.failed_chunk_keys == [f"{CHANNEL}:window:{ts(1000)}:{ts(1000)}"]
    assert report.cursor == ts(0)
    assert cursors.get("T1", CHANNEL) == ts(0)
    assert memory_store.count() == 2


def test_failed_first_chunk_leaves_cursor_unset(memory_store, cursors):
    collector = make_collector([make_message(ts(0), "boom"), make_message(ts(2000), "ok")])

    report = make_indexer(collector, memory_store, FailingEmbeddings(), cursors).index_channel(CHANNEL)

    assert report.cursor is None
    assert cursors.get("T1", CHANNEL) is None


def test_history_failure_reports_stage(memory_store, fake_embeddings, cursors):
    cursors.set("T1", CHANNEL, ts(10))
    collector = make_collector([])
    collector.fetch_history.side_effect = RateLimitedError("still limited", method="conversations.history")

    report = make_indexer(collector, memory_store, fake_embeddings, cursors).index_channel(CHANNEL)

    assert not report.succeeded
    assert report.stage == "failed"
    assert report.failed_stage == "fetching_history"
    assert "still limited" in report.error
    assert cursors.get("T1", CHANNEL) == ts(10)


def test_unknown_channel_fails_while_resolving(memory_store, fake_embeddings, cursors):
    collector = make_collector([])
    collector.resolve_channel.side_effect = RemoteNotFoundError('Channel "nope" not found')

    report = make_indexer(collector, memory_store, fake_embeddings, cursors).index_channel("nope")

    assert report.failed_stage == "resolving_channel"
    collector.fetch_history.assert_not_called()


def test_configuration_error_propagates(memory_store, fake_embeddings, cursors):
    collector = make_collector([])
    collector.identify.side_effect = ConfigurationError("invalid_auth")

    with pytest.raises(ConfigurationError):
        make_indexer(collector, memory_store, fake_embeddings, cursors).index_channel(CHANNEL)


def test_storage_conflict_aborts_run(fake_embeddings, cursors):
    collector = make_collector([make_message(ts(0), "hello")])
    store = MagicMock()
    store.upsert.side_effect = StorageConflictError("duplicate key")

    report = make_indexer(collector, store, fake_embeddings, cursors).index_channel(CHANNEL)

    assert report.failed_stage == "embedding_storing"
    assert cursors.get("T1", CHANNEL) is None


def test_missing_thread_is_skipped(memory_store, fake_embeddings, cursors):
    history, _ = sample_history()
    collector = make_collector(history, {ts(120): RemoteNotFoundError("thread_not_found")})

    report = make_indexer(collector, memory_store, fake_embeddings, cursors).index_channel(CHANNEL)

    assert report.succeeded
    assert report.threads_attempted == 0
    assert report.cursor == ts(4000)


def test_thread_fetch_failure_counts_as_failed_chunk(memory_store, fake_embeddings, cursors):
    history, _ = sample_history()
    collector = make_collector(history, {ts(120): RemoteTransientError("internal_error")})

    report = make_indexer(collector, memory_store, fake_embeddings, cursors).index_channel(CHANNEL)

    assert report.succeeded
    assert report.threads_attempted == 1
    assert report.threads_indexed == 0
    assert report.failed_chunk_keys == [f"{CHANNEL}:thread:{ts(120)}"]
    assert report.cursor == ts(60)


def test_grown_thread_replaces_previous_chunk(memory_store, fake_embeddings, cursors):
    root = ts(0)
    history = [make_message(root, "question", thread_ts=root)]
    short = [make_message(root, "question", thread_ts=root), make_message(ts(30), "answer", thread_ts=root)]
    longer = short + [make_message(ts(90), "follow up", thread_ts=root)]

    make_indexer(make_collector(history, {root: short}), memory_store, fake_embeddings, cursors).index_channel(CHANNEL)
    make_indexer(make_collector(history, {root: longer}), memory_store, fake_embeddings, cursors).index_channel(
        CHANNEL, use_cursor=False
    )

    assert memory_store.count() == 1
    assert memory_store.get(f"{CHANNEL}:thread:{root}:{ts(90)}") is not None


def test_index_all_channels_continues_after_failure(memory_store, fake_embeddings, cursors):
    collector = make_collector([make_message(ts(0), "hi")])
    collector.list_channels.return_value = [{"id": "C1", "name": "one"}, {"id": "C2", "name": "two"}]
    collector.resolve_channel.side_effect = [
        RemoteNotFoundError("gone"),
        {"id": "C2", "name": "two"},
    ]

    reports = make_indexer(collector, memory_store, fake_embeddings, cursors).index_all_channels()

    assert [r.succeeded for r in reports] == [False, True]
    assert reports[1].channel_id == "C2"


def test_next_cursor_without_failures():
    messages = [make_message(ts(0)), make_message(ts(10))]
    assert next_cursor(messages, [], None) == ts(10)
    assert next_cursor([], [], ts(5)) == ts(5)


def test_next_cursor_stops_before_earliest_failure():
    messages = [make_message(ts(i)) for i in (0, 10, 20, 30)]
    assert next_cursor(messages, [ts(30), ts(20)], None) == ts(10)
    assert next_cursor(messages, [ts(0)], None) is None


def test_next_cursor_never_moves_backwards():
    messages = [make_message(ts(0)), make_message(ts(10))]
    assert next_cursor(messages, [], ts(50)) == ts(50)
    assert next_cursor(messages, [ts(10)], ts(5)) == ts(5)
