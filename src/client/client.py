"""CLI client for the Slack history indexer.

Provides commands to index channels, search indexed chunks and inspect the store.
"""

import logging
from pathlib import Path
from typing import List, Optional

import typer
from dotenv import load_dotenv
from langchain_core.embeddings import Embeddings
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from src.indexer.orchestrator import ChannelIndexer
from src.models.config import ConfigLoader, IndexerConfig
from src.models.documents import IndexingReport
from src.models.errors import ConfigurationError, RemoteError
from src.rag.embeddings import build_embeddings, check_dimension
from src.rag.qdrant_manager import QdrantChunkStore
from src.rag.retriever import ChunkRetriever
from src.sources.checkpoint import CursorStore
from src.sources.slack import SlackHistoryCollector

# Configure logging to stay quiet by default, will be adjusted by verbose flag
logging.basicConfig(
    level=logging.WARNING, format="%(message)s", datefmt="[%X]", handlers=[RichHandler(rich_tracebacks=True)]
)

app = typer.Typer(help="Slack history indexer - index channel history and search it by similarity")
console = Console()


class State:
    """Application state container."""

    def __init__(self) -> None:
        """Initialize application state."""
        self.config: IndexerConfig = IndexerConfig()
        self.data_dir: str = "data"
        self.verbose: bool = False


state = State()


@app.callback()  # type: ignore[misc]
def main(
    ctx: typer.Context,
    config: str = typer.Option("config/slack_index.yaml", "--config", help="Path to configuration file"),
    data: str = typer.Option("data", "--data", help="Path to data directory"),
    verbose: bool = typer.Option(False, "--verbose", help="Enable verbose logging (DEBUG level)"),
) -> None:
    """Slack history indexer."""
    load_dotenv()
    state.data_dir = data
    state.verbose = verbose

    level = logging.DEBUG if verbose else logging.INFO
    logging.getLogger().setLevel(level)
    logging.getLogger("src").setLevel(level)

    try:
        state.config = ConfigLoader.load(config)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(code=1)

    Path(data).mkdir(parents=True, exist_ok=True)


def _collector() -> SlackHistoryCollector:
    return SlackHistoryCollector.create(state.config.slack, data_dir=state.data_dir)


def _store() -> QdrantChunkStore:
    store = QdrantChunkStore.from_config(state.config.qdrant)
    store.ensure_collection()
    return store


def _embeddings() -> Embeddings:
    embeddings = build_embeddings(state.config.embeddings)
    check_dimension(embeddings, state.config.qdrant.vector_size)
    return embeddings


def _cursors() -> CursorStore:
    return CursorStore(state.config.cursors.path)


def _indexer() -> ChannelIndexer:
    return ChannelIndexer(
        collector=_collector(),
        store=_store(),
        embeddings=_embeddings(),
        cursors=_cursors(),
        max_messages_per_window=state.config.chunking.max_messages_per_window,
        max_window_minutes=state.config.chunking.max_window_minutes,
        use_cursor=state.config.use_cursor,
    )


def _fail(message: str) -> None:
    console.print(f"[red]{message}[/red]")
    if state.verbose:
        logging.exception(message)
    raise typer.Exit(code=1)


def _print_report(report: IndexingReport) -> None:
    name = report.channel_name or report.channel_id or "?"
    if not report.succeeded:
        console.print(f"[red]Indexing #{name} failed during {report.failed_stage}: {report.error}[/red]")
        return
    console.print(f"[green]Indexing complete for #{name}:[/green]")
    console.print(f"  - Messages fetched: {report.messages_fetched}")
    console.print(f"  - Indexed {report.threads_indexed}/{report.threads_attempted} threads")
    console.print(f"  - Indexed {report.windows_indexed}/{report.windows_attempted} windows")
    console.print(f"  - Cursor set to {report.cursor or 'n/a'}")
    if report.failed_chunk_keys:
        console.print(f"[yellow]  - {len(report.failed_chunk_keys)} chunks failed and will be retried[/yellow]")


@app.command()  # type: ignore[misc]
def channels() -> None:
    """List channels the bot can index, with their cursors."""
    try:
        collector = _collector()
        team_id = collector.identify().get("team_id") or "unknown"
        found = collector.list_channels()
    except (ConfigurationError, RemoteError) as e:
        _fail(f"Error listing channels: {e}")
        return

    cursors = _cursors()
    table = Table(title="Member Channels")
    table.add_column("Name", style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Cursor", style="magenta")
    for c in sorted(found, key=lambda ch: ch.get("name", "")):
        table.add_row(c.get("name", ""), c["id"], cursors.get(team_id, c["id"]) or "-")
    console.print(table)


@app.command()  # type: ignore[misc]
def index(
    channel: str = typer.Argument(..., help="Channel ID (C0123...) or name"),
    oldest: Optional[str] = typer.Option(
        None, "--oldest", envvar="BACKFILL_OLDEST_TS", help="Only index messages at or after this Slack ts"
    ),
    no_cursor: bool = typer.Option(False, "--no-cursor", help="Ignore the stored cursor (full backfill)"),
) -> None:
    """Index one channel (threads and message windows) into the chunk store."""
    try:
        indexer = _indexer()
        with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"), transient=True) as p:
            p.add_task(description=f"Indexing {channel}...", total=None)
            report = indexer.index_channel(channel, oldest=oldest, use_cursor=False if no_cursor else None)
    except ConfigurationError as e:
        _fail(f"Configuration error: {e}")
        return

    _print_report(report)
    if not report.succeeded:
        raise typer.Exit(code=1)


@app.command("index-all")  # type: ignore[misc]
def index_all(
    oldest: Optional[str] = typer.Option(None, "--oldest", help="Only index messages at or after this Slack ts"),
) -> None:
    """Index every channel the bot is a member of."""
    try:
        reports: List[IndexingReport] = _indexer().index_all_channels(oldest=oldest)
    except (ConfigurationError, RemoteError) as e:
        _fail(f"Error indexing channels: {e}")
        return

    for report in reports:
        _print_report(report)
    failed = [r for r in reports if not r.succeeded]
    if failed:
        console.print(f"[yellow]{len(failed)} of {len(reports)} channels failed.[/yellow]")
        raise typer.Exit(code=1)


@app.command()  # type: ignore[misc]
def search(
    query: str = typer.Argument(..., help="Text to search for"),
    channel: Optional[str] = typer.Option(None, "--channel", "-c", help="Restrict to a channel ID or name"),
    k: Optional[int] = typer.Option(None, "--k", help="Number of chunks to return"),
) -> None:
    """Search indexed chunks by similarity."""
    try:
        collector = _collector() if channel else None
        retriever = ChunkRetriever(_store(), _embeddings(), collector=collector, default_top_k=state.config.top_k)
        results = retriever.search(query, channel=channel, top_k=k)
    except (ConfigurationError, RemoteError) as e:
        _fail(f"Error searching: {e}")
        return

    if not results:
        console.print("[yellow]No matching chunks.[/yellow]")
        return

    table = Table(title=f"Results for: {query}")
    table.add_column("#", style="dim")
    table.add_column("Score", justify="right")
    table.add_column("Channel", style="blue")
    table.add_column("Kind")
    table.add_column("Preview")
    for i, r in enumerate(results, start=1):
        preview = r.text[:120].replace("\n", " ") + ("..." if len(r.text) > 120 else "")
        table.add_row(
            str(i),
            f"{r.similarity:.3f}",
            f"#{r.channel_name or r.channel_id}",
            "thread" if r.is_thread else "window",
            preview,
        )
    console.print(table)


@app.command()  # type: ignore[misc]
def stats() -> None:
    """Show chunk counts per channel."""
    try:
        data = _store().stats()
    except ConfigurationError as e:
        _fail(f"Configuration error: {e}")
        return

    table = Table(title=f"Collection {data['collection']}")
    table.add_column("Channel", style="bold green")
    table.add_column("Chunks", justify="right")
    table.add_column("Threads", justify="right")
    table.add_column("Windows", justify="right")
    table.add_column("Messages", justify="right")
    channels_data = data.get("channels", {})
    if not channels_data:
        console.print("[yellow]No chunks indexed yet.[/yellow]")
        return
    for channel_id, entry in sorted(channels_data.items()):
        table.add_row(
            f"#{entry.get('channel_name') or channel_id}",
            str(entry["chunks"]),
            str(entry["threads"]),
            str(entry["windows"]),
            str(entry["messages"]),
        )
    console.print(table)
    console.print(f"Total chunks: {data['total_chunks']}")


@app.command()  # type: ignore[misc]
def cursor(
    channel: str = typer.Argument(..., help="Channel ID (C0123...) or name"),
    reset: bool = typer.Option(False, "--reset", help="Forget the cursor so the next run backfills everything"),
) -> None:
    """Show or reset a channel's indexing cursor."""
    try:
        collector = _collector()
        team_id = collector.identify().get("team_id") or "unknown"
        channel_id = collector.resolve_channel(channel)["id"]
    except (ConfigurationError, RemoteError) as e:
        _fail(f"Error resolving channel: {e}")
        return

    cursors = _cursors()
    if reset:
        removed = cursors.reset(team_id, channel_id)
        console.print("[green]Cursor reset.[/green]" if removed else "[yellow]No cursor stored.[/yellow]")
        return
    console.print(f"{channel_id}: {cursors.get(team_id, channel_id) or 'not indexed'}")


@app.command()  # type: ignore[misc]
def reset() -> None:
    """Delete every indexed chunk."""
    if typer.confirm("Are you sure you want to clear the entire chunk store?", default=False):
        _store().clear()
        console.print("[green]Chunk store cleared successfully.[/green]")
    else:
        console.print("[yellow]Operation cancelled.[/yellow]")


if __name__ == "__main__":
    app()
