#!/usr/bin/env python3
"""ConvMemory - import agent transcripts and search them.

Entry points for the ``conv-memory`` and ``conv-memory-import`` commands.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from .errors import ConvMemoryError, EmbeddingError, SearchConfigError, StorageOpenError
from .providers import DEFAULT_FORMAT, get_provider, provider_names

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _error(message: str) -> None:
    err_console.print(f"[bold red]error:[/bold red] {message}", highlight=False)


def _build_embedder(args):
    """Create and load the local embedder named on the command line, if any."""
    from .index.embeddings import EmbeddingModelConfig, LlamaCppEmbedder

    tuning = (args.embed_gpu_layers, args.embed_threads, args.embed_threads_batch)
    if not args.embed_model:
        if any(value is not None for value in tuning):
            logger.warning("--embed-gpu-layers/--embed-threads ignored without --embed-model")
        return None

    embedder = LlamaCppEmbedder(
        EmbeddingModelConfig(
            model_path=Path(args.embed_model).expanduser(),
            gpu_layers=args.embed_gpu_layers or 0,
            threads=args.embed_threads,
            threads_batch=args.embed_threads_batch,
        )
    )
    embedder.load()
    return embedder


def _parse_meta(values: list[str]) -> list[tuple[str, object]]:
    pairs = []
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep:
            raise SearchConfigError(f"--meta expects key=value, got {item!r}")
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            value = raw
        if isinstance(value, (dict, list)):
            value = raw
        pairs.append((key.strip(), value))
    return pairs


def cmd_import(args) -> int:
    """Sync transcripts into the store."""
    from .index import ConversationIndexer, open_store

    source = Path(args.source).expanduser()
    if not source.exists():
        _error(f"source {source} does not exist")
        return 1

    try:
        embedder = _build_embedder(args)
    except EmbeddingError as e:
        _error(str(e))
        return 1

    try:
        store = open_store(Path(args.database).expanduser())
    except StorageOpenError as e:
        _error(str(e))
        return 1

    provider = get_provider(args.format)
    with store:
        indexer = ConversationIndexer(store, provider=provider, embedder=embedder)
        sync = indexer.full_sync if args.full else indexer.incremental_sync

        progress = Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=err_console,
            transient=True,
            disable=args.quiet,
        )
        with progress:
            task = progress.add_task("Importing", total=None)

            def progress_callback(current, total, message):
                progress.update(task, completed=current, total=total, description=message[:40])

            try:
                stats = sync(source, progress_callback=progress_callback)
            except ConvMemoryError as e:
                _error(str(e))
                return 1

    if not args.quiet:
        table = Table(title="Import complete", show_header=False)
        table.add_column("metric", style="bold")
        table.add_column("value", justify="right")
        table.add_row("Processed", str(stats.processed))
        table.add_row("  imported", str(stats.imported))
        table.add_row("  appended", str(stats.appended))
        table.add_row("  replaced", str(stats.replaced))
        table.add_row("Skipped", str(stats.skipped))
        table.add_row("Failed", str(stats.failed))
        table.add_row("Turns written", str(stats.turns_written))
        table.add_row("Time", f"{stats.time_ms} ms")
        console.print(table)
        for path, message in stats.failures:
            err_console.print(f"[yellow]failed[/yellow] {path}: {message}", highlight=False)

    if stats.failed and not (stats.processed or stats.skipped):
        return 1
    return 0


def cmd_search(args) -> int:
    """Search stored turns."""
    from .index import ConversationSearch, SearchParams, open_store

    try:
        params = SearchParams(
            top_k=args.top_k,
            meta_equals=_parse_meta(args.meta),
            conversation_ids=args.conversation or None,
        )
        params.validate()
    except SearchConfigError as e:
        _error(str(e))
        return 2

    try:
        embedder = None if args.keyword else _build_embedder(args)
    except EmbeddingError as e:
        _error(str(e))
        return 1

    try:
        store = open_store(Path(args.database).expanduser())
    except StorageOpenError as e:
        _error(str(e))
        return 1

    with store:
        search = ConversationSearch(store, embedder)
        try:
            hits = search.search(args.query, params)
        except SearchConfigError as e:
            _error(str(e))
            return 2
        except ConvMemoryError as e:
            _error(str(e))
            return 1

        if args.json:
            console.print_json(json.dumps([
                {
                    "conversation_id": h.conversation_id,
                    "turn_index": h.turn_index,
                    "score": h.score,
                    "user_text": h.user_text,
                    "assistant_text": h.assistant_text,
                }
                for h in hits
            ]))
            return 0

        if not hits:
            console.print(f"No matches found for: {args.query}", highlight=False)
            return 0

        mode = "semantic" if search.semantic else "keyword"
        table = Table(title=f"{len(hits)} {mode} matches for {args.query!r}")
        table.add_column("Score", justify="right")
        table.add_column("Conversation")
        table.add_column("Turn", justify="right")
        table.add_column("Preview", overflow="fold")
        for hit in hits:
            conversation = store.get_conversation(hit.conversation_id)
            project = conversation.metadata.get("project", "") if conversation else ""
            preview = (hit.user_text or hit.assistant_text).strip().replace("\n", " ")
            table.add_row(
                f"{hit.score:.3f}",
                f"{project}\n{hit.conversation_id[:8]}" if project else hit.conversation_id[:8],
                str(hit.turn_index),
                preview[:160],
            )
        console.print(table)
    return 0


def cmd_stats(args) -> int:
    """Show store statistics."""
    from .index import open_store

    try:
        store = open_store(Path(args.database).expanduser())
    except StorageOpenError as e:
        _error(str(e))
        return 1

    with store:
        stats = store.get_stats()
        recent = store.get_conversations(limit=args.recent)

    table = Table(title="Store statistics", show_header=False)
    table.add_column("metric", style="bold")
    table.add_column("value", justify="right")
    table.add_row("Conversations", str(stats["conversations"]))
    for fmt, count in stats["by_format"].items():
        table.add_row(f"  {fmt}", str(count))
    table.add_row("Turns", str(stats["turns"]))
    table.add_row("  with embeddings", str(stats["embedded_turns"]))
    for dim, count in stats["embedding_dims"].items():
        table.add_row(f"  dim {dim}", str(count))
    table.add_row("Prompt tokens", str(stats["prompt_tokens"]))
    table.add_row("Completion tokens", str(stats["completion_tokens"]))
    db_path = Path(args.database).expanduser()
    if db_path.exists():
        table.add_row("Database size", f"{db_path.stat().st_size / (1024 * 1024):.2f} MB")
    console.print(table)

    if recent:
        listing = Table(title="Recent conversations")
        listing.add_column("Started")
        listing.add_column("Project")
        listing.add_column("Turns", justify="right")
        listing.add_column("Preview", overflow="fold")
        for conv in recent:
            started = conv.started_at.strftime("%Y-%m-%d %H:%M") if conv.started_at else "?"
            listing.add_row(
                started,
                conv.metadata.get("project", ""),
                str(conv.turn_count),
                conv.preview[:80].replace("\n", " "),
            )
        console.print(listing)
    return 0


def _add_embed_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--embed-model", help="GGUF embedding model to load with llama.cpp")
    parser.add_argument("--embed-gpu-layers", type=int, help="Layers to offload to the GPU")
    parser.add_argument("--embed-threads", type=int, help="Threads for generation")
    parser.add_argument("--embed-threads-batch", type=int, help="Threads for batch processing")


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--database", "-d", required=True, help="Path to the SQLite store")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log verbosity (default: WARNING)",
    )


def _add_import_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("source", help="Transcript file or directory to import")
    _add_common_arguments(parser)
    parser.add_argument(
        "--format",
        "-f",
        default=DEFAULT_FORMAT,
        choices=provider_names(),
        help=f"Transcript format (default: {DEFAULT_FORMAT})",
    )
    parser.add_argument("--full", action="store_true", help="Re-import every file, ignoring fingerprints")
    parser.add_argument("--quiet", "-q", action="store_true", help="No progress bar or summary")
    _add_embed_arguments(parser)


def build_parser() -> argparse.ArgumentParser:
    from . import __version__

    parser = argparse.ArgumentParser(
        description="Import coding-agent transcripts and search them semantically",
        prog="conv-memory",
    )
    parser.add_argument("--version", "-v", action="version", version=f"conv-memory {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    import_parser = subparsers.add_parser("import", help="Import or update transcripts")
    _add_import_arguments(import_parser)
    import_parser.set_defaults(handler=cmd_import)

    search_parser = subparsers.add_parser("search", help="Search stored turns")
    search_parser.add_argument("query", help="Search query")
    _add_common_arguments(search_parser)
    search_parser.add_argument("--top-k", "-k", type=int, default=10, help="Max hits to show")
    search_parser.add_argument(
        "--meta", "-m", action="append", default=[], metavar="KEY=VALUE",
        help="Only match conversations whose metadata KEY equals VALUE (repeatable)",
    )
    search_parser.add_argument(
        "--conversation", "-c", action="append", default=[], metavar="ID",
        help="Only match this conversation id (repeatable)",
    )
    search_parser.add_argument("--keyword", action="store_true", help="Full-text search, no embedder")
    search_parser.add_argument("--json", action="store_true", help="Print hits as JSON")
    _add_embed_arguments(search_parser)
    search_parser.set_defaults(handler=cmd_search)

    stats_parser = subparsers.add_parser("stats", help="Store statistics")
    _add_common_arguments(stats_parser)
    stats_parser.add_argument("--recent", type=int, default=10, help="Recent conversations to list")
    stats_parser.set_defaults(handler=cmd_stats)

    return parser


def build_import_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Import Codex rollouts (or another transcript format) into a conv-memory store",
        prog="conv-memory-import",
    )
    _add_import_arguments(parser)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the conv-memory CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "handler", None):
        parser.print_help()
        return 2
    configure_logging(args.log_level)
    return args.handler(args)


def import_main(argv: Optional[list[str]] = None) -> int:
    """Entry point for conv-memory-import."""
    args = build_import_parser().parse_args(argv)
    configure_logging(args.log_level)
    return cmd_import(args)


if __name__ == "__main__":
    sys.exit(main())
