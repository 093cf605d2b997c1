"""cortexmem CLI -- manage, search, route and fuse project memories.

Provides ``add``, ``get``, ``list``, ``search``, ``update``, ``delete``,
``clear``, ``stats``, ``projects``, ``route``, ``fuse``, ``guard`` and
``embed`` subcommands on top of the library API.

Usage::

    cortexmem [--db PATH] [--global] [--password PW] [--project-id ID]
              [--embedding auto|ollama|openai|local|none] [--log-level LEVEL]
              <command> ...

    cortexmem add     <content> --type T --source S [--tag TAG ...]
    cortexmem get     <id>
    cortexmem list    [--type T] [--tag TAG] [--limit N] [--format table|json]
    cortexmem search  <query> [--type T] [--limit N] [--semantic] [--format table|json]
    cortexmem update  <id> [--content C] [--type T] [--source S] [--tag TAG ...]
    cortexmem delete  <id>
    cortexmem clear   --yes
    cortexmem stats
    cortexmem projects
    cortexmem route   <task> [--file PATH] [--tag TAG ...] [--type T] [--limit N] [--scores]
    cortexmem fuse    [--memory Q] [--file P] [--session TEXT] [--max-tokens N]
                      [--dedupe exact|semantic|none] [--format text|markdown|json]
    cortexmem guard   [TEXT] [--filter NAME ...] [--mode redact|block|warn]
    cortexmem embed   [<id>]
"""

from __future__ import annotations

import argparse
import json
import logging
import shutil
import sys
from dataclasses import replace
from typing import Any

from . import __version__
from .config import CortexConfig, build_provider, load_config
from .errors import CortexError
from .fuser import DEDUPE_STRATEGIES, OUTPUT_FORMATS, ContextFuser, ContextSource
from .guard import GUARD_MODES, ContextGuard, available_filters
from .memory import MEMORY_TYPES, Record
from .router import ContextRouter
from .store import MemoryStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _config_from_args(args: argparse.Namespace) -> CortexConfig:
    """Load the config and apply command-line overrides."""
    cfg = load_config(args.config)
    overrides: dict[str, Any] = {}
    if args.db is not None:
        overrides["db_path"] = args.db
    if args.global_mode:
        overrides["global_mode"] = True
    if args.password is not None:
        overrides["password"] = args.password
    if args.project_id is not None:
        overrides["project_id"] = args.project_id
    if args.embedding is not None:
        overrides["embedding"] = args.embedding
    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    return replace(cfg, **overrides).check()


def _open_store(args: argparse.Namespace, with_provider: bool = False) -> MemoryStore:
    """Open the store described by *args*.

    Embedding providers are only probed for commands that use them.
    """
    cfg = args.cfg
    store = MemoryStore(
        cfg.db_path,
        project_id=cfg.project_id,
        global_mode=cfg.global_mode,
        password=cfg.password,
    )
    if with_provider:
        provider = build_provider(cfg)
        if provider is not None:
            store.set_embedding_provider(provider)
    return store


def _configure_logging(level: str) -> None:
    logger = logging.getLogger("cortexmem")
    logger.setLevel(level.upper())
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        logger.addHandler(handler)


def _error(message: str) -> int:
    print(f"Error: {message}", file=sys.stderr)
    return 1


def _format_timestamp(record: Record) -> str:
    """Format a creation timestamp as ``YYYY-MM-DD HH:MM``."""
    if record.created_at is None:
        return "-"
    return record.created_at.isoformat()[:16].replace("T", " ")


def _truncate(text: str, width: int) -> str:
    """Truncate text to *width* characters, adding ``...`` if needed."""
    if len(text) <= width:
        return text
    return text[: max(width - 3, 0)] + "..."


def _print_table(records: list[Record], scores: list[float] | None = None) -> None:
    term_width = shutil.get_terminal_size((80, 24)).columns
    score_col = 6 if scores is not None else 0
    fixed_width = 6 + 2 + 8 + 2 + 16 + 2 + score_col
    text_width = max(20, term_width - fixed_width)

    score_head = f"{'Score':>5} " if scores is not None else ""
    print(f"{'ID':>6}  {'Type':<8}  {'Created':<16}  {score_head}{'Content'}")
    print(f"{'─' * 6}  {'─' * 8}  {'─' * 16}  {'─' * score_col}{'─' * text_width}")
    for i, record in enumerate(records):
        preview = _truncate(record.content.replace("\n", " "), text_width)
        if record.encrypted:
            preview = "<encrypted>"
        score = f"{scores[i]:5.2f} " if scores is not None else ""
        print(
            f"{record.id:>6}  {record.type:<8}  {_format_timestamp(record):<16}  {score}{preview}"
        )


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_add(args: argparse.Namespace) -> int:
    with _open_store(args) as store:
        memory_id = store.add(
            args.content, type=args.type, source=args.source, tags=args.tag or None
        )
    print(f"Added memory {memory_id}")
    return 0


def _cmd_get(args: argparse.Namespace) -> int:
    """Handle the ``get`` subcommand.

    Returns:
        Exit code (0 for success, 1 if the memory is not found).
    """
    with _open_store(args) as store:
        record = store.get(args.memory_id)
    if record is None:
        return _error(f"No memory found with ID {args.memory_id}.")

    if args.format == "json":
        _print_json(record.to_dict())
        return 0

    emb_info = f"Yes ({len(record.embedding)} dimensions, {record.embedding_model})" if record.embedding else "No"
    meta_str = json.dumps(record.metadata, ensure_ascii=False) if record.metadata else "{}"
    print(f"Memory {record.id}")
    print("─" * 40)
    print(f"{'Type:':<15}{record.type}")
    print(f"{'Source:':<15}{record.source}")
    print(f"{'Project:':<15}{record.project_id or '-'}")
    print(f"{'Tags:':<15}{', '.join(record.tags) or '-'}")
    print(f"{'Created:':<15}{record.created_at.isoformat() if record.created_at else '-'}")
    print(f"{'Updated:':<15}{record.updated_at.isoformat() if record.updated_at else '-'}")
    print(f"{'Metadata:':<15}{meta_str}")
    print(f"{'Has Embedding:':<15}{emb_info}")
    if record.encrypted:
        print(f"{'Encrypted:':<15}could not decrypt with the given password")
    print()
    print("Content:")
    for line in record.content.splitlines():
        print(f"  {line}")
    return 0


def _cmd_list(args: argparse.Namespace) -> int:
    with _open_store(args) as store:
        records = store.list(type=args.type, tag=args.tag, limit=args.limit)

    if args.format == "json":
        _print_json([r.to_dict() for r in records])
        return 0
    if not records:
        print("No memories found.")
        return 0
    _print_table(records)
    print(f"\nShowing {len(records)} memories")
    return 0


def _cmd_search(args: argparse.Namespace) -> int:
    """Handle the ``search`` subcommand (keyword, or semantic with ``--semantic``)."""
    with _open_store(args, with_provider=args.semantic) as store:
        if args.semantic:
            matches = store.search_semantic(args.query, type=args.type, limit=args.limit)
            records = [m.record for m in matches]
            scores: list[float] | None = [m.similarity for m in matches]
        else:
            records = store.search(args.query, type=args.type, limit=args.limit)
            scores = None

    if args.format == "json":
        output = [r.to_dict() for r in records]
        if scores is not None:
            for item, score in zip(output, scores):
                item["similarity"] = score
        _print_json(output)
        return 0
    if not records:
        print(f'No memories found matching "{args.query}".')
        return 0
    _print_table(records, scores)
    print(f'\n{len(records)} result(s) for "{args.query}"')
    return 0


def _cmd_update(args: argparse.Namespace) -> int:
    fields: dict[str, Any] = {}
    if args.content is not None:
        fields["content"] = args.content
    if args.type is not None:
        fields["type"] = args.type
    if args.source is not None:
        fields["source"] = args.source
    if args.tag is not None:
        fields["tags"] = args.tag
    if not fields:
        return _error("Nothing to update. Pass --content, --type, --source or --tag.")

    with _open_store(args) as store:
        updated = store.update(args.memory_id, **fields)
    if not updated:
        return _error(f"No memory found with ID {args.memory_id}.")
    print(f"Updated memory {args.memory_id}")
    return 0


def _cmd_delete(args: argparse.Namespace) -> int:
    with _open_store(args) as store:
        deleted = store.delete(args.memory_id)
    if not deleted:
        return _error(f"No memory found with ID {args.memory_id}.")
    print(f"Deleted memory {args.memory_id}")
    return 0


def _cmd_clear(args: argparse.Namespace) -> int:
    if not args.yes:
        return _error("Refusing to clear memories without --yes.")
    with _open_store(args) as store:
        removed = store.clear()
    print(f"Removed {removed} memories")
    return 0


def _cmd_stats(args: argparse.Namespace) -> int:
    with _open_store(args) as store:
        stats = store.stats()

    print("cortexmem Statistics")
    print("─" * 40)
    print(f"{'Project:':<25}{stats.get('project_id', 'global')}")
    print(f"{'Total:':<25}{stats['total']}")
    for memory_type in MEMORY_TYPES:
        count = stats["by_type"].get(memory_type, 0)
        if count:
            print(f"{memory_type + ':':<25}{count}")
    return 0


def _cmd_projects(args: argparse.Namespace) -> int:
    with _open_store(args) as store:
        projects = store.get_all_projects()
    if not projects:
        print("No projects found.")
        return 0
    print(f"{'Project':<18}  {'Memories':>8}")
    print(f"{'─' * 18}  {'─' * 8}")
    for item in projects:
        print(f"{item['project_id']:<18}  {item['count']:>8}")
    return 0


def _cmd_route(args: argparse.Namespace) -> int:
    with _open_store(args, with_provider=True) as store:
        router = ContextRouter(store)
        scored = router.route_with_scores(
            args.task,
            current_file=args.file,
            tags=args.tag,
            type=args.type,
            limit=args.limit,
        )

    if not scored:
        print("No relevant memories found.")
        return 0
    if args.scores:
        for c in scored:
            print(f"[{c.score:.3f}] #{c.record.id} {c.reason}")
            print(f"        {_truncate(c.record.content.replace(chr(10), ' '), 100)}")
        return 0
    _print_table([c.record for c in scored])
    return 0


def _cmd_fuse(args: argparse.Namespace) -> int:
    sources = (
        [ContextSource(type="memory", query=q) for q in args.memory or []]
        + [ContextSource(type="file", path=p) for p in args.file or []]
        + [ContextSource(type="session", data=d) for d in args.session or []]
    )
    if not sources:
        return _error("No sources given. Pass --memory, --file or --session.")

    with _open_store(args) as store:
        result = ContextFuser(store).fuse(
            sources, max_tokens=args.max_tokens, dedupe=args.dedupe, format=args.format
        )
    print(result.content)
    summary = ", ".join(f"{s['type']}={s['count']}" for s in result.sources) or "none"
    print(
        f"\n{result.token_count} tokens (from {result.original_token_count}, "
        f"saved {result.savings_percentage}%); sources: {summary}",
        file=sys.stderr,
    )
    return 0


def _cmd_guard(args: argparse.Namespace) -> int:
    text = args.text if args.text is not None else sys.stdin.read()
    filters = args.filter or available_filters()
    result = ContextGuard().guard(text, filters, mode=args.mode)
    print(result.content)
    for detail in result.filter_details:
        print(f"{detail['type']}: {detail['count']}", file=sys.stderr)
    return 0


def _cmd_embed(args: argparse.Namespace) -> int:
    with _open_store(args, with_provider=True) as store:
        if store.embedding_provider is None:
            return _error("No embedding provider available. Check --embedding and its settings.")
        if args.memory_id is not None:
            if not store.update_embedding(args.memory_id):
                return _error(f"No memory found with ID {args.memory_id}.")
            print(f"Embedded memory {args.memory_id}")
            return 0
        count = store.update_all_embeddings()
    print(f"Embedded {count} memories")
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser.

    Returns:
        A configured :class:`argparse.ArgumentParser`.
    """
    parser = argparse.ArgumentParser(
        prog="cortexmem",
        description="cortexmem -- local, per-project memory for coding assistants.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", default=None, help="Path to a JSON config file.")
    parser.add_argument("--db", default=None, help="Path to the SQLite database file.")
    parser.add_argument(
        "--global",
        dest="global_mode",
        action="store_true",
        help="Operate across all projects.",
    )
    parser.add_argument(
        "--password", default=None, help="Encryption password (default: $CORTEX_PASSWORD)."
    )
    parser.add_argument("--project-id", default=None, help="Override the detected project id.")
    parser.add_argument(
        "--embedding",
        choices=["auto", "ollama", "openai", "local", "none"],
        default=None,
        help="Embedding backend for semantic commands (default: auto).",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        default=None,
        help="Library log level (default: WARNING).",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # -- add ----------------------------------------------------------
    p_add = subparsers.add_parser("add", help="Store a new memory.")
    p_add.add_argument("content", help="Memory text.")
    p_add.add_argument("--type", required=True, choices=MEMORY_TYPES, help="Memory type.")
    p_add.add_argument("--source", required=True, help="Where the memory came from.")
    p_add.add_argument("--tag", action="append", help="Tag (repeatable).")

    # -- get ----------------------------------------------------------
    p_get = subparsers.add_parser("get", help="Show one memory in full.")
    p_get.add_argument("memory_id", type=int, help="Memory ID.")
    p_get.add_argument("--format", choices=["table", "json"], default="table")

    # -- list ---------------------------------------------------------
    p_list = subparsers.add_parser("list", help="List stored memories.")
    p_list.add_argument("--type", choices=MEMORY_TYPES, default=None)
    p_list.add_argument("--tag", default=None, help="Only memories with this tag.")
    p_list.add_argument("--limit", type=int, default=20, help="Maximum memories (default: 20).")
    p_list.add_argument("--format", choices=["table", "json"], default="table")

    # -- search -------------------------------------------------------
    p_search = subparsers.add_parser("search", help="Search memories.")
    p_search.add_argument("query", help="Search query text.")
    p_search.add_argument("--type", choices=MEMORY_TYPES, default=None)
    p_search.add_argument("--limit", type=int, default=10, help="Maximum results (default: 10).")
    p_search.add_argument(
        "--semantic", action="store_true", help="Rank by embedding similarity."
    )
    p_search.add_argument("--format", choices=["table", "json"], default="table")

    # -- update -------------------------------------------------------
    p_update = subparsers.add_parser("update", help="Change fields of a memory.")
    p_update.add_argument("memory_id", type=int, help="Memory ID.")
    p_update.add_argument("--content", default=None)
    p_update.add_argument("--type", choices=MEMORY_TYPES, default=None)
    p_update.add_argument("--source", default=None)
    p_update.add_argument("--tag", action="append", help="Replacement tag (repeatable).")

    # -- delete / clear -----------------------------------------------
    p_delete = subparsers.add_parser("delete", help="Delete a memory.")
    p_delete.add_argument("memory_id", type=int, help="Memory ID.")

    p_clear = subparsers.add_parser("clear", help="Delete every memory in scope.")
    p_clear.add_argument("--yes", action="store_true", help="Confirm deletion.")

    # -- stats / projects ---------------------------------------------
    subparsers.add_parser("stats", help="Show memory statistics.")
    subparsers.add_parser("projects", help="List projects in the database.")

    # -- route --------------------------------------------------------
    p_route = subparsers.add_parser("route", help="Pick the memories most relevant to a task.")
    p_route.add_argument("task", help="Task description.")
    p_route.add_argument("--file", default=None, help="File currently being edited.")
    p_route.add_argument("--tag", action="append", help="Preferred tag (repeatable).")
    p_route.add_argument("--type", choices=MEMORY_TYPES, default=None)
    p_route.add_argument("--limit", type=int, default=5, help="Number of results (default: 5).")
    p_route.add_argument("--scores", action="store_true", help="Show scores and reasons.")

    # -- fuse ---------------------------------------------------------
    p_fuse = subparsers.add_parser("fuse", help="Merge context sources under a token budget.")
    p_fuse.add_argument("--memory", action="append", help="Memory search query (repeatable).")
    p_fuse.add_argument("--file", action="append", help="File path (repeatable).")
    p_fuse.add_argument("--session", action="append", help="Inline text (repeatable).")
    p_fuse.add_argument("--max-tokens", type=int, default=4000)
    p_fuse.add_argument("--dedupe", choices=DEDUPE_STRATEGIES, default="exact")
    p_fuse.add_argument("--format", choices=OUTPUT_FORMATS, default="text")

    # -- guard --------------------------------------------------------
    p_guard = subparsers.add_parser("guard", help="Redact sensitive data from text.")
    p_guard.add_argument("text", nargs="?", default=None, help="Text (default: stdin).")
    p_guard.add_argument(
        "--filter", action="append", choices=available_filters(), help="Filter (repeatable)."
    )
    p_guard.add_argument("--mode", choices=GUARD_MODES, default="redact")

    # -- embed --------------------------------------------------------
    p_embed = subparsers.add_parser("embed", help="Compute missing embeddings.")
    p_embed.add_argument("memory_id", nargs="?", type=int, default=None, help="Memory ID.")

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.

    Args:
        argv: Command-line arguments. Defaults to ``sys.argv[1:]``.

    Returns:
        Exit code (0 for success, 1 for not-found or invalid input).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands: dict[str, Any] = {
        "add": _cmd_add,
        "get": _cmd_get,
        "list": _cmd_list,
        "search": _cmd_search,
        "update": _cmd_update,
        "delete": _cmd_delete,
        "clear": _cmd_clear,
        "stats": _cmd_stats,
        "projects": _cmd_projects,
        "route": _cmd_route,
        "fuse": _cmd_fuse,
        "guard": _cmd_guard,
        "embed": _cmd_embed,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        args.cfg = _config_from_args(args)
        _configure_logging(args.cfg.log_level)
        result: int = handler(args)
    except CortexError as exc:
        return _error(str(exc))
    return result


if __name__ == "__main__":
    sys.exit(main())
