"""Diagnostic CLI for the context and memory stack.

Usage examples:
    # Memory store counts and which search backend is active
    python -m contextkeeper stats

    # Stored chat sessions, newest first
    python -m contextkeeper sessions --agent claude

    # Search long-term memory
    python -m contextkeeper search "retry policy" --type decision

    # Token estimate for a file against a target's window
    python -m contextkeeper estimate notes.md --target codex
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from contextkeeper.config import configure_logging
from contextkeeper.context.tokens import ADAPTER_LIMITS, estimate_tokens, get_context_usage
from contextkeeper.memory.models import MEMORY_TYPES
from contextkeeper.runtime import MemoryRuntime

logger = logging.getLogger(__name__)


async def _stats(runtime: MemoryRuntime, _args: argparse.Namespace) -> int:
    await runtime.initialize()
    stats = await runtime.store.get_stats()
    print(f"Total memories: {stats.total}")
    for memory_type, count in stats.by_type.items():
        print(f"  {memory_type:<13s}{count}")
    backend = runtime.embeddings.model if stats.has_vector_search else "keyword only (fts5)"
    print(f"Search: {backend}")
    print(f"Summarizer reachable: {await runtime.compressor.is_available()}")
    return 0


async def _sessions(runtime: MemoryRuntime, args: argparse.Namespace) -> int:
    metas = runtime.sessions.list_sessions(args.agent)
    if not metas:
        print("No sessions.")
        return 0
    for meta in metas:
        updated = meta.updated_at.strftime("%Y-%m-%d %H:%M")
        print(
            f"{meta.id}  {updated}  {meta.message_count:>4d} msgs  "
            f"{meta.total_tokens:>6d} tok  {meta.preview}"
        )
    return 0


async def _search(runtime: MemoryRuntime, args: argparse.Namespace) -> int:
    await runtime.initialize()
    outcome = await runtime.store.search(args.query, args.type, args.limit)
    print(f"{len(outcome.results)} result(s) via {outcome.method} search")
    for result in outcome.results:
        lines = result.item.content.strip().splitlines()
        first_line = lines[0] if lines else ""
        print(f"[{result.score:.3f}] #{result.item.id} {result.item.type}: {first_line[:100]}")
    return 0


async def _estimate(_runtime: MemoryRuntime, args: argparse.Namespace) -> int:
    try:
        text = Path(args.file).read_text(encoding="utf-8")
    except OSError as exc:
        print(f"ERROR: cannot read {args.file}: {exc}", file=sys.stderr)
        return 1
    usage = get_context_usage(text, args.target)
    print(f"Tokens (estimated): {estimate_tokens(text)}")
    print(f"Usage for {args.target}: {usage.used}/{usage.available} ({usage.percentage}%)")
    if usage.is_near_limit:
        print("Near the context limit.")
    return 0


_COMMANDS = {
    "stats": _stats,
    "sessions": _sessions,
    "search": _search,
    "estimate": _estimate,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="contextkeeper", description="Inspect sessions and long-term memory"
    )
    parser.add_argument("--log-level", help="Override LOG_LEVEL for this run")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("stats", help="Memory store counts and search backend")

    sessions = sub.add_parser("sessions", help="List stored sessions")
    sessions.add_argument("--agent", help="Only sessions for this agent")

    search = sub.add_parser("search", help="Search long-term memory")
    search.add_argument("query")
    search.add_argument("--type", choices=MEMORY_TYPES, help="Restrict to one memory type")
    search.add_argument("--limit", "-n", type=int, default=10, help="Max results (default: 10)")

    estimate = sub.add_parser("estimate", help="Estimate tokens for a file")
    estimate.add_argument("file")
    estimate.add_argument(
        "--target", default="ollama", help=f"One of {', '.join(ADAPTER_LIMITS)} (default: ollama)"
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    runtime = MemoryRuntime.get()

    async def _run() -> int:
        try:
            return await _COMMANDS[args.command](runtime, args)
        finally:
            await runtime.shutdown()

    return asyncio.run(_run())


if __name__ == "__main__":
    sys.exit(main())
