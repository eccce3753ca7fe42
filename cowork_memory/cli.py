"""
CoworkMemory CLI - Command-line access to a project's memory engine.

Usage:
    python -m cowork_memory [--json] [--project-path PATH] <command>

    python -m cowork_memory remember --content CONTENT [--title TITLE] [--group GROUP] [--tags TAGS]
    python -m cowork_memory get <memory_id>
    python -m cowork_memory query "<text>" [--limit N] [--include-sensitive]
    python -m cowork_memory consolidate [--decay-factor F] [--max-atoms N] [--if-due]
    python -m cowork_memory feedback <query_id> <atom_id> <pin|unpin|hide|...> [--note TEXT]
    python -m cowork_memory groups [--create NAME | --delete NAME]
    python -m cowork_memory status

Global Options:
    --json              Output as JSON for automation/scripting
    --project-path PATH Project root path (default: current directory)
"""

import argparse
import asyncio
import json
import sys
from dataclasses import asdict, is_dataclass
from typing import Any, Dict, List, Optional, Tuple

from .config import Settings, settings
from .database import DatabaseManager
from .engine import MemoryEngine
from .entities import (
    CONSOLIDATION_STRATEGIES,
    FEEDBACK_TYPES,
    ConsolidationBudget,
    CreateMemoryInput,
)
from .logging_config import configure_logging


def safe_print(text: str, file=None) -> None:
    """Print text safely, handling Unicode encoding errors on Windows."""
    output = file or sys.stdout
    try:
        print(text, file=output)
    except UnicodeEncodeError:
        encoding = output.encoding or 'utf-8'
        safe_text = text.encode(encoding, errors='replace').decode(encoding, errors='replace')
        print(safe_text, file=output)


def _to_jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, list):
        return [_to_jsonable(v) for v in value]
    return value


def _split_tags(raw: Optional[str]) -> Optional[List[str]]:
    if not raw:
        return None
    return [t.strip() for t in raw.split(",") if t.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="CoworkMemory CLI")

    # Global options
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    parser.add_argument("--project-path", help="Project root path")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # remember command
    remember_parser = subparsers.add_parser("remember", help="Store a memory (merged into a duplicate if one exists)")
    remember_parser.add_argument("--content", required=True, help="The memory content")
    remember_parser.add_argument("--title", default="", help="Short title (derived from content if omitted)")
    remember_parser.add_argument("--group", default="learnings", help="Memory group")
    remember_parser.add_argument("--tags", default=None, help="Comma-separated tags")
    remember_parser.add_argument("--source", default="manual", choices=["manual", "auto"])
    remember_parser.add_argument("--confidence", type=float, default=None, help="Confidence in [0, 1]")

    # get command
    get_parser = subparsers.add_parser("get", help="Show one memory")
    get_parser.add_argument("memory_id", help="Memory ID")

    # query command
    query_parser = subparsers.add_parser("query", help="Rank memories for a query")
    query_parser.add_argument("text", help="Query text")
    query_parser.add_argument("--limit", type=int, default=None, help="Maximum results (1-50)")
    query_parser.add_argument("--session-id", default=None, help="Session the query belongs to")
    query_parser.add_argument("--include-sensitive", action="store_true",
                              help="Include memories hidden via feedback")

    # consolidate command
    consolidate_parser = subparsers.add_parser("consolidate", help="Merge duplicates and decay stale memories")
    consolidate_parser.add_argument("--strategy", choices=CONSOLIDATION_STRATEGIES, default=None)
    consolidate_parser.add_argument("--redundancy-threshold", type=float, default=None)
    consolidate_parser.add_argument("--decay-factor", type=float, default=None)
    consolidate_parser.add_argument("--min-confidence", type=float, default=None)
    consolidate_parser.add_argument("--stale-after-hours", type=float, default=None)
    consolidate_parser.add_argument("--max-atoms", type=int, default=None, help="Stop after this many atoms")
    consolidate_parser.add_argument("--max-seconds", type=float, default=None, help="Stop after this many seconds")
    consolidate_parser.add_argument("--if-due", action="store_true",
                                    help="Only run when the periodic interval has elapsed")

    # feedback command
    feedback_parser = subparsers.add_parser("feedback", help="Record feedback on a query result")
    feedback_parser.add_argument("query_id", help="Query ID")
    feedback_parser.add_argument("atom_id", help="Memory/atom ID")
    feedback_parser.add_argument("kind", choices=sorted(FEEDBACK_TYPES), help="Feedback kind")
    feedback_parser.add_argument("--note", default=None)
    feedback_parser.add_argument("--session-id", default=None)

    # groups command
    groups_parser = subparsers.add_parser("groups", help="List, create or delete groups")
    group_action = groups_parser.add_mutually_exclusive_group()
    group_action.add_argument("--create", metavar="NAME", default=None)
    group_action.add_argument("--delete", metavar="NAME", default=None)

    # status command
    subparsers.add_parser("status", help="Show memory statistics")

    return parser


def _policy_from_args(args) -> Dict[str, Any]:
    policy = {
        "strategy": args.strategy,
        "redundancy_threshold": args.redundancy_threshold,
        "decay_factor": args.decay_factor,
        "min_confidence": args.min_confidence,
        "stale_after_hours": args.stale_after_hours,
    }
    return {key: value for key, value in policy.items() if value is not None}


async def run_command(args, engine: MemoryEngine) -> Tuple[Any, str]:
    """Execute one command; returns (JSON-able result, human-readable text)."""
    await engine.initialize()

    if args.command == "remember":
        memory = await engine.create(CreateMemoryInput(
            title=args.title,
            content=args.content,
            group=args.group,
            source=args.source,
            tags=_split_tags(args.tags),
            confidence=args.confidence,
        ))
        return _to_jsonable(memory), f"Memory stored: {memory.id} ({memory.group})"

    if args.command == "get":
        memory = await engine.read(args.memory_id)
        if memory is None:
            return {"error": "NOT_FOUND", "id": args.memory_id}, f"No memory with id {args.memory_id}"
        text = f"{memory.title} [{memory.group}]\n{memory.content}\nTags: {', '.join(memory.tags) or 'none'}"
        return _to_jsonable(memory), text

    if args.command == "query":
        options: Dict[str, Any] = {"include_sensitive": args.include_sensitive}
        if args.limit is not None:
            options["limit"] = args.limit
        result = await engine.deep_query(args.session_id, args.text, options)
        lines = [f"Query {result.query_id}: {len(result.atoms)} of {result.total_candidates} memories"]
        for atom, evidence in zip(result.atoms, result.evidence):
            lines.append(f"  {evidence.score:.3f}  {atom.id}  {atom.summary or atom.content[:60]}")
        return result.to_dict(), "\n".join(lines)

    if args.command == "consolidate":
        policy = _policy_from_args(args)
        if args.if_due:
            result = await engine.maybe_run_periodic_consolidation(policy=policy)
            if result is None:
                return {"skipped": True}, "Consolidation not due"
        else:
            budget = None
            if args.max_atoms is not None or args.max_seconds is not None:
                budget = ConsolidationBudget(max_atoms=args.max_atoms, max_seconds=args.max_seconds)
            result = await engine.consolidate_memory(policy, budget=budget)
        text = (
            f"Run {result.run_id}: {result.before_count} -> {result.after_count} memories "
            f"(merged {result.merged_count}, decayed {result.decayed_count})"
        )
        if result.truncated:
            text += " [truncated]"
        return result.to_dict(), text

    if args.command == "feedback":
        event = await engine.apply_feedback(args.session_id, args.query_id, args.atom_id, args.kind, args.note)
        return event.to_dict(), f"Recorded '{event.feedback}' for {event.atom_id}"

    if args.command == "groups":
        if args.create:
            name = await engine.create_group(args.create)
            return {"created": name}, f"Group created: {name}"
        if args.delete:
            deleted = await engine.delete_group(args.delete)
            return {"deleted": args.delete, "memories_removed": deleted}, \
                f"Group deleted: {args.delete} ({deleted} memories removed)"
        groups = await engine.list_groups()
        return {"groups": groups}, "\n".join(groups)

    if args.command == "status":
        stats = await engine.stats()
        lines = [
            f"Project: {stats['project_id']}",
            f"Database: {stats['database']}",
            f"Total memories: {stats['total_memories']}",
            f"By group: {stats['by_group']}",
            f"Last consolidation: {stats['last_consolidation_run'] or 'never'}",
        ]
        return stats, "\n".join(lines)

    raise ValueError(f"Unknown command: {args.command}")


async def _run(args, config: Settings) -> Tuple[Any, str]:
    db = DatabaseManager(config.get_storage_path(), config.db_name)
    engine = MemoryEngine(db, working_dir=config.project_root, config=config)
    try:
        return await run_command(args, engine)
    finally:
        await engine.close()


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    configure_logging(settings.log_level, settings.log_json)

    project_path = args.project_path or settings.project_root
    config = settings.model_copy(update={"project_root": project_path})

    try:
        result, text = asyncio.run(_run(args, config))
    except ValueError as e:
        if args.json:
            print(json.dumps({"error": "INVALID_INPUT", "message": str(e)}))
        else:
            safe_print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps(result, default=str))
    else:
        safe_print(text)


if __name__ == "__main__":
    main()
