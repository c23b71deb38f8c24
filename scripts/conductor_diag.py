"""Conductor MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict

from conductor_mcp.adapters.factory import Provider
from conductor_mcp.agents import AgentRegistry
from conductor_mcp.config import ConductorSettings
from conductor_mcp.storage import ChromaStore, ChromaUnavailableError
from conductor_mcp.tasks import JsonTaskStore
from conductor_mcp.worktrees import WorktreeError, WorktreeManager


def load_store(settings: ConductorSettings) -> ChromaStore:
    store = ChromaStore(settings.chroma_persist_path)
    try:
        store.ping()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    return store


def cmd_preflight(args: argparse.Namespace) -> None:
    settings = ConductorSettings()
    registry = AgentRegistry(settings)
    providers = [args.provider] if args.provider else [provider.value for provider in Provider]
    results = [asyncio.run(registry.preflight(name)) for name in providers]

    if args.json:
        print(json.dumps([result.to_dict() for result in results], indent=2))
        return
    for result in results:
        state = "ready" if result.ready else "NOT READY"
        print(f"{result.provider}: {state} (cli={result.cli_path or '-'}, auth={result.auth_source or '-'})")
        for line in result.instructions:
            print(f"  - {line}")


def cmd_worktrees(args: argparse.Namespace) -> None:
    settings = ConductorSettings()
    manager = WorktreeManager(
        settings.project_dir,
        worktree_dir_name=settings.worktree_dir_name,
        branch_prefix=settings.branch_prefix,
    )
    known = [task.id for task in JsonTaskStore(settings.state_dir / "tasks").list()]
    try:
        worktrees = asyncio.run(manager.list_worktrees(known_task_ids=known))
    except WorktreeError as exc:
        print(f"Worktrees unavailable: {exc}")
        raise SystemExit(1)

    if args.json:
        print(json.dumps([info.to_dict() for info in worktrees], indent=2))
        return
    for info in worktrees:
        flags = [flag for flag, on in (("dirty", info.is_dirty), ("orphan", info.is_orphan)) if on]
        suffix = f" [{', '.join(flags)}]" if flags else ""
        print(f"{info.task_id} {info.branch} {info.path} ({info.disk_usage_bytes} bytes){suffix}")


def cmd_tasks(args: argparse.Namespace) -> None:
    settings = ConductorSettings()
    tasks = JsonTaskStore(settings.state_dir / "tasks").list()
    if args.status:
        tasks = [task for task in tasks if task.status == args.status]

    if args.json:
        print(json.dumps([task.summary() for task in tasks], indent=2))
        return
    for task in tasks:
        line = f"{task.id} [{task.phase}/{task.status}] {task.title}"
        if task.assigned_agent:
            line += f" -> {task.assigned_agent}"
        if task.last_error:
            line += f" (error: {task.last_error})"
        print(line)


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = ConductorSettings()
    store = load_store(settings)
    records = store.list_session_tracking(task_id=args.task_id)
    payload = []
    for record in records:
        entry = asdict(record)
        entry["recorded_at"] = record.recorded_at.isoformat()
        payload.append(entry)
    print(json.dumps(payload, indent=2, default=str))


def cmd_journal(args: argparse.Namespace) -> None:
    settings = ConductorSettings()
    store = load_store(settings)
    filters = {"event_type": args.event_type, "task_id": args.task_id}
    events = store.search_events(args.query, filters=filters)
    if args.limit is not None and args.limit > 0:
        events = events[-args.limit :]

    payload = [
        {
            "event_id": event.id,
            "stream_id": event.stream_id,
            "event_type": event.event_type,
            "timestamp": event.timestamp.isoformat(),
            "metadata": event.metadata,
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Conductor MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_preflight = sub.add_parser("preflight", help="Check provider CLIs and credentials")
    p_preflight.add_argument("provider", nargs="?", choices=[provider.value for provider in Provider])
    p_preflight.add_argument("--json", action="store_true", help="Output JSON")
    p_preflight.set_defaults(func=cmd_preflight)

    p_worktrees = sub.add_parser("worktrees", help="List task worktrees from git")
    p_worktrees.add_argument("--json", action="store_true", help="Output JSON")
    p_worktrees.set_defaults(func=cmd_worktrees)

    p_tasks = sub.add_parser("tasks", help="List stored tasks")
    p_tasks.add_argument("--status")
    p_tasks.add_argument("--json", action="store_true", help="Output JSON")
    p_tasks.set_defaults(func=cmd_tasks)

    p_sessions = sub.add_parser("sessions", help="List session tracking records")
    p_sessions.add_argument("--task-id")
    p_sessions.set_defaults(func=cmd_sessions)

    p_journal = sub.add_parser("journal", help="Search journal events")
    p_journal.add_argument("query", nargs="?")
    p_journal.add_argument("--event-type")
    p_journal.add_argument("--task-id")
    p_journal.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N events",
    )
    p_journal.set_defaults(func=cmd_journal)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
