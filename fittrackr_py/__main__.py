#!/usr/bin/env python3
"""
fittrackr-py CLI Entry Point

Inspect and operate the local resilience state: the sync queue, workout
checkpoints and the event journal.
"""

import sys
import argparse
import logging
import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config import ResilienceConfig
from .mutations import MutationQueue, QueuedMutation
from .runtime import ResilienceRuntime
from .sync import DrainOutcome


# ─────────────────────────────────────────────────────────────────────────────
# Pretty Printing Helpers
# ─────────────────────────────────────────────────────────────────────────────

def format_timestamp(ts) -> str:
    """Format a datetime or ISO timestamp for display"""
    if not ts:
        return "-"
    if isinstance(ts, datetime):
        return ts.strftime("%Y-%m-%d %H:%M:%S")
    try:
        dt = datetime.fromisoformat(ts.replace('Z', '+00:00'))
        return dt.strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return ts[:19] if len(ts) > 19 else ts


def format_mutation_state(mutation: QueuedMutation) -> str:
    """Format queue state with indicators"""
    if mutation.terminal:
        return "❌ failed"
    if mutation.attempts:
        return f"🔁 retrying ({mutation.attempts})"
    return "⏳ pending"


def print_table(headers: List[str], rows: List[List[str]], max_widths: Optional[List[int]] = None) -> None:
    """Print a formatted table"""
    if not rows:
        print("  (no data)")
        return

    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(str(cell)))

    if max_widths:
        widths = [min(w, m) if m else w for w, m in zip(widths, max_widths + [None] * len(widths))]

    header_line = " | ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
    print(f"  {header_line}")
    print(f"  {'-' * len(header_line)}")

    for row in rows:
        cells = []
        for i, cell in enumerate(row):
            s = str(cell)
            if len(s) > widths[i]:
                s = s[:widths[i]-2] + ".."
            cells.append(s.ljust(widths[i]))
        print(f"  {' | '.join(cells)}")


def mutation_rows(mutations: List[QueuedMutation]) -> List[List[str]]:
    return [
        [
            m.id[:8] + "..",
            m.kind.value,
            f"{m.entity_type}:{m.entity_id or '-'}",
            format_mutation_state(m),
            format_timestamp(m.enqueued_at),
            m.last_error or "",
        ]
        for m in mutations
    ]


MUTATION_HEADERS = ["ID", "Kind", "Entity", "State", "Enqueued", "Last error"]
MUTATION_WIDTHS = [12, 8, 30, 16, 20, 40]


# ─────────────────────────────────────────────────────────────────────────────
# Runtime helpers
# ─────────────────────────────────────────────────────────────────────────────

def load_config(args: argparse.Namespace, journal: bool = False) -> ResilienceConfig:
    overrides = {"db_path": getattr(args, "db", None)}
    if not journal:
        overrides["journal_enabled"] = False
    return ResilienceConfig.from_env(**overrides)


def find_mutation(queue: MutationQueue, prefix: str) -> Optional[QueuedMutation]:
    """Find a queued mutation by id or unique id prefix"""
    matches = [m for m in queue.all() if m.id.startswith(prefix)]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        print(f"Ambiguous mutation id prefix: {prefix}", file=sys.stderr)
    else:
        print(f"Mutation not found: {prefix}", file=sys.stderr)
    return None


def routine_arg(value: str) -> Optional[str]:
    """``new`` addresses the free-workout slot"""
    return None if value == "new" else value


# ─────────────────────────────────────────────────────────────────────────────
# CLI Command Handlers
# ─────────────────────────────────────────────────────────────────────────────

async def cmd_status(args: argparse.Namespace) -> int:
    """Show connectivity, queue and active session"""
    runtime = ResilienceRuntime(load_config(args))
    try:
        if runtime.probe is not None:
            await runtime.probe.check()
        status = runtime.status()

        connectivity = "🟢 online" if status["online"] else "🔴 offline"
        if runtime.probe is None:
            connectivity += " (no health URL, assumed)"

        print(f"\n📡 Device {status['device_id']}: {connectivity}\n")
        print(f"  Pending mutations: {status['pending']}")
        print(f"  Failed mutations:  {status['failed']}")

        active = status["active_session"]
        if active is not None:
            name = "free workout" if active.is_free_workout else f"routine {active.routine_id}"
            print(f"  Active session:    {name}, {active.set_count} sets, "
                  f"last saved {format_timestamp(active.last_written_at)}")
        else:
            print("  Active session:    -")
        print()
        return 0
    finally:
        await runtime.shutdown()


async def cmd_queue(args: argparse.Namespace) -> int:
    """Inspect and resolve queued mutations"""
    runtime = ResilienceRuntime(load_config(args, journal=args.queue_command in ("retry", "discard")))
    queue = runtime.queue
    try:
        if args.queue_command == "list":
            mutations = queue.all()
            print(f"\n📋 Sync queue ({len(mutations)} entries):\n")
            print_table(MUTATION_HEADERS, mutation_rows(mutations), MUTATION_WIDTHS)
            print()
            return 0

        if args.queue_command == "failed":
            mutations = queue.failed()
            print(f"\n❌ Failed mutations ({len(mutations)}):\n")
            print_table(MUTATION_HEADERS, mutation_rows(mutations), MUTATION_WIDTHS)
            print()
            return 0

        mutation = find_mutation(queue, args.mutation_id)
        if mutation is None:
            return 1

        if args.queue_command == "retry":
            queue.retry(mutation.id)
            print(f"✓ {mutation.id} will be sent on the next sync")
            return 0

        if args.queue_command == "discard":
            try:
                queue.acknowledge(mutation.id)
            except ValueError as e:
                print(f"Error: {e}", file=sys.stderr)
                return 1
            print(f"✓ Discarded {mutation.id}")
            return 0

        print("Usage: fittrackr_py queue {list|failed|retry|discard}")
        return 1
    finally:
        await runtime.shutdown()


async def cmd_sync(args: argparse.Namespace) -> int:
    """Drain the queue once"""
    runtime = ResilienceRuntime(load_config(args, journal=True))
    try:
        if runtime.engine is None:
            print("Error: no remote configured (set FITTRACKR_REMOTE_URL)", file=sys.stderr)
            return 1
        if runtime.probe is not None:
            await runtime.probe.check()

        print(f"\n🔄 Syncing {runtime.engine.pending_count()} pending mutation(s)...\n")
        result = await runtime.sync()

        print(f"  Outcome:   {result.outcome.value}")
        print(f"  Sent:      {len(result.succeeded)}")
        print(f"  Failed:    {len(result.failures)}")
        print(f"  Remaining: {result.remaining}")
        if result.failures:
            print()
            print_table(
                ["ID", "Class", "Attempts", "Error"],
                [[f.mutation_id[:8] + "..", f.error_class.value, str(f.attempts), f.error]
                 for f in result.failures],
                [12, 10, 8, 60],
            )
        if result.retry_in is not None:
            print(f"\n  Next automatic retry would run in {result.retry_in:.1f}s")
        print()
        return 0 if result.outcome == DrainOutcome.SUCCESS else 2
    finally:
        await runtime.shutdown()


async def cmd_checkpoints(args: argparse.Namespace) -> int:
    """Inspect and clear workout checkpoints"""
    runtime = ResilienceRuntime(load_config(args))
    checkpoints = runtime.checkpoints
    try:
        if args.checkpoints_command == "list":
            routine_ids: List[Optional[str]] = list(checkpoints.list_active_checkpoint_keys())
            if checkpoints.has_free_workout():
                routine_ids.append(None)

            rows = []
            for routine_id in routine_ids:
                checkpoint = checkpoints.peek_checkpoint(routine_id)
                if checkpoint is None:
                    continue
                rows.append([
                    routine_id or "new",
                    str(len(checkpoint.logged_sets)),
                    format_timestamp(checkpoint.started_at),
                    format_timestamp(checkpoint.last_written_at),
                ])
            print(f"\n💾 Checkpoints ({len(rows)}):\n")
            print_table(["Routine", "Sets", "Started", "Last saved"], rows, [40, 6, 20, 20])
            print()
            return 0

        routine_id = routine_arg(args.routine_id)

        if args.checkpoints_command == "show":
            checkpoint = checkpoints.peek_checkpoint(routine_id)
            if checkpoint is None:
                print(f"No checkpoint for: {args.routine_id}")
                return 1
            print(json.dumps(checkpoint.model_dump(mode="json"), indent=2))
            return 0

        if args.checkpoints_command == "clear":
            checkpoints.clear_checkpoint(routine_id)
            print(f"✓ Cleared checkpoint: {args.routine_id}")
            return 0

        print("Usage: fittrackr_py checkpoints {list|show|clear}")
        return 1
    finally:
        await runtime.shutdown()


async def cmd_logs(args: argparse.Namespace) -> int:
    """Print journal events"""
    config = load_config(args)
    log_files = sorted(Path(config.log_dir).glob("devices/*/stream.ndjson"))
    if args.device:
        log_files = [f for f in log_files if f.parent.name.startswith(args.device)]

    if not log_files:
        print(f"No journal found under: {config.log_dir}")
        return 1

    for log_file in log_files:
        print(f"\n📜 Journal for device {log_file.parent.name}\n")
        lines = [line for line in log_file.read_text(encoding="utf-8").splitlines() if line]
        entries = []
        for line in lines:
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                print(f"  {line}")
        if args.type:
            entries = [e for e in entries if e.get("type", "").startswith(args.type)]
        for entry in entries[-args.limit:]:
            target = entry.get("mutation") or entry.get("routine") or ""
            payload = json.dumps(entry.get("payload", {}), separators=(",", ":"))
            print(f"  {format_timestamp(entry.get('ts'))} [{entry.get('type')}] {target} {payload}")
    print()
    return 0


def main():
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        description="fittrackr client resilience layer",
        prog="fittrackr_py"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # status command
    status_parser = subparsers.add_parser("status", help="Show connectivity, queue and active session")
    status_parser.add_argument("--db", help="Path to SQLite database (default: .fittrackr/local.db)")

    # queue command group
    queue_parser = subparsers.add_parser("queue", help="Sync queue commands")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue subcommands")

    queue_list_parser = queue_subparsers.add_parser("list", help="List every queued mutation")
    queue_list_parser.add_argument("--db", help="Path to SQLite database")

    queue_failed_parser = queue_subparsers.add_parser("failed", help="List mutations needing manual resolution")
    queue_failed_parser.add_argument("--db", help="Path to SQLite database")

    queue_retry_parser = queue_subparsers.add_parser("retry", help="Send a failed mutation again")
    queue_retry_parser.add_argument("mutation_id", help="Mutation ID (or prefix)")
    queue_retry_parser.add_argument("--db", help="Path to SQLite database")

    queue_discard_parser = queue_subparsers.add_parser("discard", help="Drop a failed mutation")
    queue_discard_parser.add_argument("mutation_id", help="Mutation ID (or prefix)")
    queue_discard_parser.add_argument("--db", help="Path to SQLite database")

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Drain the queue against the remote store")
    sync_parser.add_argument("--db", help="Path to SQLite database")

    # checkpoints command group
    cp_parser = subparsers.add_parser("checkpoints", help="Workout checkpoint commands")
    cp_subparsers = cp_parser.add_subparsers(dest="checkpoints_command", help="Checkpoint subcommands")

    cp_list_parser = cp_subparsers.add_parser("list", help="List stored checkpoints")
    cp_list_parser.add_argument("--db", help="Path to SQLite database")

    cp_show_parser = cp_subparsers.add_parser("show", help="Print a checkpoint as JSON")
    cp_show_parser.add_argument("routine_id", help="Routine ID, or 'new' for a free workout")
    cp_show_parser.add_argument("--db", help="Path to SQLite database")

    cp_clear_parser = cp_subparsers.add_parser("clear", help="Delete a checkpoint")
    cp_clear_parser.add_argument("routine_id", help="Routine ID, or 'new' for a free workout")
    cp_clear_parser.add_argument("--db", help="Path to SQLite database")

    # logs command
    logs_parser = subparsers.add_parser("logs", help="View the event journal")
    logs_parser.add_argument("--device", "-d", help="Device ID (or prefix)")
    logs_parser.add_argument("--type", "-t", help="Only events whose type starts with this, e.g. 'sync'")
    logs_parser.add_argument("--limit", "-n", type=int, default=50, help="Events to show per device (default: 50)")

    args = parser.parse_args()

    # Configure logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Execute command
    if args.command == "status":
        return asyncio.run(cmd_status(args))

    elif args.command == "queue":
        if args.queue_command is None:
            print("Usage: fittrackr_py queue {list|failed|retry|discard}")
            return 1
        return asyncio.run(cmd_queue(args))

    elif args.command == "sync":
        return asyncio.run(cmd_sync(args))

    elif args.command == "checkpoints":
        if args.checkpoints_command is None:
            print("Usage: fittrackr_py checkpoints {list|show|clear}")
            return 1
        return asyncio.run(cmd_checkpoints(args))

    elif args.command == "logs":
        return asyncio.run(cmd_logs(args))

    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
