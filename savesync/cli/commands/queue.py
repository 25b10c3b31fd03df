"""Offline queue commands."""

import asyncio
import json
import sys

from savesync.cli.commands.helpers import build_engine, configured_remote
from savesync.queue import OfflineQueue


def _load_queue(ctx) -> OfflineQueue:
    queue = OfflineQueue(ctx.store, ctx.config)
    queue.load()
    return queue


def cmd_queue(args, ctx):
    queue = _load_queue(ctx)

    if args.queue_action == "status":
        pending = queue.pending()
        dead = queue.dead_letters()
        if args.json:
            data = {
                "pending": [_describe(op) for op in pending],
                "dead_letters": [_describe(op) for op in dead],
            }
            print(json.dumps(data, indent=2, default=str))
            return

        print(f"Pending operations: {len(pending)}")
        for op in pending:
            print(
                f"  {op.priority.name:<8} {op.operation:<6} {op.slot_key}  "
                f"retries={op.retry_count}  queued={op.enqueued_at.isoformat()}"
            )
        if dead:
            print(f"Dead-lettered: {len(dead)}")
            for op in dead:
                print(f"  {op.operation:<6} {op.slot_key}  last error: {op.last_error}")
            print("  Use `savesync queue retry-dead` to retry them.")

    elif args.queue_action == "retry-dead":
        count = queue.requeue_dead_letters()
        print(f"Requeued {count} dead-lettered operation(s)")

    elif args.queue_action == "clear":
        count = queue.clear(dead_letters=args.dead)
        print(f"Cleared {count} operation(s)")


def _describe(op) -> dict:
    data = op.to_dict()
    data.pop("data", None)
    data["size"] = len(op.data) if op.data is not None else 0
    return data


def cmd_sync(args, ctx):
    """Drain the offline queue against the configured HTTP backend."""
    remote = configured_remote(ctx)
    if remote is None:
        print("No backend configured (set backend_url or SAVESYNC_BACKEND_URL)", file=sys.stderr)
        sys.exit(1)

    async def run():
        try:
            async with build_engine(ctx, remote=remote, online=True) as engine:
                return await engine.sync_pending()
        finally:
            await remote.aclose()

    report = asyncio.run(run())
    print(f"Sent: {report.sent}  Dropped: {report.dropped}  Remaining: {report.remaining}")
    for error in report.errors:
        print(f"  {error}")
    if not report.success:
        sys.exit(1)
