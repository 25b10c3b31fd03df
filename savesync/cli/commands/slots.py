"""Slot listing and export/import commands."""

import asyncio
import json
import sys

from savesync.cli.commands.helpers import build_engine, configured_remote, format_slot
from savesync.metadata import SlotMetadataManager


def cmd_slots(args, ctx):
    """List every slot with its cached summary."""
    manager = SlotMetadataManager(ctx.store, ctx.config.max_slots, ctx.config.total_levels)
    slots = manager.list_slots()

    if args.json:
        print(json.dumps([meta.to_dict() for meta in slots], indent=2, default=str))
        return

    print(f"Save slots for {ctx.owner_id}")
    print("=" * 50)
    for meta in slots:
        print(format_slot(meta))


def cmd_export(args, ctx):
    engine = build_engine(ctx)
    path = asyncio.run(engine.export_slot(args.slot, args.file))
    print(f"Exported slot {args.slot} to {path}")


def cmd_import(args, ctx):
    """Import a file into a slot. The remote push is queued for `savesync sync`."""

    async def run():
        # Offline on purpose: the push is queued, never sent from here
        engine = build_engine(ctx, remote=configured_remote(ctx), online=False)
        async with engine:
            return await engine.import_slot(args.file, args.slot)

    outcome = asyncio.run(run())
    if not outcome.success:
        print(f"Import failed: {outcome.error}", file=sys.stderr)
        sys.exit(1)
    suffix = " (remote sync pending)" if outcome.pending else ""
    print(f"Imported {args.file} into slot {args.slot} as v{outcome.record.sync_version}{suffix}")
