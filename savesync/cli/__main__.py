"""
savesync CLI - inspect and maintain local saves.

Usage:
    savesync slots [--json]
    savesync export SLOT FILE
    savesync import FILE SLOT
    savesync queue status [--json]
    savesync queue retry-dead
    savesync queue clear [--dead]
    savesync config show [--json]
    savesync sync
"""

import argparse
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

from savesync.cli.commands import (
    cmd_config,
    cmd_export,
    cmd_import,
    cmd_queue,
    cmd_slots,
    cmd_sync,
)
from savesync.config import SyncConfig
from savesync.logging_config import setup_savesync_logging
from savesync.protocols import SaveSyncError, StaticAuth
from savesync.storage import SQLiteLocalStore
from savesync.validation import sanitize_identifier

logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

DEFAULT_OWNER = "local"


class CLIContext:
    """Shared objects for command handlers, built once per invocation."""

    def __init__(self, config: SyncConfig, db_path: Optional[Path], owner_id: str):
        self.loaded_config = config
        # The CLI never runs the auto-save timer
        self.config = replace(config, auto_save_interval=0)
        self.db_path = db_path
        self.owner_id = owner_id
        self.auth = StaticAuth(owner_id)
        self._store = None

    @property
    def store(self) -> SQLiteLocalStore:
        if self._store is None:
            self._store = SQLiteLocalStore(self.db_path)
        return self._store


def resolve_owner_id(explicit: Optional[str]) -> str:
    owner = explicit or os.environ.get("SAVESYNC_OWNER") or DEFAULT_OWNER
    failures = sanitize_identifier(owner, "owner")
    if failures or "/" in owner:
        raise ValueError(failures[0] if failures else "owner must not contain '/'")
    return owner.strip()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="savesync", description="Save-data sync engine tools")
    parser.add_argument("--db", type=Path, default=None, help="Local save database path")
    parser.add_argument("--owner", "-o", default=None, help="Owner ID (default: $SAVESYNC_OWNER)")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.json")
    parser.add_argument("--log-level", default=None, help="Also log to the data dir at this level")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # slots
    p_slots = subparsers.add_parser("slots", help="List save slots")
    p_slots.add_argument("--json", "-j", action="store_true")

    # export / import
    p_export = subparsers.add_parser("export", help="Export a slot to a file")
    p_export.add_argument("slot", type=int)
    p_export.add_argument("file", type=Path)

    p_import = subparsers.add_parser("import", help="Import an export file into a slot")
    p_import.add_argument("file", type=Path)
    p_import.add_argument("slot", type=int)

    # queue
    p_queue = subparsers.add_parser("queue", help="Offline queue operations")
    queue_sub = p_queue.add_subparsers(dest="queue_action", required=True)
    q_status = queue_sub.add_parser("status", help="Show pending and dead-lettered operations")
    q_status.add_argument("--json", "-j", action="store_true")
    queue_sub.add_parser("retry-dead", help="Requeue dead-lettered operations")
    q_clear = queue_sub.add_parser("clear", help="Drop pending operations")
    q_clear.add_argument("--dead", action="store_true", help="Also drop dead letters")

    # config
    p_config = subparsers.add_parser("config", help="Configuration")
    config_sub = p_config.add_subparsers(dest="config_action", required=True)
    c_show = config_sub.add_parser("show", help="Show effective configuration")
    c_show.add_argument("--json", "-j", action="store_true")

    # sync
    subparsers.add_parser("sync", help="Drain the offline queue against the backend")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        owner_id = resolve_owner_id(args.owner)
        if args.log_level:
            setup_savesync_logging(owner_id, args.log_level)
        config = SyncConfig.load(args.config)
        ctx = CLIContext(config, args.db, owner_id)
    except (SaveSyncError, ValueError) as e:
        logger.error(f"Failed to initialize savesync: {e}")
        sys.exit(1)

    try:
        if args.command == "slots":
            cmd_slots(args, ctx)
        elif args.command == "export":
            cmd_export(args, ctx)
        elif args.command == "import":
            cmd_import(args, ctx)
        elif args.command == "queue":
            cmd_queue(args, ctx)
        elif args.command == "config":
            cmd_config(args, ctx)
        elif args.command == "sync":
            cmd_sync(args, ctx)
    except (SaveSyncError, ValueError, OSError) as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
