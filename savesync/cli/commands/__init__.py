"""CLI command handlers, grouped by topic."""

from savesync.cli.commands.config import cmd_config
from savesync.cli.commands.queue import cmd_queue, cmd_sync
from savesync.cli.commands.slots import cmd_export, cmd_import, cmd_slots

__all__ = [
    "cmd_config",
    "cmd_export",
    "cmd_import",
    "cmd_queue",
    "cmd_slots",
    "cmd_sync",
]
