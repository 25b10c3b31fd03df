"""savesync local storage backends.

Local-first persistence for slot saves, their backups, slot metadata and the
offline queue.
"""

from .base import BaseLocalStore
from .memory import MemoryLocalStore
from .sqlite import SQLiteLocalStore

__all__ = [
    "BaseLocalStore",
    "MemoryLocalStore",
    "SQLiteLocalStore",
]
