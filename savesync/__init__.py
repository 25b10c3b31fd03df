"""
savesync - local-first save-data sync for games.

Persists structured player progress locally, mirrors it to a remote store,
resolves conflicting writes from several devices and queues remote writes
while offline.
"""

from .config import SyncConfig
from .orchestrator import SyncOrchestrator
from .remote import HttpRemoteStore, InMemoryRemoteStore
from .storage import MemoryLocalStore, SQLiteLocalStore
from .types import ConflictStrategy, SavePayload, SaveRecord, SyncPriority, SyncStatus

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("savesync")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "ConflictStrategy",
    "HttpRemoteStore",
    "InMemoryRemoteStore",
    "MemoryLocalStore",
    "SQLiteLocalStore",
    "SavePayload",
    "SaveRecord",
    "SyncConfig",
    "SyncOrchestrator",
    "SyncPriority",
    "SyncStatus",
]
