"""
Errors and collaborator protocols for savesync.

The engine talks to everything outside itself (remote store, auth,
connectivity, conflict UI, local persistence) through the protocols below.
Hosts supply implementations; savesync ships simple ones for tests and
single-process use.
"""

from enum import Enum
from typing import Dict, Iterable, List, Optional, Protocol, Set, runtime_checkable

from savesync.types import SaveRecord

# =============================================================================
# ERRORS
# =============================================================================


class SaveSyncError(Exception):
    """Base for all savesync errors."""

    pass


class ConfigError(SaveSyncError):
    """Raised when configuration fails validation at startup."""

    pass


class ValidationError(SaveSyncError):
    """Raised when a record fails validation. Nothing has been written."""

    def __init__(self, failures: List[str]):
        self.failures = list(failures)
        super().__init__("; ".join(self.failures) or "validation failed")


class IncompatibleVersionError(SaveSyncError):
    """Raised when a stored schema major version cannot be migrated. Never retried."""

    pass


class CodecError(SaveSyncError):
    """Raised when bytes cannot be decoded into a save document."""

    pass


class StorageError(SaveSyncError):
    """Raised by local store implementations on persistence failures."""

    pass


class CorruptSlotError(StorageError):
    """Raised when both the primary and the backup copy of a slot fail validation."""

    def __init__(self, slot_key: str, reason: str = ""):
        self.slot_key = slot_key
        message = f"Slot {slot_key} is corrupted (primary and backup unreadable)"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class SlotNotFoundError(StorageError):
    """Raised when a slot has no save locally or remotely."""

    def __init__(self, slot: int):
        self.slot = slot
        super().__init__(f"Slot {slot} has no save")


class SyncInProgressError(SaveSyncError):
    """Raised when a different slot, or a queue drain, is already mid-sync."""

    def __init__(self, busy_slot: Optional[int], requested_slot: int):
        self.busy_slot = busy_slot
        self.requested_slot = requested_slot
        busy = "queue drain" if busy_slot is None else f"slot {busy_slot}"
        super().__init__(f"Sync in progress for {busy}; request for slot {requested_slot} rejected")


class RemoteErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    UNREACHABLE = "unreachable"
    REJECTED = "rejected"


class RemoteError(SaveSyncError):
    """Raised by remote stores. ``kind`` drives the retry policy."""

    def __init__(
        self, kind: RemoteErrorKind, message: str = "", retry_after: Optional[float] = None
    ):
        self.kind = kind
        self.retry_after = retry_after
        super().__init__(message or kind.value)

    @property
    def transient(self) -> bool:
        return self.kind in (RemoteErrorKind.RATE_LIMITED, RemoteErrorKind.UNREACHABLE)


# =============================================================================
# COLLABORATORS
# =============================================================================


@runtime_checkable
class LocalStore(Protocol):
    """Durable key-value persistence owned by the orchestrator.

    ``put`` on a slot key writes the primary and its backup atomically.
    """

    def put(self, key: str, data: bytes) -> None: ...

    def put_raw(self, key: str, data: bytes) -> None: ...

    def get(self, key: str, validate=None) -> Optional[bytes]: ...

    def get_raw(self, key: str) -> Optional[bytes]: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> List[str]: ...


@runtime_checkable
class RemoteStore(Protocol):
    """Namespaced remote key-value store. Errors are raised as RemoteError."""

    async def save_keys(self, items: Dict[str, bytes]) -> None: ...

    async def load_keys(self, keys: Set[str]) -> Dict[str, bytes]: ...

    async def delete_keys(self, keys: Set[str]) -> None: ...


@runtime_checkable
class AuthProvider(Protocol):
    """Supplies the owner id. The engine never handles credentials itself."""

    @property
    def owner_id(self) -> str: ...

    def is_valid(self) -> bool: ...


@runtime_checkable
class ConnectivitySignal(Protocol):
    def is_online(self) -> bool: ...


@runtime_checkable
class ConflictPresenter(Protocol):
    """External UI that picks a winner under the ask-external strategy."""

    async def present_conflict(self, local: SaveRecord, remote: SaveRecord) -> SaveRecord: ...


class StaticAuth:
    """AuthProvider with a fixed owner id."""

    def __init__(self, owner_id: str, valid: bool = True):
        self._owner_id = owner_id
        self.valid = valid

    @property
    def owner_id(self) -> str:
        return self._owner_id

    def is_valid(self) -> bool:
        return self.valid


class StaticConnectivity:
    """ConnectivitySignal toggled by the host (or by tests)."""

    def __init__(self, online: bool = True):
        self.online = online

    def is_online(self) -> bool:
        return self.online


def describe_failures(errors: Iterable[Exception]) -> List[str]:
    """Render errors as ``kind: message`` lines for status output."""
    lines = []
    for error in errors:
        if isinstance(error, RemoteError):
            lines.append(f"{error.kind.value}: {error}")
        else:
            lines.append(f"{type(error).__name__}: {error}")
    return lines
