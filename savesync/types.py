"""
Shared save-data types for savesync.

All record dataclasses live here. These are the shared vocabulary between the
orchestrator, codec, migrator, conflict resolver and offline queue. The
orchestrator builds a SaveRecord; the codec turns it into bytes; the queue
carries those bytes until the remote store accepts them.
"""

import base64
import copy
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, Iterable, List, Optional, Set

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(s: Optional[str], *, strict: bool = False) -> Optional[datetime]:
    """Parse an ISO datetime string. Naive values are assumed to be UTC."""
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        if strict:
            raise ValueError(f"Invalid ISO datetime string: {s!r}")
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat()


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return ``data[name]`` as a dict, raising ValueError for any other JSON type."""
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{name} must be an object, not {type(value).__name__}")
    return value


def _members(data: Dict[str, Any], name: str) -> List[Any]:
    value = data.get(name)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{name} must be a list, not {type(value).__name__}")
    return value


def _sorted_members(values: Iterable[Any]) -> List[Any]:
    """Sort set members for a stable serialized form."""
    items = list(values)
    try:
        return sorted(items)
    except TypeError:
        return sorted(items, key=repr)


# === Persisted layout ===

QUEUE_KEY = "sync_queue"
DEAD_LETTER_KEY = "sync_queue_dead_letter"
BACKUP_SUFFIX = "_backup"
METADATA_SUFFIX = "_metadata"


def slot_key(slot: int) -> str:
    """Primary key for a save slot, e.g. ``slot_0``."""
    return f"slot_{slot}"


def backup_key(key: str) -> str:
    return f"{key}{BACKUP_SUFFIX}"


def metadata_key(slot: int) -> str:
    return f"{slot_key(slot)}{METADATA_SUFFIX}"


def parse_slot_key(key: str) -> Optional[int]:
    """Return the slot number of a primary slot key, or None for other keys."""
    if not key.startswith("slot_"):
        return None
    rest = key[len("slot_") :]
    return int(rest) if rest.isdigit() else None


# === Enums ===


class SyncPriority(IntEnum):
    """Priority of a remote write. Higher values drain first."""

    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3


class ConflictStrategy(str, Enum):
    """How a detected conflict between local and remote saves is settled."""

    USE_LOCAL = "use_local"
    USE_CLOUD = "use_cloud"
    USE_NEWEST = "use_newest"
    MERGE = "merge"
    ASK_EXTERNAL = "ask_external"


class SlotState(str, Enum):
    """Per-slot sync state machine."""

    IDLE = "idle"
    PREPARING = "preparing"
    VALIDATING = "validating"
    ENCODING = "encoding"
    LOCAL_WRITING = "local_writing"
    REMOTE_SYNCING = "remote_syncing"
    RESOLVED = "resolved"
    QUEUED = "queued"
    FAILED = "failed"


class SyncStatus(str, Enum):
    """Caller-visible outcome of a save, load or delete."""

    SUCCESS = "success"
    PENDING_SYNC = "pending_sync"
    ERROR = "error"


class CompressionMethod(str, Enum):
    NONE = "none"
    ZLIB = "zlib"


# === Schema version ===


@dataclass(frozen=True, order=True)
class SchemaVersion:
    """Semantic version of the save document layout."""

    major: int
    minor: int = 0
    patch: int = 0

    def is_compatible(self, other: "SchemaVersion") -> bool:
        """Two versions are compatible iff their major numbers match."""
        return self.major == other.major

    @classmethod
    def parse(cls, value: Any) -> "SchemaVersion":
        if isinstance(value, SchemaVersion):
            return value
        if isinstance(value, dict):
            return cls(
                int(value.get("major", 0)), int(value.get("minor", 0)), int(value.get("patch", 0))
            )
        parts = str(value).strip().split(".")
        if not parts or len(parts) > 3 or not all(p.isdigit() for p in parts):
            raise ValueError(f"Invalid schema version: {value!r}")
        numbers = [int(p) for p in parts] + [0] * (3 - len(parts))
        return cls(*numbers)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


CURRENT_SCHEMA_VERSION = SchemaVersion(1, 2, 0)


# === Payload substructures ===


@dataclass
class Profile:
    """Player identity shown in slot pickers."""

    player_name: str = ""
    level: int = 1
    experience: int = 0
    avatar: Optional[str] = None


@dataclass
class LevelRecord:
    """Best results for a single level. Merged per field, never wholesale."""

    best_time: Optional[float] = None  # seconds, lower is better
    best_score: int = 0
    stars: int = 0

    def better_of(self, other: "LevelRecord") -> "LevelRecord":
        if self.best_time is None:
            best_time = other.best_time
        elif other.best_time is None:
            best_time = self.best_time
        else:
            best_time = min(self.best_time, other.best_time)
        return LevelRecord(
            best_time=best_time,
            best_score=max(self.best_score, other.best_score),
            stars=max(self.stars, other.stars),
        )


@dataclass
class Progression:
    completed_levels: Set[Any] = field(default_factory=set)
    unlocked_items: Set[str] = field(default_factory=set)
    level_records: Dict[str, LevelRecord] = field(default_factory=dict)
    current_level: Optional[str] = None


@dataclass
class Inventory:
    currencies: Dict[str, int] = field(default_factory=dict)
    items: Dict[str, int] = field(default_factory=dict)


@dataclass
class Settings:
    """Scalar preferences. The most recently saved record wins wholesale."""

    values: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Statistics:
    counters: Dict[str, float] = field(default_factory=dict)
    play_time_seconds: float = 0.0


@dataclass
class SavePayload:
    """The fixed set of named substructures carried by a save."""

    profile: Profile = field(default_factory=Profile)
    progression: Progression = field(default_factory=Progression)
    inventory: Inventory = field(default_factory=Inventory)
    settings: Settings = field(default_factory=Settings)
    statistics: Statistics = field(default_factory=Statistics)
    extensions: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        progression = self.progression
        return {
            "profile": {
                "player_name": self.profile.player_name,
                "level": self.profile.level,
                "experience": self.profile.experience,
                "avatar": self.profile.avatar,
            },
            "progression": {
                "completed_levels": _sorted_members(progression.completed_levels),
                "unlocked_items": _sorted_members(progression.unlocked_items),
                "level_records": {
                    level_id: {
                        "best_time": rec.best_time,
                        "best_score": rec.best_score,
                        "stars": rec.stars,
                    }
                    for level_id, rec in sorted(progression.level_records.items())
                },
                "current_level": progression.current_level,
            },
            "inventory": {
                "currencies": dict(sorted(self.inventory.currencies.items())),
                "items": dict(sorted(self.inventory.items.items())),
            },
            "settings": {"values": dict(sorted(self.settings.values.items()))},
            "statistics": {
                "counters": dict(sorted(self.statistics.counters.items())),
                "play_time_seconds": self.statistics.play_time_seconds,
            },
            "extensions": dict(self.extensions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SavePayload":
        """Build a payload from its document form.

        Raises:
            ValueError: If a section has the wrong JSON type.
        """
        if not isinstance(data, dict):
            raise ValueError(f"payload must be an object, not {type(data).__name__}")
        profile = _section(data, "profile")
        progression = _section(data, "progression")
        inventory = _section(data, "inventory")
        settings = _section(data, "settings")
        statistics = _section(data, "statistics")
        level_records = _section(progression, "level_records")
        for level_id, rec in level_records.items():
            if not isinstance(rec, dict):
                raise ValueError(f"level record {level_id} must be an object")
        return cls(
            profile=Profile(
                player_name=profile.get("player_name", ""),
                level=int(profile.get("level", 1)),
                experience=int(profile.get("experience", 0)),
                avatar=profile.get("avatar"),
            ),
            progression=Progression(
                completed_levels=set(_members(progression, "completed_levels")),
                unlocked_items=set(_members(progression, "unlocked_items")),
                level_records={
                    str(level_id): LevelRecord(
                        best_time=rec.get("best_time"),
                        best_score=int(rec.get("best_score", 0)),
                        stars=int(rec.get("stars", 0)),
                    )
                    for level_id, rec in level_records.items()
                },
                current_level=progression.get("current_level"),
            ),
            inventory=Inventory(
                currencies={k: int(v) for k, v in _section(inventory, "currencies").items()},
                items={k: int(v) for k, v in _section(inventory, "items").items()},
            ),
            settings=Settings(values=dict(_section(settings, "values"))),
            statistics=Statistics(
                counters=dict(_section(statistics, "counters")),
                play_time_seconds=float(statistics.get("play_time_seconds", 0.0)),
            ),
            extensions=dict(_section(data, "extensions")),
        )


# === Records ===


@dataclass
class CompressionInfo:
    """How a record was encoded. Filled in by the codec on decode."""

    is_compressed: bool = False
    method: CompressionMethod = CompressionMethod.NONE
    raw_size: int = 0
    encoded_size: int = 0
    is_encrypted: bool = False


@dataclass
class SaveRecord:
    """The versioned unit of player progress that is persisted and synced."""

    owner_id: str
    device_id: str
    schema_version: SchemaVersion = CURRENT_SCHEMA_VERSION
    sync_version: int = 0
    last_saved_at: datetime = field(default_factory=utc_now)
    local_timestamp: Optional[datetime] = None
    remote_timestamp: Optional[datetime] = None
    payload: SavePayload = field(default_factory=SavePayload)
    # Encoding metadata describes the bytes, not the save itself
    compression: CompressionInfo = field(default_factory=CompressionInfo, compare=False)

    def touch(self, now: Optional[datetime] = None) -> "SaveRecord":
        """Return a copy stamped as a fresh local mutation. The payload is copied too."""
        now = now or utc_now()
        return replace(
            self,
            sync_version=self.sync_version + 1,
            last_saved_at=now,
            local_timestamp=now,
            payload=copy.deepcopy(self.payload),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": str(self.schema_version),
            "owner_id": self.owner_id,
            "device_id": self.device_id,
            "sync_version": self.sync_version,
            "last_saved_at": format_datetime(self.last_saved_at),
            "local_timestamp": format_datetime(self.local_timestamp),
            "remote_timestamp": format_datetime(self.remote_timestamp),
            "payload": self.payload.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SaveRecord":
        """Build a record from its document form.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If a field cannot be parsed.
        """
        last_saved_at = parse_datetime(data["last_saved_at"], strict=True)
        return cls(
            owner_id=data["owner_id"],
            device_id=data["device_id"],
            schema_version=SchemaVersion.parse(data["schema_version"]),
            sync_version=int(data.get("sync_version", 0)),
            last_saved_at=last_saved_at,
            local_timestamp=parse_datetime(data.get("local_timestamp")),
            remote_timestamp=parse_datetime(data.get("remote_timestamp")),
            payload=SavePayload.from_dict(data.get("payload") or {}),
        )


@dataclass
class SlotMetadata:
    """Lightweight per-slot summary for slot pickers. Derived, never authoritative."""

    slot: int
    in_use: bool = False
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    progress_percent: float = 0.0
    size_bytes: int = 0
    cloud_synced: bool = False
    corrupted: bool = False
    player_name: str = ""
    sync_version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slot": self.slot,
            "in_use": self.in_use,
            "created_at": format_datetime(self.created_at),
            "modified_at": format_datetime(self.modified_at),
            "progress_percent": self.progress_percent,
            "size_bytes": self.size_bytes,
            "cloud_synced": self.cloud_synced,
            "corrupted": self.corrupted,
            "player_name": self.player_name,
            "sync_version": self.sync_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SlotMetadata":
        return cls(
            slot=int(data["slot"]),
            in_use=bool(data.get("in_use", False)),
            created_at=parse_datetime(data.get("created_at")),
            modified_at=parse_datetime(data.get("modified_at")),
            progress_percent=float(data.get("progress_percent", 0.0)),
            size_bytes=int(data.get("size_bytes", 0)),
            cloud_synced=bool(data.get("cloud_synced", False)),
            corrupted=bool(data.get("corrupted", False)),
            player_name=data.get("player_name", ""),
            sync_version=int(data.get("sync_version", 0)),
        )


@dataclass
class ConflictRecord:
    """A detected conflict and how it was resolved. Not persisted."""

    local: SaveRecord
    remote: SaveRecord
    strategy: ConflictStrategy
    detected_at: datetime = field(default_factory=utc_now)
    resolution: Optional[str] = None  # e.g. "local_wins", "cloud_wins", "merged"
    policy_decision: Optional[str] = None
    diff_hash: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class SyncOperation:
    """A pending remote write held by the offline queue."""

    slot_key: str
    data: Optional[bytes]
    priority: SyncPriority = SyncPriority.NORMAL
    operation: str = "save"  # 'save' or 'delete'
    enqueued_at: datetime = field(default_factory=utc_now)
    retry_count: int = 0
    sequence: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "slot_key": self.slot_key,
            "data": base64.b64encode(self.data).decode("ascii") if self.data is not None else None,
            "priority": self.priority.name,
            "operation": self.operation,
            "enqueued_at": format_datetime(self.enqueued_at),
            "retry_count": self.retry_count,
            "sequence": self.sequence,
            "last_error": self.last_error,
            "last_attempt_at": format_datetime(self.last_attempt_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncOperation":
        raw = data.get("data")
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            slot_key=data["slot_key"],
            data=base64.b64decode(raw) if raw is not None else None,
            priority=SyncPriority[data.get("priority", "NORMAL")],
            operation=data.get("operation", "save"),
            enqueued_at=parse_datetime(data.get("enqueued_at")) or utc_now(),
            retry_count=int(data.get("retry_count", 0)),
            sequence=int(data.get("sequence", 0)),
            last_error=data.get("last_error"),
            last_attempt_at=parse_datetime(data.get("last_attempt_at")),
        )


# === Outcomes ===


@dataclass
class SaveOutcome:
    """Result of a save. ``PENDING_SYNC`` means stored locally, remote write queued."""

    status: SyncStatus
    slot: int
    record: Optional[SaveRecord] = None
    error: Optional[Exception] = None
    conflict: Optional[ConflictRecord] = None

    @property
    def success(self) -> bool:
        return self.status != SyncStatus.ERROR

    @property
    def pending(self) -> bool:
        return self.status == SyncStatus.PENDING_SYNC


@dataclass
class LoadOutcome:
    status: SyncStatus
    slot: int
    record: Optional[SaveRecord] = None
    source: Optional[str] = None  # 'remote', 'local', 'backup'
    error: Optional[Exception] = None
    conflict: Optional[ConflictRecord] = None

    @property
    def success(self) -> bool:
        return self.status != SyncStatus.ERROR


@dataclass
class DeleteOutcome:
    status: SyncStatus
    slot: int
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        return self.status != SyncStatus.ERROR


@dataclass
class DrainReport:
    """Result of draining the offline queue."""

    sent: int = 0
    retried: int = 0
    dropped: int = 0
    remaining: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0
