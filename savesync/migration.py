"""Schema migration for save documents.

Migration works on the decoded document (a plain dict) before it becomes a
SaveRecord, so old layouts never have to be representable as records.

Order of operations:
1. Documents without ``schema_version`` go through the legacy adapter and
   come out as 1.0.0.
2. A major version different from the current one is rejected with
   IncompatibleVersionError. It is never retried or downgraded.
3. Registered per-minor transformers run in order until the document reaches
   the current minor version; the patch number is then normalized.
"""

import copy
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from savesync.protocols import IncompatibleVersionError
from savesync.types import CURRENT_SCHEMA_VERSION, SaveRecord, SchemaVersion, utc_now

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Transformer = Callable[[Document], Document]

# (major, from_minor) -> transformer producing (major, from_minor + 1)
_TRANSFORMERS: Dict[Tuple[int, int], Transformer] = {}

# Legacy flat keys that hold currencies
LEGACY_CURRENCY_KEYS = ("coins", "gold", "gems")


def migration(major: int, from_minor: int):
    """Register a transformer that upgrades ``major.from_minor`` to the next minor."""

    def decorator(fn: Transformer) -> Transformer:
        key = (major, from_minor)
        if key in _TRANSFORMERS:
            raise ValueError(f"Duplicate migration registered for {major}.{from_minor}")
        _TRANSFORMERS[key] = fn
        return fn

    return decorator


def adapt_legacy(document: Document) -> Document:
    """Convert a pre-versioning flat save into the 1.0.0 layout."""
    currencies = {
        key: int(document[key]) for key in LEGACY_CURRENCY_KEYS if document.get(key) is not None
    }
    saved_at = document.get("save_time") or document.get("timestamp") or utc_now().isoformat()
    return {
        "schema_version": "1.0.0",
        "owner_id": document.get("owner_id") or document.get("user_id") or "",
        "device_id": document.get("device_id") or "legacy",
        "sync_version": int(document.get("version", 0) or 0),
        "last_saved_at": saved_at,
        "local_timestamp": saved_at,
        "remote_timestamp": None,
        "payload": {
            "profile": {
                "player_name": document.get("player_name", ""),
                "level": int(document.get("level", 1) or 1),
                "experience": int(document.get("experience", 0) or 0),
                "avatar": document.get("avatar"),
            },
            "progression": {
                "completed_levels": list(document.get("completed_levels") or []),
                "unlocked_items": list(document.get("unlocked_items") or []),
                "level_records": {},
                "current_level": document.get("current_level"),
            },
            "inventory": {
                "currencies": currencies,
                "items": dict(document.get("inventory") or {}),
            },
            "settings": dict(document.get("settings") or {}),
        },
    }


@migration(major=1, from_minor=0)
def _add_statistics(document: Document) -> Document:
    payload = document.setdefault("payload", {})
    payload.setdefault("statistics", {"counters": {}, "play_time_seconds": 0.0})
    return document


@migration(major=1, from_minor=1)
def _add_extensions_and_nest_settings(document: Document) -> Document:
    payload = document.setdefault("payload", {})
    payload.setdefault("extensions", {})
    settings = payload.get("settings") or {}
    if "values" not in settings or not isinstance(settings.get("values"), dict):
        payload["settings"] = {"values": dict(settings)}
    return document


class VersionMigrator:
    """Upgrades save documents to the current schema version.

    Args:
        current: Target schema version.
        transformers: Per-minor transformers keyed by ``(major, from_minor)``.
            Defaults to the module registry.
    """

    def __init__(
        self,
        current: SchemaVersion = CURRENT_SCHEMA_VERSION,
        transformers: Optional[Dict[Tuple[int, int], Transformer]] = None,
    ):
        self.current = current
        self._transformers = dict(_TRANSFORMERS if transformers is None else transformers)

    def needs_migration(self, document: Document) -> bool:
        if "schema_version" not in document or document.get("schema_version") is None:
            return True
        return SchemaVersion.parse(document["schema_version"]) < self.current

    def migrate(self, document: Document) -> Document:
        """Return the document upgraded to the current schema version.

        The input is not modified.

        Raises:
            IncompatibleVersionError: If the major version differs, or a
                transformer in the chain is missing.
        """
        doc = copy.deepcopy(document)

        if doc.get("schema_version") is None:
            logger.info("Save has no schema version, applying legacy adapter")
            doc = adapt_legacy(doc)

        try:
            version = SchemaVersion.parse(doc["schema_version"])
        except ValueError as e:
            raise IncompatibleVersionError(str(e)) from e

        if not version.is_compatible(self.current):
            raise IncompatibleVersionError(
                f"Save schema {version} is incompatible with {self.current} (major mismatch)"
            )

        if version >= self.current:
            # Current, or a newer minor from a more recent client: read as-is
            if version.minor > self.current.minor:
                logger.warning(f"Save schema {version} is newer than {self.current}, reading as-is")
            return doc

        start = version
        while version.minor < self.current.minor:
            transformer = self._transformers.get((version.major, version.minor))
            if transformer is None:
                raise IncompatibleVersionError(
                    f"No migration from {version.major}.{version.minor} towards {self.current}"
                )
            doc = transformer(doc)
            version = SchemaVersion(version.major, version.minor + 1, 0)
            doc["schema_version"] = str(version)

        if version < self.current:
            version = self.current
        doc["schema_version"] = str(version)
        logger.debug(f"Migrated save from {start} to {version}")
        return doc

    def migrate_record(self, record: SaveRecord) -> SaveRecord:
        """Migrate a record; a record at the current version is returned unchanged."""
        if record.schema_version == self.current:
            return record
        migrated = SaveRecord.from_dict(self.migrate(record.to_dict()))
        migrated.compression = record.compression
        return migrated
