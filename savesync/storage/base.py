"""Shared read/write logic for local stores.

Slot keys are stored twice: the primary and ``<key>_backup``. Both are
written in one atomic step. Reads prefer the primary and fall back to the
backup when the primary is missing or fails validation, repairing the
primary from the backup.
"""

import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from savesync.protocols import CorruptSlotError, SaveSyncError
from savesync.types import METADATA_SUFFIX, backup_key

logger = logging.getLogger(__name__)

Validator = Callable[[bytes], object]


def checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class BaseLocalStore(ABC):
    """Local store with primary/backup semantics.

    Subclasses implement raw row access. ``_write_many`` and ``_delete_many``
    must be all-or-nothing.
    """

    @abstractmethod
    def _read(self, key: str) -> Optional[Tuple[bytes, Optional[str]]]:
        """Return ``(value, checksum)`` for a key, or None."""
        ...

    @abstractmethod
    def _write_many(self, items: Dict[str, bytes]) -> None: ...

    @abstractmethod
    def _delete_many(self, keys: Iterable[str]) -> None: ...

    @abstractmethod
    def keys(self) -> List[str]: ...

    def close(self) -> None:
        pass

    # === Public API ===

    def put(self, key: str, data: bytes) -> None:
        """Write the primary and backup copies of a key atomically."""
        self._write_many({key: data, backup_key(key): data})
        logger.debug(f"Stored {key} ({len(data)} bytes) with backup")

    def put_raw(self, key: str, data: bytes) -> None:
        """Write a single key with no backup (metadata, queue state)."""
        self._write_many({key: data})

    def get_raw(self, key: str) -> Optional[bytes]:
        row = self._read(key)
        if row is None:
            return None
        value, stored_checksum = row
        if stored_checksum and stored_checksum != checksum(value):
            logger.warning(f"Checksum mismatch for {key}")
            return None
        return value

    def get(self, key: str, validate: Optional[Validator] = None) -> Optional[bytes]:
        """Read a key, falling back to its backup.

        Args:
            key: Primary key (e.g. ``slot_0``).
            validate: Optional callable that raises or returns False for
                bytes that must not be trusted.

        Returns:
            The trusted bytes, or None if neither copy exists.

        Raises:
            CorruptSlotError: If a copy exists but neither passes validation.
        """
        primary = self._read(key)
        primary_ok, primary_reason = self._check(key, primary, validate)
        if primary_ok:
            return primary[0]

        backup = self._read(backup_key(key))
        backup_ok, backup_reason = self._check(backup_key(key), backup, validate)
        if backup_ok:
            if primary is None:
                logger.warning(f"Primary copy of {key} missing, using backup")
            else:
                logger.warning(f"Primary copy of {key} invalid ({primary_reason}), using backup")
            try:
                self._write_many({key: backup[0]})
            except SaveSyncError as e:
                logger.error(f"Could not repair {key} from backup: {e}", exc_info=True)
            return backup[0]

        if primary is None and backup is None:
            return None
        raise CorruptSlotError(key, primary_reason or backup_reason or "")

    def delete(self, key: str) -> None:
        """Remove a key with its backup and metadata in one step."""
        self._delete_many([key, backup_key(key), f"{key}{METADATA_SUFFIX}"])

    def _check(
        self, key: str, row: Optional[Tuple[bytes, Optional[str]]], validate: Optional[Validator]
    ) -> Tuple[bool, Optional[str]]:
        if row is None:
            return False, None
        value, stored_checksum = row
        if stored_checksum and stored_checksum != checksum(value):
            return False, "checksum mismatch"
        if validate is None:
            return True, None
        try:
            if validate(value) is False:
                return False, "rejected by validator"
        except (SaveSyncError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.debug(f"Validation failed for {key}: {e}")
            return False, str(e)
        return True, None
