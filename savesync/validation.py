"""Record validation for savesync.

Every record is validated before it is written and after it is read, so
nothing untrusted reaches the local store or the caller. Validation failures
are reported together in a single ValidationError.
"""

import logging
import math
from datetime import datetime
from typing import Callable, Dict, Hashable, List, Optional, Tuple

from savesync.protocols import ValidationError
from savesync.types import SaveRecord, utc_now

logger = logging.getLogger(__name__)

MAX_ID_LENGTH = 256


def sanitize_identifier(value, field_name: str, max_length: int = MAX_ID_LENGTH) -> List[str]:
    """Return failures for an owner/device identifier (empty list if valid)."""
    if not isinstance(value, str):
        return [f"{field_name} must be a string, got {type(value).__name__}"]
    if not value.strip():
        return [f"{field_name} cannot be empty"]
    if len(value) > max_length:
        return [f"{field_name} too long (max {max_length} characters, got {len(value)})"]
    if any(ord(ch) < 32 for ch in value):
        return [f"{field_name} contains control characters"]
    return []


class RecordValidator:
    """Validates SaveRecords against the configured plausibility bounds.

    Args:
        config: SyncConfig providing ``max_save_size``, ``clock_skew`` and
            ``max_record_age``.
        clock: Callable returning the current UTC datetime.
    """

    def __init__(self, config, clock: Optional[Callable[[], datetime]] = None):
        self.config = config
        self._clock = clock or utc_now
        # Highest sync_version seen per (owner_id, device_id, scope)
        self._high_water: Dict[Tuple[str, str, Optional[Hashable]], int] = {}

    def collect_failures(self, record: SaveRecord) -> List[str]:
        failures: List[str] = []
        failures.extend(sanitize_identifier(record.owner_id, "owner_id"))
        failures.extend(sanitize_identifier(record.device_id, "device_id"))

        if not isinstance(record.sync_version, int) or record.sync_version < 0:
            failures.append(f"sync_version must be a non-negative integer, got {record.sync_version!r}")

        failures.extend(self._check_timestamp(record.last_saved_at))

        profile = record.payload.profile
        if profile.level < 0 or profile.experience < 0:
            failures.append("profile level and experience cannot be negative")

        for name, amount in record.payload.inventory.currencies.items():
            if amount < 0:
                failures.append(f"currency {name} cannot be negative")

        for name, value in record.payload.statistics.counters.items():
            if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
                failures.append(f"statistic {name} must be finite")

        return failures

    def validate(self, record: SaveRecord) -> SaveRecord:
        """Raise ValidationError if the record is not plausible; return it otherwise."""
        failures = self.collect_failures(record)
        if failures:
            logger.debug(f"Record validation failed: {failures}")
            raise ValidationError(failures)
        return record

    def check_size(self, encoded: bytes, raw_size: Optional[int] = None) -> bytes:
        """Reject saves larger than ``max_save_size`` before any I/O.

        Both the encoded bytes and the uncompressed document (``raw_size``)
        must fit, so compression cannot hide an oversized payload.
        """
        limit = self.config.max_save_size
        if len(encoded) > limit:
            raise ValidationError([f"encoded save is {len(encoded)} bytes, exceeds max_save_size {limit}"])
        if raw_size is not None and raw_size > limit:
            raise ValidationError([f"save document is {raw_size} bytes, exceeds max_save_size {limit}"])
        return encoded

    def check_monotonic(self, record: SaveRecord, scope: Optional[Hashable] = None) -> None:
        """Reject a sync_version lower than one already seen for the same owner, device and scope."""
        key = (record.owner_id, record.device_id, scope)
        seen = self._high_water.get(key)
        if seen is not None and record.sync_version < seen:
            raise ValidationError(
                [f"sync_version {record.sync_version} is lower than {seen} for device {record.device_id}"]
            )

    def observe(self, record: SaveRecord, scope: Optional[Hashable] = None) -> None:
        """Record the sync_version of a trusted record."""
        key = (record.owner_id, record.device_id, scope)
        self._high_water[key] = max(self._high_water.get(key, record.sync_version), record.sync_version)

    def high_water(self, owner_id: str, device_id: str, scope: Optional[Hashable] = None) -> int:
        return self._high_water.get((owner_id, device_id, scope), 0)

    def _check_timestamp(self, value) -> List[str]:
        if not isinstance(value, datetime):
            return ["last_saved_at is missing"]
        if value.tzinfo is None:
            return ["last_saved_at must be timezone-aware"]
        now = self._clock()
        if value - now > self.config.clock_skew:
            return [f"last_saved_at {value.isoformat()} is in the future"]
        if now - value > self.config.max_record_age:
            return [f"last_saved_at {value.isoformat()} is implausibly old"]
        return []
