"""Per-slot summaries for slot pickers.

Metadata is derived from the SaveRecord after every successful save or load
and stored next to the slot under ``slot_N_metadata``. It is never the source
of truth: a missing or unreadable metadata entry just shows the slot as empty.
"""

import json
import logging
from typing import List, Optional

from savesync.protocols import LocalStore
from savesync.types import SaveRecord, SlotMetadata, metadata_key, utc_now

logger = logging.getLogger(__name__)


class SlotMetadataManager:
    def __init__(self, store: LocalStore, max_slots: int, total_levels: int = 100):
        self.store = store
        self.max_slots = max_slots
        self.total_levels = max(1, total_levels)

    def _check_slot(self, slot: int) -> None:
        if not 0 <= slot < self.max_slots:
            raise ValueError(f"Slot {slot} out of range (0..{self.max_slots - 1})")

    def progress_percent(self, record: SaveRecord) -> float:
        completed = len(record.payload.progression.completed_levels)
        return round(min(100.0, 100.0 * completed / self.total_levels), 2)

    def get(self, slot: int) -> SlotMetadata:
        """Metadata for a slot; an empty entry if none is stored."""
        self._check_slot(slot)
        raw = self.store.get_raw(metadata_key(slot))
        if raw is None:
            return SlotMetadata(slot=slot)
        try:
            return SlotMetadata.from_dict(json.loads(raw.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Unreadable metadata for slot {slot}: {e}")
            return SlotMetadata(slot=slot)

    def _put(self, meta: SlotMetadata) -> SlotMetadata:
        self.store.put_raw(metadata_key(meta.slot), json.dumps(meta.to_dict()).encode("utf-8"))
        return meta

    def update_from_record(
        self, slot: int, record: SaveRecord, size: int, cloud_synced: bool = False
    ) -> SlotMetadata:
        """Recompute a slot's metadata from a trusted record."""
        previous = self.get(slot)
        meta = SlotMetadata(
            slot=slot,
            in_use=True,
            created_at=previous.created_at or record.local_timestamp or record.last_saved_at,
            modified_at=record.last_saved_at,
            progress_percent=self.progress_percent(record),
            size_bytes=size,
            cloud_synced=cloud_synced,
            corrupted=False,
            player_name=record.payload.profile.player_name,
            sync_version=record.sync_version,
        )
        return self._put(meta)

    def list_slots(self) -> List[SlotMetadata]:
        """All slots ``0..max_slots-1``, unused ones included."""
        return [self.get(slot) for slot in range(self.max_slots)]

    def mark_corrupted(self, slot: int) -> SlotMetadata:
        meta = self.get(slot)
        meta.corrupted = True
        meta.in_use = True
        meta.modified_at = meta.modified_at or utc_now()
        logger.warning(f"Slot {slot} marked corrupted")
        return self._put(meta)

    def mark_synced(self, slot: int, synced: bool = True) -> Optional[SlotMetadata]:
        meta = self.get(slot)
        if not meta.in_use:
            return None
        meta.cloud_synced = synced
        return self._put(meta)

    def clear(self, slot: int) -> None:
        self._check_slot(slot)
        self.store.delete(metadata_key(slot))
