"""Tests for per-slot metadata."""

from datetime import timedelta

import pytest

from savesync.metadata import SlotMetadataManager
from savesync.storage import MemoryLocalStore
from savesync.types import metadata_key


@pytest.fixture
def store():
    return MemoryLocalStore()


@pytest.fixture
def manager(store):
    return SlotMetadataManager(store, max_slots=3, total_levels=40)


class TestSlotMetadataManager:
    def test_unused_slots_are_listed_empty(self, manager):
        slots = manager.list_slots()
        assert [meta.slot for meta in slots] == [0, 1, 2]
        assert not any(meta.in_use for meta in slots)

    def test_update_from_record(self, manager, make_record):
        record = make_record(sync_version=4, levels=range(10))
        record.payload.profile.player_name = "Ada"

        meta = manager.update_from_record(1, record, size=512, cloud_synced=True)

        assert meta.in_use
        assert meta.progress_percent == 25.0
        assert meta.size_bytes == 512
        assert meta.cloud_synced
        assert meta.player_name == "Ada"
        assert meta.sync_version == 4
        assert manager.get(1) == meta

    def test_progress_is_capped(self, manager, make_record):
        record = make_record(levels=range(100))
        assert manager.progress_percent(record) == 100.0

    def test_created_at_is_kept_across_saves(self, manager, make_record):
        first = make_record()
        later = make_record(sync_version=2, saved_at=first.last_saved_at + timedelta(hours=1))

        manager.update_from_record(0, first, size=10)
        meta = manager.update_from_record(0, later, size=20)

        assert meta.created_at == first.last_saved_at
        assert meta.modified_at == later.last_saved_at

    def test_mark_corrupted(self, manager):
        meta = manager.mark_corrupted(2)
        assert meta.corrupted
        assert meta.in_use
        assert manager.get(2).corrupted

    def test_mark_synced_ignores_unused_slots(self, manager, make_record):
        assert manager.mark_synced(0) is None
        manager.update_from_record(0, make_record(), size=10)
        assert manager.mark_synced(0).cloud_synced

    def test_unreadable_metadata_shows_empty(self, manager, store):
        store.put_raw(metadata_key(0), b"{broken")
        assert not manager.get(0).in_use

    def test_clear(self, manager, store, make_record):
        manager.update_from_record(0, make_record(), size=10)
        manager.clear(0)
        assert store.get_raw(metadata_key(0)) is None

    def test_slot_out_of_range(self, manager):
        with pytest.raises(ValueError, match="out of range"):
            manager.get(3)
