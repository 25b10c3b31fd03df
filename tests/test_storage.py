"""Tests for the local stores (memory and SQLite)."""

import sqlite3

import pytest

from savesync.protocols import CorruptSlotError
from savesync.storage import MemoryLocalStore, SQLiteLocalStore
from savesync.storage.schema import SCHEMA_VERSION


def _corrupt(store, key, data=b"\x00garbage"):
    """Replace a key's bytes without touching its stored checksum."""
    if isinstance(store, MemoryLocalStore):
        store.corrupt(key, data)
        return
    conn = sqlite3.connect(store.db_path)
    try:
        conn.execute("UPDATE kv SET value = ? WHERE key = ?", (data, key))
        conn.commit()
    finally:
        conn.close()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryLocalStore()
    return SQLiteLocalStore(tmp_path / "store.db")


class TestPrimaryAndBackup:
    def test_put_writes_primary_and_backup(self, store):
        store.put("slot_0", b"save-bytes")
        assert store.get_raw("slot_0") == b"save-bytes"
        assert store.get_raw("slot_0_backup") == b"save-bytes"
        assert store.get("slot_0") == b"save-bytes"

    def test_put_raw_has_no_backup(self, store):
        store.put_raw("sync_queue", b"[]")
        assert store.get_raw("sync_queue") == b"[]"
        assert store.get_raw("sync_queue_backup") is None

    def test_missing_key(self, store):
        assert store.get("slot_3") is None
        assert store.get_raw("slot_3") is None

    def test_overwrite_replaces_both_copies(self, store):
        store.put("slot_0", b"first")
        store.put("slot_0", b"second")
        assert store.get_raw("slot_0") == b"second"
        assert store.get_raw("slot_0_backup") == b"second"

    def test_corrupt_primary_falls_back_and_repairs(self, store):
        store.put("slot_0", b"good")
        _corrupt(store, "slot_0")

        assert store.get_raw("slot_0") is None
        assert store.get("slot_0") == b"good"
        assert store.get_raw("slot_0") == b"good"

    def test_missing_primary_uses_backup(self, store):
        store.put_raw("slot_0_backup", b"from-backup")
        assert store.get("slot_0") == b"from-backup"

    def test_both_corrupt_raises(self, store):
        store.put("slot_0", b"good")
        _corrupt(store, "slot_0")
        _corrupt(store, "slot_0_backup")

        with pytest.raises(CorruptSlotError) as exc_info:
            store.get("slot_0")
        assert exc_info.value.slot_key == "slot_0"

    def test_validator_rejection_uses_backup(self, store):
        store.put_raw("slot_0", b"bad")
        store.put_raw("slot_0_backup", b"good")

        assert store.get("slot_0", validate=lambda data: data == b"good") == b"good"

    def test_validator_exception_counts_as_invalid(self, store):
        store.put("slot_0", b"bad")

        def reject(data):
            raise ValueError("not a save")

        with pytest.raises(CorruptSlotError, match="not a save"):
            store.get("slot_0", validate=reject)

    def test_delete_removes_backup_and_metadata(self, store):
        store.put("slot_0", b"save")
        store.put_raw("slot_0_metadata", b"{}")
        store.put("slot_1", b"other")

        store.delete("slot_0")

        assert store.keys() == ["slot_1", "slot_1_backup"]


class TestSQLiteLocalStore:
    def test_data_survives_reopen(self, tmp_path):
        path = tmp_path / "saves.db"
        SQLiteLocalStore(path).put("slot_0", b"durable")
        assert SQLiteLocalStore(path).get("slot_0") == b"durable"

    def test_schema_version_recorded(self, tmp_path):
        assert SQLiteLocalStore(tmp_path / "saves.db").get_schema_version() == SCHEMA_VERSION

    def test_default_path_uses_data_dir(self, savesync_home):
        store = SQLiteLocalStore()
        assert store.db_path == savesync_home / "saves.db"

    def test_migrates_store_without_checksum_column(self, tmp_path):
        path = tmp_path / "old.db"
        conn = sqlite3.connect(path)
        conn.executescript(
            """
            CREATE TABLE schema_version (version INTEGER NOT NULL);
            INSERT INTO schema_version (version) VALUES (1);
            CREATE TABLE kv (key TEXT PRIMARY KEY, value BLOB NOT NULL, updated_at TEXT NOT NULL);
            INSERT INTO kv (key, value, updated_at) VALUES ('slot_0', X'6F6C64', '2025-01-01');
            """
        )
        conn.close()

        store = SQLiteLocalStore(path)

        assert store.get_schema_version() == SCHEMA_VERSION
        # Rows from before the checksum column are still readable
        assert store.get("slot_0") == b"old"
