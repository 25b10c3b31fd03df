"""Tests for save document schema migration."""

import copy

import pytest

from savesync.migration import VersionMigrator, adapt_legacy, migration
from savesync.protocols import IncompatibleVersionError
from savesync.types import CURRENT_SCHEMA_VERSION, SaveRecord, SchemaVersion


@pytest.fixture
def migrator():
    return VersionMigrator()


def _v1_0_document():
    return {
        "schema_version": "1.0.0",
        "owner_id": "player-1",
        "device_id": "device-a",
        "sync_version": 3,
        "last_saved_at": "2026-03-01T12:00:00+00:00",
        "local_timestamp": "2026-03-01T12:00:00+00:00",
        "remote_timestamp": None,
        "payload": {
            "profile": {"player_name": "Ada", "level": 4, "experience": 120, "avatar": None},
            "progression": {"completed_levels": [1, 2], "unlocked_items": [], "level_records": {}},
            "inventory": {"currencies": {"coins": 10}, "items": {}},
            "settings": {"volume": 0.5},
        },
    }


class TestSchemaVersion:
    def test_parse_variants(self):
        assert SchemaVersion.parse("1.2.3") == SchemaVersion(1, 2, 3)
        assert SchemaVersion.parse("2") == SchemaVersion(2, 0, 0)
        assert SchemaVersion.parse({"major": 1, "minor": 1}) == SchemaVersion(1, 1, 0)

    def test_parse_rejects_garbage(self):
        with pytest.raises(ValueError):
            SchemaVersion.parse("one.two")

    def test_compatibility_is_major_only(self):
        assert SchemaVersion(1, 0, 0).is_compatible(SchemaVersion(1, 9, 9))
        assert not SchemaVersion(1, 0, 0).is_compatible(SchemaVersion(2, 0, 0))


class TestMigrate:
    def test_upgrades_old_minor_to_current(self, migrator):
        migrated = migrator.migrate(_v1_0_document())

        assert migrated["schema_version"] == str(CURRENT_SCHEMA_VERSION)
        payload = migrated["payload"]
        assert payload["statistics"] == {"counters": {}, "play_time_seconds": 0.0}
        assert payload["extensions"] == {}
        assert payload["settings"] == {"values": {"volume": 0.5}}

        record = SaveRecord.from_dict(migrated)
        assert record.payload.settings.values["volume"] == 0.5
        assert record.sync_version == 3

    def test_input_is_not_modified(self, migrator):
        document = _v1_0_document()
        original = copy.deepcopy(document)
        migrator.migrate(document)
        assert document == original

    def test_current_version_is_unchanged(self, migrator, make_record):
        document = make_record().to_dict()
        assert migrator.migrate(document) == document
        assert not migrator.needs_migration(document)

    def test_newer_minor_is_read_as_is(self, migrator, make_record):
        document = make_record().to_dict()
        document["schema_version"] = "1.9.0"
        assert migrator.migrate(document)["schema_version"] == "1.9.0"

    def test_major_mismatch_is_incompatible(self, migrator, make_record):
        document = make_record().to_dict()
        document["schema_version"] = "2.0.0"
        with pytest.raises(IncompatibleVersionError, match="major mismatch"):
            migrator.migrate(document)

    def test_unparseable_version_is_incompatible(self, migrator):
        document = _v1_0_document()
        document["schema_version"] = "v-one"
        with pytest.raises(IncompatibleVersionError):
            migrator.migrate(document)

    def test_missing_transformer_is_incompatible(self):
        migrator = VersionMigrator(transformers={})
        with pytest.raises(IncompatibleVersionError, match="No migration"):
            migrator.migrate(_v1_0_document())

    def test_migrate_record_at_current_version_is_identity(self, migrator, make_record):
        record = make_record()
        assert migrator.migrate_record(record) is record

    def test_duplicate_registration_rejected(self):
        with pytest.raises(ValueError, match="Duplicate migration"):
            migration(major=1, from_minor=0)(lambda document: document)


class TestLegacyAdapter:
    def test_flat_save_is_adapted(self, migrator):
        legacy = {
            "user_id": "player-1",
            "player_name": "Old Timer",
            "level": 7,
            "coins": 300,
            "gems": 4,
            "completed_levels": [1, 2, 3],
            "inventory": {"sword": 1},
            "settings": {"music": False},
            "save_time": "2025-12-24T08:00:00+00:00",
            "version": 9,
        }
        assert migrator.needs_migration(legacy)

        record = SaveRecord.from_dict(migrator.migrate(legacy))

        assert record.owner_id == "player-1"
        assert record.device_id == "legacy"
        assert record.sync_version == 9
        assert record.schema_version == CURRENT_SCHEMA_VERSION
        assert record.payload.profile.player_name == "Old Timer"
        assert record.payload.inventory.currencies == {"coins": 300, "gems": 4}
        assert record.payload.inventory.items == {"sword": 1}
        assert record.payload.progression.completed_levels == {1, 2, 3}
        assert record.payload.settings.values == {"music": False}

    def test_adapter_output_is_version_1_0(self):
        assert adapt_legacy({"coins": 1})["schema_version"] == "1.0.0"
