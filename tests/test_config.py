"""Tests for SyncConfig loading and validation."""

import json

import pytest
from cryptography.fernet import Fernet

from savesync.config import SyncConfig
from savesync.protocols import ConfigError
from savesync.types import CompressionMethod, ConflictStrategy


class TestValidate:
    def test_defaults_are_valid(self):
        config = SyncConfig().validate()
        assert config.max_slots == 5
        assert config.max_save_size == 10 * 1024 * 1024
        assert config.conflict_strategy == ConflictStrategy.USE_NEWEST

    def test_all_problems_reported(self):
        config = SyncConfig(max_slots=0, jitter=2.0, remote_timeout=0)
        with pytest.raises(ConfigError) as exc_info:
            config.validate()
        message = str(exc_info.value)
        assert "max_slots" in message
        assert "jitter" in message
        assert "remote_timeout" in message

    def test_backoff_max_below_base(self):
        with pytest.raises(ConfigError, match="backoff_max"):
            SyncConfig(backoff_base=10.0, backoff_max=1.0).validate()

    def test_invalid_encryption_key(self):
        with pytest.raises(ConfigError, match="Fernet"):
            SyncConfig(encryption_key="not-a-key").validate()

    def test_valid_encryption_key(self):
        SyncConfig(encryption_key=Fernet.generate_key().decode()).validate()

    def test_insecure_backend_url(self):
        with pytest.raises(ConfigError, match="backend_url"):
            SyncConfig(backend_url="http://saves.example.com").validate()

    def test_strings_become_enums(self):
        config = SyncConfig(compression="none", conflict_strategy="merge")
        assert config.compression == CompressionMethod.NONE
        assert config.conflict_strategy == ConflictStrategy.MERGE

    def test_unknown_enum_value(self):
        with pytest.raises(ValueError):
            SyncConfig(conflict_strategy="flip_a_coin")


class TestLoad:
    def test_missing_file_gives_defaults(self, savesync_home):
        assert SyncConfig.load() == SyncConfig()

    def test_reads_data_dir_config(self, savesync_home):
        savesync_home.mkdir(parents=True)
        (savesync_home / "config.json").write_text(
            json.dumps({"max_slots": 8, "conflict_strategy": "use_cloud", "mystery": 1})
        )

        config = SyncConfig.load()

        assert config.max_slots == 8
        assert config.conflict_strategy == ConflictStrategy.USE_CLOUD

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"max_slots": 8}))
        monkeypatch.setenv("SAVESYNC_MAX_SLOTS", "3")
        monkeypatch.setenv("SAVESYNC_BACKEND_URL", "https://saves.example.com")

        config = SyncConfig.load(path)

        assert config.max_slots == 3
        assert config.backend_url == "https://saves.example.com"

    def test_bad_environment_value(self, monkeypatch):
        monkeypatch.setenv("SAVESYNC_MAX_SLOTS", "many")
        with pytest.raises(ConfigError, match="SAVESYNC_MAX_SLOTS"):
            SyncConfig.load()

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError, match="Cannot read config"):
            SyncConfig.load(path)

    def test_invalid_values_in_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"compression": "lzma"}))
        with pytest.raises(ConfigError):
            SyncConfig.load(path)


class TestToDict:
    def test_secrets_are_redacted(self):
        data = SyncConfig(auth_token="tok", encryption_key="key").to_dict()
        assert data["auth_token"] == "***"
        assert data["encryption_key"] == "***"
        assert data["compression"] == "zlib"

    def test_unredacted(self):
        assert SyncConfig(auth_token="tok").to_dict(redact=False)["auth_token"] == "tok"
