"""Tests for savesync.utils."""

import pytest

from savesync.utils import get_device_id, get_savesync_home, validate_backend_url


class TestSavesyncHome:
    def test_env_override(self, savesync_home):
        assert get_savesync_home() == savesync_home

    def test_default_under_home(self, monkeypatch, tmp_path):
        monkeypatch.delenv("SAVESYNC_DATA_DIR")
        monkeypatch.setenv("HOME", str(tmp_path))
        assert get_savesync_home() == tmp_path / ".savesync"


class TestDeviceId:
    def test_created_once_and_reused(self, savesync_home):
        first = get_device_id()
        assert (savesync_home / "device_id").read_text() == first
        assert get_device_id() == first

    def test_explicit_home(self, tmp_path):
        home = tmp_path / "other"
        assert get_device_id(home) == (home / "device_id").read_text()


class TestValidateBackendUrl:
    @pytest.mark.parametrize(
        "url",
        ["https://saves.example.com", "http://localhost:8000", "http://127.0.0.1/api"],
    )
    def test_accepted(self, url):
        assert validate_backend_url(url) == url

    @pytest.mark.parametrize(
        "url",
        ["http://saves.example.com", "ftp://saves.example.com", "https://", None, ""],
    )
    def test_rejected(self, url):
        assert validate_backend_url(url) is None

    def test_localhost_http_can_be_refused(self):
        assert validate_backend_url("http://localhost", allow_localhost_http=False) is None
