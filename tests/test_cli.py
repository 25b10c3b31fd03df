"""Tests for the savesync command line interface."""

import asyncio
import base64
import json

import httpx
import pytest

from savesync.cli.__main__ import main, resolve_owner_id
from savesync.config import SyncConfig
from savesync.orchestrator import SyncOrchestrator
from savesync.protocols import RemoteError, RemoteErrorKind, StaticAuth, StaticConnectivity
from savesync.queue import OfflineQueue
from savesync.remote import HttpRemoteStore, InMemoryRemoteStore
from savesync.storage import SQLiteLocalStore


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "cli.db"


def _seed_save(db_path, slot=0, remote=None, coins=10):
    """Save a slot for the default CLI owner, queueing the push when a remote is given."""

    async def run():
        engine = SyncOrchestrator(
            SyncConfig(auto_save_interval=0),
            SQLiteLocalStore(db_path),
            remote,
            StaticAuth("local"),
            connectivity=StaticConnectivity(online=False),
            device_id="seed-device",
        )
        async with engine:
            engine.new_game(slot)
            engine.update(lambda payload: payload.inventory.currencies.update(coins=coins), slot)
            engine.update(lambda payload: setattr(payload.profile, "player_name", "Ada"), slot)
            return await engine.save(slot)

    return asyncio.run(run())


def _run(capsys, *argv):
    main(list(argv))
    return capsys.readouterr().out


class TestOwner:
    def test_explicit_owner(self):
        assert resolve_owner_id("player-7") == "player-7"

    def test_environment_owner(self, monkeypatch):
        monkeypatch.setenv("SAVESYNC_OWNER", "from-env")
        assert resolve_owner_id(None) == "from-env"

    def test_default_owner(self):
        assert resolve_owner_id(None) == "local"

    def test_invalid_owner_exits(self, db_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--db", str(db_path), "--owner", "a/b", "slots"])
        assert exc_info.value.code == 1


class TestSlots:
    def test_lists_used_and_empty_slots(self, db_path, capsys):
        _seed_save(db_path)

        out = _run(capsys, "--db", str(db_path), "slots")

        assert "Save slots for local" in out
        assert "[0] Ada" in out
        assert "local only" in out
        assert "[1] (empty)" in out

    def test_json_output(self, db_path, capsys):
        _seed_save(db_path)

        slots = json.loads(_run(capsys, "--db", str(db_path), "slots", "--json"))

        assert len(slots) == 5
        assert slots[0]["in_use"]
        assert slots[0]["player_name"] == "Ada"
        assert not slots[1]["in_use"]


class TestExportImport:
    def test_export_then_import(self, db_path, tmp_path, capsys):
        _seed_save(db_path, coins=42)
        export_path = tmp_path / "slot0.json"

        out = _run(capsys, "--db", str(db_path), "export", "0", str(export_path))
        assert "Exported slot 0" in out
        assert json.loads(export_path.read_text())["record"]["payload"]["inventory"]["currencies"] == {
            "coins": 42
        }

        out = _run(capsys, "--db", str(db_path), "import", str(export_path), "1")
        assert "into slot 1" in out

        slots = json.loads(_run(capsys, "--db", str(db_path), "slots", "--json"))
        assert slots[1]["in_use"]

    def test_export_empty_slot_fails(self, db_path, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--db", str(db_path), "export", "2", str(tmp_path / "none.json")])
        assert exc_info.value.code == 1

    def test_import_invalid_file_fails(self, db_path, tmp_path, capsys):
        path = tmp_path / "junk.json"
        path.write_text("[]")

        with pytest.raises(SystemExit):
            main(["--db", str(db_path), "import", str(path), "0"])
        assert "Import failed" in capsys.readouterr().err


class TestQueue:
    def test_status_lists_pending(self, db_path, capsys):
        _seed_save(db_path, remote=InMemoryRemoteStore())

        out = _run(capsys, "--db", str(db_path), "queue", "status")

        assert "Pending operations: 1" in out
        assert "slot_0" in out

    def test_status_json(self, db_path, capsys):
        _seed_save(db_path, remote=InMemoryRemoteStore())

        data = json.loads(_run(capsys, "--db", str(db_path), "queue", "status", "--json"))

        [op] = data["pending"]
        assert op["slot_key"] == "slot_0"
        assert op["priority"] == "NORMAL"
        assert op["size"] > 0
        assert "data" not in op
        assert data["dead_letters"] == []

    def test_clear(self, db_path, capsys):
        _seed_save(db_path, remote=InMemoryRemoteStore())

        assert "Cleared 1 operation(s)" in _run(capsys, "--db", str(db_path), "queue", "clear")
        assert "Pending operations: 0" in _run(capsys, "--db", str(db_path), "queue", "status")

    def test_retry_dead(self, db_path, capsys):
        _seed_save(db_path, remote=InMemoryRemoteStore())
        queue = OfflineQueue(SQLiteLocalStore(db_path), SyncConfig())
        queue.load()

        async def reject(op):
            raise RemoteError(RemoteErrorKind.REJECTED, "bad request")

        asyncio.run(queue.drain(lambda: True, reject))
        assert "Dead-lettered: 1" in _run(capsys, "--db", str(db_path), "queue", "status")

        out = _run(capsys, "--db", str(db_path), "queue", "retry-dead")

        assert "Requeued 1" in out
        assert "Pending operations: 1" in _run(capsys, "--db", str(db_path), "queue", "status")


class TestSync:
    def test_without_backend_exits(self, db_path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--db", str(db_path), "sync"])
        assert exc_info.value.code == 1
        assert "No backend configured" in capsys.readouterr().err

    def test_drains_queue_to_backend(self, db_path, capsys, monkeypatch):
        _seed_save(db_path, remote=InMemoryRemoteStore())
        pushed = {}

        def handler(request):
            body = json.loads(request.content)
            if request.url.path.endswith("/keys/query"):
                return httpx.Response(200, json={"items": {}})
            pushed.update({k: base64.b64decode(v) for k, v in body["items"].items()})
            return httpx.Response(200, json={"ok": True})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        monkeypatch.setenv("SAVESYNC_BACKEND_URL", "http://localhost:8000")
        monkeypatch.setattr(
            "savesync.cli.commands.queue.configured_remote",
            lambda ctx: HttpRemoteStore(ctx.config.backend_url, client=client),
        )

        out = _run(capsys, "--db", str(db_path), "sync")

        assert "Sent: 1  Dropped: 0  Remaining: 0" in out
        assert list(pushed) == ["local/slot_0"]


class TestConfigCommand:
    def test_show_json_redacts_secrets(self, db_path, capsys, monkeypatch):
        monkeypatch.setenv("SAVESYNC_AUTH_TOKEN", "super-secret")

        data = json.loads(_run(capsys, "--db", str(db_path), "config", "show", "--json"))

        assert data["auth_token"] == "***"
        assert data["max_slots"] == 5

    def test_show_table(self, db_path, capsys):
        out = _run(capsys, "--db", str(db_path), "config", "show")
        assert "conflict_strategy" in out
        assert "use_newest" in out

    def test_invalid_config_file_exits(self, db_path, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"max_slots": 0}))
        with pytest.raises(SystemExit):
            main(["--db", str(db_path), "--config", str(path), "slots"])

    def test_log_level_writes_log_file(self, db_path, savesync_home, capsys):
        _run(capsys, "--db", str(db_path), "--log-level", "DEBUG", "slots")
        assert list((savesync_home / "logs").glob("local-*.log"))
