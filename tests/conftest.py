"""
Pytest fixtures and test configuration for savesync tests.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from savesync.codec import SaveCodec
from savesync.config import ENV_OVERRIDES, SyncConfig
from savesync.orchestrator import SyncOrchestrator
from savesync.protocols import StaticAuth, StaticConnectivity
from savesync.remote import InMemoryRemoteStore
from savesync.storage import MemoryLocalStore, SQLiteLocalStore
from savesync.types import SavePayload, SaveRecord

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
OWNER = "player-1"

_DEFAULT = object()


class FakeClock:
    """Deterministic clock. Every reading advances time by ``step``."""

    def __init__(self, start: datetime = START, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class InstantSleep:
    """Awaitable sleep replacement that records the requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(autouse=True)
def savesync_home(tmp_path, monkeypatch):
    """Point the data dir at a temp directory and clear savesync env vars."""
    home = tmp_path / "savesync-home"
    monkeypatch.setenv("SAVESYNC_DATA_DIR", str(home))
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("SAVESYNC_OWNER", raising=False)
    return home


@pytest.fixture(autouse=True)
def reset_savesync_logger():
    yield
    logger = logging.getLogger("savesync")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return InstantSleep()


@pytest.fixture
def config():
    return SyncConfig(
        auto_save_interval=0,
        jitter=0.0,
        backoff_base=0.01,
        backoff_max=0.1,
        rate_limit_step=0.01,
        max_retries=3,
    )


@pytest.fixture
def codec(config):
    return SaveCodec.from_config(config)


@pytest.fixture
def memory_store():
    return MemoryLocalStore()


@pytest.fixture
def sqlite_store(tmp_path):
    store = SQLiteLocalStore(tmp_path / "saves.db")
    yield store
    store.close()


@pytest.fixture
def remote():
    return InMemoryRemoteStore()


@pytest.fixture
def connectivity():
    return StaticConnectivity(online=True)


@pytest.fixture
def make_record(clock):
    """Factory for trusted records owned by ``player-1``."""

    def factory(
        device_id="device-a",
        sync_version=1,
        saved_at=None,
        coins=0,
        levels=(),
        owner_id=OWNER,
        **payload_fields,
    ):
        saved_at = saved_at or clock.now
        payload = SavePayload(**payload_fields)
        if coins:
            payload.inventory.currencies["coins"] = coins
        payload.progression.completed_levels.update(levels)
        return SaveRecord(
            owner_id=owner_id,
            device_id=device_id,
            sync_version=sync_version,
            last_saved_at=saved_at,
            local_timestamp=saved_at,
            payload=payload,
        )

    return factory


@pytest.fixture
def make_engine(config, memory_store, remote, connectivity, clock, sleeper):
    """Factory for orchestrators sharing the test's store, remote and clock."""

    def factory(
        store=None,
        remote_store=_DEFAULT,
        device_id="device-a",
        owner_id=OWNER,
        online=None,
        presenter=None,
        **overrides,
    ):
        cfg = replace(config, **overrides) if overrides else config
        signal = connectivity if online is None else StaticConnectivity(online=online)
        return SyncOrchestrator(
            cfg,
            store if store is not None else memory_store,
            remote if remote_store is _DEFAULT else remote_store,
            StaticAuth(owner_id),
            connectivity=signal,
            presenter=presenter,
            clock=clock,
            device_id=device_id,
            sleep=sleeper,
            rng=lambda: 0.5,
        )

    return factory
