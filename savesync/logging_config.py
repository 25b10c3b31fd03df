"""Logging setup and sync event log for savesync.

Two outputs live under ``<data dir>/logs``:

- ``local-YYYY-MM-DD.log``: the ``savesync`` logger, one line per record
- ``sync-events-YYYY-MM-DD.log``: an append-only trail of save/load/conflict
  /queue events, one pipe-separated line per event
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from savesync.utils import get_savesync_home

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _log_dir() -> Path:
    log_dir = get_savesync_home() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def setup_savesync_logging(owner_id: str = "default", level: str = "INFO") -> logging.Logger:
    """Configure the ``savesync`` logger with a dated file handler.

    DEBUG also logs to the console. Calling this again reuses the existing
    handlers.
    """
    logger = logging.getLogger("savesync")
    resolved = logging.getLevelName(str(level).upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logger.setLevel(resolved)

    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        handler = logging.FileHandler(_log_dir() / f"local-{_today()}.log", encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    if resolved <= logging.DEBUG and not has_console:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(console)

    logger.debug(f"Logging configured for owner={owner_id}")
    return logger


def log_sync_event(event_type: str, details: str, owner_id: str = "default") -> None:
    """Append one line to today's sync event log."""
    timestamp = datetime.now(timezone.utc).isoformat()
    path = _log_dir() / f"sync-events-{_today()}.log"
    with open(path, "a", encoding="utf-8") as f:
        f.write(f"{timestamp} | {event_type} | owner={owner_id} | {details}\n")


def log_save(owner_id: str, slot: int, status: str, size: int, sync_version: int) -> None:
    log_sync_event(
        "save", f"slot={slot}, status={status}, size={size}, sync_version={sync_version}", owner_id
    )


def log_load(owner_id: str, slot: int, source: Optional[str], status: str) -> None:
    log_sync_event("load", f"slot={slot}, source={source}, status={status}", owner_id)


def log_conflict(owner_id: str, slot: int, strategy: str, resolution: Optional[str]) -> None:
    log_sync_event(
        "conflict", f"slot={slot}, strategy={strategy}, resolution={resolution}", owner_id
    )


def log_queue_drain(owner_id: str, sent: int, dropped: int, remaining: int) -> None:
    log_sync_event("drain", f"sent={sent}, dropped={dropped}, remaining={remaining}", owner_id)
