"""Shared helpers for savesync."""

import logging
import os
import uuid
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


def get_savesync_home() -> Path:
    """Return the savesync data directory.

    Uses ``SAVESYNC_DATA_DIR`` when set, otherwise ``~/.savesync``.
    """
    override = os.environ.get("SAVESYNC_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".savesync"


def get_device_id(home: Optional[Path] = None) -> str:
    """Return a stable per-device identifier, creating it on first use."""
    home = home or get_savesync_home()
    device_file = home / "device_id"
    try:
        if device_file.exists():
            value = device_file.read_text(encoding="utf-8").strip()
            if value:
                return value
        home.mkdir(parents=True, exist_ok=True)
        value = uuid.uuid4().hex
        device_file.write_text(value, encoding="utf-8")
        return value
    except OSError as e:
        # Read-only home: fall back to an id derived from the node
        logger.warning(f"Cannot persist device id under {home} ({e}), using node id")
        return uuid.UUID(int=uuid.getnode()).hex


def validate_backend_url(url: Optional[str], *, allow_localhost_http: bool = True) -> Optional[str]:
    """Validate a backend URL for safe token transmission.

    Returns the URL unchanged if valid, or None if rejected. Only https is
    accepted for remote hosts; plain http is allowed for localhost.
    """
    if not url:
        return None

    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid backend_url scheme; only http/https allowed.")
        return None
    if not parsed.netloc:
        logger.warning("Invalid backend_url; missing host.")
        return None
    if parsed.scheme == "http":
        host = parsed.hostname or ""
        if not allow_localhost_http or host not in {"localhost", "127.0.0.1"}:
            logger.warning("Refusing non-local http backend_url for security.")
            return None
    return url
