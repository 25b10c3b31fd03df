"""SQLite-backed local store.

One ``kv`` table holds every key (slot primaries, backups, metadata, queue
state). Multi-key writes share a transaction, so a slot's primary and backup
are replaced together or not at all.
"""

import contextlib
import logging
import sqlite3
import tempfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from savesync.protocols import StorageError
from savesync.types import utc_now
from savesync.utils import get_savesync_home

from .base import BaseLocalStore, checksum
from .schema import init_db

logger = logging.getLogger(__name__)


class SQLiteLocalStore(BaseLocalStore):
    """Durable local store in a single SQLite file.

    Args:
        db_path: Database file. Defaults to ``<data dir>/saves.db``.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = self._resolve_db_path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            init_db(conn, self.db_path)

    def _resolve_db_path(self, db_path: Optional[Path]) -> Path:
        """Resolve the database path, falling back to temp dir if home is not writable."""
        if db_path is not None:
            return Path(db_path).expanduser().resolve()

        default_path = get_savesync_home() / "saves.db"
        try:
            default_path.parent.mkdir(parents=True, exist_ok=True)
            return default_path
        except OSError as e:
            fallback = Path(tempfile.gettempdir()) / ".savesync" / "saves.db"
            logger.warning(f"Cannot write to {default_path.parent} ({e}), falling back to {fallback}")
            return fallback

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that commits on success, rolls back on error, always closes."""
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open local store {self.db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise StorageError(f"Local store operation failed: {e}") from e
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _read(self, key: str) -> Optional[Tuple[bytes, Optional[str]]]:
        with self._connect() as conn:
            row = conn.execute("SELECT value, checksum FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return bytes(row["value"]), row["checksum"]

    def _write_many(self, items: Dict[str, bytes]) -> None:
        now = utc_now().isoformat()
        with self._connect() as conn:
            conn.executemany(
                """INSERT INTO kv (key, value, checksum, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                       value = excluded.value,
                       checksum = excluded.checksum,
                       updated_at = excluded.updated_at""",
                [(key, sqlite3.Binary(data), checksum(data), now) for key, data in items.items()],
            )

    def _delete_many(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        placeholders = ",".join("?" * len(keys))
        with self._connect() as conn:
            conn.execute(f"DELETE FROM kv WHERE key IN ({placeholders})", keys)

    def keys(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT key FROM kv ORDER BY key").fetchall()
        return [row["key"] for row in rows]

    def get_schema_version(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        return row["version"] if row else 0
