"""In-process local store for tests and hosts without a writable disk."""

import threading
from typing import Dict, Iterable, List, Optional, Tuple

from .base import BaseLocalStore, checksum


class MemoryLocalStore(BaseLocalStore):
    def __init__(self):
        self._data: Dict[str, Tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def _read(self, key: str) -> Optional[Tuple[bytes, Optional[str]]]:
        with self._lock:
            return self._data.get(key)

    def _write_many(self, items: Dict[str, bytes]) -> None:
        rows = {key: (bytes(data), checksum(data)) for key, data in items.items()}
        with self._lock:
            self._data.update(rows)

    def _delete_many(self, keys: Iterable[str]) -> None:
        with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._data)

    def corrupt(self, key: str, data: bytes = b"\x00garbage") -> None:
        """Overwrite a key's bytes without updating its checksum."""
        with self._lock:
            _, stored = self._data.get(key, (b"", checksum(b"")))
            self._data[key] = (data, stored)
