"""Remote store adapters and the namespaced sync client.

The remote backend is an external collaborator reached through the
RemoteStore protocol (``save_keys`` / ``load_keys`` / ``delete_keys``).
Two implementations ship here:

- HttpRemoteStore: JSON over HTTP via ``httpx.AsyncClient``
- InMemoryRemoteStore: process-local store with failure injection, used by
  tests and for wiring several simulated devices to one "cloud"

RemoteSyncClient wraps a store with the owner's namespace and a per-attempt
timeout. Retrying is the caller's job.
"""

import asyncio
import base64
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set, TypeVar

import httpx

from savesync.protocols import RemoteError, RemoteErrorKind, RemoteStore
from savesync.utils import validate_backend_url

logger = logging.getLogger(__name__)

T = TypeVar("T")

API_PREFIX = "/v1/saves"


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"))


def classify_status(status_code: int) -> Optional[RemoteErrorKind]:
    """Map an HTTP status to a RemoteErrorKind (None for success)."""
    if status_code < 400:
        return None
    if status_code == 429:
        return RemoteErrorKind.RATE_LIMITED
    if status_code >= 500 or status_code == 408:
        return RemoteErrorKind.UNREACHABLE
    return RemoteErrorKind.REJECTED


class HttpRemoteStore:
    """RemoteStore backed by a JSON HTTP API.

    Endpoints (relative to ``base_url``):
        POST /v1/saves/keys          {"items": {key: base64}}
        POST /v1/saves/keys/query    {"keys": [...]} -> {"items": {key: base64}}
        POST /v1/saves/keys/delete   {"keys": [...]}

    Args:
        base_url: Backend URL (https, or http for localhost only).
        auth_token: Bearer token supplied by the auth collaborator.
        client: Optional pre-built ``httpx.AsyncClient`` (tests pass one with
            a MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        validated = validate_backend_url(base_url)
        if validated is None:
            raise ValueError(f"Refusing unsafe backend URL: {base_url}")
        self.base_url = validated.rstrip("/")
        self.auth_token = auth_token
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def _post(self, path: str, payload: dict) -> httpx.Response:
        url = f"{self.base_url}{API_PREFIX}{path}"
        try:
            response = await self._get_client().post(url, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            raise RemoteError(RemoteErrorKind.UNREACHABLE, f"Request to {url} timed out") from e
        except httpx.TransportError as e:
            raise RemoteError(RemoteErrorKind.UNREACHABLE, f"Connection failed: {e}") from e

        kind = classify_status(response.status_code)
        if kind is not None:
            retry_after = None
            if kind == RemoteErrorKind.RATE_LIMITED:
                try:
                    retry_after = float(response.headers.get("Retry-After", ""))
                except ValueError:
                    retry_after = None
            logger.debug(f"Backend returned HTTP {response.status_code} for {path}")
            raise RemoteError(
                kind, f"Backend returned status {response.status_code}", retry_after=retry_after
            )
        return response

    async def save_keys(self, items: Dict[str, bytes]) -> None:
        await self._post("/keys", {"items": {k: _b64encode(v) for k, v in items.items()}})

    async def load_keys(self, keys: Set[str]) -> Dict[str, bytes]:
        response = await self._post("/keys/query", {"keys": sorted(keys)})
        try:
            items = response.json().get("items") or {}
            return {k: _b64decode(v) for k, v in items.items() if v is not None}
        except (ValueError, AttributeError, TypeError) as e:
            raise RemoteError(RemoteErrorKind.REJECTED, f"Malformed load response: {e}") from e

    async def delete_keys(self, keys: Set[str]) -> None:
        await self._post("/keys/delete", {"keys": sorted(keys)})


class InMemoryRemoteStore:
    """Process-local RemoteStore.

    Args:
        data: Optional shared dict, so several stores can act as one backend.
        latency: Seconds to sleep per call.

    Set ``fail_with`` (and optionally ``fail_times``) to make the next calls
    raise RemoteError of that kind.
    """

    def __init__(self, data: Optional[Dict[str, bytes]] = None, latency: float = 0.0):
        self.data: Dict[str, bytes] = data if data is not None else {}
        self.latency = latency
        self.fail_with: Optional[RemoteErrorKind] = None
        self.fail_times: Optional[int] = None  # None = until cleared
        self.calls: List[str] = []

    def fail(self, kind: Optional[RemoteErrorKind], times: Optional[int] = None) -> None:
        self.fail_with = kind
        self.fail_times = times

    async def _maybe_fail(self, op: str) -> None:
        self.calls.append(op)
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.fail_with is None:
            return
        kind = self.fail_with
        if self.fail_times is not None:
            self.fail_times -= 1
            if self.fail_times <= 0:
                self.fail_with = None
                self.fail_times = None
        raise RemoteError(kind, f"injected {kind.value} failure on {op}")

    async def save_keys(self, items: Dict[str, bytes]) -> None:
        await self._maybe_fail("save")
        self.data.update({k: bytes(v) for k, v in items.items()})

    async def load_keys(self, keys: Set[str]) -> Dict[str, bytes]:
        await self._maybe_fail("load")
        return {k: self.data[k] for k in keys if k in self.data}

    async def delete_keys(self, keys: Set[str]) -> None:
        await self._maybe_fail("delete")
        for key in keys:
            self.data.pop(key, None)


class RemoteSyncClient:
    """Namespaced access to a RemoteStore with a per-attempt timeout.

    Args:
        store: The remote store collaborator.
        namespace: Owner namespace; keys are stored as ``<namespace>/<key>``.
        timeout: Seconds allowed for a single remote call.
    """

    def __init__(self, store: RemoteStore, namespace: str, timeout: float = 10.0):
        if not namespace or "/" in namespace:
            raise ValueError("namespace must be non-empty and must not contain '/'")
        self.store = store
        self.namespace = namespace
        self.timeout = timeout

    def remote_key(self, key: str) -> str:
        return f"{self.namespace}/{key}"

    async def _call(self, what: str, factory: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(factory(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise RemoteError(
                RemoteErrorKind.UNREACHABLE, f"{what} timed out after {self.timeout}s"
            ) from e

    async def push(self, key: str, data: bytes) -> None:
        remote_key = self.remote_key(key)
        await self._call(f"push {remote_key}", lambda: self.store.save_keys({remote_key: data}))
        logger.debug(f"Pushed {remote_key} ({len(data)} bytes)")

    async def fetch(self, key: str) -> Optional[bytes]:
        remote_key = self.remote_key(key)
        items = await self._call(f"fetch {remote_key}", lambda: self.store.load_keys({remote_key}))
        return items.get(remote_key)

    async def remove(self, key: str) -> None:
        remote_key = self.remote_key(key)
        await self._call(f"remove {remote_key}", lambda: self.store.delete_keys({remote_key}))
        logger.debug(f"Removed {remote_key}")
