"""
Object Store Abstraction

Match records and batch manifests live in an object store keyed by id:

    matches/{match_id}.json        canonical match record bytes
    manifests/{batch_id}.json      batch manifest (written once)
    batch-index/{match_id}         batch id containing the match
    batch-state/pending.json       batch manager's unflushed entries

Implementations:
- InMemoryObjectStore: for development and testing
- LocalObjectStore: a directory on disk
- HttpObjectStore: an HTTP object API (`PUT/GET {base_url}/api/objects/{key}`)

The store only moves bytes. It never interprets them.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Optional

import httpx

from ..errors import StorageError

logger = logging.getLogger(__name__)


MAX_OBJECT_BYTES = 10 * 1024 * 1024


def match_key(match_id: str) -> str:
    return f"matches/{match_id}.json"


def manifest_key(batch_id: str) -> str:
    return f"manifests/{batch_id}.json"


def batch_index_key(match_id: str) -> str:
    return f"batch-index/{match_id}"


PENDING_STATE_KEY = "batch-state/pending.json"


def _validate_key(key: str) -> str:
    if not key or key.startswith("/") or ".." in key.split("/"):
        raise StorageError(f"Invalid object key: {key!r}")
    return key


class ObjectStore(ABC):
    """Byte storage keyed by path-like strings."""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str = "application/json") -> str:
        """
        Store bytes under key, replacing any previous object.

        Returns:
            URL (or URI) where the object can be fetched
        """
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Object bytes, or None if there is no such key."""
        pass

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def close(self) -> None:
        return None


class InMemoryObjectStore(ObjectStore):
    """Dict-backed object store for development and testing."""

    def __init__(self):
        self._objects: dict[str, bytes] = {}
        self._lock = Lock()

    async def put(self, key: str, data: bytes, content_type: str = "application/json") -> str:
        _validate_key(key)
        if len(data) > MAX_OBJECT_BYTES:
            raise StorageError(f"Object {key} is {len(data)} bytes, limit is {MAX_OBJECT_BYTES}")
        with self._lock:
            self._objects[key] = bytes(data)
        return f"memory://{key}"

    async def get(self, key: str) -> Optional[bytes]:
        _validate_key(key)
        with self._lock:
            return self._objects.get(key)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._objects if k.startswith(prefix))


class LocalObjectStore(ObjectStore):
    """
    Directory-backed object store.

    Writes go to a temp file then rename, so a reader never sees half an
    object. File I/O runs in a worker thread.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root / _validate_key(key)

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)

    async def put(self, key: str, data: bytes, content_type: str = "application/json") -> str:
        if len(data) > MAX_OBJECT_BYTES:
            raise StorageError(f"Object {key} is {len(data)} bytes, limit is {MAX_OBJECT_BYTES}")
        path = self._path(key)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}") from e
        return path.as_uri()

    async def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}") from e


class HttpObjectStore(ObjectStore):
    """
    Object store behind an HTTP API.

    PUT {base_url}/api/objects/{key}  → 2xx, optional JSON {"url": ...}
    GET {base_url}/api/objects/{key}  → 200 bytes | 404

    Network errors and 5xx responses are retried with a short backoff.
    4xx responses other than 404 fail immediately.
    """

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    def _object_path(self, key: str) -> str:
        return f"/api/objects/{_validate_key(key)}"

    async def _request(self, method: str, key: str, **kwargs) -> httpx.Response:
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                response = await self._client.request(method, self._object_path(key), **kwargs)
            except httpx.TransportError as e:
                last_error = e
                logger.warning(f"{method} {key} failed (attempt {attempt + 1}/{self.max_retries}): {e}")
            else:
                if response.status_code < 500:
                    return response
                last_error = StorageError(f"{method} {key} -> HTTP {response.status_code}")
                logger.warning(f"{method} {key} -> HTTP {response.status_code} (attempt {attempt + 1}/{self.max_retries})")
            if attempt + 1 < self.max_retries:
                await asyncio.sleep(self.retry_delay * (2 ** attempt))
        raise StorageError(f"{method} {key} failed after {self.max_retries} attempts: {last_error}") from last_error

    async def put(self, key: str, data: bytes, content_type: str = "application/json") -> str:
        if len(data) > MAX_OBJECT_BYTES:
            raise StorageError(f"Object {key} is {len(data)} bytes, limit is {MAX_OBJECT_BYTES}")
        response = await self._request("PUT", key, content=data, headers={"Content-Type": content_type})
        if response.status_code >= 400:
            raise StorageError(f"PUT {key} -> HTTP {response.status_code}: {response.text[:200]}")
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("url"):
            return str(body["url"])
        return f"{self.base_url}{self._object_path(key)}"

    async def get(self, key: str) -> Optional[bytes]:
        response = await self._request("GET", key)
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise StorageError(f"GET {key} -> HTTP {response.status_code}: {response.text[:200]}")
        return response.content

    async def close(self) -> None:
        await self._client.aclose()
