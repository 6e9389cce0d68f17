"""
Consent Engine - Key-Value Backends

Persistence slots the consent store writes its envelopes into:
- MemoryBackend: process-local, optional byte quota
- JsonFileBackend: a single JSON document on disk
- RemoteBackend: an opaque remote consent store over HTTP
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import quote

import httpx
import structlog

from consent_engine.core.errors import StorageQuotaExceededError, StoreError

logger = structlog.get_logger(__name__)


@runtime_checkable
class KeyValueBackend(Protocol):
    """Async string key-value slot storage."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self) -> list[str]: ...


class MemoryBackend:
    """
    In-memory backend.

    ``max_bytes`` emulates a browser storage quota: a write that would
    push the total size of all values past it raises
    StorageQuotaExceededError and leaves the slot untouched.
    """

    def __init__(self, max_bytes: int | None = None, initial: dict[str, str] | None = None):
        self.max_bytes = max_bytes
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        if self.max_bytes is not None:
            used = sum(len(v.encode()) for k, v in self._data.items() if k != key)
            if used + len(value.encode()) > self.max_bytes:
                raise StorageQuotaExceededError(
                    f"Storage quota of {self.max_bytes} bytes exceeded",
                    key=key,
                )
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> list[str]:
        return list(self._data)

    def snapshot(self) -> dict[str, str]:
        return dict(self._data)


class JsonFileBackend:
    """
    Backend persisting every slot in one JSON document.

    Writes go to a temporary file that replaces the document, so a crash
    mid-write never leaves a truncated file behind. File I/O runs in a
    worker thread to keep the event loop responsive.
    """

    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StoreError(f"Cannot read {self.path}: {e}", cause=e) from e
        if not isinstance(data, dict):
            raise StoreError(f"{self.path} does not contain a JSON object")
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _dump(self, data: dict[str, str]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, sort_keys=True), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            raise StoreError(f"Cannot write {self.path}: {e}", cause=e) from e

    async def get(self, key: str) -> str | None:
        data = await asyncio.to_thread(self._load)
        return data.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            data[key] = value
            await asyncio.to_thread(self._dump, data)

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            if data.pop(key, None) is not None:
                await asyncio.to_thread(self._dump, data)

    async def keys(self) -> list[str]:
        return list(await asyncio.to_thread(self._load))


class RemoteBackend:
    """
    Backend talking to a remote consent store.

    Wire contract (JSON):
        GET    {base_url}/slots/{key}  -> 200 {"value": "..."} | 404
        PUT    {base_url}/slots/{key}  <- {"value": "..."}; 413 when full
        DELETE {base_url}/slots/{key}
        GET    {base_url}/slots        -> 200 {"keys": [...]}
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds, headers=headers)

    def _slot_url(self, key: str) -> str:
        return f"{self.base_url}/slots/{quote(key, safe='')}"

    async def get(self, key: str) -> str | None:
        try:
            response = await self._client.get(self._slot_url(key))
            if response.status_code == 404:
                return None
            response.raise_for_status()
            value = response.json().get("value")
        except (httpx.HTTPError, ValueError) as e:
            raise StoreError(f"Remote read of '{key}' failed: {e}", key=key, cause=e) from e
        return value if isinstance(value, str) else None

    async def set(self, key: str, value: str) -> None:
        try:
            response = await self._client.put(self._slot_url(key), json={"value": value})
            if response.status_code == 413:
                raise StorageQuotaExceededError("Remote consent store is full", key=key)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise StoreError(f"Remote write of '{key}' failed: {e}", key=key, cause=e) from e

    async def delete(self, key: str) -> None:
        try:
            response = await self._client.delete(self._slot_url(key))
            if response.status_code != 404:
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise StoreError(f"Remote delete of '{key}' failed: {e}", key=key, cause=e) from e

    async def keys(self) -> list[str]:
        try:
            response = await self._client.get(f"{self.base_url}/slots")
            response.raise_for_status()
            keys = response.json().get("keys", [])
        except (httpx.HTTPError, ValueError) as e:
            raise StoreError(f"Remote key listing failed: {e}", cause=e) from e
        return [str(k) for k in keys]

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
