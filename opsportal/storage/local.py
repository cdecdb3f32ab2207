"""
Local storage implementations for development and tests.

These are in-memory or filesystem-based implementations
that work without any external services.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable

from opsportal.core.utils import utc_now
from opsportal.storage.base import (
    CacheStorage,
    ContentStorage,
    MetadataStorage,
    StorageProvider,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Local Filesystem Content Storage
# =============================================================================


class LocalContentStorage(ContentStorage):
    """Store content on local filesystem."""

    def __init__(self, base_path: str = "./data/content"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _key_to_path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise ValueError(f"Invalid content key: {key}")
        return path

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        path = self._key_to_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return str(path)

    async def delete(self, key: str) -> bool:
        path = self._key_to_path(key)
        if path.exists():
            path.unlink()
            return True
        return False


# =============================================================================
# In-Memory Metadata Storage
# =============================================================================


class InMemoryMetadataStorage(MetadataStorage):
    """In-memory document storage for development."""

    def __init__(self):
        self._data: dict[str, dict[str, dict[str, Any]]] = {}

    async def save(self, collection: str, id: str, data: dict[str, Any]) -> None:
        self._data.setdefault(collection, {})[id] = {
            **copy.deepcopy(data),
            "_id": id,
            "_updated_at": utc_now().isoformat(),
        }

    async def get(self, collection: str, id: str) -> dict[str, Any] | None:
        doc = self._data.get(collection, {}).get(id)
        return copy.deepcopy(doc) if doc is not None else None

    async def delete(self, collection: str, id: str) -> bool:
        if collection in self._data and id in self._data[collection]:
            del self._data[collection][id]
            return True
        return False

    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        results = list(self._data.get(collection, {}).values())

        if filters:
            results = [
                doc for doc in results
                if all(doc.get(key) == value for key, value in filters.items())
            ]

        end = None if limit is None else offset + limit
        return [copy.deepcopy(doc) for doc in results[offset:end]]


# =============================================================================
# JSON File Metadata Storage
# =============================================================================


class JsonFileMetadataStorage(InMemoryMetadataStorage):
    """
    Document storage persisted as one JSON file per collection.

    Collections are loaded once at startup. Each write rewrites the
    collection file through a temp file and an atomic replace.
    """

    def __init__(self, base_path: str = "./data/metadata"):
        super().__init__()
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        for path in sorted(self.base_path.glob("*.json")):
            self._data[path.stem] = json.loads(path.read_text(encoding="utf-8"))
        if self._data:
            logger.info("Loaded %d collection(s) from %s", len(self._data), self.base_path)

    def _flush(self, collection: str) -> None:
        path = self.base_path / f"{collection}.json"
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(self._data.get(collection, {}), indent=2), encoding="utf-8")
        os.replace(tmp, path)

    async def save(self, collection: str, id: str, data: dict[str, Any]) -> None:
        await super().save(collection, id, data)
        self._flush(collection)

    async def delete(self, collection: str, id: str) -> bool:
        removed = await super().delete(collection, id)
        if removed:
            self._flush(collection)
        return removed


# =============================================================================
# In-Memory Cache Storage
# =============================================================================


class InMemoryCacheStorage(CacheStorage):
    """
    In-memory cache for development.

    `clock` returns seconds; tests pass a fake one to step past TTLs.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._cache: dict[str, tuple[Any, float | None]] = {}
        self._clock = clock

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        self._cache[key] = (copy.deepcopy(value), expires_at)

    async def get(self, key: str) -> Any | None:
        if key not in self._cache:
            return None

        value, expires_at = self._cache[key]
        if expires_at is not None and self._clock() >= expires_at:
            del self._cache[key]
            return None

        return copy.deepcopy(value)

    async def delete(self, key: str) -> bool:
        return self._cache.pop(key, None) is not None

    async def clear(self, prefix: str = "") -> int:
        keys = [k for k in self._cache if k.startswith(prefix)]
        for key in keys:
            del self._cache[key]
        return len(keys)


# =============================================================================
# Factory
# =============================================================================


def create_local_storage(
    data_dir: str = "./data",
    clock: Callable[[], float] = time.monotonic,
) -> StorageProvider:
    """Create a StorageProvider with local implementations."""
    return StorageProvider(
        content=LocalContentStorage(f"{data_dir}/content"),
        metadata=JsonFileMetadataStorage(f"{data_dir}/metadata"),
        cache=InMemoryCacheStorage(clock=clock),
    )
