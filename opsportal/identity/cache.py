"""
Short-TTL caches in front of the identity store.

Both caches are read-mostly copies with bounded staleness. They are never
authoritative: every write path that changes the underlying record must call
`invalidate()` before it reports success.
"""

from __future__ import annotations

import logging
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from opsportal.core.models import Client, EntityKind, Project, User
from opsportal.storage.base import CacheStorage

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class EntityCache(Generic[M]):
    """
    Typed cache of pydantic records over a CacheStorage backend.

    Values are stored as plain dumps, so a caller mutating the returned model
    never changes what the next reader sees.
    """

    def __init__(self, storage: CacheStorage, namespace: str, ttl: float):
        self.storage = storage
        self.namespace = namespace
        self.ttl = ttl
        self.hits = 0
        self.misses = 0

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def _load(self, data: dict[str, Any]) -> M:
        raise NotImplementedError

    async def get(self, key: str) -> M | None:
        data = await self.storage.get(self._key(key))
        if data is None:
            self.misses += 1
            return None
        self.hits += 1
        return self._load(data)

    async def put(self, key: str, value: M) -> None:
        await self.storage.set(self._key(key), value.model_dump(mode="json"), ttl=self.ttl)

    async def invalidate(self, key: str) -> None:
        await self.storage.delete(self._key(key))
        logger.debug("Invalidated %s", self._key(key))

    async def clear(self) -> int:
        return await self.storage.clear(f"{self.namespace}:")


class UserCache(EntityCache[User]):
    """User Identity Cache, keyed by user id."""

    def __init__(self, storage: CacheStorage, ttl: float = 5.0):
        super().__init__(storage, "user", ttl)

    def _load(self, data: dict[str, Any]) -> User:
        return User.model_validate(data)


class SlugCache:
    """
    Cache of current-slug hits, keyed by (kind, slug).

    Historical hits are never cached here: history is permanent and always
    answered from the store.
    """

    _MODELS = {EntityKind.CLIENT: Client, EntityKind.PROJECT: Project}

    def __init__(self, storage: CacheStorage, ttl: float = 30.0):
        self.storage = storage
        self.ttl = ttl

    @staticmethod
    def _key(kind: EntityKind, slug: str) -> str:
        return f"slug:{kind.value}:{slug}"

    async def get(self, kind: EntityKind, slug: str) -> Client | Project | None:
        data = await self.storage.get(self._key(kind, slug))
        return self._MODELS[kind].model_validate(data) if data is not None else None

    async def put(self, kind: EntityKind, slug: str, entity: Client | Project) -> None:
        await self.storage.set(self._key(kind, slug), entity.model_dump(mode="json"), ttl=self.ttl)

    async def invalidate(self, kind: EntityKind, *slugs: str) -> None:
        for slug in slugs:
            await self.storage.delete(self._key(kind, slug))

    async def invalidate_entity(self, kind: EntityKind, entity: Client | Project) -> None:
        """Drop every key an entity may be cached under (after any record write)."""
        await self.invalidate(kind, entity.slug, *entity.previous_slugs)
