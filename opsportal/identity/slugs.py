"""
Slug resolution with historical redirects.

Resolution order for (kind, slug):

    1. slug cache (current-slug hits only)
    2. entity whose current slug matches   -> cached, redirect=False
    3. entity whose previous slugs contain -> redirect=True
    4. project whose link id matches       -> redirect=True  (projects only)
    5. NotFound

Redirects are always temporary: a permanent redirect would be remembered by
browsers and break the next rename.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from opsportal.core.errors import NotFound, SlugConflict, ValidationError
from opsportal.core.models import Client, EntityKind, Project
from opsportal.core.utils import slugify, unique_slug, utc_now
from opsportal.identity.cache import SlugCache
from opsportal.identity.store import IdentityStore

logger = logging.getLogger(__name__)


@dataclass
class ResolvedEntity:
    entity: Client | Project
    redirect: bool = False

    @property
    def current_slug(self) -> str:
        return self.entity.slug


class SlugResolver:
    """Maps slugs to entities and owns every change of a current slug."""

    def __init__(self, store: IdentityStore, cache: SlugCache):
        self.store = store
        self.cache = cache

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    async def resolve(self, slug: str, kind: EntityKind) -> ResolvedEntity:
        slug = slug.strip().lower()

        cached = await self.cache.get(kind, slug)
        if cached is not None:
            return ResolvedEntity(cached, redirect=False)

        entity = await self.store.find_by_current_slug(kind, slug)
        if entity is not None:
            await self.cache.put(kind, slug, entity)
            return ResolvedEntity(entity, redirect=False)

        entity = await self.store.find_by_previous_slug(kind, slug)
        if entity is not None:
            logger.debug("Historical %s slug %r -> %r", kind.value, slug, entity.slug)
            return ResolvedEntity(entity, redirect=True)

        if kind == EntityKind.PROJECT:
            project = await self.store.find_project_by_link_id(slug)
            if project is not None:
                return ResolvedEntity(project, redirect=True)

        raise NotFound(f"No {kind.value} for slug '{slug}'", details={"slug": slug})

    # -------------------------------------------------------------------------
    # Assignment
    # -------------------------------------------------------------------------

    async def allocate(self, kind: EntityKind, name: str) -> str:
        """
        Pick a fresh slug derived from `name`.

        Must be called while holding `store.slug_lock(kind)` together with
        the save that claims it.
        """
        base = slugify(name, fallback=kind.value)
        return unique_slug(base, await self.store.taken_slugs(kind))

    async def rename(self, kind: EntityKind, entity_id: str, new_slug: str) -> Client | Project:
        """
        Change an entity's current slug.

        The old slug moves to `previous_slugs` and both cache keys are dropped
        before returning, all under the kind's slug lock.
        """
        new_slug = new_slug.strip().lower()
        if not new_slug or slugify(new_slug, fallback="") != new_slug:
            raise ValidationError(
                "Slug may only contain lowercase letters, digits and single dashes",
                details={"slug": new_slug},
            )

        async with self.store.slug_lock(kind):
            entity = await self.store.require_entity(kind, entity_id)
            if entity.slug == new_slug:
                return entity

            owner = await self.store.slug_owner(kind, new_slug)
            if owner is not None and owner.id != entity.id:
                raise SlugConflict(kind.value, new_slug)

            old_slug = entity.slug
            if old_slug not in entity.previous_slugs:
                entity.previous_slugs.append(old_slug)
            entity.slug = new_slug
            entity.updated_at = utc_now()

            await self.store.save_entity(kind, entity)
            await self.cache.invalidate(kind, old_slug, new_slug)

        logger.info("Renamed %s %s: %s -> %s", kind.value, entity_id, old_slug, new_slug)
        return entity

    async def regenerate(self, kind: EntityKind, entity_id: str, name: str) -> Client | Project:
        """Rename to a fresh slug derived from `name` (e.g. the client's name)."""
        base = slugify(name, fallback=kind.value)
        async with self.store.slug_lock(kind):
            # The entity's own current and previous slugs may be reclaimed
            taken = await self.store.taken_slugs(kind, exclude_id=entity_id)
        return await self.rename(kind, entity_id, unique_slug(base, taken))
