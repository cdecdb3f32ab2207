"""
Client records: creation, profile updates and slug changes.

Slugs are derived from the practice name on creation. Renames go through the
SlugResolver so history and cache invalidation stay in one place.
"""

from __future__ import annotations

import logging
from typing import Any

import pydantic

from opsportal.auth.capabilities import Action
from opsportal.auth.context import Target
from opsportal.auth.policies import can_perform, project_fields
from opsportal.core.activity import ActivityLog
from opsportal.core.errors import ValidationError, validation_details
from opsportal.core.models import Client, EntityKind, User
from opsportal.core.utils import utc_now
from opsportal.identity.cache import SlugCache
from opsportal.identity.slugs import SlugResolver
from opsportal.identity.store import IdentityStore

logger = logging.getLogger(__name__)

# Owned by rename_client and regenerate_slug
SLUG_FIELDS = ("slug", "previous_slugs")


class ClientService:
    def __init__(
        self,
        store: IdentityStore,
        resolver: SlugResolver,
        slug_cache: SlugCache,
        activity: ActivityLog,
        strict_fields: bool = False,
    ):
        self.store = store
        self.resolver = resolver
        self.slug_cache = slug_cache
        self.activity = activity
        self.strict_fields = strict_fields

    def _log(self, action: str, actor: User, client: Client, **details: Any) -> None:
        self.activity.record(
            action,
            actor.id,
            actor_name=actor.name,
            target_kind="client",
            target_id=client.id,
            details=details,
        )

    async def visible_clients(self, user: User) -> list[Client]:
        clients = await self.store.list_entities(EntityKind.CLIENT)
        visible = [c for c in clients if can_perform(user, Action.READ_CLIENT, Target.for_client(c.id))]
        return sorted(visible, key=lambda c: c.practice_name.lower())

    async def create_client(self, actor: User, payload: dict[str, Any]) -> Client:
        """Create a client; the slug comes from the practice name."""
        fields = project_fields(Action.UPDATE_CLIENT, payload, actor, strict=self.strict_fields)
        practice_name = (fields.pop("practice_name", "") or "").strip()
        if not practice_name:
            raise ValidationError("Practice name is required")

        async with self.store.slug_lock(EntityKind.CLIENT):
            slug = await self.resolver.allocate(EntityKind.CLIENT, practice_name)
            try:
                client = Client(slug=slug, practice_name=practice_name, **fields)
            except pydantic.ValidationError as e:
                raise ValidationError("Invalid client", details=validation_details(e))
            await self.store.save_client(client)

        self._log("client.created", actor, client, slug=client.slug)
        logger.info("Created client %s (%s)", client.id, client.slug)
        return client

    async def update_client(self, actor: User, client_id: str, payload: dict[str, Any]) -> Client:
        """Profile update. The slug never changes here, see rename_client."""
        fields = project_fields(Action.UPDATE_CLIENT, payload, actor, strict=self.strict_fields)
        for key in SLUG_FIELDS:
            fields.pop(key, None)

        async with self.store.client_lock(client_id):
            client = await self.store.require_client(client_id)
            try:
                updated = Client.model_validate({**client.model_dump(), **fields, "updated_at": utc_now()})
            except pydantic.ValidationError as e:
                raise ValidationError("Invalid client", details=validation_details(e))

            await self.store.save_client(updated)
            await self.slug_cache.invalidate_entity(EntityKind.CLIENT, updated)

        self._log("client.updated", actor, updated, fields=sorted(fields))
        return updated

    async def rename_client(self, actor: User, client_id: str, new_slug: str) -> Client:
        async with self.store.client_lock(client_id):
            client = await self.resolver.rename(EntityKind.CLIENT, client_id, new_slug)
        self._log("client.renamed", actor, client, slug=client.slug)
        return client

    async def regenerate_slug(self, actor: User, client_id: str) -> Client:
        """Re-derive the slug from the current practice name."""
        async with self.store.client_lock(client_id):
            client = await self.store.require_client(client_id)
            client = await self.resolver.regenerate(EntityKind.CLIENT, client_id, client.practice_name)
        self._log("client.renamed", actor, client, slug=client.slug)
        return client
