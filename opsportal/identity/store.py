"""
Identity store - canonical records for users, clients and projects.

Wraps MetadataStorage with typed accessors and the uniqueness rules the
rest of the core relies on:

- user email is unique case-insensitively
- a slug is current for at most one entity of a kind, and a slug that is
  historical for one entity is never current for another

Caches sit in front of this store; nothing here is ever served stale.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from opsportal.core.errors import DuplicateEmail, NotFound
from opsportal.core.models import (
    Client,
    EntityKind,
    PasswordResetRequest,
    Project,
    ServiceReport,
    User,
    normalize_email,
)
from opsportal.storage.base import Collections, MetadataStorage

logger = logging.getLogger(__name__)

Sluggable = Client | Project

_KIND_COLLECTIONS = {
    EntityKind.CLIENT: Collections.CLIENTS,
    EntityKind.PROJECT: Collections.PROJECTS,
}
_KIND_MODELS = {
    EntityKind.CLIENT: Client,
    EntityKind.PROJECT: Project,
}


class IdentityStore:
    """Typed access to the canonical records."""

    def __init__(self, metadata: MetadataStorage):
        self.metadata = metadata
        self._user_lock = asyncio.Lock()
        self._slug_locks: dict[EntityKind, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._record_locks: dict[tuple[EntityKind, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    # -------------------------------------------------------------------------
    # Locks
    # -------------------------------------------------------------------------

    def slug_lock(self, kind: EntityKind) -> asyncio.Lock:
        """Serializes slug assignment (create/rename) for one kind."""
        return self._slug_locks[kind]

    def record_lock(self, kind: EntityKind, entity_id: str) -> asyncio.Lock:
        """Serializes read-modify-write of one client or project record."""
        return self._record_locks[(kind, entity_id)]

    def project_lock(self, project_id: str) -> asyncio.Lock:
        return self.record_lock(EntityKind.PROJECT, project_id)

    def client_lock(self, client_id: str) -> asyncio.Lock:
        return self.record_lock(EntityKind.CLIENT, client_id)

    def drop_record_lock(self, kind: EntityKind, entity_id: str) -> None:
        """Forget a deleted record's lock. Call after releasing it."""
        self._record_locks.pop((kind, entity_id), None)

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def get_user(self, user_id: str) -> User | None:
        data = await self.metadata.get(Collections.USERS, user_id)
        return User.model_validate(data) if data else None

    async def get_user_by_email(self, email: str) -> User | None:
        matches = await self.metadata.query(
            Collections.USERS, {"email": normalize_email(email)}, limit=1
        )
        return User.model_validate(matches[0]) if matches else None

    async def list_users(self) -> list[User]:
        return [User.model_validate(d) for d in await self.metadata.query(Collections.USERS)]

    async def add_user(self, user: User) -> User:
        """Insert a new user, enforcing case-insensitive email uniqueness."""
        async with self._user_lock:
            if await self.get_user_by_email(user.email):
                raise DuplicateEmail(f"A user with email {user.email} already exists")
            await self.save_user(user)
        return user

    async def replace_user(self, user: User) -> User:
        """Persist an existing user, re-checking email uniqueness."""
        async with self._user_lock:
            other = await self.get_user_by_email(user.email)
            if other and other.id != user.id:
                raise DuplicateEmail(f"A user with email {user.email} already exists")
            await self.save_user(user)
        return user

    async def save_user(self, user: User) -> None:
        await self.metadata.save(Collections.USERS, user.id, user.model_dump(mode="json"))

    async def delete_user(self, user_id: str) -> bool:
        return await self.metadata.delete(Collections.USERS, user_id)

    # -------------------------------------------------------------------------
    # Sluggable entities
    # -------------------------------------------------------------------------

    async def get_entity(self, kind: EntityKind, entity_id: str) -> Sluggable | None:
        data = await self.metadata.get(_KIND_COLLECTIONS[kind], entity_id)
        return _KIND_MODELS[kind].model_validate(data) if data else None

    async def require_entity(self, kind: EntityKind, entity_id: str) -> Sluggable:
        entity = await self.get_entity(kind, entity_id)
        if entity is None:
            raise NotFound(f"{kind.value.capitalize()} not found", details={"id": entity_id})
        return entity

    async def list_entities(self, kind: EntityKind) -> list[Sluggable]:
        model = _KIND_MODELS[kind]
        return [model.model_validate(d) for d in await self.metadata.query(_KIND_COLLECTIONS[kind])]

    async def save_entity(self, kind: EntityKind, entity: Sluggable) -> None:
        await self.metadata.save(_KIND_COLLECTIONS[kind], entity.id, entity.model_dump(mode="json"))

    async def delete_entity(self, kind: EntityKind, entity_id: str) -> bool:
        return await self.metadata.delete(_KIND_COLLECTIONS[kind], entity_id)

    async def find_by_current_slug(self, kind: EntityKind, slug: str) -> Sluggable | None:
        matches = await self.metadata.query(_KIND_COLLECTIONS[kind], {"slug": slug}, limit=1)
        return _KIND_MODELS[kind].model_validate(matches[0]) if matches else None

    async def find_by_previous_slug(self, kind: EntityKind, slug: str) -> Sluggable | None:
        for entity in await self.list_entities(kind):
            if slug in entity.previous_slugs:
                return entity
        return None

    async def find_project_by_link_id(self, link_id: str) -> Project | None:
        matches = await self.metadata.query(Collections.PROJECTS, {"link_id": link_id}, limit=1)
        return Project.model_validate(matches[0]) if matches else None

    async def slug_owner(self, kind: EntityKind, slug: str) -> Sluggable | None:
        """Entity holding `slug` as current or historical, if any."""
        return await self.find_by_current_slug(kind, slug) or await self.find_by_previous_slug(kind, slug)

    async def taken_slugs(self, kind: EntityKind, exclude_id: str | None = None) -> set[str]:
        """Every current and historical slug of the kind, except exclude_id's."""
        taken: set[str] = set()
        for entity in await self.list_entities(kind):
            if entity.id == exclude_id:
                continue
            taken.add(entity.slug)
            taken.update(entity.previous_slugs)
        return taken

    # -------------------------------------------------------------------------
    # Typed shortcuts
    # -------------------------------------------------------------------------

    async def get_project(self, project_id: str) -> Project | None:
        return await self.get_entity(EntityKind.PROJECT, project_id)

    async def require_project(self, project_id: str) -> Project:
        return await self.require_entity(EntityKind.PROJECT, project_id)

    async def save_project(self, project: Project) -> None:
        await self.save_entity(EntityKind.PROJECT, project)

    async def list_projects(self) -> list[Project]:
        return await self.list_entities(EntityKind.PROJECT)

    async def get_client(self, client_id: str) -> Client | None:
        return await self.get_entity(EntityKind.CLIENT, client_id)

    async def require_client(self, client_id: str) -> Client:
        return await self.require_entity(EntityKind.CLIENT, client_id)

    async def save_client(self, client: Client) -> None:
        await self.save_entity(EntityKind.CLIENT, client)

    # -------------------------------------------------------------------------
    # Reports & reset requests
    # -------------------------------------------------------------------------

    async def get_report(self, report_id: str) -> ServiceReport | None:
        data = await self.metadata.get(Collections.SERVICE_REPORTS, report_id)
        return ServiceReport.model_validate(data) if data else None

    async def list_reports(self, **filters) -> list[ServiceReport]:
        docs = await self.metadata.query(Collections.SERVICE_REPORTS, filters or None)
        return [ServiceReport.model_validate(d) for d in docs]

    async def save_report(self, report: ServiceReport) -> None:
        await self.metadata.save(Collections.SERVICE_REPORTS, report.id, report.model_dump(mode="json"))

    async def list_reset_requests(self, status: str | None = None) -> list[PasswordResetRequest]:
        docs = await self.metadata.query(
            Collections.PASSWORD_RESETS, {"status": status} if status else None
        )
        return [PasswordResetRequest.model_validate(d) for d in docs]

    async def get_reset_request(self, request_id: str) -> PasswordResetRequest | None:
        data = await self.metadata.get(Collections.PASSWORD_RESETS, request_id)
        return PasswordResetRequest.model_validate(data) if data else None

    async def save_reset_request(self, request: PasswordResetRequest) -> None:
        await self.metadata.save(
            Collections.PASSWORD_RESETS, request.id, request.model_dump(mode="json")
        )
