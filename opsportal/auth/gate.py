"""
Authorization gate - enforcement at the request boundary.

    authorize(credential, action, target_ref) -> AuthContext

Steps: validate the credential, resolve the caller through the user cache,
resolve the target (by id, falling back to the slug resolver), evaluate
`can_perform`, and hand back a context carrying the field whitelist. One
activity entry is appended for every call, whatever the outcome.
"""

from __future__ import annotations

import logging

from opsportal.auth.capabilities import Action
from opsportal.auth.context import AuthContext, Target, TargetRef
from opsportal.auth.jwt import TokenError, TokenExpiredError, decode_token
from opsportal.auth.policies import allowed_fields, can_perform
from opsportal.config import Settings
from opsportal.core.activity import ActivityLog
from opsportal.core.errors import Forbidden, NotFound, PortalError, Unauthenticated
from opsportal.core.models import Client, EntityKind, Project, User
from opsportal.identity.cache import UserCache
from opsportal.identity.slugs import SlugResolver
from opsportal.identity.store import IdentityStore

logger = logging.getLogger(__name__)


class AuthorizationGate:
    """Wraps every gated entry point."""

    def __init__(
        self,
        store: IdentityStore,
        user_cache: UserCache,
        resolver: SlugResolver,
        activity: ActivityLog,
        settings: Settings,
    ):
        self.store = store
        self.user_cache = user_cache
        self.resolver = resolver
        self.activity = activity
        self.settings = settings

    # -------------------------------------------------------------------------
    # Caller
    # -------------------------------------------------------------------------

    async def load_user(self, user_id: str) -> User | None:
        """Read a user through the cache, populating it on miss."""
        user = await self.user_cache.get(user_id)
        if user is not None:
            return user
        user = await self.store.get_user(user_id)
        if user is not None:
            await self.user_cache.put(user_id, user)
        return user

    async def authenticate(self, credential: str | None) -> User:
        if not credential:
            raise Unauthenticated("Authentication required", reason="missing-credential")
        try:
            payload = decode_token(credential, settings=self.settings)
        except TokenExpiredError:
            raise Unauthenticated("Session expired", reason="expired-credential")
        except TokenError:
            raise Unauthenticated("Invalid credential", reason="invalid-credential")

        user = await self.load_user(payload.sub)
        if user is None:
            raise Unauthenticated("User no longer exists", reason="unknown-user")
        return user

    # -------------------------------------------------------------------------
    # Target
    # -------------------------------------------------------------------------

    async def resolve_target(self, ref: TargetRef) -> tuple[Target, Project | Client | None, bool]:
        """Returns (target, entity, redirected)."""
        if ref.kind == "project":
            project, redirected = await self._resolve(EntityKind.PROJECT, ref)
            return Target.for_project(project), project, redirected

        if ref.kind == "client":
            if ref.id is None and ref.slug is None:
                return Target.for_client(ref.client_id), None, False
            client, redirected = await self._resolve(EntityKind.CLIENT, ref)
            return Target.for_client(client.id), client, redirected

        return Target.none(), None, False

    async def _resolve(self, kind: EntityKind, ref: TargetRef) -> tuple[Project | Client, bool]:
        if ref.id:
            entity = await self.store.get_entity(kind, ref.id)
            if entity is not None:
                return entity, False
        key = ref.slug or ref.id
        if not key:
            raise NotFound(f"No {kind.value} specified")
        resolved = await self.resolver.resolve(key, kind)
        return resolved.entity, resolved.redirect

    # -------------------------------------------------------------------------
    # Authorize
    # -------------------------------------------------------------------------

    async def authorize(
        self,
        credential: str | None,
        action: Action,
        ref: TargetRef | None = None,
    ) -> AuthContext:
        ref = ref or TargetRef.none()
        user: User | None = None
        try:
            user = await self.authenticate(credential)
            target, entity, redirected = await self.resolve_target(ref)
        except PortalError as e:
            self._record(action, user, ref.kind, ref.id or ref.slug, None, "denied", e.reason or e.code)
            raise

        decision = can_perform(user, action, target)
        project_id = target.id if target.kind == "project" else None

        if not decision:
            self._record(action, user, target.kind, target.id, project_id, "denied", decision.reason)
            logger.info("Denied %s for %s: %s", action.value, user.id, decision.reason)
            raise Forbidden(decision.reason)

        self._record(action, user, target.kind, target.id, project_id, "allowed", None)
        return AuthContext(
            user=user,
            action=action,
            target=target,
            entity=entity,
            redirected=redirected,
            whitelist=allowed_fields(action, user),
            strict_fields=self.settings.reject_unknown_fields,
        )

    def check(self, user: User, action: Action, target: Target | None = None) -> None:
        """Authorize an already-authenticated caller against a loaded target."""
        decision = can_perform(user, action, target)
        target = target or Target.none()
        project_id = target.id if target.kind == "project" else None
        outcome = "allowed" if decision else "denied"
        self._record(action, user, target.kind, target.id, project_id, outcome, decision.reason)
        if not decision:
            raise Forbidden(decision.reason)

    def _record(
        self,
        action: Action,
        user: User | None,
        target_kind: str,
        target_id: str | None,
        project_id: str | None,
        outcome: str,
        reason: str | None,
    ) -> None:
        self.activity.record(
            f"authz.{action.value}",
            user.id if user else None,
            actor_name=user.name if user else None,
            outcome=outcome,
            target_kind=target_kind,
            target_id=target_id,
            project_id=project_id,
            reason=reason,
        )
