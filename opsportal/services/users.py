"""
User administration, credentials and password-reset requests.

Every write to a user record invalidates that user's cache entry before
returning, so a permission change applies to the very next request.
"""

from __future__ import annotations

import logging
from typing import Any

import pydantic

from opsportal.auth.capabilities import Action
from opsportal.auth.jwt import hash_password, verify_password
from opsportal.auth.policies import project_fields
from opsportal.config import Settings
from opsportal.core.activity import ActivityLog
from opsportal.core.errors import NotFound, Unauthenticated, ValidationError, validation_details
from opsportal.core.models import Capability, PasswordResetRequest, Role, User, normalize_email
from opsportal.core.utils import utc_now
from opsportal.identity.cache import UserCache
from opsportal.identity.store import IdentityStore

logger = logging.getLogger(__name__)


class UserService:
    def __init__(
        self,
        store: IdentityStore,
        user_cache: UserCache,
        activity: ActivityLog,
        settings: Settings,
    ):
        self.store = store
        self.user_cache = user_cache
        self.activity = activity
        self.settings = settings

    def _log(self, action: str, actor: User | None, user_id: str, **details: Any) -> None:
        self.activity.record(
            action,
            actor.id if actor else None,
            actor_name=actor.name if actor else None,
            target_kind="user",
            target_id=user_id,
            details=details,
        )

    def _check_password(self, password: str) -> None:
        if len(password or "") < self.settings.min_password_length:
            raise ValidationError(
                f"Password must be at least {self.settings.min_password_length} characters"
            )

    # =========================================================================
    # Credentials
    # =========================================================================

    async def authenticate(self, email: str, password: str) -> User:
        """Match by lowercased email; one error for unknown email or bad password."""
        user = await self.store.get_user_by_email(email)
        if user is None or not verify_password(password, user.password_hash):
            self.activity.record(
                "auth.login_failed", None, outcome="failure", details={"email": normalize_email(email)}
            )
            raise Unauthenticated("Invalid email or password", reason="invalid-login")
        self._log("auth.login", user, user.id)
        return user

    async def change_password(self, user: User, current_password: str, new_password: str) -> User:
        if not verify_password(current_password, user.password_hash):
            raise ValidationError("Current password is incorrect")
        self._check_password(new_password)

        user = await self.store.get_user(user.id) or user
        user.password_hash = hash_password(new_password)
        user.must_change_password = False
        user.updated_at = utc_now()
        await self.store.save_user(user)
        await self.user_cache.invalidate(user.id)

        self._log("user.password_changed", user, user.id)
        return user

    # =========================================================================
    # Administration
    # =========================================================================

    async def list_users(self) -> list[User]:
        return sorted(await self.store.list_users(), key=lambda u: u.email)

    async def get_user(self, user_id: str) -> User:
        user = await self.store.get_user(user_id)
        if user is None:
            raise NotFound("User not found", details={"id": user_id})
        return user

    async def create_user(self, actor: User | None, payload: dict[str, Any], trusted: bool = False) -> User:
        """
        Create a user from an admin-submitted body.

        `trusted` skips the whitelist for internal callers (bootstrap).
        """
        fields = dict(payload) if trusted else project_fields(
            Action.ADMIN_USER_MANAGEMENT, payload, actor, strict=self.settings.reject_unknown_fields
        )
        password = fields.pop("password", "")
        self._check_password(password)
        if not fields.get("email") or not fields.get("name"):
            raise ValidationError("Email and name are required")

        try:
            user = User(password_hash=hash_password(password), **_coerce(fields))
        except pydantic.ValidationError as e:
            raise ValidationError("Invalid user", details=validation_details(e))
        _check_role_fields(user)

        await self.store.add_user(user)
        self._log("user.created", actor, user.id, role=user.role.value)
        logger.info("Created user %s (%s)", user.id, user.role.value)
        return user

    async def update_user(self, actor: User, user_id: str, payload: dict[str, Any]) -> User:
        fields = project_fields(
            Action.ADMIN_USER_MANAGEMENT, payload, actor, strict=self.settings.reject_unknown_fields
        )
        user = await self.get_user(user_id)

        password = fields.pop("password", None)
        try:
            updated = User.model_validate({**user.model_dump(), **_coerce(fields)})
        except pydantic.ValidationError as e:
            raise ValidationError("Invalid user", details=validation_details(e))
        _check_role_fields(updated)

        if password:
            self._check_password(password)
            updated.password_hash = hash_password(password)
        updated.updated_at = utc_now()

        await self.store.replace_user(updated)
        await self.user_cache.invalidate(user_id)

        self._log("user.updated", actor, user_id, fields=sorted(fields))
        return updated

    async def delete_user(self, actor: User, user_id: str) -> None:
        if actor.id == user_id:
            raise ValidationError("You cannot delete your own account")
        if not await self.store.delete_user(user_id):
            raise NotFound("User not found", details={"id": user_id})
        await self.user_cache.invalidate(user_id)
        self._log("user.deleted", actor, user_id)

    async def ensure_bootstrap_admin(self) -> User | None:
        """Seed the configured admin once; it must change its password on first login."""
        email = self.settings.default_admin_email
        if not email or not self.settings.default_admin_password:
            return None
        existing = await self.store.get_user_by_email(email)
        if existing is not None:
            return existing

        admin = await self.create_user(
            None,
            {
                "email": email,
                "name": self.settings.default_admin_name,
                "password": self.settings.default_admin_password,
                "role": Role.ADMIN,
                "must_change_password": True,
            },
            trusted=True,
        )
        logger.warning("Seeded bootstrap admin %s; change its password on first login", admin.email)
        return admin

    # =========================================================================
    # Password reset requests
    # =========================================================================

    async def request_password_reset(self, email: str) -> None:
        """Queue an admin-handled reset. Silent when the email is unknown."""
        user = await self.store.get_user_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email")
            return

        pending = await self.store.list_reset_requests(status="pending")
        if any(r.user_id == user.id for r in pending):
            return

        request = PasswordResetRequest(user_id=user.id, email=user.email, name=user.name)
        await self.store.save_reset_request(request)
        self._log("user.password_reset_requested", None, user.id)

    async def list_reset_requests(self, status: str | None = None) -> list[PasswordResetRequest]:
        requests = await self.store.list_reset_requests(status)
        return sorted(requests, key=lambda r: r.requested_at, reverse=True)

    async def handle_reset_request(
        self,
        actor: User,
        request_id: str,
        status: str,
        new_password: str | None = None,
    ) -> PasswordResetRequest:
        """Complete (optionally setting a temporary password) or dismiss a request."""
        if status not in ("completed", "dismissed"):
            raise ValidationError("Status must be 'completed' or 'dismissed'")
        request = await self.store.get_reset_request(request_id)
        if request is None:
            raise NotFound("Reset request not found", details={"id": request_id})

        if status == "completed" and new_password:
            self._check_password(new_password)
            user = await self.get_user(request.user_id)
            user.password_hash = hash_password(new_password)
            user.must_change_password = True
            user.updated_at = utc_now()
            await self.store.save_user(user)
            await self.user_cache.invalidate(user.id)

        request.status = status
        request.handled_at = utc_now()
        request.handled_by = actor.id
        await self.store.save_reset_request(request)
        self._log("user.password_reset_" + status, actor, request.user_id)
        return request


def _coerce(fields: dict[str, Any]) -> dict[str, Any]:
    """Normalize loosely typed admin input before model validation."""
    fields = dict(fields)
    if "flags" in fields:
        flags = fields["flags"] or {}
        try:
            fields["flags"] = {Capability(k): bool(v) for k, v in flags.items()}
        except (ValueError, AttributeError):
            raise ValidationError(
                "Unknown capability flag",
                details={"allowed": [c.value for c in Capability]},
            )
    if "assigned_clients" in fields:
        assigned = fields["assigned_clients"] or []
        if not isinstance(assigned, list) or not all(isinstance(c, str) for c in assigned):
            raise ValidationError(
                "assigned_clients must be a list of client ids",
                details={"field": "assigned_clients"},
            )
        fields["assigned_clients"] = set(assigned)
    return fields


def _check_role_fields(user: User) -> None:
    if user.role == Role.CLIENT and not user.client_id:
        raise ValidationError("Client users must reference a client")
