"""
Policies - the permission predicate and the route-level interface to it.

`can_perform(caller, action, target)` is a pure function: no storage, no
network, no side effects. Route handlers never call it directly; they use

    ctx: AuthContext = Depends(require(Action.WRITE_TASK))

which resolves the caller and target through the AuthorizationGate (gate.py),
evaluates the predicate, records the decision and raises on deny.

Rules, first match wins:

    1. Admin holding the action's capability           -> allow
    2. Non-admin attempting an admin-only action       -> deny insufficient-role
    3. Caller lacks the action's capability            -> deny insufficient-role
    4. Vendor whose target client is not assigned      -> deny not-assigned
       Client user whose target client is not theirs   -> deny not-assigned
    5. Project access level below the action's minimum -> deny insufficient-project-access
    6. Otherwise                                       -> allow
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from opsportal.auth.capabilities import (
    ADMIN_ONLY_FIELDS,
    FIELD_WHITELISTS,
    RULES,
    Action,
    Scope,
    get_capabilities,
)
from opsportal.auth.context import AuthContext, Target, TargetRef
from opsportal.core.errors import ValidationError
from opsportal.core.models import Role, User

logger = logging.getLogger(__name__)

INSUFFICIENT_ROLE = "insufficient-role"
NOT_ASSIGNED = "not-assigned"
INSUFFICIENT_PROJECT_ACCESS = "insufficient-project-access"


# =============================================================================
# Decision
# =============================================================================


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(True)


def deny(reason: str) -> Decision:
    return Decision(False, reason)


# =============================================================================
# Permission predicate
# =============================================================================


def can_perform(caller: User, action: Action, target: Target | None = None) -> Decision:
    """Decide whether `caller` may perform `action` on `target`."""
    rule = RULES[action]
    target = target or Target.none()
    capabilities = get_capabilities(caller.role, caller.flags)
    has_required = rule.capability is None or rule.capability in capabilities

    if caller.role == Role.ADMIN and has_required:
        return ALLOW

    if rule.admin_only and caller.role != Role.ADMIN:
        return deny(INSUFFICIENT_ROLE)

    if not has_required:
        return deny(INSUFFICIENT_ROLE)

    if rule.scope != Scope.GLOBAL:
        if caller.role == Role.VENDOR:
            # An empty assignment set means no clients, never all of them
            if target.client_id is None or target.client_id not in caller.assigned_clients:
                return deny(NOT_ASSIGNED)
        elif caller.role == Role.CLIENT:
            if target.client_id is None or target.client_id != caller.client_id:
                return deny(NOT_ASSIGNED)

    if rule.scope == Scope.PROJECT:
        if not target.access_level_for(caller.id).at_least(rule.min_access):
            return deny(INSUFFICIENT_PROJECT_ACCESS)

    return ALLOW


# =============================================================================
# Field whitelists
# =============================================================================


def allowed_fields(action: Action, caller: User) -> frozenset[str]:
    """Fields `caller` may change through `action`."""
    fields = FIELD_WHITELISTS.get(action, frozenset())
    if caller.role != Role.ADMIN:
        fields = fields - ADMIN_ONLY_FIELDS.get(action, frozenset())
    return fields


def project_fields(
    action: Action,
    payload: dict[str, Any],
    caller: User,
    strict: bool = False,
    fields: frozenset[str] | None = None,
) -> dict[str, Any]:
    """
    Keep only the whitelisted keys of a parsed mutation body.

    Unknown keys are dropped (logged at debug) unless `strict`, in which case
    they are rejected with a ValidationError. Callers pass `strict` from the
    app's `reject_unknown_fields` setting.
    """
    if fields is None:
        fields = allowed_fields(action, caller)
    dropped = sorted(set(payload) - fields)
    if dropped:
        if strict:
            raise ValidationError(
                "Fields not permitted for this action",
                details={"fields": dropped, "action": action.value},
            )
        logger.debug("Dropped non-whitelisted fields for %s: %s", action.value, dropped)

    return {key: value for key, value in payload.items() if key in fields}


# =============================================================================
# Credential extraction
# =============================================================================


optional_bearer = HTTPBearer(auto_error=False)


async def get_credential(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(optional_bearer),
) -> str | None:
    """Bearer token from the Authorization header, or a `token` query param (downloads)."""
    if credentials:
        return credentials.credentials
    return request.query_params.get("token")


# =============================================================================
# Main Interface - the require() function
# =============================================================================


def require(
    action: Action,
    project_param: str | None = "project_id",
    client_param: str | None = "client_id",
) -> Callable:
    """
    Require permission for `action` to access a route.

    Usage:
        @router.put("/projects/{project_id}/tasks/{task_id}")
        async def update_task(
            project_id: str,
            task_id: str,
            ctx: AuthContext = Depends(require(Action.WRITE_TASK)),
        ):
            # ctx.user, ctx.project and ctx.whitelist are populated

    The target is read from the path: `project_param` for project-scoped
    actions, `client_param` for client-scoped ones.
    """
    rule = RULES[action]

    async def dependency(
        request: Request,
        credential: str | None = Depends(get_credential),
    ) -> AuthContext:
        gate = request.app.state.gate
        ref = TargetRef.none()
        if rule.scope == Scope.PROJECT and project_param:
            ref = TargetRef.project(id=request.path_params.get(project_param))
        elif rule.scope == Scope.CLIENT and client_param and client_param in request.path_params:
            ref = TargetRef.client(id=request.path_params[client_param])
        return await gate.authorize(credential, action, ref)

    return dependency


def require_auth() -> Callable:
    """Just require a valid credential, no specific action."""

    async def dependency(
        request: Request,
        credential: str | None = Depends(get_credential),
    ) -> User:
        return await request.app.state.gate.authenticate(credential)

    return dependency
