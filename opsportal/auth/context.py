"""
Auth context - the "who can do what" for each request.

This is the lightweight object handed to route handlers once the gate has
allowed an action. It carries the caller, the resolved target and the field
whitelist that applies to the action.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from opsportal.auth.capabilities import Action, get_capabilities
from opsportal.core.models import AccessLevel, Capability, Client, Project, Role, User


@dataclass(frozen=True)
class Target:
    """
    What an action is evaluated against.

    Only the facts the permission model needs: the owning client, and for
    projects the project itself (for its access-level map).
    """

    kind: str = "global"
    id: str | None = None
    client_id: str | None = None
    project: Project | None = None

    @classmethod
    def none(cls) -> Target:
        return cls()

    @classmethod
    def for_project(cls, project: Project) -> Target:
        return cls(kind="project", id=project.id, client_id=project.client_id, project=project)

    @classmethod
    def for_client(cls, client_id: str | None) -> Target:
        return cls(kind="client", id=client_id, client_id=client_id)

    def access_level_for(self, user_id: str) -> AccessLevel:
        if self.project is None:
            return AccessLevel.NONE
        return self.project.access_level_for(user_id)


@dataclass(frozen=True)
class TargetRef:
    """
    Unresolved reference to a target, as it arrives from a request.

    Projects and clients may be referenced by id or by slug.
    """

    kind: str = "global"
    id: str | None = None
    slug: str | None = None
    client_id: str | None = None

    @classmethod
    def none(cls) -> TargetRef:
        return cls()

    @classmethod
    def project(cls, id: str | None = None, slug: str | None = None) -> TargetRef:
        return cls(kind="project", id=id, slug=slug)

    @classmethod
    def client(cls, id: str | None = None, slug: str | None = None) -> TargetRef:
        return cls(kind="client", id=id, slug=slug, client_id=id)


@dataclass
class AuthContext:
    """
    Authorization context for an allowed request.

    Usage in routes:
        async def my_route(ctx: AuthContext = Depends(require(Action.WRITE_TASK))):
            body = ctx.project_fields(payload)
    """

    user: User
    action: Action
    target: Target = field(default_factory=Target.none)

    # Resolved entity, when the target was a project or client
    entity: Project | Client | None = None
    redirected: bool = False

    whitelist: frozenset[str] = frozenset()
    strict_fields: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def is_admin(self) -> bool:
        return self.user.role == Role.ADMIN

    @property
    def capabilities(self) -> set[Capability]:
        return get_capabilities(self.user.role, self.user.flags)

    @property
    def project(self) -> Project | None:
        return self.entity if isinstance(self.entity, Project) else None

    @property
    def client(self) -> Client | None:
        return self.entity if isinstance(self.entity, Client) else None

    def project_fields(self, payload: dict[str, Any], strict: bool | None = None) -> dict[str, Any]:
        """Whitelist-project a mutation body for this context's action."""
        from opsportal.auth.policies import project_fields

        if strict is None:
            strict = self.strict_fields
        return project_fields(self.action, payload, self.user, strict=strict)
