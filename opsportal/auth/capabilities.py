"""
Capabilities, actions, and the rule table.

This defines WHAT users can do, not HOW we check it.
The actual checking happens in policies.py.

Every gated operation is an `Action`. The `RULES` table is the single place
that says which capability flag an action needs, whether it is admin-only,
what kind of target it touches and which per-project access level it needs.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from opsportal.core.models import AccessLevel, Capability, Role


class Action(str, Enum):
    """Closed taxonomy of gated actions."""

    # Projects
    READ_PROJECT = "read-project"
    CREATE_PROJECT = "create-project"
    UPDATE_PROJECT = "update-project"
    DELETE_PROJECT = "delete-project"
    CLONE_PROJECT = "clone-project"
    RENAME_PROJECT = "rename-project"
    ADMIN_PROJECT = "admin-project"  # access-level grants
    SYNC_PROJECT = "sync-project"
    UPLOAD_FILE = "upload-file"

    # Tasks
    WRITE_TASK = "write-task"
    DELETE_TASK = "delete-task"

    # Clients
    READ_CLIENT = "read-client"
    CREATE_CLIENT = "create-client"
    UPDATE_CLIENT = "update-client"
    RENAME_CLIENT = "rename-client"

    # Administration
    ADMIN_USER_MANAGEMENT = "admin-user-management"
    VIEW_ACTIVITY_LOG = "view-activity-log"
    VIEW_INBOX = "view-inbox"

    # Service portal
    READ_SERVICE_REPORT = "read-service-report"
    SUBMIT_SERVICE_REPORT = "submit-service-report"
    ASSIGN_SERVICE_REPORT = "assign-service-report"
    UPDATE_SERVICE_REPORT = "update-service-report"
    SUBMIT_VALIDATION_REPORT = "submit-validation-report"


class Scope(str, Enum):
    """What kind of target an action is evaluated against."""

    GLOBAL = "global"    # no target
    CLIENT = "client"    # target carries an owning client
    PROJECT = "project"  # target is a project (owning client + access levels)


@dataclass(frozen=True)
class ActionRule:
    capability: Capability | None = None
    admin_only: bool = False
    scope: Scope = Scope.GLOBAL
    min_access: AccessLevel = AccessLevel.NONE


RULES: dict[Action, ActionRule] = {
    Action.READ_PROJECT: ActionRule(scope=Scope.PROJECT, min_access=AccessLevel.READ),
    Action.CREATE_PROJECT: ActionRule(Capability.IMPLEMENTATIONS),
    Action.UPDATE_PROJECT: ActionRule(Capability.IMPLEMENTATIONS, scope=Scope.PROJECT, min_access=AccessLevel.WRITE),
    Action.DELETE_PROJECT: ActionRule(Capability.ADMIN_HUB, admin_only=True, scope=Scope.PROJECT, min_access=AccessLevel.ADMIN),
    Action.CLONE_PROJECT: ActionRule(Capability.IMPLEMENTATIONS, scope=Scope.PROJECT, min_access=AccessLevel.READ),
    Action.RENAME_PROJECT: ActionRule(Capability.IMPLEMENTATIONS, scope=Scope.PROJECT, min_access=AccessLevel.ADMIN),
    Action.ADMIN_PROJECT: ActionRule(Capability.IMPLEMENTATIONS, scope=Scope.PROJECT, min_access=AccessLevel.ADMIN),
    Action.SYNC_PROJECT: ActionRule(Capability.IMPLEMENTATIONS, scope=Scope.PROJECT, min_access=AccessLevel.WRITE),
    Action.UPLOAD_FILE: ActionRule(Capability.IMPLEMENTATIONS, scope=Scope.PROJECT, min_access=AccessLevel.WRITE),

    Action.WRITE_TASK: ActionRule(Capability.IMPLEMENTATIONS, scope=Scope.PROJECT, min_access=AccessLevel.WRITE),
    Action.DELETE_TASK: ActionRule(Capability.IMPLEMENTATIONS, scope=Scope.PROJECT, min_access=AccessLevel.WRITE),

    Action.READ_CLIENT: ActionRule(scope=Scope.CLIENT),
    Action.CREATE_CLIENT: ActionRule(Capability.ADMIN_HUB, admin_only=True),
    Action.UPDATE_CLIENT: ActionRule(Capability.CLIENT_PORTAL_ADMIN, scope=Scope.CLIENT),
    Action.RENAME_CLIENT: ActionRule(Capability.ADMIN_HUB, admin_only=True, scope=Scope.CLIENT),

    Action.ADMIN_USER_MANAGEMENT: ActionRule(Capability.ADMIN_HUB, admin_only=True),
    Action.VIEW_ACTIVITY_LOG: ActionRule(Capability.ADMIN_HUB, admin_only=True),
    Action.VIEW_INBOX: ActionRule(),

    Action.READ_SERVICE_REPORT: ActionRule(Capability.SERVICE_PORTAL, scope=Scope.CLIENT),
    Action.SUBMIT_SERVICE_REPORT: ActionRule(Capability.SERVICE_PORTAL, scope=Scope.CLIENT),
    Action.ASSIGN_SERVICE_REPORT: ActionRule(Capability.SERVICE_PORTAL, admin_only=True, scope=Scope.CLIENT),
    Action.UPDATE_SERVICE_REPORT: ActionRule(Capability.SERVICE_PORTAL, scope=Scope.CLIENT),
    Action.SUBMIT_VALIDATION_REPORT: ActionRule(Capability.SERVICE_PORTAL, scope=Scope.CLIENT),
}


# =============================================================================
# Capability Mappings
# =============================================================================


# Default capabilities per role; explicit user flags override these
ROLE_CAPABILITIES: dict[Role, set[Capability]] = {
    Role.ADMIN: set(Capability),
    Role.MANAGER: {Capability.IMPLEMENTATIONS},
    Role.TECHNICIAN: {Capability.SERVICE_PORTAL},
    Role.VENDOR: {Capability.SERVICE_PORTAL},
    Role.CLIENT: set(),
}


def get_capabilities(role: Role, flags: dict[Capability, bool] | None = None) -> set[Capability]:
    """
    Effective capabilities for a role + explicit flag overrides.

    A flag set to True grants the capability, False revokes a role default.
    """
    caps = set(ROLE_CAPABILITIES.get(role, set()))
    for capability, enabled in (flags or {}).items():
        if enabled:
            caps.add(capability)
        else:
            caps.discard(capability)
    # Vendors only exist to use the service portal
    if role == Role.VENDOR:
        caps.add(Capability.SERVICE_PORTAL)
    return caps


def has_capability(capability: Capability | str, role: Role, flags: dict[Capability, bool] | None = None) -> bool:
    """Check if a role+flags combination has a specific capability."""
    if isinstance(capability, str):
        capability = Capability(capability)
    return capability in get_capabilities(role, flags)


# =============================================================================
# Field Whitelists
# =============================================================================


# Fields a mutation action may change. Anything else never reaches storage.
FIELD_WHITELISTS: dict[Action, frozenset[str]] = {
    Action.WRITE_TASK: frozenset({
        "phase", "stage", "task_title", "owner", "due_date", "start_date",
        "description", "client_name", "tags", "notes", "dependencies",
        "completed", "show_to_client",
    }),
    Action.CREATE_PROJECT: frozenset({
        "name", "client_id", "client_name", "project_manager", "go_live_date",
        "client_portal_domain", "template", "phases", "tasks", "uuid_task_ids",
    }),
    Action.UPDATE_PROJECT: frozenset({
        "name", "client_name", "project_manager", "status", "go_live_date",
        "client_portal_domain",
    }),
    Action.UPDATE_CLIENT: frozenset({
        "practice_name", "logo", "crm_company_id", "crm_deal_id", "crm_contact_id",
    }),
    Action.UPDATE_SERVICE_REPORT: frozenset({
        "service_type", "summary", "findings", "next_steps", "start_date",
        "end_date", "days_on_site", "analyzers", "status",
    }),
    Action.SUBMIT_SERVICE_REPORT: frozenset({
        "client_id", "project_id", "service_type", "summary", "findings",
        "next_steps", "start_date", "end_date", "analyzers",
    }),
    Action.SUBMIT_VALIDATION_REPORT: frozenset({
        "client_id", "project_id", "summary", "findings", "next_steps",
        "start_date", "end_date", "days_on_site", "analyzers",
    }),
    Action.ASSIGN_SERVICE_REPORT: frozenset({
        "client_id", "project_id", "technician_id", "service_type", "summary",
        "start_date",
    }),
    Action.ADMIN_USER_MANAGEMENT: frozenset({
        "name", "email", "role", "password", "flags", "assigned_clients",
        "client_id", "must_change_password",
    }),
}

# Subset of a whitelist that only admins may change
ADMIN_ONLY_FIELDS: dict[Action, frozenset[str]] = {
    Action.WRITE_TASK: frozenset({"show_to_client", "client_name", "owner"}),
}

SUBTASK_FIELDS = frozenset({
    "title", "owner", "due_date", "completed", "not_applicable", "show_to_client",
})
