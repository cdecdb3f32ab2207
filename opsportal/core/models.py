"""
Core data models for the portal platform.

These models represent the canonical records owned by the identity store:
Users, Clients, Projects (with their Tasks and file attachments) and the
service/validation reports filed through the technician portal.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, EmailStr, Field, field_validator

from opsportal.core.utils import generate_id, utc_now


# =============================================================================
# Enums
# =============================================================================


class Role(str, Enum):
    """Platform-wide role. Closed set."""

    ADMIN = "admin"
    MANAGER = "manager"
    TECHNICIAN = "technician"
    VENDOR = "vendor"
    CLIENT = "client"


class Capability(str, Enum):
    """Named portal/feature flags, independent of role."""

    SERVICE_PORTAL = "service_portal"
    ADMIN_HUB = "admin_hub"
    IMPLEMENTATIONS = "implementations"
    CLIENT_PORTAL_ADMIN = "client_portal_admin"


class AccessLevel(str, Enum):
    """Per-project access level, ordered none < read < write < admin."""

    NONE = "none"
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _ACCESS_ORDER.index(self)

    def at_least(self, other: AccessLevel) -> bool:
        return self.rank >= other.rank


_ACCESS_ORDER = [AccessLevel.NONE, AccessLevel.READ, AccessLevel.WRITE, AccessLevel.ADMIN]


class ProjectStatus(str, Enum):
    """Status of a project. No other value is ever persisted."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class EntityKind(str, Enum):
    """Kinds of sluggable entity."""

    CLIENT = "client"
    PROJECT = "project"


class ReportStatus(str, Enum):
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    SIGNATURE_NEEDED = "signature_needed"
    SUBMITTED = "submitted"


# =============================================================================
# Users
# =============================================================================


class User(BaseModel):
    """
    A platform user.

    Email is stored lowercased, which makes uniqueness case-insensitive.
    `flags` only records explicit overrides; effective capabilities are
    computed from role defaults + flags in auth.capabilities.
    """

    id: str = Field(default_factory=lambda: generate_id("user"))
    email: EmailStr
    name: str
    role: Role = Role.MANAGER

    flags: dict[Capability, bool] = Field(default_factory=dict)

    # Vendor: exactly the clients they may service. Empty means none.
    assigned_clients: set[str] = Field(default_factory=set)

    # Client: the client record this login belongs to
    client_id: str | None = None

    password_hash: str = ""
    must_change_password: bool = False

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return normalize_email(value)

    def public_dict(self) -> dict[str, Any]:
        """Serialize without the credential hash."""
        return self.model_dump(mode="json", exclude={"password_hash"})


def normalize_email(email: str) -> str:
    return email.strip().lower()


# =============================================================================
# Clients
# =============================================================================


class Client(BaseModel):
    """An external client (practice). Addressable by id and by mutable slug."""

    id: str = Field(default_factory=lambda: generate_id("client"))
    slug: str
    previous_slugs: list[str] = Field(default_factory=list)

    practice_name: str
    logo: str = ""

    # External CRM identifiers
    crm_company_id: str = ""
    crm_deal_id: str = ""
    crm_contact_id: str = ""

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# Tasks
# =============================================================================


TaskId = int | str


class Subtask(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    title: str
    owner: str = ""
    due_date: str = ""
    completed: bool = False
    not_applicable: bool = False
    show_to_client: bool = True
    completed_at: datetime | None = None

    @property
    def is_settled(self) -> bool:
        """Complete or explicitly not applicable."""
        return self.completed or self.not_applicable


class Task(BaseModel):
    """
    A unit of work inside exactly one project.

    `dependencies` lists ids of other tasks in the same project that this task
    depends on. Only the depending task records the edge.
    """

    id: TaskId
    phase: str = "Phase 1"
    stage: str = ""
    task_title: str = ""
    owner: str = ""
    due_date: str = ""
    start_date: str = ""
    description: str = ""
    client_name: str = ""
    tags: list[str] = Field(default_factory=list)
    notes: list[dict[str, Any]] = Field(default_factory=list)
    dependencies: list[TaskId] = Field(default_factory=list)

    completed: bool = False
    # Written only by the server on completion transitions
    date_completed: datetime | None = None

    show_to_client: bool = False
    subtasks: list[Subtask] = Field(default_factory=list)

    created_by: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    def incomplete_subtasks(self) -> list[Subtask]:
        return [s for s in self.subtasks if not s.is_settled]

    def find_subtask(self, subtask_id: str) -> Subtask | None:
        for subtask in self.subtasks:
            if subtask.id == subtask_id:
                return subtask
        return None


def task_key(task_id: TaskId) -> str:
    """Canonical string form of a task id (path params arrive as strings)."""
    return str(task_id)


# =============================================================================
# Projects
# =============================================================================


class FileAttachment(BaseModel):
    id: str = Field(default_factory=lambda: generate_id("file"))
    filename: str
    content_type: str = "application/octet-stream"
    size: int = 0
    storage_key: str
    task_id: TaskId | None = None
    uploaded_by: str | None = None
    uploaded_at: datetime = Field(default_factory=utc_now)


class Project(BaseModel):
    """
    An implementation project belonging to a client.

    Tasks are embedded: the project record is the unit of atomic task
    mutation.
    """

    id: str = Field(default_factory=lambda: generate_id("proj"))
    slug: str
    previous_slugs: list[str] = Field(default_factory=list)
    link_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    name: str
    client_id: str | None = None
    client_name: str = ""
    project_manager: str = ""
    status: ProjectStatus = ProjectStatus.ACTIVE

    template: str | None = None
    phases: list[str] = Field(default_factory=list)
    go_live_date: str = ""
    client_portal_domain: str = ""

    access_levels: dict[str, AccessLevel] = Field(default_factory=dict)
    tasks: list[Task] = Field(default_factory=list)
    files: list[FileAttachment] = Field(default_factory=list)

    # UUID-keyed projects get uuid task ids; others a per-project sequence
    uuid_task_ids: bool = False
    next_task_seq: int = 1

    # External CRM linkage
    crm_record_id: str = ""
    crm_record_type: str = "companies"
    crm_deal_stage: str = ""
    last_crm_sync: datetime | None = None

    created_by: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def access_level_for(self, user_id: str) -> AccessLevel:
        return self.access_levels.get(user_id, AccessLevel.NONE)

    def find_task(self, task_id: TaskId) -> Task | None:
        key = task_key(task_id)
        for task in self.tasks:
            if task_key(task.id) == key:
                return task
        return None

    def allocate_task_id(self) -> TaskId:
        """
        Hand out the next task id.

        Sequential projects keep an explicit counter so an empty or
        non-numeric task set never matters.
        """
        if self.uuid_task_ids:
            return uuid.uuid4().hex
        task_id = self.next_task_seq
        self.next_task_seq += 1
        return task_id


# =============================================================================
# Reports (service portal)
# =============================================================================


class ServiceReport(BaseModel):
    """A field service or multi-day validation report for a client."""

    id: str = Field(default_factory=lambda: generate_id("rpt"))
    kind: Literal["service", "validation"] = "service"
    client_id: str
    project_id: str | None = None

    technician_id: str | None = None
    technician_name: str = ""
    assigned_by: str | None = None
    status: ReportStatus = ReportStatus.IN_PROGRESS

    service_type: str = ""
    summary: str = ""
    findings: str = ""
    next_steps: str = ""
    start_date: str = ""
    end_date: str = ""
    days_on_site: int | None = None
    analyzers: list[dict[str, Any]] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class PasswordResetRequest(BaseModel):
    id: str = Field(default_factory=lambda: generate_id("reset"))
    user_id: str
    email: str
    name: str = ""
    status: Literal["pending", "completed", "dismissed"] = "pending"
    requested_at: datetime = Field(default_factory=utc_now)
    handled_at: datetime | None = None
    handled_by: str | None = None


# =============================================================================
# Bulk results
# =============================================================================


class BulkItemResult(BaseModel):
    id: TaskId
    outcome: Literal["success", "skipped"]
    reason: str | None = None


class BulkResult(BaseModel):
    """Per-item outcome of a bulk operation. Partial success is normal."""

    results: list[BulkItemResult] = Field(default_factory=list)

    @property
    def succeeded(self) -> list[TaskId]:
        return [r.id for r in self.results if r.outcome == "success"]

    @property
    def skipped(self) -> list[BulkItemResult]:
        return [r for r in self.results if r.outcome == "skipped"]

    def ok(self, item_id: TaskId) -> None:
        self.results.append(BulkItemResult(id=item_id, outcome="success"))

    def skip(self, item_id: TaskId, reason: str) -> None:
        self.results.append(BulkItemResult(id=item_id, outcome="skipped", reason=reason))

    def summary(self) -> dict[str, Any]:
        return {
            "results": [r.model_dump(exclude_none=True) for r in self.results],
            "succeeded": len(self.succeeded),
            "skipped": len(self.skipped),
        }
