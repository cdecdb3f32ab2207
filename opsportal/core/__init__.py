"""
Core module - fundamental data models and infrastructure.

This module contains:
- models: Core data models (User, Client, Project, Task, ServiceReport)
- errors: Structured error taxonomy mapped to HTTP statuses at the boundary
- activity: Capacity-bounded audit log
- utils: Shared utility functions
"""

from opsportal.core.models import (
    AccessLevel,
    BulkResult,
    Capability,
    Client,
    EntityKind,
    FileAttachment,
    Project,
    ProjectStatus,
    Role,
    ServiceReport,
    Subtask,
    Task,
    User,
)

from opsportal.core.errors import (
    Conflict,
    DuplicateEmail,
    Forbidden,
    NotFound,
    PortalError,
    RetryableError,
    SlugConflict,
    Unauthenticated,
    ValidationError,
)

from opsportal.core.activity import (
    ActivityEntry,
    ActivityLog,
    get_activity_log,
    reset_activity_log,
)

from opsportal.core.utils import generate_id, slugify, unique_slug, utc_now

__all__ = [
    # Models
    "AccessLevel",
    "BulkResult",
    "Capability",
    "Client",
    "EntityKind",
    "FileAttachment",
    "Project",
    "ProjectStatus",
    "Role",
    "ServiceReport",
    "Subtask",
    "Task",
    "User",
    # Errors
    "Conflict",
    "DuplicateEmail",
    "Forbidden",
    "NotFound",
    "PortalError",
    "RetryableError",
    "SlugConflict",
    "Unauthenticated",
    "ValidationError",
    # Activity
    "ActivityEntry",
    "ActivityLog",
    "get_activity_log",
    "reset_activity_log",
    # Utils
    "generate_id",
    "slugify",
    "unique_slug",
    "utc_now",
]
