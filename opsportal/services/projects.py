"""
Project & task lifecycle.

Every mutation of a project (its fields, tasks, subtasks, files or access
grants) runs under that project's lock as a read-modify-write of the whole
record, so no reader ever sees half of a concurrent update and the task
dependency graph is never left with dangling references.

Callers are expected to have passed the AuthorizationGate already; the
service only applies field whitelists and lifecycle rules.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

import pydantic

from opsportal.auth.capabilities import SUBTASK_FIELDS, Action
from opsportal.auth.context import Target
from opsportal.auth.policies import can_perform, project_fields
from opsportal.core.activity import ActivityEntry, ActivityLog
from opsportal.core.errors import NotFound, ValidationError, validation_details
from opsportal.core.models import (
    AccessLevel,
    BulkResult,
    EntityKind,
    FileAttachment,
    Project,
    ProjectStatus,
    Role,
    Subtask,
    Task,
    TaskId,
    User,
    task_key,
)
from opsportal.core.utils import generate_id, utc_now
from opsportal.identity.cache import SlugCache, UserCache
from opsportal.identity.slugs import SlugResolver
from opsportal.identity.store import IdentityStore
from opsportal.storage.base import ContentStorage

logger = logging.getLogger(__name__)

# Skip reasons reported by bulk operations
INCOMPLETE_SUBTASKS = "incomplete-subtasks"
NOT_FOUND = "not-found"
INVALID_DEPENDENCY = "invalid-dependency"
INVALID_VALUE = "invalid-value"
INVALID_ID = "invalid-id"


class TaskRuleError(Exception):
    """A single task update broke a lifecycle rule. Carries the skip reason."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message


class ProjectService:
    def __init__(
        self,
        store: IdentityStore,
        resolver: SlugResolver,
        slug_cache: SlugCache,
        user_cache: UserCache,
        content: ContentStorage,
        activity: ActivityLog,
        strict_fields: bool = False,
    ):
        self.store = store
        self.resolver = resolver
        self.slug_cache = slug_cache
        self.user_cache = user_cache
        self.content = content
        self.activity = activity
        self.strict_fields = strict_fields

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _save(self, project: Project) -> None:
        """Persist and drop every slug-cache copy before returning."""
        project.updated_at = utc_now()
        await self.store.save_project(project)
        await self.slug_cache.invalidate_entity(EntityKind.PROJECT, project)

    def _log(self, action: str, actor: User, project: Project, **details: Any) -> None:
        self.activity.record(
            action,
            actor.id,
            actor_name=actor.name,
            target_kind="project",
            target_id=project.id,
            project_id=project.id,
            details=details,
        )

    # =========================================================================
    # Projects
    # =========================================================================

    async def visible_projects(self, user: User) -> list[Project]:
        """Every project the caller may read."""
        return [
            p for p in await self.store.list_projects()
            if can_perform(user, Action.READ_PROJECT, Target.for_project(p))
        ]

    async def inbox(self, user: User, limit: int = 50) -> list[ActivityEntry]:
        """Recent mutations on projects the caller may read. Authz decisions excluded."""
        project_ids = {p.id for p in await self.visible_projects(user)}
        entries = self.activity.get_history(project_ids=project_ids, limit=self.activity.capacity)
        return [e for e in entries if not e.action.startswith("authz.")][:limit]

    async def create_project(
        self,
        actor: User,
        name: str,
        client_id: str | None = None,
        client_name: str = "",
        template_tasks: Iterable[dict[str, Any]] | None = None,
        uuid_task_ids: bool = False,
        **fields: Any,
    ) -> Project:
        """
        Create an empty project (or one seeded from a template's task list).

        The creator is granted admin access on the new project.
        """
        template_tasks = _template_list(template_tasks)
        if client_id is not None:
            client = await self.store.require_client(client_id)
            client_name = client_name or client.practice_name

        async with self.store.slug_lock(EntityKind.PROJECT):
            slug = await self.resolver.allocate(EntityKind.PROJECT, client_name or name)
            try:
                project = Project(
                    slug=slug,
                    name=name,
                    client_id=client_id,
                    client_name=client_name,
                    uuid_task_ids=uuid_task_ids,
                    access_levels={actor.id: AccessLevel.ADMIN},
                    created_by=actor.id,
                    **fields,
                )
            except pydantic.ValidationError as e:
                raise ValidationError("Invalid project", details=validation_details(e))

            for raw in template_tasks:
                project.tasks.append(_fresh_task(project, raw, actor))

            await self.store.save_project(project)

        self._log("project.created", actor, project, slug=project.slug)
        logger.info("Created project %s (%s)", project.id, project.slug)
        return project

    async def clone_project(
        self,
        actor: User,
        source_id: str,
        name: str | None = None,
        client_name: str | None = None,
    ) -> Project:
        """
        Copy a project's structure into a new, active project.

        Tasks, phases and template carry over with completion state reset.
        Files, CRM linkage, access grants and status never do.
        """
        source = await self.store.require_project(source_id)
        new_client_name = client_name or name or f"{source.client_name or source.name} (Copy)"

        async with self.store.slug_lock(EntityKind.PROJECT):
            slug = await self.resolver.allocate(EntityKind.PROJECT, new_client_name)
            clone = Project(
                slug=slug,
                name=name or f"{source.name} (Copy)",
                client_id=source.client_id,
                client_name=new_client_name,
                project_manager=source.project_manager,
                status=ProjectStatus.ACTIVE,
                template=source.template,
                phases=list(source.phases),
                go_live_date=source.go_live_date,
                client_portal_domain=source.client_portal_domain,
                uuid_task_ids=source.uuid_task_ids,
                next_task_seq=source.next_task_seq,
                access_levels={actor.id: AccessLevel.ADMIN},
                created_by=actor.id,
            )
            clone.tasks = [_reset_task(task) for task in source.tasks]
            await self.store.save_project(clone)

        self._log("project.cloned", actor, clone, source_id=source.id, tasks=len(clone.tasks))
        return clone

    async def update_project(self, actor: User, project_id: str, payload: dict[str, Any]) -> Project:
        fields = project_fields(Action.UPDATE_PROJECT, payload, actor, strict=self.strict_fields)
        if "status" in fields:
            fields["status"] = _parse_status(fields["status"])

        async with self.store.project_lock(project_id):
            project = await self.store.require_project(project_id)
            updated = _validated(project, fields)
            await self._save(updated)

        self._log("project.updated", actor, updated, fields=sorted(fields))
        return updated

    async def delete_project(self, actor: User, project_id: str) -> None:
        async with self.store.project_lock(project_id):
            project = await self.store.require_project(project_id)
            for attachment in project.files:
                await self.content.delete(attachment.storage_key)
            await self.store.delete_entity(EntityKind.PROJECT, project_id)
            await self.slug_cache.invalidate_entity(EntityKind.PROJECT, project)
        self.store.drop_record_lock(EntityKind.PROJECT, project_id)

        self._log("project.deleted", actor, project)

    async def rename_project(self, actor: User, project_id: str, new_slug: str) -> Project:
        async with self.store.project_lock(project_id):
            project = await self.resolver.rename(EntityKind.PROJECT, project_id, new_slug)
        self._log("project.renamed", actor, project, slug=project.slug)
        return project

    async def regenerate_slug(self, actor: User, project_id: str) -> Project:
        """Re-derive the slug from the project's client name."""
        async with self.store.project_lock(project_id):
            project = await self.store.require_project(project_id)
            project = await self.resolver.regenerate(
                EntityKind.PROJECT, project_id, project.client_name or project.name
            )
        self._log("project.renamed", actor, project, slug=project.slug)
        return project

    async def set_access_level(
        self, actor: User, project_id: str, user_id: str, level: AccessLevel | str
    ) -> Project:
        try:
            level = AccessLevel(level)
        except ValueError:
            raise ValidationError(
                f"Invalid access level: {level}",
                details={"allowed": [a.value for a in AccessLevel]},
            )
        if await self.store.get_user(user_id) is None:
            raise NotFound("User not found", details={"id": user_id})

        async with self.store.project_lock(project_id):
            project = await self.store.require_project(project_id)
            if level == AccessLevel.NONE:
                project.access_levels.pop(user_id, None)
            else:
                project.access_levels[user_id] = level
            await self._save(project)
            await self.user_cache.invalidate(user_id)

        self._log("project.access_changed", actor, project, user_id=user_id, level=level.value)
        return project

    async def record_crm_sync(self, project_id: str, record_id: str) -> Project:
        async with self.store.project_lock(project_id):
            project = await self.store.require_project(project_id)
            project.crm_record_id = record_id or project.crm_record_id
            project.last_crm_sync = utc_now()
            await self._save(project)
        return project

    # =========================================================================
    # Tasks
    # =========================================================================

    def tasks_for(self, project: Project, user: User) -> list[Task]:
        """Client users only ever see tasks flagged for them."""
        if user.role != Role.CLIENT:
            return list(project.tasks)
        tasks = []
        for task in project.tasks:
            if not task.show_to_client:
                continue
            visible = task.model_copy(update={
                "subtasks": [s for s in task.subtasks if s.show_to_client],
            })
            tasks.append(visible)
        return tasks

    async def create_task(self, actor: User, project_id: str, payload: dict[str, Any]) -> Task:
        fields = project_fields(Action.WRITE_TASK, payload, actor, strict=self.strict_fields)

        async with self.store.project_lock(project_id):
            project = await self.store.require_project(project_id)
            # Completion only ever happens through an update transition
            fields.pop("completed", None)
            task = _fresh_task(project, fields, actor)
            try:
                _check_dependencies(project, task)
            except TaskRuleError as e:
                raise ValidationError(e.message, reason=e.reason)
            project.tasks.append(task)
            await self._save(project)

        self._log("task.created", actor, project, task_id=task.id)
        return task

    async def update_task(
        self, actor: User, project_id: str, task_id: TaskId, payload: dict[str, Any]
    ) -> Task:
        fields = project_fields(Action.WRITE_TASK, payload, actor, strict=self.strict_fields)

        async with self.store.project_lock(project_id):
            project = await self.store.require_project(project_id)
            task = project.find_task(task_id)
            if task is None:
                raise NotFound("Task not found", details={"id": task_id})
            try:
                updated = _apply_task_update(project, task, fields)
            except TaskRuleError as e:
                raise ValidationError(e.message, reason=e.reason, details={"id": task_id})
            _replace_task(project, updated)
            await self._save(project)

        self._log("task.updated", actor, project, task_id=updated.id, fields=sorted(fields))
        if updated.completed and not task.completed:
            self._log("task.completed", actor, project, task_id=updated.id)
        return updated

    async def bulk_update_tasks(
        self, actor: User, project_id: str, updates: list[dict[str, Any]]
    ) -> BulkResult:
        """
        Apply per-task changes; each task succeeds or is skipped on its own.

        Each item is `{"id": <task id>, <field>: <value>, ...}`.
        """
        result = BulkResult()

        async with self.store.project_lock(project_id):
            project = await self.store.require_project(project_id)
            for item in updates:
                item = dict(item) if isinstance(item, dict) else {}
                task_id = item.pop("id", None)
                if not _is_task_id(task_id):
                    result.skip(_id_label(task_id), INVALID_ID)
                    continue
                task = project.find_task(task_id)
                if task is None:
                    result.skip(task_id, NOT_FOUND)
                    continue

                fields = project_fields(Action.WRITE_TASK, item, actor, strict=self.strict_fields)
                try:
                    updated = _apply_task_update(project, task, fields)
                except TaskRuleError as e:
                    result.skip(task.id, e.reason)
                    continue

                _replace_task(project, updated)
                result.ok(task.id)

            if result.succeeded:
                await self._save(project)

        self._log(
            "task.bulk_updated", actor, project,
            succeeded=len(result.succeeded), skipped=len(result.skipped),
        )
        return result

    async def delete_task(self, actor: User, project_id: str, task_id: TaskId) -> None:
        async with self.store.project_lock(project_id):
            project = await self.store.require_project(project_id)
            task = project.find_task(task_id)
            if task is None:
                raise NotFound("Task not found", details={"id": task_id})
            _remove_task(project, task.id)
            await self._save(project)

        self._log("task.deleted", actor, project, task_id=task.id)

    async def bulk_delete_tasks(self, actor: User, project_id: str, task_ids: list[TaskId]) -> BulkResult:
        result = BulkResult()

        async with self.store.project_lock(project_id):
            project = await self.store.require_project(project_id)
            for task_id in task_ids:
                if not _is_task_id(task_id):
                    result.skip(_id_label(task_id), INVALID_ID)
                    continue
                task = project.find_task(task_id)
                if task is None:
                    result.skip(task_id, NOT_FOUND)
                    continue
                _remove_task(project, task.id)
                result.ok(task.id)

            if result.succeeded:
                await self._save(project)

        self._log(
            "task.bulk_deleted", actor, project,
            succeeded=len(result.succeeded), skipped=len(result.skipped),
        )
        return result

    # =========================================================================
    # Subtasks
    # =========================================================================

    async def add_subtask(
        self, actor: User, project_id: str, task_id: TaskId, payload: dict[str, Any]
    ) -> Subtask:
        fields = project_fields(
            Action.WRITE_TASK, payload, actor, strict=self.strict_fields, fields=_subtask_fields(actor)
        )

        async with self.store.project_lock(project_id):
            project = await self.store.require_project(project_id)
            task = _require_task(project, task_id)
            # Visibility follows the parent unless stated
            fields.setdefault("show_to_client", task.show_to_client)
            try:
                subtask = Subtask(**fields)
            except pydantic.ValidationError as e:
                raise ValidationError("Invalid subtask", details=validation_details(e))
            if subtask.completed:
                subtask.completed_at = utc_now()
            task.subtasks.append(subtask)
            await self._save(project)

        self._log("subtask.created", actor, project, task_id=task.id, subtask_id=subtask.id)
        return subtask

    async def update_subtask(
        self,
        actor: User,
        project_id: str,
        task_id: TaskId,
        subtask_id: str,
        payload: dict[str, Any],
    ) -> Subtask:
        fields = project_fields(
            Action.WRITE_TASK, payload, actor, strict=self.strict_fields, fields=_subtask_fields(actor)
        )

        async with self.store.project_lock(project_id):
            project = await self.store.require_project(project_id)
            task = _require_task(project, task_id)
            subtask = task.find_subtask(subtask_id)
            if subtask is None:
                raise NotFound("Subtask not found", details={"id": subtask_id})

            updated = _validated(subtask, fields)
            if updated.completed and not subtask.completed:
                updated.completed_at = utc_now()
            elif not updated.completed:
                updated.completed_at = None

            task.subtasks = [updated if s.id == subtask_id else s for s in task.subtasks]
            await self._save(project)

        self._log("subtask.updated", actor, project, task_id=task.id, subtask_id=subtask_id)
        return updated

    async def delete_subtask(self, actor: User, project_id: str, task_id: TaskId, subtask_id: str) -> None:
        async with self.store.project_lock(project_id):
            project = await self.store.require_project(project_id)
            task = _require_task(project, task_id)
            if task.find_subtask(subtask_id) is None:
                raise NotFound("Subtask not found", details={"id": subtask_id})
            task.subtasks = [s for s in task.subtasks if s.id != subtask_id]
            await self._save(project)

        self._log("subtask.deleted", actor, project, task_id=task.id, subtask_id=subtask_id)

    # =========================================================================
    # Files
    # =========================================================================

    async def attach_file(
        self,
        actor: User,
        project_id: str,
        filename: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        task_id: TaskId | None = None,
    ) -> FileAttachment:
        """Store upload content and record the attachment on the project."""
        file_id = generate_id("file")
        key = f"projects/{project_id}/{file_id}"

        async with self.store.project_lock(project_id):
            project = await self.store.require_project(project_id)
            if task_id is not None:
                task_id = _require_task(project, task_id).id
            await self.content.put(key, data, content_type)
            attachment = FileAttachment(
                id=file_id,
                filename=filename,
                content_type=content_type,
                size=len(data),
                storage_key=key,
                task_id=task_id,
                uploaded_by=actor.id,
            )
            project.files.append(attachment)
            await self._save(project)

        self._log("file.uploaded", actor, project, file_id=file_id, size=len(data))
        return attachment


# =============================================================================
# Task rules
# =============================================================================


def _fresh_task(project: Project, raw: dict[str, Any], actor: User) -> Task:
    """New incomplete task with a freshly allocated id."""
    data = {
        k: v for k, v in raw.items()
        if k not in {"id", "completed", "date_completed", "created_at", "created_by"}
    }
    subtasks = data.pop("subtasks", None) or []
    show = data.get("show_to_client", False)
    try:
        task = Task(id=project.allocate_task_id(), created_by=actor.id, **data)
        task.subtasks = [
            Subtask(**{"show_to_client": show, **_subtask_seed(s)}) for s in subtasks
        ]
    except pydantic.ValidationError as e:
        raise ValidationError("Invalid task", details=validation_details(e))
    return task


def _template_list(template_tasks: Iterable[dict[str, Any]] | None) -> list[dict[str, Any]]:
    """Template tasks as a list of objects, each with a list of subtask objects."""
    tasks = [] if template_tasks is None else template_tasks
    if not isinstance(tasks, (list, tuple)) or not all(isinstance(t, dict) for t in tasks):
        raise ValidationError("Template tasks must be a list of objects", details={"field": "tasks"})
    for raw in tasks:
        subtasks = raw.get("subtasks") or []
        if not isinstance(subtasks, list) or not all(isinstance(s, dict) for s in subtasks):
            raise ValidationError("Subtasks must be a list of objects", details={"field": "subtasks"})
    return list(tasks)


def _is_task_id(value: Any) -> bool:
    return isinstance(value, (int, str)) and not isinstance(value, bool)


def _id_label(value: Any) -> str:
    """Printable stand-in for an id that is not a task id."""
    return "" if value is None else str(value)


def _subtask_seed(raw: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in raw.items() if k in SUBTASK_FIELDS and k not in {"completed", "not_applicable"}}


def _reset_task(task: Task) -> Task:
    return task.model_copy(deep=True, update={
        "completed": False,
        "date_completed": None,
        "notes": [],
        "subtasks": [
            s.model_copy(update={"completed": False, "not_applicable": False, "completed_at": None})
            for s in task.subtasks
        ],
    })


def _check_dependencies(project: Project, task: Task) -> None:
    """Normalize dependency ids to the project's task ids, or fail."""
    resolved: list[TaskId] = []
    for dep in task.dependencies:
        if task_key(dep) == task_key(task.id):
            raise TaskRuleError(INVALID_DEPENDENCY, "A task cannot depend on itself")
        target = project.find_task(dep)
        if target is None:
            raise TaskRuleError(INVALID_DEPENDENCY, f"Unknown dependency: {dep}")
        if target.id not in resolved:
            resolved.append(target.id)
    task.dependencies = resolved


def _apply_task_update(project: Project, task: Task, fields: dict[str, Any]) -> Task:
    """
    Return the updated copy of `task`, or raise TaskRuleError.

    `date_completed` is never taken from input: it is set on the
    false -> true completion transition and cleared on true -> false.
    """
    fields = dict(fields)
    fields.pop("date_completed", None)
    try:
        updated = _validated(task, fields)
    except ValidationError:
        raise TaskRuleError(INVALID_VALUE, "Invalid task field value")

    if "dependencies" in fields:
        _check_dependencies(project, updated)

    if updated.completed and not task.completed:
        pending = updated.incomplete_subtasks()
        if pending:
            raise TaskRuleError(
                INCOMPLETE_SUBTASKS,
                f"{len(pending)} subtask(s) must be completed or marked not applicable first",
            )
        updated.date_completed = utc_now()
    elif not updated.completed and task.completed:
        updated.date_completed = None

    return updated


def _replace_task(project: Project, updated: Task) -> None:
    key = task_key(updated.id)
    project.tasks = [updated if task_key(t.id) == key else t for t in project.tasks]


def _remove_task(project: Project, task_id: TaskId) -> None:
    """Remove the record, then sweep the id out of every sibling's dependencies."""
    key = task_key(task_id)
    project.tasks = [t for t in project.tasks if task_key(t.id) != key]
    for sibling in project.tasks:
        sibling.dependencies = [d for d in sibling.dependencies if task_key(d) != key]
    for attachment in project.files:
        if attachment.task_id is not None and task_key(attachment.task_id) == key:
            attachment.task_id = None


def _require_task(project: Project, task_id: TaskId) -> Task:
    task = project.find_task(task_id)
    if task is None:
        raise NotFound("Task not found", details={"id": task_id})
    return task


def _subtask_fields(actor: User) -> frozenset[str]:
    if actor.role == Role.ADMIN:
        return SUBTASK_FIELDS
    return SUBTASK_FIELDS - {"show_to_client"}


def _parse_status(value: Any) -> ProjectStatus:
    try:
        return ProjectStatus(value)
    except ValueError:
        raise ValidationError(
            f"Invalid status: {value}",
            details={"allowed": [s.value for s in ProjectStatus]},
        )


def _validated(model: pydantic.BaseModel, fields: dict[str, Any]):
    """Re-validate a model with `fields` applied (model_copy skips validation)."""
    try:
        return type(model).model_validate({**model.model_dump(), **fields})
    except pydantic.ValidationError as e:
        raise ValidationError("Invalid field value", details=validation_details(e))
