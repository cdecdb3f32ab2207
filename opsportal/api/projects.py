"""
Project, task, subtask and file endpoints.

Every route takes its AuthContext from `require(action)`: by the time a
handler runs the caller is authenticated, the project (by id or slug) is
resolved and the decision is in the activity log. Handlers use
`ctx.project.id`, never the raw path value, since the path may hold a slug.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, File, Form, Request, UploadFile

from opsportal.auth.capabilities import Action
from opsportal.auth.context import AuthContext
from opsportal.auth.policies import require, require_auth
from opsportal.core.errors import ValidationError
from opsportal.core.models import Project, User

router = APIRouter(prefix="/projects", tags=["projects"])


def _project_view(ctx: AuthContext, project: Project, request: Request) -> dict[str, Any]:
    tasks = request.app.state.projects.tasks_for(project, ctx.user)
    data = project.model_dump(mode="json", exclude={"tasks"})
    data["tasks"] = [t.model_dump(mode="json") for t in tasks]
    data["_permissions"] = {
        "access_level": project.access_level_for(ctx.user_id).value,
        "is_admin": ctx.is_admin,
    }
    return data


# =============================================================================
# Projects
# =============================================================================


@router.get("")
async def list_projects(request: Request, user: User = Depends(require_auth())):
    """Projects the caller may read."""
    projects = await request.app.state.projects.visible_projects(user)
    return {
        "projects": [p.model_dump(mode="json", exclude={"tasks", "files"}) for p in projects],
        "count": len(projects),
    }


@router.post("", status_code=201)
async def create_project(
    request: Request,
    payload: dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(require(Action.CREATE_PROJECT)),
):
    """
    Create a project, optionally seeded from a template's task list.

    Template tasks always start incomplete.
    """
    fields = ctx.project_fields(payload)
    name = str(fields.pop("name", "") or "").strip()
    if not name:
        raise ValidationError("Project name is required")

    project = await request.app.state.projects.create_project(
        ctx.user,
        name=name,
        client_id=fields.pop("client_id", None),
        client_name=fields.pop("client_name", "") or "",
        template_tasks=fields.pop("tasks", None) or None,
        uuid_task_ids=bool(fields.pop("uuid_task_ids", False)),
        **fields,
    )
    return project.model_dump(mode="json")


@router.get("/{project_id}")
async def get_project(
    project_id: str,
    request: Request,
    ctx: AuthContext = Depends(require(Action.READ_PROJECT)),
):
    """Get a project, including the caller's permissions on it."""
    return _project_view(ctx, ctx.project, request)


@router.put("/{project_id}")
async def update_project(
    project_id: str,
    request: Request,
    payload: dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(require(Action.UPDATE_PROJECT)),
):
    project = await request.app.state.projects.update_project(ctx.user, ctx.project.id, payload)
    return project.model_dump(mode="json")


@router.delete("/{project_id}")
async def delete_project(
    project_id: str,
    request: Request,
    ctx: AuthContext = Depends(require(Action.DELETE_PROJECT)),
):
    await request.app.state.projects.delete_project(ctx.user, ctx.project.id)
    return {"message": "Project deleted", "id": ctx.project.id}


@router.post("/{project_id}/clone", status_code=201)
async def clone_project(
    project_id: str,
    request: Request,
    payload: dict[str, Any] | None = Body(None),
    ctx: AuthContext = Depends(require(Action.CLONE_PROJECT)),
):
    """Copy tasks and phases into a new active project. Files and CRM links stay behind."""
    payload = payload or {}
    clone = await request.app.state.projects.clone_project(
        ctx.user,
        ctx.project.id,
        name=payload.get("name"),
        client_name=payload.get("client_name"),
    )
    return clone.model_dump(mode="json")


@router.put("/{project_id}/slug")
async def rename_project(
    project_id: str,
    request: Request,
    payload: dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(require(Action.RENAME_PROJECT)),
):
    project = await request.app.state.projects.rename_project(
        ctx.user, ctx.project.id, str(payload.get("slug") or "")
    )
    return {"id": project.id, "slug": project.slug, "previous_slugs": project.previous_slugs}


@router.post("/{project_id}/regenerate-slug")
async def regenerate_project_slug(
    project_id: str,
    request: Request,
    ctx: AuthContext = Depends(require(Action.RENAME_PROJECT)),
):
    """Re-derive the slug from the client name; the old slug keeps redirecting."""
    project = await request.app.state.projects.regenerate_slug(ctx.user, ctx.project.id)
    return {"id": project.id, "slug": project.slug, "previous_slugs": project.previous_slugs}


@router.put("/{project_id}/access/{user_id}")
async def set_access_level(
    project_id: str,
    user_id: str,
    request: Request,
    payload: dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(require(Action.ADMIN_PROJECT)),
):
    project = await request.app.state.projects.set_access_level(
        ctx.user, ctx.project.id, user_id, payload.get("level", "")
    )
    return {"id": project.id, "access_levels": project.model_dump(mode="json")["access_levels"]}


@router.post("/{project_id}/crm-sync")
async def sync_project_to_crm(
    project_id: str,
    request: Request,
    ctx: AuthContext = Depends(require(Action.SYNC_PROJECT)),
):
    """Push the project summary to the CRM (bounded timeout, 503 on failure)."""
    state = request.app.state
    record_id = await state.crm.push_project(ctx.project)
    project = await state.projects.record_crm_sync(ctx.project.id, record_id)
    state.activity.record(
        "project.crm_synced",
        ctx.user_id,
        actor_name=ctx.user.name,
        target_kind="project",
        target_id=project.id,
        project_id=project.id,
        details={"crm_record_id": project.crm_record_id},
    )
    return {
        "crm_record_id": project.crm_record_id,
        "last_crm_sync": project.last_crm_sync.isoformat() if project.last_crm_sync else None,
    }


@router.post("/{project_id}/files", status_code=201)
async def upload_file(
    project_id: str,
    request: Request,
    file: UploadFile = File(...),
    task_id: str | None = Form(None),
    ctx: AuthContext = Depends(require(Action.UPLOAD_FILE)),
):
    """
    Upload an attachment.

    At most `max_concurrent_uploads` uploads are buffered at once; the rest
    wait, then fail with a retryable 503.
    """
    state = request.app.state
    async with state.uploads.slot():
        data = await file.read(state.settings.max_upload_bytes + 1)
        if len(data) > state.settings.max_upload_bytes:
            raise ValidationError(
                "File too large",
                details={"max_bytes": state.settings.max_upload_bytes},
            )
        attachment = await state.projects.attach_file(
            ctx.user,
            ctx.project.id,
            filename=file.filename or "upload",
            data=data,
            content_type=file.content_type or "application/octet-stream",
            task_id=task_id,
        )
    return attachment.model_dump(mode="json")


# =============================================================================
# Tasks
# =============================================================================


@router.get("/{project_id}/tasks")
async def list_tasks(
    project_id: str,
    request: Request,
    ctx: AuthContext = Depends(require(Action.READ_PROJECT)),
):
    tasks = request.app.state.projects.tasks_for(ctx.project, ctx.user)
    return {"tasks": [t.model_dump(mode="json") for t in tasks], "count": len(tasks)}


@router.post("/{project_id}/tasks", status_code=201)
async def create_task(
    project_id: str,
    request: Request,
    payload: dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(require(Action.WRITE_TASK)),
):
    task = await request.app.state.projects.create_task(ctx.user, ctx.project.id, payload)
    return task.model_dump(mode="json")


@router.put("/{project_id}/tasks/bulk-update")
async def bulk_update_tasks(
    project_id: str,
    request: Request,
    payload: dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(require(Action.WRITE_TASK)),
):
    """
    Update many tasks; each one succeeds or is skipped on its own.

    Body is either `{"updates": [{"id": ..., <field>: ...}, ...]}` or the
    shorthand `{"task_ids": [...], "completed": true}`.
    """
    updates = payload.get("updates")
    if updates is None and isinstance(payload.get("task_ids"), list):
        if not isinstance(payload.get("completed"), bool):
            raise ValidationError("completed boolean is required")
        updates = [{"id": tid, "completed": payload["completed"]} for tid in payload["task_ids"]]
    if not isinstance(updates, list) or not all(isinstance(u, dict) for u in updates):
        raise ValidationError("updates must be a list of objects")

    result = await request.app.state.projects.bulk_update_tasks(ctx.user, ctx.project.id, updates)
    return result.summary()


@router.post("/{project_id}/tasks/bulk-delete")
async def bulk_delete_tasks(
    project_id: str,
    request: Request,
    payload: dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(require(Action.DELETE_TASK)),
):
    task_ids = payload.get("task_ids")
    if not isinstance(task_ids, list):
        raise ValidationError("task_ids array is required")
    result = await request.app.state.projects.bulk_delete_tasks(ctx.user, ctx.project.id, task_ids)
    return result.summary()


@router.put("/{project_id}/tasks/{task_id}")
async def update_task(
    project_id: str,
    task_id: str,
    request: Request,
    payload: dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(require(Action.WRITE_TASK)),
):
    task = await request.app.state.projects.update_task(ctx.user, ctx.project.id, task_id, payload)
    return task.model_dump(mode="json")


@router.delete("/{project_id}/tasks/{task_id}")
async def delete_task(
    project_id: str,
    task_id: str,
    request: Request,
    ctx: AuthContext = Depends(require(Action.DELETE_TASK)),
):
    await request.app.state.projects.delete_task(ctx.user, ctx.project.id, task_id)
    return {"message": "Task deleted", "id": task_id}


# =============================================================================
# Subtasks
# =============================================================================


@router.post("/{project_id}/tasks/{task_id}/subtasks", status_code=201)
async def create_subtask(
    project_id: str,
    task_id: str,
    request: Request,
    payload: dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(require(Action.WRITE_TASK)),
):
    subtask = await request.app.state.projects.add_subtask(ctx.user, ctx.project.id, task_id, payload)
    return subtask.model_dump(mode="json")


@router.put("/{project_id}/tasks/{task_id}/subtasks/{subtask_id}")
async def update_subtask(
    project_id: str,
    task_id: str,
    subtask_id: str,
    request: Request,
    payload: dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(require(Action.WRITE_TASK)),
):
    subtask = await request.app.state.projects.update_subtask(
        ctx.user, ctx.project.id, task_id, subtask_id, payload
    )
    return subtask.model_dump(mode="json")


@router.delete("/{project_id}/tasks/{task_id}/subtasks/{subtask_id}")
async def delete_subtask(
    project_id: str,
    task_id: str,
    subtask_id: str,
    request: Request,
    ctx: AuthContext = Depends(require(Action.WRITE_TASK)),
):
    await request.app.state.projects.delete_subtask(ctx.user, ctx.project.id, task_id, subtask_id)
    return {"message": "Subtask deleted", "id": subtask_id}
