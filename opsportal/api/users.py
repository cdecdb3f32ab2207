"""
Admin hub endpoints: user management, password reset requests and the
activity log. Everything here is admin-only via the rule table.
"""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Body, Depends, Query, Request
from pydantic import BaseModel

from opsportal.auth.capabilities import Action
from opsportal.auth.context import AuthContext
from opsportal.auth.policies import require

router = APIRouter(tags=["admin"])


class HandleResetRequest(BaseModel):
    status: Literal["completed", "dismissed"]
    new_password: str | None = None


# =============================================================================
# Users
# =============================================================================


@router.get("/users")
async def list_users(
    request: Request,
    ctx: AuthContext = Depends(require(Action.ADMIN_USER_MANAGEMENT)),
):
    users = await request.app.state.users.list_users()
    return {"users": [u.public_dict() for u in users], "count": len(users)}


@router.post("/users", status_code=201)
async def create_user(
    request: Request,
    payload: dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(require(Action.ADMIN_USER_MANAGEMENT)),
):
    user = await request.app.state.users.create_user(ctx.user, payload)
    return user.public_dict()


@router.get("/users/{user_id}")
async def get_user(
    user_id: str,
    request: Request,
    ctx: AuthContext = Depends(require(Action.ADMIN_USER_MANAGEMENT)),
):
    user = await request.app.state.users.get_user(user_id)
    return user.public_dict()


@router.put("/users/{user_id}")
async def update_user(
    user_id: str,
    request: Request,
    payload: dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(require(Action.ADMIN_USER_MANAGEMENT)),
):
    """Role, flag and assignment changes apply from the caller's next request."""
    user = await request.app.state.users.update_user(ctx.user, user_id, payload)
    return user.public_dict()


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: str,
    request: Request,
    ctx: AuthContext = Depends(require(Action.ADMIN_USER_MANAGEMENT)),
):
    await request.app.state.users.delete_user(ctx.user, user_id)
    return {"message": "User deleted", "id": user_id}


# =============================================================================
# Password reset requests
# =============================================================================


@router.get("/admin/password-reset-requests")
async def list_reset_requests(
    request: Request,
    status: str | None = Query(None),
    ctx: AuthContext = Depends(require(Action.ADMIN_USER_MANAGEMENT)),
):
    requests = await request.app.state.users.list_reset_requests(status)
    return {"requests": [r.model_dump(mode="json") for r in requests], "count": len(requests)}


@router.put("/admin/password-reset-requests/{request_id}")
async def handle_reset_request(
    request_id: str,
    data: HandleResetRequest,
    request: Request,
    ctx: AuthContext = Depends(require(Action.ADMIN_USER_MANAGEMENT)),
):
    handled = await request.app.state.users.handle_reset_request(
        ctx.user, request_id, data.status, data.new_password
    )
    return handled.model_dump(mode="json")


# =============================================================================
# Activity log
# =============================================================================


@router.get("/admin/activity-log")
async def get_activity_log(
    request: Request,
    limit: int = Query(100, ge=1, le=2000),
    project_id: str | None = Query(None),
    action: str | None = Query(None, description="Glob, e.g. 'task.*'"),
    ctx: AuthContext = Depends(require(Action.VIEW_ACTIVITY_LOG)),
):
    activity = request.app.state.activity
    entries = activity.get_history(action=action, project_id=project_id, limit=limit)
    return {
        "entries": [e.to_dict() for e in entries],
        "count": len(entries),
        "capacity": activity.capacity,
        "overflowing": activity.overflowing,
    }
