"""Client endpoints. `{client_id}` accepts an id or a (current or historical) slug."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Request

from opsportal.auth.capabilities import Action
from opsportal.auth.context import AuthContext
from opsportal.auth.policies import require, require_auth
from opsportal.core.models import User

router = APIRouter(prefix="/clients", tags=["clients"])


@router.get("")
async def list_clients(request: Request, user: User = Depends(require_auth())):
    clients = await request.app.state.clients.visible_clients(user)
    return {"clients": [c.model_dump(mode="json") for c in clients], "count": len(clients)}


@router.post("", status_code=201)
async def create_client(
    request: Request,
    payload: dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(require(Action.CREATE_CLIENT)),
):
    client = await request.app.state.clients.create_client(ctx.user, payload)
    return client.model_dump(mode="json")


@router.get("/{client_id}")
async def get_client(
    client_id: str,
    ctx: AuthContext = Depends(require(Action.READ_CLIENT)),
):
    return ctx.client.model_dump(mode="json")


@router.put("/{client_id}")
async def update_client(
    client_id: str,
    request: Request,
    payload: dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(require(Action.UPDATE_CLIENT)),
):
    """Profile fields only; use PUT /clients/{client_id}/slug to rename."""
    client = await request.app.state.clients.update_client(ctx.user, ctx.client.id, payload)
    return client.model_dump(mode="json")


@router.put("/{client_id}/slug")
async def rename_client(
    client_id: str,
    request: Request,
    payload: dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(require(Action.RENAME_CLIENT)),
):
    client = await request.app.state.clients.rename_client(
        ctx.user, ctx.client.id, str(payload.get("slug") or "")
    )
    return {"id": client.id, "slug": client.slug, "previous_slugs": client.previous_slugs}


@router.post("/{client_id}/regenerate-slug")
async def regenerate_client_slug(
    client_id: str,
    request: Request,
    ctx: AuthContext = Depends(require(Action.RENAME_CLIENT)),
):
    client = await request.app.state.clients.regenerate_slug(ctx.user, ctx.client.id)
    return {"id": client.id, "slug": client.slug, "previous_slugs": client.previous_slugs}
