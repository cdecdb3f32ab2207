"""
Slug routes and the inbox.

    GET /{slug}                  project, root-level legacy URL
    GET /launch/{slug}           project, client view
    GET /launch/{slug}-internal  project, internal (staff) view
    GET /portal/{slug}           client portal

A current slug answers 200 with a summary. A historical slug (or a project
link id) answers 302 to the same portal's canonical URL: never 301, browsers
would remember it and the next rename would break. An unknown slug is 404.

This router is included last because it owns the catch-all GET /{slug}.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse

from opsportal.auth.capabilities import Action
from opsportal.auth.context import AuthContext, TargetRef
from opsportal.auth.policies import INSUFFICIENT_ROLE, get_credential, require
from opsportal.core.errors import Forbidden, NotFound
from opsportal.core.models import Client, Project, Role

router = APIRouter(tags=["portals"])

INTERNAL_SUFFIX = "-internal"


def _project_summary(project: Project, view: str) -> dict:
    total = len(project.tasks)
    done = sum(1 for t in project.tasks if t.completed)
    return {
        "kind": "project",
        "view": view,
        "id": project.id,
        "slug": project.slug,
        "name": project.name,
        "client_name": project.client_name,
        "status": project.status.value,
        "go_live_date": project.go_live_date,
        "progress": {"total": total, "completed": done},
    }


def _client_summary(client: Client) -> dict:
    return {
        "kind": "client",
        "id": client.id,
        "slug": client.slug,
        "practice_name": client.practice_name,
        "logo": client.logo,
    }


def _redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=302)


# =============================================================================
# Inbox
# =============================================================================


@router.get("/inbox")
async def inbox(
    request: Request,
    limit: int = Query(50, ge=1, le=500),
    ctx: AuthContext = Depends(require(Action.VIEW_INBOX)),
):
    """Recent activity on projects the caller can read."""
    entries = await request.app.state.projects.inbox(ctx.user, limit=limit)
    return {"entries": [e.to_dict() for e in entries], "count": len(entries)}


# =============================================================================
# Slug routes
# =============================================================================


@router.get("/launch/{slug}")
async def launch_project(
    slug: str,
    request: Request,
    credential: str | None = Depends(get_credential),
):
    gate = request.app.state.gate
    view = "client"
    ctx: AuthContext | None = None

    if slug.endswith(INTERNAL_SUFFIX):
        try:
            ctx = await gate.authorize(
                credential, Action.READ_PROJECT, TargetRef.project(slug=slug[: -len(INTERNAL_SUFFIX)])
            )
            view = "internal"
        except NotFound:
            # A real slug may itself end in "-internal"
            ctx = None

    if ctx is None:
        ctx = await gate.authorize(credential, Action.READ_PROJECT, TargetRef.project(slug=slug))

    if view == "internal" and ctx.user.role == Role.CLIENT:
        raise Forbidden(INSUFFICIENT_ROLE, "The internal view is for staff only")

    project = ctx.project
    if ctx.redirected:
        suffix = INTERNAL_SUFFIX if view == "internal" else ""
        return _redirect(f"/launch/{project.slug}{suffix}")
    return _project_summary(project, view)


@router.get("/portal/{slug}")
async def client_portal(
    slug: str,
    request: Request,
    credential: str | None = Depends(get_credential),
):
    ctx = await request.app.state.gate.authorize(
        credential, Action.READ_CLIENT, TargetRef.client(slug=slug)
    )
    if ctx.redirected:
        return _redirect(f"/portal/{ctx.client.slug}")
    return _client_summary(ctx.client)


@router.get("/{slug}")
async def project_by_slug(
    slug: str,
    request: Request,
    credential: str | None = Depends(get_credential),
):
    ctx = await request.app.state.gate.authorize(
        credential, Action.READ_PROJECT, TargetRef.project(slug=slug)
    )
    if ctx.redirected:
        return _redirect(f"/{ctx.project.slug}")
    return _project_summary(ctx.project, "client")
