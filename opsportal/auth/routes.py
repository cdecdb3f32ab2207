# =============================================================================
# Auth API Routes
# =============================================================================
#
# Endpoints:
#   POST /auth/login           - Get a token (any portal)
#   POST /auth/admin-login     - Admin hub login (admins only)
#   POST /auth/service-login   - Service portal login (service portal access)
#   POST /auth/client-login    - Client portal login, optionally for a slug
#   GET  /auth/me              - Get current user
#   POST /auth/change-password - Change own password
#   POST /auth/forgot-password - Queue an admin-handled reset request
#
# Emails are matched case-insensitively everywhere.
#
# =============================================================================

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, EmailStr

from opsportal.auth.capabilities import has_capability
from opsportal.auth.jwt import create_access_token
from opsportal.auth.policies import INSUFFICIENT_ROLE, NOT_ASSIGNED, require_auth
from opsportal.core.errors import Forbidden
from opsportal.core.models import Capability, EntityKind, Role, User

router = APIRouter(prefix="/auth", tags=["auth"])


# =============================================================================
# Request/Response Models
# =============================================================================

class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ClientLoginRequest(LoginRequest):
    slug: str | None = None


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    must_change_password: bool
    user: dict[str, Any]


def _login_response(request: Request, user: User, **claims: Any) -> LoginResponse:
    token = create_access_token(
        user.id, extra_claims=claims or None, settings=request.app.state.settings
    )
    return LoginResponse(
        access_token=token.access_token,
        expires_in=token.expires_in,
        must_change_password=user.must_change_password,
        user=user.public_dict(),
    )


# =============================================================================
# Public Endpoints
# =============================================================================

@router.post("/login", response_model=LoginResponse)
async def login(data: LoginRequest, request: Request):
    """Authenticate and get a token."""
    user = await request.app.state.users.authenticate(data.email, data.password)
    return _login_response(request, user)


@router.post("/admin-login", response_model=LoginResponse)
async def admin_login(data: LoginRequest, request: Request):
    """Admin hub login. Valid credentials are not enough: the role must be admin."""
    user = await request.app.state.users.authenticate(data.email, data.password)
    if user.role != Role.ADMIN:
        raise Forbidden(INSUFFICIENT_ROLE, "Admin hub access requires an admin account")
    return _login_response(request, user, portal="admin")


@router.post("/service-login", response_model=LoginResponse)
async def service_login(data: LoginRequest, request: Request):
    """Service portal login for technicians, vendors and flagged users."""
    user = await request.app.state.users.authenticate(data.email, data.password)
    if not has_capability(Capability.SERVICE_PORTAL, user.role, user.flags):
        raise Forbidden(INSUFFICIENT_ROLE, "This account has no service portal access")
    return _login_response(request, user, portal="service")


@router.post("/client-login", response_model=LoginResponse)
async def client_login(data: ClientLoginRequest, request: Request):
    """
    Client portal login.

    When a portal slug is given it must resolve (current or historical) to
    the caller's own client. Admins may open any client portal.
    """
    user = await request.app.state.users.authenticate(data.email, data.password)
    if user.role not in (Role.CLIENT, Role.ADMIN):
        raise Forbidden(INSUFFICIENT_ROLE, "This account has no client portal access")

    claims: dict[str, Any] = {"portal": "client"}
    if data.slug:
        resolved = await request.app.state.resolver.resolve(data.slug, EntityKind.CLIENT)
        if user.role == Role.CLIENT and resolved.entity.id != user.client_id:
            raise Forbidden(NOT_ASSIGNED, "This account does not belong to that portal")
        claims["slug"] = resolved.current_slug
    return _login_response(request, user, **claims)


@router.post("/forgot-password")
async def forgot_password(data: ForgotPasswordRequest, request: Request):
    """
    Ask an admin to reset the password.

    Always returns success to prevent email enumeration.
    """
    await request.app.state.users.request_password_reset(data.email)
    return {"message": "If an account exists with this email, an administrator will reset it"}


# =============================================================================
# Protected Endpoints
# =============================================================================

@router.get("/me")
async def get_current_user(user: User = Depends(require_auth())):
    """Get the current authenticated user."""
    return user.public_dict()


@router.post("/change-password")
async def change_password(
    data: ChangePasswordRequest,
    request: Request,
    user: User = Depends(require_auth()),
):
    """Change own password. Clears the must-change-password flag."""
    user = await request.app.state.users.change_password(user, data.current_password, data.new_password)
    return {"message": "Password changed", "must_change_password": user.must_change_password}
