"""
Error translation at the request boundary.

Every PortalError becomes its fixed status code with a machine-parseable
body:

    {"error": {"code": "forbidden", "message": "...", "reason": "not-assigned"}}

Authentication failures also carry `"action": "redirect-to-login"` so every
portal sends the user to login instead of rendering empty data. Anything
else is logged, reported to Sentry and answered with a generic 500.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from opsportal.core.errors import PortalError, RetryableError, Unauthenticated, validation_details
from opsportal.integrations.sentry import capture_exception

logger = logging.getLogger(__name__)

REDIRECT_TO_LOGIN = "redirect-to-login"


def error_body(code: str, message: str, **extra) -> dict:
    return {"error": {"code": code, "message": message, **{k: v for k, v in extra.items() if v}}}


async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    body = {"error": exc.to_dict()}
    headers = {}
    if isinstance(exc, Unauthenticated):
        body["error"]["action"] = REDIRECT_TO_LOGIN
        headers["WWW-Authenticate"] = "Bearer"
    if isinstance(exc, RetryableError):
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=error_body("validation-error", "Malformed request", details=validation_details(exc)),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = "not-found" if exc.status_code == 404 else "http-error"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(code, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    capture_exception(exc, path=request.url.path, method=request.method)
    return JSONResponse(status_code=500, content=error_body("internal-error", "Internal server error"))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PortalError, portal_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
