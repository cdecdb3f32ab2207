"""
Error taxonomy.

Every failure the core raises is a PortalError carrying the HTTP status it
maps to at the request boundary and a machine-readable code. Bulk operations
do not raise: partial failure is a BulkResult (see core.models).
"""

from __future__ import annotations

from typing import Any


class PortalError(Exception):
    """Base class for structured, client-visible errors."""

    status_code: int = 500
    code: str = "internal-error"

    def __init__(
        self,
        message: str | None = None,
        *,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.code
        self.reason = reason
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.reason:
            body["reason"] = self.reason
        if self.details:
            body["details"] = self.details
        return body


class Unauthenticated(PortalError):
    """Missing, expired or invalid credential. Clients must redirect to login."""

    status_code = 401
    code = "unauthenticated"


class Forbidden(PortalError):
    """The permission predicate denied the action."""

    status_code = 403
    code = "forbidden"

    def __init__(self, reason: str, message: str | None = None, **kwargs: Any):
        super().__init__(message or f"Not permitted: {reason}", reason=reason, **kwargs)


class NotFound(PortalError):
    status_code = 404
    code = "not-found"


class Conflict(PortalError):
    status_code = 409
    code = "conflict"


class SlugConflict(Conflict):
    code = "slug-conflict"

    def __init__(self, kind: str, slug: str):
        super().__init__(
            f"{kind} slug '{slug}' is already in use",
            details={"kind": kind, "slug": slug},
        )
        self.kind = kind
        self.slug = slug


class DuplicateEmail(Conflict):
    code = "duplicate-email"


class ValidationError(PortalError):
    """Malformed or out-of-enum input."""

    status_code = 400
    code = "validation-error"


class RetryableError(PortalError):
    """Transient failure; the caller may retry after `retry_after` seconds."""

    status_code = 503
    code = "retryable"

    def __init__(self, message: str | None = None, *, retry_after: int = 5, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class UploadBusy(RetryableError):
    code = "upload-busy"


class ExternalServiceError(RetryableError):
    code = "external-service-unavailable"


def validation_details(exc: Exception) -> dict[str, Any]:
    """Compact, JSON-safe summary of a pydantic ValidationError."""
    errors = getattr(exc, "errors", None)
    if not callable(errors):
        return {}
    return {"errors": [{"loc": [str(p) for p in err["loc"]], "msg": err["msg"]} for err in errors()]}
