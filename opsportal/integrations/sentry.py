# =============================================================================
# Sentry Error Tracking Integration
# =============================================================================
#
# Setup:
#   1. Create a Python project at sentry.io
#   2. Copy DSN to .env: SENTRY_DSN=https://...@sentry.io/...
#
# Usage:
#   init_sentry() runs at app startup (opsportal/api/app.py). The top-level
#   500 handler calls capture_exception().
#
# =============================================================================

import logging
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from opsportal.config import get_settings
from opsportal.core.errors import PortalError

logger = logging.getLogger(__name__)

_SENSITIVE_HEADERS = ("authorization", "cookie", "x-crm-webhook-secret")


def init_sentry() -> bool:
    """
    Initialize Sentry error tracking.

    Returns True if initialized, False if skipped.
    """
    settings = get_settings()

    if not settings.sentry_dsn:
        logger.info("SENTRY_DSN not set - error tracking disabled")
        return False

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        traces_sample_rate=0.1 if settings.is_production else 1.0,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            StarletteIntegration(transaction_style="endpoint"),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        send_default_pii=False,
        before_send=_filter_events,
        before_send_transaction=_filter_transactions,
    )

    logger.info("Sentry initialized for %s", settings.environment)
    return True


def _filter_events(event: dict, hint: dict) -> dict | None:
    """Drop expected client errors and scrub credentials."""
    if "exc_info" in hint:
        _, exc_value, _ = hint["exc_info"]
        # 400/401/403/404/409 are outcomes, not faults
        if isinstance(exc_value, PortalError) and exc_value.status_code < 500:
            return None

    request = event.get("request") or {}
    headers = request.get("headers") or {}
    for key in list(headers.keys()):
        if key.lower() in _SENSITIVE_HEADERS:
            headers[key] = "[Filtered]"

    return event


def _filter_transactions(event: dict, hint: dict) -> dict | None:
    """Filter out noisy transactions."""
    if event.get("transaction", "") in ("/health", "/healthz", "/ready"):
        return None
    return event


def capture_exception(error: BaseException, **context: Any) -> str | None:
    """
    Capture an exception to Sentry.

    Returns the event ID if captured, None otherwise.
    """
    if not sentry_sdk.get_client().is_active():
        return None

    with sentry_sdk.new_scope() as scope:
        for key, value in context.items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_exception(error)

