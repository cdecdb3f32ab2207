# =============================================================================
# CRM Integration
# =============================================================================
#
# Setup:
#   CRM_API_BASE_URL=https://api.crm.example.com
#   CRM_API_TOKEN=...
#   CRM_WEBHOOK_SECRET=...            (shared secret for inbound callbacks)
#   EXTERNAL_CALL_TIMEOUT_SECONDS=10  (bound on every outbound call)
#
# The CRM sits on some request paths (manual project sync). Every call
# carries a timeout; timeouts and transport failures surface as a retryable
# ExternalServiceError (503) instead of hanging the request.
#
# =============================================================================

from __future__ import annotations

import hmac
import logging
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from opsportal.config import Settings, get_settings
from opsportal.core.errors import ExternalServiceError, ValidationError
from opsportal.core.models import Project

logger = logging.getLogger(__name__)


class CRMClient:
    """Thin async client for the CRM's record API."""

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings or get_settings()
        # Injectable for tests (httpx.MockTransport)
        self.transport = transport

    @property
    def is_configured(self) -> bool:
        return self.settings.crm_configured

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.crm_api_base_url,
            headers={"Authorization": f"Bearer {self.settings.crm_api_token}"},
            timeout=self.settings.external_call_timeout_seconds,
            transport=self.transport,
        )

    async def push_project(self, project: Project) -> str:
        """
        Upsert the project's summary on its CRM record.

        Returns the CRM record id (newly created when the project had none).
        """
        if not self.is_configured:
            raise ValidationError("CRM integration is not configured", reason="crm-not-configured")

        try:
            data = await self._send(project.crm_record_type, project.crm_record_id, _summary(project))
        except httpx.TransportError as e:
            logger.warning("CRM sync for project %s failed: %s", project.id, e)
            raise ExternalServiceError("CRM is unavailable, retry shortly", retry_after=30)
        except httpx.HTTPStatusError as e:
            logger.error("CRM rejected sync for project %s: %s", project.id, e.response.status_code)
            raise ExternalServiceError(
                f"CRM returned {e.response.status_code}",
                details={"status": e.response.status_code},
            )

        return str(data.get("id") or project.crm_record_id)

    @retry(
        retry=retry_if_exception_type(httpx.ConnectError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _send(self, record_type: str, record_id: str, properties: dict[str, Any]) -> dict[str, Any]:
        async with self._client() as client:
            if record_id:
                response = await client.patch(
                    f"/objects/{record_type}/{record_id}", json={"properties": properties}
                )
            else:
                response = await client.post(f"/objects/{record_type}", json={"properties": properties})
            response.raise_for_status()
            return response.json()


def _summary(project: Project) -> dict[str, Any]:
    total = len(project.tasks)
    done = sum(1 for t in project.tasks if t.completed)
    return {
        "project_name": project.name,
        "client_name": project.client_name,
        "project_status": project.status.value,
        "go_live_date": project.go_live_date,
        "tasks_total": total,
        "tasks_completed": done,
        "progress_percent": round(100 * done / total) if total else 0,
        "deal_stage": project.crm_deal_stage,
    }


def verify_webhook_secret(provided: str | None, settings: Settings | None = None) -> bool:
    """Constant-time check of an inbound callback's shared secret."""
    expected = (settings or get_settings()).crm_webhook_secret
    if not expected:
        logger.warning("CRM_WEBHOOK_SECRET is not configured - rejecting CRM webhook")
        return False
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("CRM webhook rejected: invalid secret")
        return False
    return True
