"""Inbound collaborator callbacks."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Header, Query, Request

from opsportal.core.errors import Forbidden
from opsportal.integrations.crm import verify_webhook_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/crm")
async def crm_webhook(
    request: Request,
    payload: dict[str, Any] = Body(default={}),
    x_crm_webhook_secret: str | None = Header(None),
    secret: str | None = Query(None),
):
    """
    CRM form-submission callback.

    The shared secret arrives in the X-CRM-Webhook-Secret header (or a
    `secret` query param for CRMs that cannot set headers).
    """
    state = request.app.state
    if not verify_webhook_secret(x_crm_webhook_secret or secret, state.settings):
        raise Forbidden("invalid-webhook-secret", "Invalid webhook secret")

    properties = payload.get("properties") or {}
    form_type = payload.get("formType") or properties.get("hs_form_id") or payload.get("formId") or "unknown"
    state.activity.record(
        "crm.form_submitted",
        None,
        target_kind="crm_form",
        target_id=str(form_type),
        details={"portal_id": str(payload.get("portalId", "")), "source": "crm_webhook"},
    )
    logger.info("CRM webhook received (form %s)", form_type)
    return {"success": True, "message": "Webhook received"}
