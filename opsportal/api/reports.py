"""
Service portal endpoints: service and validation reports.

The target client comes from the body or the stored report, not the path, so
these handlers authenticate with `require_auth()` and the ReportService runs
the gate check against the report's client.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request

from opsportal.auth.policies import require_auth
from opsportal.core.models import User

router = APIRouter(tags=["service-portal"])


@router.get("/service-reports")
async def list_service_reports(
    request: Request,
    client_id: str | None = Query(None),
    technician_id: str | None = Query(None),
    user: User = Depends(require_auth()),
):
    reports = await request.app.state.reports.list_reports(
        user, kind="service", client_id=client_id, technician_id=technician_id
    )
    return {"reports": [r.model_dump(mode="json") for r in reports], "count": len(reports)}


@router.get("/validation-reports")
async def list_validation_reports(
    request: Request,
    client_id: str | None = Query(None),
    user: User = Depends(require_auth()),
):
    reports = await request.app.state.reports.list_reports(user, kind="validation", client_id=client_id)
    return {"reports": [r.model_dump(mode="json") for r in reports], "count": len(reports)}


@router.post("/service-reports", status_code=201)
async def submit_service_report(
    request: Request,
    payload: dict[str, Any] = Body(...),
    user: User = Depends(require_auth()),
):
    report = await request.app.state.reports.submit_report(user, payload, kind="service")
    return report.model_dump(mode="json")


@router.post("/validation-reports", status_code=201)
async def submit_validation_report(
    request: Request,
    payload: dict[str, Any] = Body(...),
    user: User = Depends(require_auth()),
):
    report = await request.app.state.reports.submit_report(user, payload, kind="validation")
    return report.model_dump(mode="json")


@router.post("/service-reports/assign", status_code=201)
async def assign_service_report(
    request: Request,
    payload: dict[str, Any] = Body(...),
    user: User = Depends(require_auth()),
):
    """Admin opens a report for a technician to complete."""
    report = await request.app.state.reports.assign_report(user, payload)
    return report.model_dump(mode="json")


@router.get("/service-reports/{report_id}")
@router.get("/validation-reports/{report_id}")
async def get_report(
    report_id: str,
    request: Request,
    user: User = Depends(require_auth()),
):
    report = await request.app.state.reports.get_report(user, report_id)
    return report.model_dump(mode="json")


@router.put("/service-reports/{report_id}")
@router.put("/validation-reports/{report_id}")
async def update_report(
    report_id: str,
    request: Request,
    payload: dict[str, Any] = Body(...),
    user: User = Depends(require_auth()),
):
    """Only the owning technician or an admin may edit."""
    report = await request.app.state.reports.update_report(user, report_id, payload)
    return report.model_dump(mode="json")
