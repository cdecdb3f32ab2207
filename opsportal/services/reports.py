"""
Service and validation reports filed through the technician/vendor portal.

Reports carry their client, so every read and write is checked against the
client-scoped rules: a vendor only ever touches reports of clients assigned
to them.
"""

from __future__ import annotations

import logging
from typing import Any

import pydantic

from opsportal.auth.capabilities import Action, has_capability
from opsportal.auth.context import Target
from opsportal.auth.gate import AuthorizationGate
from opsportal.auth.policies import can_perform, project_fields
from opsportal.core.activity import ActivityLog
from opsportal.core.errors import Forbidden, NotFound, ValidationError, validation_details
from opsportal.core.models import Capability, ReportStatus, Role, ServiceReport, User
from opsportal.core.utils import utc_now
from opsportal.identity.store import IdentityStore

logger = logging.getLogger(__name__)

NOT_OWNER = "not-report-owner"


class ReportService:
    def __init__(
        self,
        store: IdentityStore,
        gate: AuthorizationGate,
        activity: ActivityLog,
        strict_fields: bool = False,
    ):
        self.store = store
        self.gate = gate
        self.activity = activity
        self.strict_fields = strict_fields

    def _log(self, action: str, actor: User, report: ServiceReport, **details: Any) -> None:
        self.activity.record(
            action,
            actor.id,
            actor_name=actor.name,
            target_kind=f"{report.kind}_report",
            target_id=report.id,
            project_id=report.project_id,
            details={"client_id": report.client_id, **details},
        )

    async def _require_client_id(self, fields: dict[str, Any]) -> str:
        client_id = fields.get("client_id")
        if not client_id:
            raise ValidationError("client_id is required")
        await self.store.require_client(client_id)
        return client_id

    # =========================================================================
    # Reads
    # =========================================================================

    async def list_reports(
        self,
        user: User,
        kind: str | None = None,
        client_id: str | None = None,
        technician_id: str | None = None,
    ) -> list[ServiceReport]:
        """Reports the caller may read, newest first."""
        filters: dict[str, Any] = {}
        if kind:
            filters["kind"] = kind
        if client_id:
            filters["client_id"] = client_id
        if technician_id:
            filters["technician_id"] = technician_id

        reports = [
            r for r in await self.store.list_reports(**filters)
            if can_perform(user, Action.READ_SERVICE_REPORT, Target.for_client(r.client_id))
        ]
        return sorted(reports, key=lambda r: r.created_at, reverse=True)

    async def get_report(self, user: User, report_id: str) -> ServiceReport:
        report = await self.store.get_report(report_id)
        if report is None:
            raise NotFound("Report not found", details={"id": report_id})
        self.gate.check(user, Action.READ_SERVICE_REPORT, Target.for_client(report.client_id))
        return report

    # =========================================================================
    # Writes
    # =========================================================================

    async def submit_report(self, actor: User, payload: dict[str, Any], kind: str = "service") -> ServiceReport:
        """File a service or validation report as the calling technician."""
        action = Action.SUBMIT_VALIDATION_REPORT if kind == "validation" else Action.SUBMIT_SERVICE_REPORT
        fields = project_fields(action, payload, actor, strict=self.strict_fields)
        client_id = await self._require_client_id(fields)
        self.gate.check(actor, action, Target.for_client(client_id))

        try:
            report = ServiceReport(
                kind=kind,
                technician_id=actor.id,
                technician_name=actor.name,
                status=ReportStatus.SUBMITTED,
                **fields,
            )
        except pydantic.ValidationError as e:
            raise ValidationError("Invalid report", details=validation_details(e))

        await self.store.save_report(report)
        self._log(f"{kind}_report.submitted", actor, report)
        return report

    async def assign_report(self, actor: User, payload: dict[str, Any]) -> ServiceReport:
        """Open a report for a technician to complete in the field."""
        fields = project_fields(
            Action.ASSIGN_SERVICE_REPORT, payload, actor, strict=self.strict_fields
        )
        client_id = await self._require_client_id(fields)
        self.gate.check(actor, Action.ASSIGN_SERVICE_REPORT, Target.for_client(client_id))

        technician = await self.store.get_user(fields.get("technician_id") or "")
        if technician is None:
            raise ValidationError("Unknown technician", details={"technician_id": fields.get("technician_id")})
        if not has_capability(Capability.SERVICE_PORTAL, technician.role, technician.flags):
            raise ValidationError("Technician has no service portal access")
        if technician.role == Role.VENDOR and client_id not in technician.assigned_clients:
            raise ValidationError("Vendor is not assigned to this client")

        try:
            report = ServiceReport(
                kind="service",
                technician_name=technician.name,
                assigned_by=actor.id,
                status=ReportStatus.ASSIGNED,
                **fields,
            )
        except pydantic.ValidationError as e:
            raise ValidationError("Invalid report", details=validation_details(e))

        await self.store.save_report(report)
        self._log("service_report.assigned", actor, report, technician_id=technician.id)
        return report

    async def update_report(self, actor: User, report_id: str, payload: dict[str, Any]) -> ServiceReport:
        """Only the owning technician or an admin may edit a report."""
        report = await self.store.get_report(report_id)
        if report is None:
            raise NotFound("Report not found", details={"id": report_id})

        self.gate.check(actor, Action.UPDATE_SERVICE_REPORT, Target.for_client(report.client_id))
        if actor.role != Role.ADMIN and report.technician_id != actor.id:
            raise Forbidden(NOT_OWNER)

        fields = project_fields(
            Action.UPDATE_SERVICE_REPORT, payload, actor, strict=self.strict_fields
        )
        try:
            updated = ServiceReport.model_validate({**report.model_dump(), **fields, "updated_at": utc_now()})
        except pydantic.ValidationError as e:
            raise ValidationError("Invalid report", details=validation_details(e))

        await self.store.save_report(updated)
        self._log(f"{report.kind}_report.updated", actor, updated, fields=sorted(fields))
        return updated
