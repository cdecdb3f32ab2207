"""
Tests for service and validation reports.
"""

import pytest
import pytest_asyncio

from opsportal.auth.policies import INSUFFICIENT_ROLE, NOT_ASSIGNED
from opsportal.core.errors import Forbidden, ValidationError
from opsportal.core.models import ReportStatus, Role
from opsportal.services.reports import NOT_OWNER

from conftest import add_client, add_user


@pytest_asyncio.fixture
async def clients(state):
    return await add_client(state, "Acme Labs"), await add_client(state, "Beta Clinic")


@pytest_asyncio.fixture
async def tech(state):
    return await add_user(state, Role.TECHNICIAN, email="tech@example.com", name="Tess")


@pytest_asyncio.fixture
async def vendor(state, clients):
    acme, _ = clients
    return await add_user(state, Role.VENDOR, email="vendor@example.com", assigned_clients={acme.id})


class TestSubmit:
    @pytest.mark.asyncio
    async def test_technician_submits(self, state, tech, clients):
        acme, _ = clients
        report = await state.reports.submit_report(
            tech, {"client_id": acme.id, "summary": "Calibrated", "technician_id": "someone-else"}
        )

        assert report.status == ReportStatus.SUBMITTED
        assert report.technician_id == tech.id
        assert report.technician_name == "Tess"

    @pytest.mark.asyncio
    async def test_validation_report(self, state, tech, clients):
        acme, _ = clients
        report = await state.reports.submit_report(
            tech, {"client_id": acme.id, "days_on_site": 3}, kind="validation"
        )

        assert report.kind == "validation"
        assert report.days_on_site == 3

    @pytest.mark.asyncio
    async def test_vendor_unassigned_client(self, state, vendor, clients):
        _, beta = clients
        with pytest.raises(Forbidden) as exc:
            await state.reports.submit_report(vendor, {"client_id": beta.id})
        assert exc.value.reason == NOT_ASSIGNED

    @pytest.mark.asyncio
    async def test_manager_without_service_portal(self, state, clients):
        acme, _ = clients
        manager = await add_user(state, Role.MANAGER, email="m@example.com")

        with pytest.raises(Forbidden) as exc:
            await state.reports.submit_report(manager, {"client_id": acme.id})
        assert exc.value.reason == INSUFFICIENT_ROLE

    @pytest.mark.asyncio
    async def test_client_id_required(self, state, tech):
        with pytest.raises(ValidationError):
            await state.reports.submit_report(tech, {"summary": "no client"})


class TestRead:
    @pytest.mark.asyncio
    async def test_vendor_lists_only_assigned_clients(self, state, tech, vendor, clients):
        acme, beta = clients
        await state.reports.submit_report(tech, {"client_id": acme.id})
        await state.reports.submit_report(tech, {"client_id": beta.id})

        visible = await state.reports.list_reports(vendor, kind="service")

        assert [r.client_id for r in visible] == [acme.id]

    @pytest.mark.asyncio
    async def test_vendor_cannot_open_unassigned_report(self, state, tech, vendor, clients):
        _, beta = clients
        report = await state.reports.submit_report(tech, {"client_id": beta.id})

        with pytest.raises(Forbidden):
            await state.reports.get_report(vendor, report.id)


class TestUpdate:
    @pytest.mark.asyncio
    async def test_owner_updates(self, state, tech, clients):
        acme, _ = clients
        report = await state.reports.submit_report(tech, {"client_id": acme.id})

        updated = await state.reports.update_report(tech, report.id, {"findings": "All good", "client_id": "x"})

        assert updated.findings == "All good"
        assert updated.client_id == acme.id

    @pytest.mark.asyncio
    async def test_other_technician_cannot_update(self, state, tech, clients):
        acme, _ = clients
        report = await state.reports.submit_report(tech, {"client_id": acme.id})
        other = await add_user(state, Role.TECHNICIAN, email="other@example.com")

        with pytest.raises(Forbidden) as exc:
            await state.reports.update_report(other, report.id, {"findings": "mine now"})
        assert exc.value.reason == NOT_OWNER

    @pytest.mark.asyncio
    async def test_admin_updates_any(self, state, admin, tech, clients):
        acme, _ = clients
        report = await state.reports.submit_report(tech, {"client_id": acme.id})

        updated = await state.reports.update_report(admin, report.id, {"status": "signature_needed"})
        assert updated.status == ReportStatus.SIGNATURE_NEEDED


class TestAssign:
    @pytest.mark.asyncio
    async def test_admin_assigns(self, state, admin, tech, clients):
        acme, _ = clients
        report = await state.reports.assign_report(
            admin, {"client_id": acme.id, "technician_id": tech.id, "service_type": "install"}
        )

        assert report.status == ReportStatus.ASSIGNED
        assert report.assigned_by == admin.id
        assert report.technician_name == "Tess"

    @pytest.mark.asyncio
    async def test_vendor_must_be_assigned_to_client(self, state, admin, vendor, clients):
        _, beta = clients
        with pytest.raises(ValidationError):
            await state.reports.assign_report(admin, {"client_id": beta.id, "technician_id": vendor.id})

    @pytest.mark.asyncio
    async def test_technician_cannot_assign(self, state, tech, clients):
        acme, _ = clients
        with pytest.raises(Forbidden):
            await state.reports.assign_report(tech, {"client_id": acme.id, "technician_id": tech.id})
