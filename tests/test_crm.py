"""
Tests for the CRM client and webhook secret check.

Outbound calls go through httpx.MockTransport; nothing leaves the process.
"""

import json

import httpx
import pytest

from opsportal.config import Settings
from opsportal.core.errors import ExternalServiceError, ValidationError
from opsportal.core.models import Project, Task
from opsportal.integrations.crm import CRMClient, verify_webhook_secret


def project(**kwargs) -> Project:
    return Project(
        slug="acme",
        name="Acme rollout",
        client_name="Acme Labs",
        tasks=[Task(id=1, completed=True), Task(id=2), Task(id=3), Task(id=4)],
        **kwargs,
    )


class TestPushProject:
    @pytest.mark.asyncio
    async def test_creates_record(self, settings):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"id": "crm-123"})

        client = CRMClient(settings, transport=httpx.MockTransport(handler))
        record_id = await client.push_project(project())

        assert record_id == "crm-123"
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/objects/companies"
        assert seen[0].headers["authorization"] == "Bearer crm-token"
        body = json.loads(seen[0].content)
        assert body["properties"]["tasks_completed"] == 1
        assert body["properties"]["progress_percent"] == 25

    @pytest.mark.asyncio
    async def test_updates_existing_record(self, settings):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "crm-9"})

        client = CRMClient(settings, transport=httpx.MockTransport(handler))
        await client.push_project(project(crm_record_id="crm-9"))

        assert seen[0].method == "PATCH"
        assert seen[0].url.path == "/objects/companies/crm-9"

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = CRMClient(settings, transport=httpx.MockTransport(handler))
        with pytest.raises(ExternalServiceError) as exc:
            await client.push_project(project())

        assert exc.value.status_code == 503
        assert exc.value.retry_after == 30

    @pytest.mark.asyncio
    async def test_error_status(self, settings):
        client = CRMClient(
            settings, transport=httpx.MockTransport(lambda request: httpx.Response(500, json={}))
        )
        with pytest.raises(ExternalServiceError) as exc:
            await client.push_project(project())

        assert exc.value.details == {"status": 500}

    @pytest.mark.asyncio
    async def test_not_configured(self, tmp_path):
        client = CRMClient(Settings(data_dir=str(tmp_path), crm_api_base_url="", crm_api_token=""))

        with pytest.raises(ValidationError) as exc:
            await client.push_project(project())
        assert exc.value.reason == "crm-not-configured"


class TestWebhookSecret:
    def test_matching_secret(self, settings):
        assert verify_webhook_secret("hook-secret", settings)

    def test_wrong_secret(self, settings):
        assert not verify_webhook_secret("nope", settings)
        assert not verify_webhook_secret(None, settings)

    def test_unconfigured_secret_rejects_everything(self, tmp_path):
        unset = Settings(data_dir=str(tmp_path), crm_webhook_secret="")
        assert not verify_webhook_secret("", unset)
        assert not verify_webhook_secret("anything", unset)
