"""
HTTP-level tests: status codes, error envelopes, redirects and the portal
login flows, through FastAPI's TestClient.
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from opsportal.api import create_app
from opsportal.core.models import AccessLevel, EntityKind, Role
from opsportal.integrations.crm import CRMClient
from opsportal.storage import create_local_storage

from conftest import PASSWORD, add_client, add_project, add_user, auth_header, run


@pytest.fixture
def crm_handler():
    """CRM stand-in that answers every call with record crm-1."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"id": "crm-1"})

    handler.calls = calls
    return handler


@pytest.fixture
def app(settings, tmp_path, clock, activity, crm_handler):
    storage = create_local_storage(str(tmp_path), clock=clock)
    crm = CRMClient(settings, transport=httpx.MockTransport(crm_handler))
    return create_app(settings=settings, storage=storage, activity=activity, crm=crm)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def admin(app):
    return run(add_user(app.state, Role.ADMIN, email="admin@example.com", name="Admin"))


@pytest.fixture
def manager(app):
    return run(add_user(app.state, Role.MANAGER, email="manager@example.com", name="Manny"))


@pytest.fixture
def project(app, admin, manager):
    """Project 'acme' with tasks 1-3; task 3 has an open subtask."""
    project = run(add_project(
        app.state, "acme", access={admin.id: AccessLevel.ADMIN, manager.id: AccessLevel.WRITE}
    ))
    for raw in ({"task_title": "Kickoff"}, {"task_title": "Install"}, {"task_title": "Train"}):
        run(app.state.projects.create_task(admin, project.id, raw))
    run(app.state.projects.add_subtask(admin, project.id, 3, {"title": "Book room"}))
    return project


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestErrorEnvelope:
    def test_missing_credential_redirects_to_login(self, client):
        response = client.get("/projects")

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthenticated"
        assert error["action"] == "redirect-to-login"
        assert response.headers["www-authenticate"] == "Bearer"

    def test_invalid_credential(self, client):
        response = client.get("/projects", headers={"Authorization": "Bearer garbage"})

        assert response.status_code == 401
        assert response.json()["error"]["reason"] == "invalid-credential"

    def test_token_query_param(self, client, admin):
        token = auth_header(admin)["Authorization"].split()[1]
        response = client.get("/auth/me", params={"token": token})

        assert response.status_code == 200
        assert response.json()["id"] == admin.id
        assert "password_hash" not in response.json()

    def test_forbidden_carries_reason(self, client, project):
        tech = run(add_user(client.app.state, Role.TECHNICIAN, email="tech@example.com"))
        response = client.put(
            f"/projects/{project.id}/tasks/1", json={"completed": True}, headers=auth_header(tech)
        )

        assert response.status_code == 403
        assert response.json()["error"] == {
            "code": "forbidden",
            "message": "Not permitted: insufficient-role",
            "reason": "insufficient-role",
        }

    def test_malformed_body_is_400(self, client, admin, project):
        response = client.put(
            f"/projects/{project.id}/tasks/1",
            content=b"{not json",
            headers={**auth_header(admin), "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation-error"

    def test_unhandled_error_is_generic_500(self, app):
        async def boom():
            raise RuntimeError("secret internals")

        app.add_api_route("/boom", boom, methods=["POST"])
        response = TestClient(app, raise_server_exceptions=False).post("/boom")

        assert response.status_code == 500
        assert response.json() == {"error": {"code": "internal-error", "message": "Internal server error"}}


class TestSlugRoutes:
    def test_current_slug(self, client, admin, project):
        response = client.get("/acme", headers=auth_header(admin))

        assert response.status_code == 200
        assert response.json()["id"] == project.id
        assert response.json()["progress"] == {"total": 3, "completed": 0}

    def test_old_slug_redirects_temporarily(self, client, admin, project):
        renamed = client.put(
            f"/projects/{project.id}/slug", json={"slug": "acme-labs"}, headers=auth_header(admin)
        )
        assert renamed.status_code == 200
        assert renamed.json()["previous_slugs"] == ["acme"]

        response = client.get("/acme", headers=auth_header(admin), follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == "/acme-labs"

    def test_launch_internal_view(self, client, admin, project):
        response = client.get("/launch/acme-internal", headers=auth_header(admin))

        assert response.status_code == 200
        assert response.json()["view"] == "internal"

    def test_launch_redirect_keeps_view(self, client, admin, project):
        run(client.app.state.resolver.rename(EntityKind.PROJECT, project.id, "acme-labs"))

        response = client.get("/launch/acme-internal", headers=auth_header(admin), follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == "/launch/acme-labs-internal"

    def test_link_id_redirects(self, client, admin, project):
        response = client.get(f"/{project.link_id}", headers=auth_header(admin), follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == "/acme"

    def test_unknown_slug_is_404(self, client, admin):
        response = client.get("/no-such-project", headers=auth_header(admin))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not-found"

    def test_unknown_slug_without_credential_is_401(self, client):
        assert client.get("/no-such-project").status_code == 401

    def test_client_portal_redirect(self, client, admin):
        acme = run(add_client(client.app.state, "Acme Labs"))
        run(client.app.state.resolver.rename(EntityKind.CLIENT, acme.id, "acme"))

        response = client.get("/portal/acme-labs", headers=auth_header(admin), follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == "/portal/acme"

    def test_client_user_denied_internal_view(self, client, admin):
        acme = run(add_client(client.app.state, "Acme Labs"))
        project = run(add_project(client.app.state, "acme", client=acme))
        portal_user = run(add_user(client.app.state, Role.CLIENT, email="c@example.com", client_id=acme.id))
        run(client.app.state.projects.set_access_level(admin, project.id, portal_user.id, "read"))

        assert client.get("/launch/acme", headers=auth_header(portal_user)).status_code == 200
        response = client.get("/launch/acme-internal", headers=auth_header(portal_user))
        assert response.status_code == 403


class TestProjectsApi:
    def test_create_drops_unknown_fields(self, client, manager):
        response = client.post(
            "/projects",
            json={"name": "Rollout", "client_name": "Beta Clinic", "crm_record_id": "evil", "status": "completed"},
            headers=auth_header(manager),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["slug"] == "beta-clinic"
        assert body["crm_record_id"] == ""
        assert body["status"] == "active"
        assert body["access_levels"] == {manager.id: "admin"}

    def test_create_requires_name(self, client, manager):
        response = client.post("/projects", json={"client_name": "X"}, headers=auth_header(manager))
        assert response.status_code == 400

    def test_list_only_visible(self, client, manager, project):
        run(add_project(client.app.state, "hidden", name="Hidden"))
        response = client.get("/projects", headers=auth_header(manager))

        assert [p["id"] for p in response.json()["projects"]] == [project.id]

    def test_bulk_update_reports_per_item(self, client, manager, project):
        response = client.put(
            f"/projects/{project.id}/tasks/bulk-update",
            json={"task_ids": [1, 2, 3], "completed": True},
            headers=auth_header(manager),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["succeeded"] == 2
        assert body["skipped"] == 1
        assert body["results"][2] == {"id": 3, "outcome": "skipped", "reason": "incomplete-subtasks"}

    def test_template_tasks_must_be_objects(self, client, manager):
        response = client.post(
            "/projects", json={"name": "Rollout", "tasks": ["kickoff"]}, headers=auth_header(manager)
        )

        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"field": "tasks"}

    def test_bulk_update_skips_unusable_ids(self, client, manager, project):
        response = client.put(
            f"/projects/{project.id}/tasks/bulk-update",
            json={"updates": [{"id": {"x": 1}, "completed": True}, {"id": 2, "task_title": "Wire up"}]},
            headers=auth_header(manager),
        )

        assert response.status_code == 200
        assert response.json()["results"] == [
            {"id": "{'x': 1}", "outcome": "skipped", "reason": "invalid-id"},
            {"id": 2, "outcome": "success"},
        ]

    def test_bulk_delete_skips_unusable_ids(self, client, admin, project):
        response = client.post(
            f"/projects/{project.id}/tasks/bulk-delete",
            json={"task_ids": [1.5, [2], 1]},
            headers=auth_header(admin),
        )

        assert response.status_code == 200
        assert response.json()["results"] == [
            {"id": "1.5", "outcome": "skipped", "reason": "invalid-id"},
            {"id": "[2]", "outcome": "skipped", "reason": "invalid-id"},
            {"id": 1, "outcome": "success"},
        ]
        stored = run(client.app.state.store.require_project(project.id))
        assert [t.id for t in stored.tasks] == [2, 3]

    def test_bulk_update_by_slug(self, client, manager, project):
        response = client.put(
            "/projects/acme/tasks/bulk-update",
            json={"updates": [{"id": 1, "task_title": "Renamed"}]},
            headers=auth_header(manager),
        )

        assert response.status_code == 200
        stored = run(client.app.state.store.require_project(project.id))
        assert stored.find_task(1).task_title == "Renamed"

    def test_read_only_user_cannot_write(self, client, admin, project):
        reader = run(add_user(client.app.state, Role.MANAGER, email="reader@example.com"))
        run(client.app.state.projects.set_access_level(admin, project.id, reader.id, "read"))

        assert client.get(f"/projects/{project.id}", headers=auth_header(reader)).status_code == 200
        response = client.post(
            f"/projects/{project.id}/tasks", json={"task_title": "x"}, headers=auth_header(reader)
        )
        assert response.status_code == 403
        assert response.json()["error"]["reason"] == "insufficient-project-access"

    def test_project_view_includes_permissions(self, client, manager, project):
        body = client.get(f"/projects/{project.id}", headers=auth_header(manager)).json()
        assert body["_permissions"] == {"access_level": "write", "is_admin": False}

    def test_clone(self, client, admin, project):
        response = client.post(f"/projects/{project.id}/clone", headers=auth_header(admin))

        assert response.status_code == 201
        assert len(response.json()["tasks"]) == 3
        assert response.json()["files"] == []

    def test_delete_is_admin_only(self, client, manager, admin, project):
        response = client.delete(f"/projects/{project.id}", headers=auth_header(manager))
        assert response.status_code == 403

        assert client.delete(f"/projects/{project.id}", headers=auth_header(admin)).status_code == 200
        assert client.get("/acme", headers=auth_header(admin)).status_code == 404

    def test_upload(self, client, manager, project):
        response = client.post(
            f"/projects/{project.id}/files",
            files={"file": ("notes.txt", b"hello", "text/plain")},
            data={"task_id": "1"},
            headers=auth_header(manager),
        )

        assert response.status_code == 201
        assert response.json()["size"] == 5
        assert response.json()["task_id"] == 1

    def test_upload_too_large(self, client, manager, project):
        client.app.state.settings.max_upload_bytes = 4
        response = client.post(
            f"/projects/{project.id}/files",
            files={"file": ("notes.txt", b"hello", "text/plain")},
            headers=auth_header(manager),
        )
        assert response.status_code == 400


class TestCrmSync:
    def test_sync_records_id(self, client, manager, project, crm_handler):
        response = client.post(f"/projects/{project.id}/crm-sync", headers=auth_header(manager))

        assert response.status_code == 200
        assert response.json()["crm_record_id"] == "crm-1"
        assert len(crm_handler.calls) == 1

    def test_timeout_is_503_with_retry_after(self, client, app, manager, project, monkeypatch):
        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        monkeypatch.setattr(app.state.crm, "transport", httpx.MockTransport(timeout))
        response = client.post(f"/projects/{project.id}/crm-sync", headers=auth_header(manager))

        assert response.status_code == 503
        assert response.headers["retry-after"] == "30"
        assert response.json()["error"]["code"] == "external-service-unavailable"


class TestAuthApi:
    def test_login(self, client, manager):
        response = client.post("/auth/login", json={"email": "MANAGER@example.com", "password": PASSWORD})

        assert response.status_code == 200
        assert response.json()["user"]["id"] == manager.id
        assert response.json()["must_change_password"] is False

    def test_bad_login(self, client, manager):
        response = client.post("/auth/login", json={"email": "manager@example.com", "password": "nope"})

        assert response.status_code == 401
        assert response.json()["error"]["action"] == "redirect-to-login"

    def test_admin_login_rejects_manager(self, client, manager):
        response = client.post("/auth/admin-login", json={"email": "manager@example.com", "password": PASSWORD})

        assert response.status_code == 403
        assert response.json()["error"]["reason"] == "insufficient-role"

    def test_service_login(self, client):
        run(add_user(client.app.state, Role.TECHNICIAN, email="tech@example.com"))
        response = client.post("/auth/service-login", json={"email": "tech@example.com", "password": PASSWORD})

        assert response.status_code == 200

    def test_client_login_checks_portal(self, client):
        acme = run(add_client(client.app.state, "Acme Labs"))
        run(add_client(client.app.state, "Beta Clinic"))
        run(add_user(client.app.state, Role.CLIENT, email="c@example.com", client_id=acme.id))

        ok = client.post("/auth/client-login", json={"email": "c@example.com", "password": PASSWORD, "slug": "acme-labs"})
        denied = client.post(
            "/auth/client-login", json={"email": "c@example.com", "password": PASSWORD, "slug": "beta-clinic"}
        )

        assert ok.status_code == 200
        assert denied.status_code == 403
        assert denied.json()["error"]["reason"] == "not-assigned"

    def test_forgot_password_is_generic(self, client, manager):
        known = client.post("/auth/forgot-password", json={"email": "manager@example.com"})
        unknown = client.post("/auth/forgot-password", json={"email": "nobody@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()


class TestAdminApi:
    def test_user_management_is_admin_only(self, client, manager):
        response = client.get("/users", headers=auth_header(manager))
        assert response.status_code == 403

    def test_create_user_duplicate_email(self, client, admin):
        response = client.post(
            "/users",
            json={"email": "Admin@Example.com", "name": "Dup", "password": "long-enough"},
            headers=auth_header(admin),
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "duplicate-email"

    def test_assigned_clients_string_is_400(self, client, admin):
        response = client.post(
            "/users",
            json={
                "email": "vendor@example.com",
                "name": "Vera",
                "role": "vendor",
                "password": "long-enough",
                "assigned_clients": "client_abc",
            },
            headers=auth_header(admin),
        )

        assert response.status_code == 400
        assert run(client.app.state.store.get_user_by_email("vendor@example.com")) is None

    def test_activity_log(self, client, admin, manager, project):
        client.get(f"/projects/{project.id}", headers=auth_header(manager))
        response = client.get(
            "/admin/activity-log", params={"action": "authz.*"}, headers=auth_header(admin)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["capacity"] == 2000
        assert body["entries"][0]["action"] == "authz.view-activity-log"
        assert any(e["actor_id"] == manager.id for e in body["entries"])

    def test_inbox_excludes_authz_entries(self, client, manager, project):
        client.put(f"/projects/{project.id}/tasks/1", json={"task_title": "x"}, headers=auth_header(manager))
        response = client.get("/inbox", headers=auth_header(manager))

        assert response.status_code == 200
        actions = [e["action"] for e in response.json()["entries"]]
        assert "task.updated" in actions
        assert not any(a.startswith("authz.") for a in actions)


class TestWebhooks:
    def test_valid_secret(self, client, activity):
        response = client.post(
            "/webhooks/crm",
            json={"formType": "onboarding"},
            headers={"X-CRM-Webhook-Secret": "hook-secret"},
        )

        assert response.status_code == 200
        assert activity.get_history(action="crm.form_submitted")[0].target_id == "onboarding"

    def test_invalid_secret(self, client):
        response = client.post("/webhooks/crm", json={}, params={"secret": "nope"})

        assert response.status_code == 403
        error = response.json()["error"]
        assert error["reason"] == "invalid-webhook-secret"
        assert "action" not in error


class TestClientsApi:
    def test_admin_creates_client(self, client, admin):
        response = client.post(
            "/clients", json={"practice_name": "Northwind Clinic", "slug": "ignored"}, headers=auth_header(admin)
        )

        assert response.status_code == 201
        assert response.json()["slug"] == "northwind-clinic"

    def test_manager_cannot_create_client(self, client, manager):
        response = client.post("/clients", json={"practice_name": "X"}, headers=auth_header(manager))

        assert response.status_code == 403
        assert response.json()["error"]["reason"] == "insufficient-role"

    def test_client_user_sees_only_own_client(self, client):
        acme = run(add_client(client.app.state, "Acme Labs"))
        beta = run(add_client(client.app.state, "Beta Clinic"))
        portal_user = run(add_user(client.app.state, Role.CLIENT, email="c@example.com", client_id=acme.id))

        listed = client.get("/clients", headers=auth_header(portal_user)).json()
        assert [c["id"] for c in listed["clients"]] == [acme.id]

        assert client.get(f"/clients/{acme.slug}", headers=auth_header(portal_user)).status_code == 200
        response = client.get(f"/clients/{beta.id}", headers=auth_header(portal_user))
        assert response.status_code == 403
        assert response.json()["error"]["reason"] == "not-assigned"

    def test_rename_conflict_is_409(self, client, admin):
        run(add_client(client.app.state, "Acme Labs"))
        beta = run(add_client(client.app.state, "Beta Clinic"))

        response = client.put(f"/clients/{beta.id}/slug", json={"slug": "acme-labs"}, headers=auth_header(admin))

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "slug-conflict"


class TestStrictFields:
    @pytest.fixture
    def strict_client(self, settings, tmp_path, clock, activity):
        settings.reject_unknown_fields = True
        storage = create_local_storage(str(tmp_path), clock=clock)
        app = create_app(settings=settings, storage=storage, activity=activity, crm=CRMClient(settings))
        return TestClient(app)

    def test_unknown_task_field_rejected(self, strict_client):
        state = strict_client.app.state
        owner = run(add_user(state, Role.MANAGER, email="owner@example.com"))
        project = run(add_project(state, "acme", access={owner.id: AccessLevel.ADMIN}))

        response = strict_client.post(
            f"/projects/{project.id}/tasks",
            json={"task_title": "Kickoff", "bogus": 1},
            headers=auth_header(owner),
        )

        assert response.status_code == 400
        assert response.json()["error"]["details"]["fields"] == ["bogus"]

    def test_unknown_task_field_dropped_by_default(self, client, manager, project):
        response = client.post(
            f"/projects/{project.id}/tasks",
            json={"task_title": "Kickoff", "bogus": 1},
            headers=auth_header(manager),
        )

        assert response.status_code == 201
        assert "bogus" not in response.json()
