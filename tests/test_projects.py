"""
Tests for project, task and subtask lifecycle in ProjectService.
"""

import asyncio

import pytest
import pytest_asyncio

from opsportal.core.errors import NotFound, ValidationError
from opsportal.core.models import AccessLevel, EntityKind, ProjectStatus, Role, Subtask, Task
from opsportal.services.projects import INCOMPLETE_SUBTASKS, INVALID_DEPENDENCY, INVALID_ID, NOT_FOUND

from conftest import add_client, add_project, add_user


@pytest_asyncio.fixture
async def manager(state):
    return await add_user(state, Role.MANAGER, email="manager@example.com")


@pytest_asyncio.fixture
async def project(state, admin, manager):
    """Three tasks; task 3 has one open subtask."""
    project = await add_project(
        state,
        "acme",
        access={admin.id: AccessLevel.ADMIN, manager.id: AccessLevel.WRITE},
    )
    for raw in (
        {"task_title": "Kickoff"},
        {"task_title": "Install", "dependencies": [1]},
        {"task_title": "Train"},
    ):
        await state.projects.create_task(admin, project.id, raw)
    await state.projects.add_subtask(admin, project.id, 3, {"title": "Book room"})
    return await state.store.require_project(project.id)


class TestCreate:
    @pytest.mark.asyncio
    async def test_creator_gets_admin_access(self, state, manager):
        project = await state.projects.create_project(manager, "Rollout", client_name="Acme Labs")

        assert project.slug == "acme-labs"
        assert project.access_level_for(manager.id) == AccessLevel.ADMIN
        assert project.status == ProjectStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_slug_collision_gets_suffix(self, state, manager):
        first = await state.projects.create_project(manager, "Rollout", client_name="Acme Labs")
        second = await state.projects.create_project(manager, "Rollout", client_name="Acme Labs")

        assert first.slug == "acme-labs"
        assert second.slug == "acme-labs-1"

    @pytest.mark.asyncio
    async def test_client_name_from_client_record(self, state, manager):
        client = await add_client(state, "Northwind Clinic")
        project = await state.projects.create_project(manager, "Rollout", client_id=client.id)

        assert project.client_name == "Northwind Clinic"
        assert project.slug == "northwind-clinic"

    @pytest.mark.asyncio
    async def test_template_tasks_start_incomplete(self, state, manager):
        project = await state.projects.create_project(
            manager,
            "Rollout",
            template_tasks=[
                {"id": 50, "task_title": "A", "completed": True, "date_completed": "2020-01-01"},
                {"task_title": "B", "subtasks": [{"title": "b1", "completed": True}]},
            ],
        )

        assert [t.id for t in project.tasks] == [1, 2]
        assert not any(t.completed or t.date_completed for t in project.tasks)
        assert project.tasks[1].subtasks[0].completed is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tasks", [["kickoff"], "kickoff", [{"task_title": "A", "subtasks": ["a1"]}]])
    async def test_malformed_template_rejected(self, state, manager, tasks):
        with pytest.raises(ValidationError):
            await state.projects.create_project(manager, "Rollout", template_tasks=tasks)

        assert await state.store.list_projects() == []

    @pytest.mark.asyncio
    async def test_uuid_task_ids(self, state, manager):
        project = await state.projects.create_project(manager, "Rollout", uuid_task_ids=True)
        task = await state.projects.create_task(manager, project.id, {"task_title": "A"})

        assert isinstance(task.id, str)
        assert len(task.id) == 32


class TestClone:
    @pytest.mark.asyncio
    async def test_clone_resets_state(self, state, admin, project):
        await state.projects.bulk_update_tasks(admin, project.id, [{"id": 1, "completed": True}])
        await state.projects.attach_file(admin, project.id, "a.pdf", b"a")
        await state.projects.attach_file(admin, project.id, "b.pdf", b"b")
        await state.projects.update_project(admin, project.id, {"status": "completed"})

        clone = await state.projects.clone_project(admin, project.id)

        assert clone.id != project.id
        assert clone.status == ProjectStatus.ACTIVE
        assert len(clone.tasks) == 3
        assert not any(t.completed for t in clone.tasks)
        assert all(t.date_completed is None for t in clone.tasks)
        assert clone.files == []
        assert clone.tasks[1].dependencies == [1]

    @pytest.mark.asyncio
    async def test_clone_gets_its_own_slug(self, state, admin, project):
        clone = await state.projects.clone_project(admin, project.id)

        assert clone.slug != project.slug
        assert clone.previous_slugs == []
        assert clone.link_id != project.link_id

    @pytest.mark.asyncio
    async def test_source_is_untouched(self, state, admin, project):
        await state.projects.clone_project(admin, project.id)
        source = await state.store.require_project(project.id)

        assert len(source.tasks) == 3
        assert source.slug == "acme"


class TestTaskUpdates:
    @pytest.mark.asyncio
    async def test_completion_sets_date(self, state, manager, project):
        task = await state.projects.update_task(manager, project.id, "1", {"completed": True})

        assert task.completed
        assert task.date_completed is not None

    @pytest.mark.asyncio
    async def test_date_completed_is_server_only(self, state, admin, project):
        task = await state.projects.update_task(
            admin, project.id, 1, {"date_completed": "1999-01-01T00:00:00Z", "task_title": "Renamed"}
        )

        assert task.task_title == "Renamed"
        assert task.date_completed is None

    @pytest.mark.asyncio
    async def test_uncompleting_clears_date(self, state, manager, project):
        await state.projects.update_task(manager, project.id, 1, {"completed": True})
        task = await state.projects.update_task(manager, project.id, 1, {"completed": False})

        assert task.date_completed is None

    @pytest.mark.asyncio
    async def test_open_subtask_blocks_completion(self, state, manager, project):
        with pytest.raises(ValidationError) as exc:
            await state.projects.update_task(manager, project.id, 3, {"completed": True})

        assert exc.value.reason == INCOMPLETE_SUBTASKS

    @pytest.mark.asyncio
    async def test_not_applicable_subtask_settles(self, state, admin, manager, project):
        subtask = project.find_task(3).subtasks[0]
        await state.projects.update_subtask(admin, project.id, 3, subtask.id, {"not_applicable": True})

        task = await state.projects.update_task(manager, project.id, 3, {"completed": True})
        assert task.completed

    @pytest.mark.asyncio
    async def test_non_admin_cannot_change_client_visibility(self, state, manager, project):
        task = await state.projects.update_task(manager, project.id, 1, {"show_to_client": True})
        assert task.show_to_client is False

    @pytest.mark.asyncio
    async def test_unknown_dependency_rejected(self, state, manager, project):
        with pytest.raises(ValidationError) as exc:
            await state.projects.update_task(manager, project.id, 1, {"dependencies": [42]})

        assert exc.value.reason == INVALID_DEPENDENCY

    @pytest.mark.asyncio
    async def test_unknown_task(self, state, manager, project):
        with pytest.raises(NotFound):
            await state.projects.update_task(manager, project.id, 99, {"completed": True})


class TestBulkUpdate:
    @pytest.mark.asyncio
    async def test_partial_success(self, state, manager, project):
        result = await state.projects.bulk_update_tasks(
            manager,
            project.id,
            [{"id": 1, "completed": True}, {"id": 2, "completed": True}, {"id": 3, "completed": True}],
        )

        assert result.succeeded == [1, 2]
        assert len(result.skipped) == 1
        assert result.skipped[0].id == 3
        assert result.skipped[0].reason == INCOMPLETE_SUBTASKS

        stored = await state.store.require_project(project.id)
        assert [t.completed for t in stored.tasks] == [True, True, False]

    @pytest.mark.asyncio
    async def test_five_tasks_one_blocked(self, state, manager, project):
        await state.projects.create_task(manager, project.id, {"task_title": "Go live"})
        await state.projects.create_task(manager, project.id, {"task_title": "Review"})

        result = await state.projects.bulk_update_tasks(
            manager, project.id, [{"id": i, "completed": True} for i in range(1, 6)]
        )

        assert result.succeeded == [1, 2, 4, 5]
        assert [(s.id, s.reason) for s in result.skipped] == [(3, INCOMPLETE_SUBTASKS)]

    @pytest.mark.asyncio
    async def test_missing_task_is_skipped(self, state, manager, project):
        result = await state.projects.bulk_update_tasks(
            manager, project.id, [{"id": 99, "completed": True}, {"id": 1, "completed": True}]
        )

        assert result.summary()["results"] == [
            {"id": 99, "outcome": "skipped", "reason": NOT_FOUND},
            {"id": 1, "outcome": "success"},
        ]

    @pytest.mark.asyncio
    async def test_unusable_ids_are_skipped(self, state, manager, project):
        result = await state.projects.bulk_update_tasks(
            manager,
            project.id,
            [{"id": 1.5, "completed": True}, {"id": True}, "not-an-object", {"id": 1, "completed": True}],
        )

        assert [(s.id, s.reason) for s in result.skipped] == [
            ("1.5", INVALID_ID), ("True", INVALID_ID), ("", INVALID_ID),
        ]
        assert result.succeeded == [1]

    @pytest.mark.asyncio
    async def test_concurrent_bulk_updates_do_not_lose_writes(self, state, manager, project):
        await asyncio.gather(
            state.projects.bulk_update_tasks(manager, project.id, [{"id": 1, "task_title": "one"}]),
            state.projects.bulk_update_tasks(manager, project.id, [{"id": 2, "task_title": "two"}]),
        )

        stored = await state.store.require_project(project.id)
        assert stored.find_task(1).task_title == "one"
        assert stored.find_task(2).task_title == "two"


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_sweeps_dependencies(self, state, manager, project):
        await state.projects.delete_task(manager, project.id, 1)

        stored = await state.store.require_project(project.id)
        assert stored.find_task(1) is None
        assert stored.find_task(2).dependencies == []

    @pytest.mark.asyncio
    async def test_delete_shared_dependency(self, state, manager, project):
        await state.projects.update_task(manager, project.id, 3, {"dependencies": [1, 2]})
        await state.projects.update_task(manager, project.id, 2, {"dependencies": [1]})

        await state.projects.delete_task(manager, project.id, 1)

        stored = await state.store.require_project(project.id)
        assert stored.find_task(2).dependencies == []
        assert stored.find_task(3).dependencies == [2]

    @pytest.mark.asyncio
    async def test_bulk_delete_partial(self, state, manager, project):
        result = await state.projects.bulk_delete_tasks(manager, project.id, [1, 99])

        assert result.succeeded == [1]
        assert result.skipped[0].reason == NOT_FOUND
        stored = await state.store.require_project(project.id)
        assert len(stored.tasks) == 2
        assert all(1 not in t.dependencies for t in stored.tasks)

    @pytest.mark.asyncio
    async def test_bulk_delete_skips_unusable_ids(self, state, manager, project):
        result = await state.projects.bulk_delete_tasks(manager, project.id, [[2], {"id": 3}, 1])

        assert [(s.id, s.reason) for s in result.skipped] == [("[2]", INVALID_ID), ("{'id': 3}", INVALID_ID)]
        assert result.succeeded == [1]
        stored = await state.store.require_project(project.id)
        assert [t.id for t in stored.tasks] == [2, 3]

    @pytest.mark.asyncio
    async def test_deleted_ids_are_not_reused(self, state, manager, project):
        await state.projects.delete_task(manager, project.id, 3)
        task = await state.projects.create_task(manager, project.id, {"task_title": "New"})

        assert task.id == 4

    @pytest.mark.asyncio
    async def test_delete_project_forgets_its_lock(self, state, admin, project):
        await state.projects.update_project(admin, project.id, {"name": "Renamed"})
        assert (EntityKind.PROJECT, project.id) in state.store._record_locks

        await state.projects.delete_project(admin, project.id)

        assert (EntityKind.PROJECT, project.id) not in state.store._record_locks

    @pytest.mark.asyncio
    async def test_delete_project_drops_slug(self, state, admin, project):
        await state.resolver.resolve("acme", EntityKind.PROJECT)
        await state.projects.delete_project(admin, project.id)

        with pytest.raises(NotFound):
            await state.resolver.resolve("acme", EntityKind.PROJECT)


class TestSubtasks:
    @pytest.mark.asyncio
    async def test_visibility_inherits_from_parent(self, state, admin, project):
        await state.projects.update_task(admin, project.id, 1, {"show_to_client": True})
        subtask = await state.projects.add_subtask(admin, project.id, 1, {"title": "Visible"})
        hidden = await state.projects.add_subtask(admin, project.id, 2, {"title": "Hidden"})

        assert subtask.show_to_client is True
        assert hidden.show_to_client is False

    @pytest.mark.asyncio
    async def test_completion_timestamp(self, state, manager, project):
        subtask = project.find_task(3).subtasks[0]
        done = await state.projects.update_subtask(manager, project.id, 3, subtask.id, {"completed": True})
        assert done.completed_at is not None

        reopened = await state.projects.update_subtask(manager, project.id, 3, subtask.id, {"completed": False})
        assert reopened.completed_at is None

    @pytest.mark.asyncio
    async def test_delete_subtask(self, state, manager, project):
        subtask = project.find_task(3).subtasks[0]
        await state.projects.delete_subtask(manager, project.id, 3, subtask.id)

        stored = await state.store.require_project(project.id)
        assert stored.find_task(3).subtasks == []


class TestClientView:
    def test_client_sees_only_flagged_tasks(self, state):
        from opsportal.core.models import Project, User

        client_user = User(email="c@example.com", name="C", role=Role.CLIENT, client_id="client_a")
        project = Project(
            slug="acme",
            name="Acme",
            tasks=[
                Task(id=1, show_to_client=True, subtasks=[
                    Subtask(title="shown", show_to_client=True),
                    Subtask(title="internal", show_to_client=False),
                ]),
                Task(id=2, show_to_client=False),
            ],
        )

        tasks = state.projects.tasks_for(project, client_user)

        assert [t.id for t in tasks] == [1]
        assert [s.title for s in tasks[0].subtasks] == ["shown"]


class TestAccess:
    @pytest.mark.asyncio
    async def test_grant_and_revoke(self, state, admin, project):
        tech = await add_user(state, Role.TECHNICIAN, email="tech@example.com")

        granted = await state.projects.set_access_level(admin, project.id, tech.id, "read")
        assert granted.access_level_for(tech.id) == AccessLevel.READ

        revoked = await state.projects.set_access_level(admin, project.id, tech.id, "none")
        assert tech.id not in revoked.access_levels

    @pytest.mark.asyncio
    async def test_invalid_level(self, state, admin, project, manager):
        with pytest.raises(ValidationError):
            await state.projects.set_access_level(admin, project.id, manager.id, "owner")

    @pytest.mark.asyncio
    async def test_invalid_status(self, state, admin, project):
        with pytest.raises(ValidationError):
            await state.projects.update_project(admin, project.id, {"status": "archived"})

    @pytest.mark.asyncio
    async def test_visible_projects(self, state, admin, manager, project):
        await add_project(state, "other", name="Other")

        assert [p.id for p in await state.projects.visible_projects(manager)] == [project.id]
        assert len(await state.projects.visible_projects(admin)) == 2
