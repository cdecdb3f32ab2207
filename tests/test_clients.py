"""
Tests for client profile updates and slug changes in ClientService.
"""

import asyncio

import pytest
import pytest_asyncio

from opsportal.core.errors import SlugConflict
from opsportal.core.models import EntityKind

from conftest import add_client


@pytest_asyncio.fixture
async def acme(state):
    return await add_client(state, "Acme Labs", slug="acme")


@pytest.fixture
def slow_reads(state, monkeypatch):
    """Yield to the loop after every record read so writers interleave."""
    get_entity = state.store.get_entity

    async def get_then_yield(kind, entity_id):
        entity = await get_entity(kind, entity_id)
        await asyncio.sleep(0)
        return entity

    monkeypatch.setattr(state.store, "get_entity", get_then_yield)


class TestProfileUpdate:
    @pytest.mark.asyncio
    async def test_slug_fields_are_ignored(self, state, admin, acme):
        updated = await state.clients.update_client(
            admin, acme.id, {"logo": "https://cdn.example.com/acme.png", "slug": "hijack"}
        )

        assert updated.slug == "acme"
        assert updated.logo == "https://cdn.example.com/acme.png"

    @pytest.mark.asyncio
    async def test_concurrent_rename_survives(self, state, admin, acme, slow_reads):
        await asyncio.gather(
            state.clients.update_client(admin, acme.id, {"logo": "https://cdn.example.com/acme.png"}),
            state.clients.rename_client(admin, acme.id, "acme-labs"),
        )

        stored = await state.store.require_client(acme.id)
        assert stored.slug == "acme-labs"
        assert stored.previous_slugs == ["acme"]
        assert stored.logo == "https://cdn.example.com/acme.png"

    @pytest.mark.asyncio
    async def test_rename_after_update_keeps_profile(self, state, admin, acme, slow_reads):
        await asyncio.gather(
            state.clients.rename_client(admin, acme.id, "acme-labs"),
            state.clients.update_client(admin, acme.id, {"practice_name": "Acme Laboratories"}),
        )

        stored = await state.store.require_client(acme.id)
        assert stored.slug == "acme-labs"
        assert stored.previous_slugs == ["acme"]
        assert stored.practice_name == "Acme Laboratories"

        resolved = await state.resolver.resolve("acme", EntityKind.CLIENT)
        assert resolved.redirect
        assert resolved.entity.slug == "acme-labs"


class TestSlugChanges:
    @pytest.mark.asyncio
    async def test_regenerate_from_practice_name(self, state, admin, acme):
        await state.clients.update_client(admin, acme.id, {"practice_name": "Northwind Clinic"})
        client = await state.clients.regenerate_slug(admin, acme.id)

        assert client.slug == "northwind-clinic"
        assert client.previous_slugs == ["acme"]

    @pytest.mark.asyncio
    async def test_rename_conflict(self, state, admin, acme):
        beta = await add_client(state, "Beta Clinic")

        with pytest.raises(SlugConflict):
            await state.clients.rename_client(admin, beta.id, "acme")
