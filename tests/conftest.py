"""
Shared fixtures.

Everything runs against the in-memory storage backends; caches read time
from a FakeClock so TTL behavior is tested by stepping the clock, not by
sleeping.
"""

import asyncio

import pytest
import pytest_asyncio

from opsportal.api.app import AppState
from opsportal.auth.jwt import create_access_token, hash_password
from opsportal.config import Settings
from opsportal.core.activity import ActivityLog
from opsportal.core.models import AccessLevel, Client, Project, Role, User
from opsportal.integrations.crm import CRMClient
from opsportal.storage import create_local_storage

PASSWORD = "correct-horse-battery"
SIGNING_SECRET = "test-signing-secret-0123456789abcdef"

# Tokens are signed with the same secret the `settings` fixture carries
TOKEN_SETTINGS = Settings(jwt_secret_key=SIGNING_SECRET)


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=str(tmp_path),
        jwt_secret_key=SIGNING_SECRET,
        crm_api_base_url="https://crm.test",
        crm_api_token="crm-token",
        crm_webhook_secret="hook-secret",
        external_call_timeout_seconds=1.0,
        default_admin_email="",
        default_admin_password="",
        reject_unknown_fields=False,
    )


@pytest.fixture
def activity():
    return ActivityLog(capacity=2000)


@pytest.fixture
def crm(settings):
    return CRMClient(settings)


@pytest.fixture
def state(settings, tmp_path, clock, activity, crm):
    """Every component wired exactly as the app wires them."""
    storage = create_local_storage(str(tmp_path), clock=clock)
    return AppState(settings=settings, storage=storage, activity=activity, crm=crm)


# =============================================================================
# Record builders
# =============================================================================


def build_user(role: Role = Role.MANAGER, email: str | None = None, **kwargs) -> User:
    """Unsaved user; the password is always PASSWORD."""
    return User(
        email=email or f"{role.value}-{len(kwargs)}@example.com",
        name=kwargs.pop("name", role.value.title()),
        role=role,
        password_hash=hash_password(PASSWORD),
        **kwargs,
    )


async def add_user(state: AppState, role: Role = Role.MANAGER, email: str | None = None, **kwargs) -> User:
    user = build_user(role, email=email or f"{role.value}@example.com", **kwargs)
    await state.store.add_user(user)
    return user


async def add_client(state: AppState, practice_name: str = "Acme Labs", slug: str | None = None) -> Client:
    client = Client(slug=slug or practice_name.lower().replace(" ", "-"), practice_name=practice_name)
    await state.store.save_client(client)
    return client


async def add_project(
    state: AppState,
    slug: str = "acme",
    client: Client | None = None,
    access: dict[str, AccessLevel] | None = None,
    **kwargs,
) -> Project:
    project = Project(
        slug=slug,
        name=kwargs.pop("name", "Acme rollout"),
        client_id=client.id if client else None,
        client_name=client.practice_name if client else "",
        access_levels=access or {},
        **kwargs,
    )
    await state.store.save_project(project)
    return project


def token_for(user: User) -> str:
    return create_access_token(user.id, settings=TOKEN_SETTINGS).access_token


def auth_header(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {token_for(user)}"}


def run(coro):
    """Seed records from synchronous (TestClient) tests."""
    return asyncio.run(coro)


@pytest_asyncio.fixture
async def admin(state):
    return await add_user(state, Role.ADMIN, email="admin@example.com", name="Admin")
