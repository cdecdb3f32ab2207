"""
FastAPI application for the operations portal.

One backend serves every portal (admin hub, implementations, service portal,
client portal); they differ only in which actions their users may perform.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from opsportal import __version__
from opsportal.auth import AuthorizationGate, auth_router
from opsportal.config import Settings, ensure_signing_secret, get_settings
from opsportal.core.activity import ActivityLog, get_activity_log
from opsportal.identity import IdentityStore, SlugCache, SlugResolver, UserCache
from opsportal.integrations.crm import CRMClient
from opsportal.services import (
    ClientService,
    ProjectService,
    ReportService,
    UploadLimiter,
    UserService,
)
from opsportal.storage import StorageProvider, create_local_storage

logger = logging.getLogger(__name__)


# =============================================================================
# App State
# =============================================================================


class AppState:
    """Application state - every component wired once per app."""

    def __init__(
        self,
        settings: Settings,
        storage: StorageProvider,
        activity: ActivityLog,
        crm: CRMClient,
    ):
        self.settings = ensure_signing_secret(settings)
        self.storage = storage
        self.activity = activity
        self.crm = crm

        self.store = IdentityStore(storage.metadata)
        self.user_cache = UserCache(storage.cache, ttl=settings.user_cache_ttl_seconds)
        self.slug_cache = SlugCache(storage.cache, ttl=settings.slug_cache_ttl_seconds)
        self.resolver = SlugResolver(self.store, self.slug_cache)
        self.gate = AuthorizationGate(self.store, self.user_cache, self.resolver, activity, settings)

        self.users = UserService(self.store, self.user_cache, activity, settings)
        strict = settings.reject_unknown_fields
        self.clients = ClientService(
            self.store, self.resolver, self.slug_cache, activity, strict_fields=strict
        )
        self.projects = ProjectService(
            self.store,
            self.resolver,
            self.slug_cache,
            self.user_cache,
            storage.content,
            activity,
            strict_fields=strict,
        )
        self.reports = ReportService(self.store, self.gate, activity, strict_fields=strict)
        self.uploads = UploadLimiter(
            settings.max_concurrent_uploads, settings.upload_queue_timeout_seconds
        )

    def install(self, app: FastAPI) -> None:
        for name, value in vars(self).items():
            setattr(app.state, name, value)


# =============================================================================
# Lifespan
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and cleanup app resources."""
    from opsportal.integrations.sentry import init_sentry
    from opsportal.main import install_loop_exception_handler

    settings: Settings = app.state.settings
    install_loop_exception_handler()

    if init_sentry():
        logger.info("Sentry error tracking enabled")

    await app.state.users.ensure_bootstrap_admin()
    logger.info("Operations portal API starting in %s mode", settings.environment)

    yield

    logger.info("Operations portal API shutting down")


# =============================================================================
# App Setup
# =============================================================================


def create_app(
    settings: Settings | None = None,
    storage: StorageProvider | None = None,
    activity: ActivityLog | None = None,
    crm: CRMClient | None = None,
) -> FastAPI:
    """Build the app. Tests pass their own storage, activity log and CRM client."""
    from opsportal.api.clients import router as clients_router
    from opsportal.api.errors import register_error_handlers
    from opsportal.api.portals import router as portals_router
    from opsportal.api.projects import router as projects_router
    from opsportal.api.reports import router as reports_router
    from opsportal.api.users import router as users_router
    from opsportal.api.webhooks import router as webhooks_router

    settings = settings or get_settings()
    state = AppState(
        settings=settings,
        storage=storage or create_local_storage(settings.data_dir),
        activity=activity or get_activity_log(),
        crm=crm or CRMClient(settings),
    )

    app = FastAPI(
        title="Operations Portal API",
        description="Shared backend for the admin, implementations, service and client portals",
        version=__version__,
        lifespan=lifespan,
    )
    state.install(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "opsportal-api"}

    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(clients_router)
    app.include_router(projects_router)
    app.include_router(reports_router)
    app.include_router(webhooks_router)
    # Last: owns the catch-all GET /{slug}
    app.include_router(portals_router)

    return app
