"""HTTP boundary: FastAPI app, routers and error translation."""

from opsportal.api.app import AppState, create_app

__all__ = ["AppState", "create_app"]
