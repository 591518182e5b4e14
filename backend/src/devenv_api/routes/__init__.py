"""API route modules."""

from devenv_api.routes.environments import router as environments_router
from devenv_api.routes.health import router as health_router

__all__ = [
    "environments_router",
    "health_router",
]
