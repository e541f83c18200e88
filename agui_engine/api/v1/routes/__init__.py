"""API v1 route modules."""

from agui_engine.api.v1.routes.runs import router as runs_router
from agui_engine.api.v1.routes.admin import router as admin_router
from agui_engine.api.v1.routes.health import router as health_router

__all__ = [
    'runs_router',
    'admin_router',
    'health_router',
]
