"""API v1 module - consolidated router for all endpoints."""

from fastapi import APIRouter
from agui_engine.api.v1.routes import (
    runs_router,
    admin_router,
    health_router,
)

# Create main v1 router
router = APIRouter()

# Include all route modules
router.include_router(health_router)
router.include_router(runs_router)
router.include_router(admin_router)

__all__ = ['router']
