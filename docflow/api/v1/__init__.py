"""API v1 module - consolidated router for all endpoints."""

from fastapi import APIRouter
from docflow.api.v1.routes import (
    routes_router,
    workflows_router,
    approvals_router,
    notifications_router,
    health_router,
)

# Create main v1 router
router = APIRouter()

# Include all route modules
router.include_router(health_router)
router.include_router(routes_router)
router.include_router(workflows_router)
router.include_router(approvals_router)
router.include_router(notifications_router)

__all__ = ['router']
