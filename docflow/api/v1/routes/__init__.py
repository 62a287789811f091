"""API v1 route modules."""

from docflow.api.v1.routes.routes import router as routes_router
from docflow.api.v1.routes.workflows import router as workflows_router
from docflow.api.v1.routes.approvals import router as approvals_router
from docflow.api.v1.routes.notifications import router as notifications_router
from docflow.api.v1.routes.health import router as health_router

__all__ = [
    'routes_router',
    'workflows_router',
    'approvals_router',
    'notifications_router',
    'health_router',
]
