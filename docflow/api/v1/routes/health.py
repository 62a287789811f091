"""Health check and metrics endpoints."""

from datetime import datetime
from fastapi import APIRouter, Depends

from docflow.api.v1.dependencies import get_engine, get_timeout_manager
from docflow.models.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return HealthResponse(status="healthy", timestamp=datetime.now().timestamp())


@router.get("/metrics")
def metrics(
    engine=Depends(get_engine),
    timeout_manager=Depends(get_timeout_manager),
):
    """
    System metrics endpoint for observability.
    Returns workflow statistics, route counts and timeout checker status.
    """
    workflow_metrics = engine.get_workflow_metrics()

    return {
        "timestamp": datetime.now().timestamp(),
        "workflows": workflow_metrics.model_dump(),
        "routes": {
            "total": len(engine.get_all_workflow_routes()),
            "active": len(engine.get_all_active_routes()),
        },
        "notifications": {
            "queued": len(engine.notifications),
        },
        "timeout_manager": timeout_manager.get_stats(),
    }
