"""Workflow route (process template) management endpoints."""

from typing import List
import structlog
from fastapi import APIRouter, HTTPException, Depends

from docflow.api.v1.dependencies import get_engine
from docflow.core import RouteConfigurationError
from docflow.models.repository import ConcurrentModificationError
from docflow.models.schemas import RouteClone, RouteCreate, RouteUpdate, WorkflowRoute

router = APIRouter(prefix="/api/routes", tags=["routes"])
logger = structlog.get_logger()


@router.post("", response_model=WorkflowRoute, status_code=201)
def create_route(route_req: RouteCreate, engine=Depends(get_engine)):
    """Register a new approval route"""
    try:
        return engine.create_workflow_route(route_req)
    except RouteConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("", response_model=List[WorkflowRoute])
def list_routes(active_only: bool = False, engine=Depends(get_engine)):
    """List routes, optionally only the active ones"""
    if active_only:
        return engine.get_all_active_routes()
    return engine.get_all_workflow_routes()


@router.get("/{route_id}", response_model=WorkflowRoute)
def get_route(route_id: str, engine=Depends(get_engine)):
    """Get route by ID"""
    route = engine.get_workflow_route(route_id)
    if route is None:
        raise HTTPException(status_code=404, detail=f"Workflow route {route_id} not found")
    return route


@router.patch("/{route_id}", response_model=WorkflowRoute)
def update_route(route_id: str, updates: RouteUpdate, engine=Depends(get_engine)):
    """
    Merge fields into a route. The whole route is replaced by id; in-flight
    instances keep their current step.
    """
    try:
        route = engine.update_workflow_route(route_id, updates)
    except RouteConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ConcurrentModificationError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if route is None:
        raise HTTPException(status_code=404, detail=f"Workflow route {route_id} not found")
    return route


@router.post("/{route_id}/clone", response_model=WorkflowRoute, status_code=201)
def clone_route(route_id: str, clone_req: RouteClone, engine=Depends(get_engine)):
    """Copy a route under a new id"""
    route = engine.clone_workflow_route(route_id, clone_req.created_by)
    if route is None:
        raise HTTPException(status_code=404, detail=f"Workflow route {route_id} not found")
    return route
