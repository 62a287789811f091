"""Workflow instance endpoints."""

from datetime import datetime
from typing import List
import structlog
from fastapi import APIRouter, HTTPException, Depends

from docflow.api.v1.dependencies import get_engine
from docflow.core import NoApplicableRouteError
from docflow.models.schemas import TimeoutCheckResponse, WorkflowInitiate, WorkflowInstance

router = APIRouter(prefix="/api/workflows", tags=["workflows"])
logger = structlog.get_logger()


@router.post("", response_model=WorkflowInstance, status_code=201)
def initiate_workflow(workflow_req: WorkflowInitiate, engine=Depends(get_engine)):
    """
    Submit a document into the first applicable active route.
    """
    try:
        instance = engine.initiate_workflow(
            workflow_req.document_id,
            workflow_req.document_type,
            workflow_req.initiated_by,
            department=workflow_req.department,
            branch=workflow_req.branch,
            metadata=workflow_req.metadata,
        )
    except NoApplicableRouteError as e:
        raise HTTPException(status_code=404, detail=str(e))

    logger.info("workflow_initiated_via_api", workflow_instance_id=instance.id)
    return instance


@router.get("", response_model=List[WorkflowInstance])
def list_user_workflows(user_id: str, engine=Depends(get_engine)):
    """Instances the user initiated or acted on"""
    return engine.get_instances_by_user(user_id)


@router.post("/check-timeouts", response_model=TimeoutCheckResponse)
def check_timeouts(engine=Depends(get_engine)):
    """Run a timeout scan now instead of waiting for the background checker"""
    escalated = engine.check_timeouts()
    return TimeoutCheckResponse(escalated=escalated, checked_at=datetime.now())


@router.get("/{instance_id}", response_model=WorkflowInstance)
def get_workflow(instance_id: str, engine=Depends(get_engine)):
    """Get workflow instance by ID, history included (audit trail)"""
    instance = engine.get_workflow_instance(instance_id)
    if instance is None:
        raise HTTPException(status_code=404, detail=f"Workflow instance {instance_id} not found")
    return instance
