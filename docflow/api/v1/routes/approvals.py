"""Approval and counter-approval endpoints."""

from typing import List
import structlog
from fastapi import APIRouter, Depends

from docflow.api.v1.dependencies import get_engine, raise_for_failure
from docflow.models.schemas import (
    ApprovalResult,
    ApprovalSubmit,
    CounterApprovalSubmit,
    WorkflowInstance,
)

router = APIRouter(tags=["approvals"])
logger = structlog.get_logger()


@router.post("/api/workflows/{instance_id}/actions", response_model=ApprovalResult)
def submit_action(instance_id: str, submission: ApprovalSubmit, engine=Depends(get_engine)):
    """
    Approve, reject, escalate or request changes on the current step.
    Failures map to 404 / 403 / 409.
    """
    result = engine.process_approval(
        instance_id,
        submission.step_id,
        submission.action_type,
        submission.performed_by,
        comments=submission.comments,
        attachments=submission.attachments,
    )
    return raise_for_failure(result)


@router.post("/api/workflows/{instance_id}/counter-approvals", response_model=ApprovalResult)
def submit_counter_approval(instance_id: str, submission: CounterApprovalSubmit, engine=Depends(get_engine)):
    """Counter-approve or reject a prior approval"""
    result = engine.process_counter_approval(
        instance_id,
        submission.original_action_id,
        submission.action_type,
        submission.performed_by,
        comments=submission.comments,
    )
    return raise_for_failure(result)


@router.get("/api/approvals/pending", response_model=List[WorkflowInstance])
def get_pending_approvals(user_id: str, engine=Depends(get_engine)):
    """Instances waiting on a step the user can act on"""
    return engine.get_pending_approvals(user_id)
