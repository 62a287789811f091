"""Shared dependencies for API routes."""

from fastapi import HTTPException, Request

from docflow.core import WorkflowEngine, TimeoutManager
from docflow.models.schemas import ApprovalResult, FailureKind


def get_engine(request: Request) -> WorkflowEngine:
    """Get the workflow engine from app state."""
    return request.app.state.engine


def get_timeout_manager(request: Request) -> TimeoutManager:
    """Get timeout manager from app state."""
    return request.app.state.timeout_manager


FAILURE_STATUS_CODES = {
    FailureKind.NOT_FOUND: 404,
    FailureKind.PERMISSION_DENIED: 403,
    FailureKind.INVALID_STATE: 409,
    FailureKind.CONFLICT: 409,
}


def raise_for_failure(result: ApprovalResult) -> ApprovalResult:
    """Turn a failed ApprovalResult into the matching HTTP error"""
    if result.success:
        return result
    status_code = FAILURE_STATUS_CODES.get(result.error, 400)
    raise HTTPException(status_code=status_code, detail=result.message)
