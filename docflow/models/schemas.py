"""
Pydantic schemas for the workflow domain and the HTTP API.
Includes enums for instance status, action types and escalation conditions.
"""

from pydantic import BaseModel, Field
from typing import Optional, Literal, Any, List, Dict
from enum import Enum
from datetime import datetime
import uuid


def new_id(prefix: str = "wf") -> str:
    """Generate an entity id"""
    return f"{prefix}_{uuid.uuid4().hex}"


# ============================================================================
# Enums
# ============================================================================


class RouteType(str, Enum):
    """How a route presents its steps (traversal is always by order)"""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class InstanceStatus(str, Enum):
    """Workflow instance statuses"""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    ESCALATED = "escalated"


class ActionType(str, Enum):
    """Actions recorded in an instance history"""

    APPROVE = "approve"
    REJECT = "reject"
    ESCALATE = "escalate"
    REQUEST_CHANGES = "request-changes"
    COUNTER_APPROVE = "counter-approve"


class EscalationCondition(str, Enum):
    """Triggers that can redirect an instance"""

    REJECTION = "rejection"
    TIMEOUT = "timeout"
    MANUAL = "manual"


class NotificationType(str, Enum):
    """Outbound notification kinds"""

    APPROVAL_REQUEST = "approval-request"
    APPROVAL_GRANTED = "approval-granted"
    APPROVAL_REJECTED = "approval-rejected"
    ESCALATION = "escalation"
    COUNTER_APPROVAL_REQUIRED = "counter-approval-required"


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class FailureKind(str, Enum):
    """Why an approval call was refused"""

    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    INVALID_STATE = "invalid_state"
    CONFLICT = "conflict"


# Statuses the approval processor and timeout scanner still act on
ACTIVE_STATUSES = (InstanceStatus.PENDING, InstanceStatus.IN_PROGRESS)

# Statuses after which current_step_id is frozen
TERMINAL_STATUSES = (InstanceStatus.COMPLETED, InstanceStatus.REJECTED)

# Actions a caller may submit through process_approval
APPROVER_ACTIONS = (
    ActionType.APPROVE,
    ActionType.REJECT,
    ActionType.ESCALATE,
    ActionType.REQUEST_CHANGES,
)

# Actions a caller may submit through process_counter_approval
COUNTER_APPROVER_ACTIONS = (ActionType.COUNTER_APPROVE, ActionType.REJECT)


# ============================================================================
# Route Definitions
# ============================================================================


class WorkflowStep(BaseModel):
    """One approval gate within a route"""

    id: str = Field(default_factory=lambda: new_id("step"), description="Step identifier")
    name: str = Field(..., description="Step name shown to approvers")
    description: str = ""
    order: int = Field(..., description="Traversal position within the route")
    approver_role: str = Field(default="", description="Display name of the approving role")
    role_required: List[str] = Field(default_factory=list, description="Roles eligible to act")
    required_approvals: int = Field(default=1, ge=1, description="Only 1 is enforced")
    is_optional: bool = False
    timeout_hours: Optional[float] = Field(default=None, gt=0, description="None disables auto-timeout")
    escalation_roles: List[str] = Field(default_factory=list)
    requires_counter_approval: Optional[bool] = Field(
        default=None,
        description="None inherits the route-level default"
    )
    counter_approval_roles: List[str] = Field(default_factory=list)


class EscalationPath(BaseModel):
    """Redirect rule for a (step, condition) pair"""

    id: str = Field(default_factory=lambda: new_id("esc"))
    condition: EscalationCondition
    from_step_id: str
    to_step_id: Optional[str] = None
    escalate_to_roles: List[str] = Field(default_factory=list)
    requires_reason: bool = False
    notification_template: Optional[str] = None


class AutoEscalationPolicy(BaseModel):
    enabled: bool = False
    timeout_hours: float = Field(default=72, gt=0)


class WorkflowRoute(BaseModel):
    """Reusable approval-process template"""

    id: str = Field(default_factory=lambda: new_id("route"))
    name: str
    description: str = ""
    type: RouteType = RouteType.SEQUENTIAL
    document_type: str = Field(..., examples=["academic", "administrative", "financial", "general"])
    department: Optional[str] = None
    branch: Optional[str] = None
    steps: List[WorkflowStep] = Field(default_factory=list)
    escalation_paths: List[EscalationPath] = Field(default_factory=list)
    requires_counter_approval: bool = False
    auto_escalation: AutoEscalationPolicy = Field(default_factory=AutoEscalationPolicy)
    is_active: bool = True
    created_by: str = "system"
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    version: int = 1

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def first_step(self) -> Optional[WorkflowStep]:
        if not self.steps:
            return None
        return min(self.steps, key=lambda step: step.order)

    def next_step(self, current: WorkflowStep) -> Optional[WorkflowStep]:
        """Step with the smallest order strictly greater than the current one"""
        later = [step for step in self.steps if step.order > current.order]
        if not later:
            return None
        return min(later, key=lambda step: step.order)

    def step_requires_counter_approval(self, step: WorkflowStep) -> bool:
        if step.requires_counter_approval is None:
            return self.requires_counter_approval
        return step.requires_counter_approval


# ============================================================================
# Instances and History
# ============================================================================


class WorkflowAction(BaseModel):
    """One recorded event in an instance history"""

    id: str = Field(default_factory=lambda: new_id("act"))
    step_id: str
    action_type: ActionType
    performed_by: str
    performed_at: datetime = Field(default_factory=datetime.now)
    comments: Optional[str] = None
    attachments: List[str] = Field(default_factory=list)
    is_counter_approval: bool = False
    original_action_id: Optional[str] = None
    escalated_to: List[str] = Field(default_factory=list)
    reason_code: Optional[str] = None


class WorkflowInstance(BaseModel):
    """One document's live passage through a route"""

    id: str = Field(default_factory=lambda: new_id("wf"))
    document_id: str
    workflow_route_id: str
    current_step_id: str
    status: InstanceStatus = InstanceStatus.PENDING
    initiated_by: str
    initiated_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    history: List[WorkflowAction] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def find_action(self, action_id: str) -> Optional[WorkflowAction]:
        for action in self.history:
            if action.id == action_id:
                return action
        return None

    def record(self, action: WorkflowAction):
        # history is append-only
        self.history.append(action)


# ============================================================================
# Notifications
# ============================================================================


class NotificationPayload(BaseModel):
    """Queued, undelivered message describing a workflow event"""

    type: NotificationType
    workflow_instance_id: str
    document_id: str
    recipients: List[str]
    subject: str
    message: str
    action_url: str
    priority: NotificationPriority = NotificationPriority.MEDIUM
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)


# ============================================================================
# Processing Results
# ============================================================================


class ApprovalResult(BaseModel):
    """Outcome of an approval or counter-approval call"""

    success: bool
    message: str
    next_step: Optional[WorkflowStep] = None
    escalated: bool = False
    error: Optional[FailureKind] = None

    @classmethod
    def failure(cls, error: FailureKind, message: str) -> "ApprovalResult":
        return cls(success=False, error=error, message=message)


class WorkflowMetrics(BaseModel):
    """Aggregate statistics over all instances"""

    total_instances: int = 0
    instances_by_status: Dict[str, int] = Field(default_factory=dict)
    average_completion_hours: Optional[float] = None
    bottleneck_steps: List[str] = Field(default_factory=list)
    escalation_rate: float = 0.0
    rejection_rate: float = 0.0
    timeout_rate: float = 0.0
    counter_approval_usage: int = 0


# ============================================================================
# API Request Schemas
# ============================================================================


class RouteCreate(BaseModel):
    """Request to register a route (id and timestamps are assigned)"""

    name: str
    description: str = ""
    type: RouteType = RouteType.SEQUENTIAL
    document_type: str
    department: Optional[str] = None
    branch: Optional[str] = None
    steps: List[WorkflowStep] = Field(default_factory=list)
    escalation_paths: List[EscalationPath] = Field(default_factory=list)
    requires_counter_approval: bool = False
    auto_escalation: AutoEscalationPolicy = Field(default_factory=AutoEscalationPolicy)
    is_active: bool = True
    created_by: str = "system"


class RouteUpdate(BaseModel):
    """Partial route update; unset fields are left untouched"""

    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[RouteType] = None
    document_type: Optional[str] = None
    department: Optional[str] = None
    branch: Optional[str] = None
    steps: Optional[List[WorkflowStep]] = None
    escalation_paths: Optional[List[EscalationPath]] = None
    requires_counter_approval: Optional[bool] = None
    auto_escalation: Optional[AutoEscalationPolicy] = None
    is_active: Optional[bool] = None


class RouteClone(BaseModel):
    created_by: str = "system"


class WorkflowInitiate(BaseModel):
    """Request to submit a document into its applicable route"""

    document_id: str
    document_type: str
    initiated_by: str
    department: Optional[str] = None
    branch: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ApprovalSubmit(BaseModel):
    """Approver action on the current step"""

    step_id: str
    action_type: Literal["approve", "reject", "escalate", "request-changes"]
    performed_by: str
    comments: Optional[str] = None
    attachments: List[str] = Field(default_factory=list)


class CounterApprovalSubmit(BaseModel):
    """Counter-approver verdict on a prior approval"""

    original_action_id: str
    action_type: Literal["counter-approve", "reject"]
    performed_by: str
    comments: Optional[str] = None


class TimeoutCheckResponse(BaseModel):
    escalated: int
    checked_at: datetime


# ============================================================================
# Error Schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Standard error response"""

    error: str
    detail: Optional[str] = None


# ============================================================================
# Health Check
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response"""

    status: Literal["healthy", "unhealthy"]
    timestamp: float = Field(default_factory=lambda: datetime.now().timestamp())
    version: str = "1.0.0"
