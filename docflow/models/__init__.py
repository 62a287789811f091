"""Data models, schemas and storage."""

from docflow.models.database import Base, Database
from docflow.models.orm import WorkflowRouteRecord, WorkflowInstanceRecord
from docflow.models.repository import (
    Repository,
    InMemoryRepository,
    SqlRepository,
    ConcurrentModificationError,
)
from docflow.models.schemas import (
    RouteType,
    InstanceStatus,
    ActionType,
    EscalationCondition,
    NotificationType,
    NotificationPriority,
    FailureKind,
    WorkflowStep,
    EscalationPath,
    AutoEscalationPolicy,
    WorkflowRoute,
    WorkflowAction,
    WorkflowInstance,
    NotificationPayload,
    ApprovalResult,
    WorkflowMetrics,
    HealthResponse,
)

__all__ = [
    # Database
    'Base',
    'Database',
    # ORM Models
    'WorkflowRouteRecord',
    'WorkflowInstanceRecord',
    # Repositories
    'Repository',
    'InMemoryRepository',
    'SqlRepository',
    'ConcurrentModificationError',
    # Schemas
    'RouteType',
    'InstanceStatus',
    'ActionType',
    'EscalationCondition',
    'NotificationType',
    'NotificationPriority',
    'FailureKind',
    'WorkflowStep',
    'EscalationPath',
    'AutoEscalationPolicy',
    'WorkflowRoute',
    'WorkflowAction',
    'WorkflowInstance',
    'NotificationPayload',
    'ApprovalResult',
    'WorkflowMetrics',
    'HealthResponse',
]
