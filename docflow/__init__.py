"""Bi-directional document approval workflow service."""

# Core components
from docflow.core import (
    WorkflowEngine,
    NoApplicableRouteError,
    RouteRegistry,
    RouteConfigurationError,
    NotificationQueue,
    RoleResolver,
    StaticRoleResolver,
    AllowAllRoleResolver,
    TimeoutManager,
)

# Models and schemas
from docflow.models import (
    Database,
    InMemoryRepository,
    SqlRepository,
    WorkflowRoute,
    WorkflowStep,
    EscalationPath,
    WorkflowInstance,
    WorkflowAction,
    NotificationPayload,
    ApprovalResult,
)

# Configuration
from docflow.config import settings

__version__ = "1.0.0"

__all__ = [
    # Core
    'WorkflowEngine',
    'NoApplicableRouteError',
    'RouteRegistry',
    'RouteConfigurationError',
    'NotificationQueue',
    'RoleResolver',
    'StaticRoleResolver',
    'AllowAllRoleResolver',
    'TimeoutManager',
    # Models
    'Database',
    'InMemoryRepository',
    'SqlRepository',
    'WorkflowRoute',
    'WorkflowStep',
    'EscalationPath',
    'WorkflowInstance',
    'WorkflowAction',
    'NotificationPayload',
    'ApprovalResult',
    # Config
    'settings',
]
