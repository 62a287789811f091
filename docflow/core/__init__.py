"""Core business logic components."""

from docflow.core.workflow_engine import WorkflowEngine, NoApplicableRouteError
from docflow.core.route_registry import RouteRegistry, RouteConfigurationError, validate_route
from docflow.core.escalation import EscalationResolver, find_escalation_path
from docflow.core.notifications import NotificationEmitter, NotificationQueue
from docflow.core.roles import RoleResolver, StaticRoleResolver, AllowAllRoleResolver
from docflow.core.timeout_manager import TimeoutManager

__all__ = [
    'WorkflowEngine',
    'NoApplicableRouteError',
    'RouteRegistry',
    'RouteConfigurationError',
    'validate_route',
    'EscalationResolver',
    'find_escalation_path',
    'NotificationEmitter',
    'NotificationQueue',
    'RoleResolver',
    'StaticRoleResolver',
    'AllowAllRoleResolver',
    'TimeoutManager',
]
