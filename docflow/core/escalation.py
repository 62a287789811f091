"""
Escalation resolver.
Looks up the escalation rule for a (step, condition) pair and redirects an
instance along it. Escalation is rule-driven: a missing path is a normal
outcome for the caller to interpret, never an exception.
"""

from typing import Optional, Union
import structlog

from docflow.core.notifications import NotificationEmitter
from docflow.models.schemas import (
    ActionType,
    ApprovalResult,
    EscalationCondition,
    EscalationPath,
    InstanceStatus,
    WorkflowAction,
    WorkflowInstance,
    WorkflowRoute,
)

logger = structlog.get_logger()

SYSTEM_ACTOR = "system"


def find_escalation_path(
    route: WorkflowRoute,
    step_id: str,
    condition: Union[EscalationCondition, str],
) -> Optional[EscalationPath]:
    """First path leaving step_id under condition, or None"""
    condition = EscalationCondition(condition)
    for path in route.escalation_paths:
        if path.from_step_id == step_id and path.condition == condition:
            return path
    return None


class EscalationResolver:
    """Applies escalation paths to instances"""

    def __init__(self, notifier: NotificationEmitter):
        self.notifier = notifier

    def escalate(
        self,
        instance: WorkflowInstance,
        route: WorkflowRoute,
        path: EscalationPath,
        trigger_action: WorkflowAction,
    ) -> ApprovalResult:
        """
        Record a system escalate action, relocate to path.to_step_id when it
        is set, and mark the instance escalated.

        A path without to_step_id still sets the status: the approval gate
        stays where it is and only the audience widens.
        """
        condition = path.condition.value
        escalation_action = WorkflowAction(
            step_id=trigger_action.step_id,
            action_type=ActionType.ESCALATE,
            performed_by=SYSTEM_ACTOR,
            comments=f"Auto-escalated due to {condition}",
            escalated_to=list(path.escalate_to_roles),
            reason_code=condition,
        )
        instance.record(escalation_action)

        from_step_id = instance.current_step_id
        if path.to_step_id:
            instance.current_step_id = path.to_step_id
            target_step = route.get_step(path.to_step_id)
            if target_step is not None:
                self.notifier.escalation(instance, target_step, path, trigger_action)

        instance.status = InstanceStatus.ESCALATED

        logger.info(
            "workflow_escalated",
            workflow_instance_id=instance.id,
            condition=condition,
            from_step_id=from_step_id,
            to_step_id=instance.current_step_id,
            escalate_to_roles=path.escalate_to_roles,
            trigger=trigger_action.action_type.value,
        )

        return ApprovalResult(
            success=True,
            escalated=True,
            message=f"Escalated to {', '.join(path.escalate_to_roles)} due to {condition}",
        )
