"""Aggregate statistics over workflow instances."""

from collections import Counter
from typing import Iterable

from docflow.core.escalation import SYSTEM_ACTOR
from docflow.models.schemas import (
    ActionType,
    EscalationCondition,
    InstanceStatus,
    WorkflowInstance,
    WorkflowMetrics,
)

BOTTLENECK_LIMIT = 3


def _escalations(instance: WorkflowInstance):
    return [
        action for action in instance.history
        if action.action_type == ActionType.ESCALATE and action.performed_by == SYSTEM_ACTOR
    ]


def compute_metrics(instances: Iterable[WorkflowInstance]) -> WorkflowMetrics:
    """
    Rates are fractions of all instances. Bottleneck steps are the steps
    that most often triggered an escalation.
    """
    instances = list(instances)
    total = len(instances)
    if total == 0:
        return WorkflowMetrics()

    by_status = Counter(instance.status.value for instance in instances)

    durations = [
        (instance.completed_at - instance.initiated_at).total_seconds() / 3600
        for instance in instances
        if instance.status == InstanceStatus.COMPLETED and instance.completed_at
    ]
    average_hours = round(sum(durations) / len(durations), 2) if durations else None

    escalated = 0
    timed_out = 0
    escalation_sources = Counter()
    counter_approvals = 0
    for instance in instances:
        escalations = _escalations(instance)
        if escalations:
            escalated += 1
        if any(action.reason_code == EscalationCondition.TIMEOUT.value for action in escalations):
            timed_out += 1
        escalation_sources.update(action.step_id for action in escalations)
        counter_approvals += sum(1 for action in instance.history if action.is_counter_approval)

    return WorkflowMetrics(
        total_instances=total,
        instances_by_status=dict(by_status),
        average_completion_hours=average_hours,
        bottleneck_steps=[step_id for step_id, _ in escalation_sources.most_common(BOTTLENECK_LIMIT)],
        escalation_rate=round(escalated / total, 4),
        rejection_rate=round(by_status.get(InstanceStatus.REJECTED.value, 0) / total, 4),
        timeout_rate=round(timed_out / total, 4),
        counter_approval_usage=counter_approvals,
    )
