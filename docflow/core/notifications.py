"""
Notification emitter.
Builds role-targeted payloads for each workflow transition and appends them
to an outbound queue. Delivery belongs to whoever drains the queue.
"""

from contextlib import contextmanager
import threading
from typing import List
import structlog

from docflow.models.schemas import (
    EscalationPath,
    NotificationPayload,
    NotificationPriority,
    NotificationType,
    WorkflowAction,
    WorkflowInstance,
    WorkflowStep,
)

logger = structlog.get_logger()


class NotificationQueue:
    """
    Append-only outbound queue with read-once draining.
    Single consumer: drain() hands every queued payload to one caller.
    """

    def __init__(self):
        self._items: List[NotificationPayload] = []
        self._lock = threading.Lock()

    def push(self, notification: NotificationPayload):
        with self._lock:
            self._items.append(notification)

    def drain(self) -> List[NotificationPayload]:
        """Return all queued payloads and clear the queue atomically"""
        with self._lock:
            items, self._items = self._items, []
        return items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class NotificationEmitter:
    """
    One method per notification kind. Each payload carries enough metadata
    for a delivery worker to render it without calling back into the engine.
    """

    def __init__(self, queue: NotificationQueue = None, url_prefix: str = ""):
        self.queue = queue if queue is not None else NotificationQueue()
        self.url_prefix = url_prefix.rstrip("/")
        self._local = threading.local()

    @contextmanager
    def deferred(self):
        """
        Hold payloads emitted by this thread inside the block and queue them
        only when the block exits cleanly. On an exception they are dropped.
        """
        held: List[NotificationPayload] = []
        self._local.held = held
        try:
            yield
        finally:
            self._local.held = None

        for notification in held:
            self._push(notification)

    def _url(self, path: str) -> str:
        return f"{self.url_prefix}{path}"

    def _emit(self, notification: NotificationPayload):
        held = getattr(self._local, "held", None)
        if held is not None:
            held.append(notification)
            return
        self._push(notification)

    def _push(self, notification: NotificationPayload):
        self.queue.push(notification)
        logger.debug(
            "notification_queued",
            type=notification.type.value,
            workflow_instance_id=notification.workflow_instance_id,
            recipients=notification.recipients,
        )

    def approval_request(self, instance: WorkflowInstance, step: WorkflowStep):
        self._emit(NotificationPayload(
            type=NotificationType.APPROVAL_REQUEST,
            workflow_instance_id=instance.id,
            document_id=instance.document_id,
            recipients=list(step.role_required),
            subject=f"Approval Required: {instance.metadata.get('route_name')}",
            message=f"A document requires your approval in step: {step.name}",
            action_url=self._url(f"/workflow/approve/{instance.id}"),
            priority=NotificationPriority.MEDIUM,
            metadata={
                "step_id": step.id,
                "step_name": step.name,
                "document_type": instance.metadata.get("document_type"),
            },
        ))

    def counter_approval_required(
        self,
        instance: WorkflowInstance,
        step: WorkflowStep,
        original_action: WorkflowAction,
    ):
        if not step.counter_approval_roles:
            # Route validation normally prevents this
            logger.warning(
                "counter_approval_without_roles",
                workflow_instance_id=instance.id,
                step_id=step.id,
            )
            return

        self._emit(NotificationPayload(
            type=NotificationType.COUNTER_APPROVAL_REQUIRED,
            workflow_instance_id=instance.id,
            document_id=instance.document_id,
            recipients=list(step.counter_approval_roles),
            subject=f"Counter-Approval Required: {instance.metadata.get('route_name')}",
            message="A document has been approved and requires counter-approval verification",
            action_url=self._url(f"/workflow/counter-approve/{instance.id}/{original_action.id}"),
            priority=NotificationPriority.HIGH,
            metadata={
                "step_id": step.id,
                "step_name": step.name,
                "original_action_id": original_action.id,
                "original_approver": original_action.performed_by,
            },
        ))

    def escalation(
        self,
        instance: WorkflowInstance,
        step: WorkflowStep,
        path: EscalationPath,
        trigger_action: WorkflowAction,
    ):
        condition = path.condition.value
        message = path.notification_template or (
            f"A document has been escalated to your attention due to {condition}"
        )
        self._emit(NotificationPayload(
            type=NotificationType.ESCALATION,
            workflow_instance_id=instance.id,
            document_id=instance.document_id,
            recipients=list(path.escalate_to_roles),
            subject=f"Escalated: {instance.metadata.get('route_name')}",
            message=message,
            action_url=self._url(f"/workflow/approve/{instance.id}"),
            priority=NotificationPriority.URGENT,
            metadata={
                "escalation_reason": condition,
                "escalation_path_id": path.id,
                "requires_reason": path.requires_reason,
                "target_step": step.name,
                "trigger_action": trigger_action.action_type.value,
                "triggered_by": trigger_action.performed_by,
            },
        ))

    def rejection(self, instance: WorkflowInstance, step: WorkflowStep, action: WorkflowAction):
        self._emit(NotificationPayload(
            type=NotificationType.APPROVAL_REJECTED,
            workflow_instance_id=instance.id,
            document_id=instance.document_id,
            recipients=[instance.initiated_by],
            subject=f"Document Rejected: {instance.metadata.get('route_name')}",
            message=f"Your document has been rejected at step: {step.name}",
            action_url=self._url(f"/documents/{instance.document_id}"),
            priority=NotificationPriority.HIGH,
            metadata={
                "rejected_by": action.performed_by,
                "rejection_comments": action.comments,
                "step_name": step.name,
                "counter_rejection": action.is_counter_approval,
            },
        ))

    def completion(self, instance: WorkflowInstance):
        self._emit(NotificationPayload(
            type=NotificationType.APPROVAL_GRANTED,
            workflow_instance_id=instance.id,
            document_id=instance.document_id,
            recipients=[instance.initiated_by],
            subject=f"Document Approved: {instance.metadata.get('route_name')}",
            message="Your document has been fully approved and the workflow is complete",
            action_url=self._url(f"/documents/{instance.document_id}"),
            priority=NotificationPriority.MEDIUM,
            metadata={
                "completed_at": instance.completed_at.isoformat() if instance.completed_at else None,
                "total_actions": len(instance.history),
            },
        ))

    def change_request(self, instance: WorkflowInstance, step: WorkflowStep, action: WorkflowAction):
        # Change requests reuse the approval-request type, addressed to the initiator
        self._emit(NotificationPayload(
            type=NotificationType.APPROVAL_REQUEST,
            workflow_instance_id=instance.id,
            document_id=instance.document_id,
            recipients=[instance.initiated_by],
            subject=f"Changes Requested: {instance.metadata.get('route_name')}",
            message=f"Changes have been requested for your document at step: {step.name}",
            action_url=self._url(f"/documents/{instance.document_id}/edit"),
            priority=NotificationPriority.MEDIUM,
            metadata={
                "requested_by": action.performed_by,
                "change_comments": action.comments,
                "step_name": step.name,
            },
        ))
