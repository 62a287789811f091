"""
Bi-directional approval workflow engine.
Walks document instances through role-gated route steps, handling
approval, rejection, manual escalation, change requests, counter-approval
and step timeouts.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union
import threading
import structlog
from pydantic import BaseModel

from docflow.core.escalation import EscalationResolver, SYSTEM_ACTOR, find_escalation_path
from docflow.core.metrics import compute_metrics
from docflow.core.notifications import NotificationEmitter, NotificationQueue
from docflow.core.roles import RoleResolver
from docflow.core.route_registry import RouteRegistry
from docflow.models.repository import ConcurrentModificationError, InMemoryRepository, Repository
from docflow.models.schemas import (
    ACTIVE_STATUSES,
    APPROVER_ACTIONS,
    COUNTER_APPROVER_ACTIONS,
    ActionType,
    ApprovalResult,
    EscalationCondition,
    EscalationPath,
    FailureKind,
    InstanceStatus,
    NotificationPayload,
    WorkflowAction,
    WorkflowInstance,
    WorkflowMetrics,
    WorkflowRoute,
    WorkflowStep,
)

logger = structlog.get_logger()


class NoApplicableRouteError(LookupError):
    """Raised when a document is submitted and no active route matches it"""

    pass


class _InstanceLock:
    """Per-instance lock, dropped once nobody holds or waits on it"""

    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.RLock()
        self.holders = 0


class WorkflowEngine:
    """
    Approval state machine over a route registry and an instance store.

    Every mutation of an instance runs under that instance's lock, so the
    history append and the status/step update land together. The lock only
    covers this process: writes also compare-and-swap on the instance
    version, which is what keeps engines sharing a database apart.
    """

    def __init__(
        self,
        role_resolver: RoleResolver,
        routes: Optional[RouteRegistry] = None,
        instances: Optional[Repository[WorkflowInstance]] = None,
        notifications: Optional[NotificationQueue] = None,
        use_route_timeout_fallback: bool = False,
        action_url_prefix: str = "",
    ):
        self.roles = role_resolver
        self.routes = routes if routes is not None else RouteRegistry()
        self.instances = instances if instances is not None else InMemoryRepository()
        self.notifications = notifications if notifications is not None else NotificationQueue()
        self.notifier = NotificationEmitter(self.notifications, url_prefix=action_url_prefix)
        self.escalations = EscalationResolver(self.notifier)
        self.use_route_timeout_fallback = use_route_timeout_fallback

        self._locks: Dict[str, _InstanceLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _locked(self, instance_id: str):
        with self._locks_guard:
            entry = self._locks.get(instance_id)
            if entry is None:
                entry = self._locks[instance_id] = _InstanceLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if not entry.holders:
                    del self._locks[instance_id]

    def _save(self, instance: WorkflowInstance):
        expected_version = instance.version
        instance.version += 1
        self.instances.put(instance, expected_version=expected_version)

    @contextmanager
    def _transaction(self, instance: WorkflowInstance):
        """
        Save the instance after the block and only then release the
        notifications it emitted. Raises ConcurrentModificationError, with
        nothing queued, if another writer saved the instance first.
        """
        with self.notifier.deferred():
            yield
            self._save(instance)

    def _conflict(self, instance_id: str, operation: str) -> ApprovalResult:
        logger.warning("workflow_write_conflict", workflow_instance_id=instance_id, operation=operation)
        return ApprovalResult.failure(
            FailureKind.CONFLICT,
            "Workflow was modified concurrently. Please retry.",
        )

    def _can_act(self, user_id: str, step: WorkflowStep) -> bool:
        return self.roles.has_any_role(user_id, step.role_required)

    # ========================================================================
    # Route Management
    # ========================================================================

    def create_workflow_route(self, route: Union[BaseModel, Dict[str, Any]]) -> WorkflowRoute:
        return self.routes.create_route(route)

    def update_workflow_route(
        self, route_id: str, updates: Union[BaseModel, Dict[str, Any]]
    ) -> Optional[WorkflowRoute]:
        return self.routes.update_route(route_id, updates)

    def clone_workflow_route(self, route_id: str, created_by: str = "system") -> Optional[WorkflowRoute]:
        return self.routes.clone_route(route_id, created_by)

    # ========================================================================
    # Instance Lifecycle
    # ========================================================================

    def initiate_workflow(
        self,
        document_id: str,
        document_type: str,
        initiated_by: str,
        department: Optional[str] = None,
        branch: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkflowInstance:
        """
        Start a document on its applicable route, at the lowest-order step.

        Raises NoApplicableRouteError when no active route matches.
        """
        route = self.routes.find_applicable_route(document_type, department, branch)
        if route is None:
            logger.warning(
                "no_applicable_route",
                document_id=document_id,
                document_type=document_type,
                department=department,
                branch=branch,
            )
            raise NoApplicableRouteError(
                f"No applicable workflow route found for document type '{document_type}'"
            )

        first_step = route.first_step()
        context = dict(metadata or {})
        context.update({
            "document_type": document_type,
            "department": department,
            "branch": branch,
            "route_name": route.name,
        })

        instance = WorkflowInstance(
            document_id=document_id,
            workflow_route_id=route.id,
            current_step_id=first_step.id,
            status=InstanceStatus.PENDING,
            initiated_by=initiated_by,
            metadata=context,
        )
        self.instances.put(instance)
        self.notifier.approval_request(instance, first_step)

        logger.info(
            "workflow_initiated",
            workflow_instance_id=instance.id,
            document_id=document_id,
            route_id=route.id,
            first_step_id=first_step.id,
            initiated_by=initiated_by,
        )
        return instance

    # ========================================================================
    # Approval Processing
    # ========================================================================

    def process_approval(
        self,
        instance_id: str,
        step_id: str,
        action_type: Union[ActionType, str],
        performed_by: str,
        comments: Optional[str] = None,
        attachments: Optional[List[str]] = None,
    ) -> ApprovalResult:
        """
        Apply an approver action to the instance's current step.

        Lookup and permission failures return before anything is recorded.
        Past those checks the action is always appended to history, even
        when the routing that follows fails (manual escalation with no path).
        """
        try:
            action_type = ActionType(action_type)
        except ValueError:
            return ApprovalResult.failure(FailureKind.INVALID_STATE, f"Invalid action type: {action_type}")
        if action_type not in APPROVER_ACTIONS:
            return ApprovalResult.failure(FailureKind.INVALID_STATE, f"Invalid action type: {action_type.value}")

        with self._locked(instance_id):
            instance = self.instances.get(instance_id)
            if instance is None:
                return ApprovalResult.failure(FailureKind.NOT_FOUND, "Workflow instance not found")

            route = self.routes.get_route(instance.workflow_route_id)
            if route is None:
                return ApprovalResult.failure(FailureKind.NOT_FOUND, "Workflow route not found")

            step = route.get_step(step_id)
            if step is None:
                return ApprovalResult.failure(FailureKind.NOT_FOUND, "Workflow step not found")

            if not self._can_act(performed_by, step):
                logger.warning(
                    "approval_permission_denied",
                    workflow_instance_id=instance_id,
                    step_id=step_id,
                    performed_by=performed_by,
                )
                return ApprovalResult.failure(
                    FailureKind.PERMISSION_DENIED,
                    "User does not have permission to perform this action",
                )

            if instance.is_terminal:
                return ApprovalResult.failure(
                    FailureKind.INVALID_STATE,
                    f"Workflow is already {instance.status.value}",
                )

            if instance.current_step_id != step_id:
                return ApprovalResult.failure(
                    FailureKind.INVALID_STATE,
                    f"Step '{step.name}' is not the current step of this workflow",
                )

            action = WorkflowAction(
                step_id=step_id,
                action_type=action_type,
                performed_by=performed_by,
                comments=comments,
                attachments=list(attachments or []),
            )
            instance.record(action)

            try:
                with self._transaction(instance):
                    if action_type == ActionType.APPROVE:
                        result = self._handle_approval(instance, route, step, action)
                    elif action_type == ActionType.REJECT:
                        result = self._handle_rejection(instance, route, step, action)
                    elif action_type == ActionType.ESCALATE:
                        result = self._handle_manual_escalation(instance, route, step, action)
                    else:
                        result = self._handle_change_request(instance, route, step, action)
            except ConcurrentModificationError:
                return self._conflict(instance_id, "approval")

        logger.info(
            "approval_processed",
            workflow_instance_id=instance_id,
            step_id=step_id,
            action_type=action_type.value,
            performed_by=performed_by,
            success=result.success,
            status=instance.status.value,
            current_step_id=instance.current_step_id,
        )
        return result

    def process_counter_approval(
        self,
        instance_id: str,
        original_action_id: str,
        action_type: Union[ActionType, str],
        performed_by: str,
        comments: Optional[str] = None,
    ) -> ApprovalResult:
        """
        Ratify or overturn a prior approval on a counter-approved step.

        A counter-approval advances the step the original approval was
        recorded against; a counter-rejection has the same consequences as
        an approver's rejection.
        """
        try:
            action_type = ActionType(action_type)
        except ValueError:
            return ApprovalResult.failure(FailureKind.INVALID_STATE, f"Invalid action type: {action_type}")
        if action_type not in COUNTER_APPROVER_ACTIONS:
            return ApprovalResult.failure(
                FailureKind.INVALID_STATE,
                f"Invalid counter-approval action: {action_type.value}",
            )

        with self._locked(instance_id):
            instance = self.instances.get(instance_id)
            if instance is None:
                return ApprovalResult.failure(FailureKind.NOT_FOUND, "Workflow instance not found")

            original_action = instance.find_action(original_action_id)
            if original_action is None:
                return ApprovalResult.failure(FailureKind.NOT_FOUND, "Original action not found")

            route = self.routes.get_route(instance.workflow_route_id)
            if route is None:
                return ApprovalResult.failure(FailureKind.NOT_FOUND, "Workflow route not found")

            step = route.get_step(original_action.step_id)
            if step is None:
                return ApprovalResult.failure(FailureKind.NOT_FOUND, "Workflow step not found")

            if not route.step_requires_counter_approval(step):
                return ApprovalResult.failure(
                    FailureKind.INVALID_STATE,
                    "Counter-approval not required for this step",
                )

            if not self.roles.has_any_role(performed_by, step.counter_approval_roles):
                logger.warning(
                    "counter_approval_permission_denied",
                    workflow_instance_id=instance_id,
                    step_id=step.id,
                    performed_by=performed_by,
                )
                return ApprovalResult.failure(
                    FailureKind.PERMISSION_DENIED,
                    "User does not have permission to counter-approve",
                )

            if original_action.action_type != ActionType.APPROVE or original_action.is_counter_approval:
                return ApprovalResult.failure(
                    FailureKind.INVALID_STATE,
                    "Only approve actions can be counter-approved",
                )

            if any(action.original_action_id == original_action_id for action in instance.history):
                return ApprovalResult.failure(
                    FailureKind.INVALID_STATE,
                    "Approval has already been counter-processed",
                )

            if instance.is_terminal:
                return ApprovalResult.failure(
                    FailureKind.INVALID_STATE,
                    f"Workflow is already {instance.status.value}",
                )

            if instance.current_step_id != step.id:
                return ApprovalResult.failure(
                    FailureKind.INVALID_STATE,
                    "Workflow has moved on from the approved step",
                )

            counter_action = WorkflowAction(
                step_id=original_action.step_id,
                action_type=action_type,
                performed_by=performed_by,
                comments=comments,
                is_counter_approval=True,
                original_action_id=original_action_id,
            )
            instance.record(counter_action)

            try:
                with self._transaction(instance):
                    if action_type == ActionType.COUNTER_APPROVE:
                        result = self._move_to_next_step(instance, route, step)
                    else:
                        result = self._handle_rejection(instance, route, step, counter_action)
            except ConcurrentModificationError:
                return self._conflict(instance_id, "counter_approval")

        logger.info(
            "counter_approval_processed",
            workflow_instance_id=instance_id,
            original_action_id=original_action_id,
            action_type=action_type.value,
            performed_by=performed_by,
            status=instance.status.value,
            current_step_id=instance.current_step_id,
        )
        return result

    def _handle_approval(
        self, instance: WorkflowInstance, route: WorkflowRoute, step: WorkflowStep, action: WorkflowAction
    ) -> ApprovalResult:
        if route.step_requires_counter_approval(step):
            # Hold the step until a counter-approver ratifies this action
            instance.status = InstanceStatus.PENDING
            self.notifier.counter_approval_required(instance, step, action)
            return ApprovalResult(
                success=True,
                message="Approval recorded. Counter-approval required before proceeding.",
            )

        return self._move_to_next_step(instance, route, step)

    def _handle_rejection(
        self, instance: WorkflowInstance, route: WorkflowRoute, step: WorkflowStep, action: WorkflowAction
    ) -> ApprovalResult:
        path = find_escalation_path(route, step.id, EscalationCondition.REJECTION)
        if path is not None:
            return self.escalations.escalate(instance, route, path, action)

        instance.status = InstanceStatus.REJECTED
        instance.completed_at = datetime.now()
        self.notifier.rejection(instance, step, action)

        logger.info(
            "workflow_rejected",
            workflow_instance_id=instance.id,
            step_id=step.id,
            rejected_by=action.performed_by,
        )
        return ApprovalResult(success=True, message="Document rejected. Workflow terminated.")

    def _handle_manual_escalation(
        self, instance: WorkflowInstance, route: WorkflowRoute, step: WorkflowStep, action: WorkflowAction
    ) -> ApprovalResult:
        path = find_escalation_path(route, step.id, EscalationCondition.MANUAL)
        if path is None:
            return ApprovalResult.failure(
                FailureKind.INVALID_STATE,
                "No escalation path available for manual escalation",
            )

        return self.escalations.escalate(instance, route, path, action)

    def _handle_change_request(
        self, instance: WorkflowInstance, route: WorkflowRoute, step: WorkflowStep, action: WorkflowAction
    ) -> ApprovalResult:
        # The document stays on this step until it is resubmitted
        instance.status = InstanceStatus.PENDING
        self.notifier.change_request(instance, step, action)
        return ApprovalResult(success=True, message="Change request sent to document initiator")

    def _move_to_next_step(
        self, instance: WorkflowInstance, route: WorkflowRoute, step: WorkflowStep
    ) -> ApprovalResult:
        next_step = route.next_step(step)

        if next_step is not None:
            instance.current_step_id = next_step.id
            instance.status = InstanceStatus.IN_PROGRESS
            self.notifier.approval_request(instance, next_step)
            return ApprovalResult(
                success=True,
                next_step=next_step,
                message=f"Approved. Moved to next step: {next_step.name}",
            )

        instance.status = InstanceStatus.COMPLETED
        instance.completed_at = datetime.now()
        self.notifier.completion(instance)

        logger.info(
            "workflow_completed",
            workflow_instance_id=instance.id,
            document_id=instance.document_id,
            actions=len(instance.history),
        )
        return ApprovalResult(success=True, message="Document fully approved. Workflow completed.")

    # ========================================================================
    # Timeout Handling
    # ========================================================================

    def _timeout_hours_for(self, route: WorkflowRoute, step: WorkflowStep) -> Optional[float]:
        if step.timeout_hours:
            return step.timeout_hours
        if self.use_route_timeout_fallback and route.auto_escalation.enabled:
            return route.auto_escalation.timeout_hours
        return None

    @staticmethod
    def _step_started_at(instance: WorkflowInstance, step_id: str) -> datetime:
        """First action recorded on the step, or the initiation time"""
        for action in instance.history:
            if action.step_id == step_id:
                return action.performed_at
        return instance.initiated_at

    def check_timeouts(self, now: Optional[datetime] = None) -> int:
        """
        Escalate pending/in-progress instances whose current step has been
        open longer than its timeout. Returns how many were escalated.

        An overdue step with no timeout escalation path is left alone.
        """
        now = now or datetime.now()
        escalated = 0

        candidates = self.instances.list(lambda instance: instance.status in ACTIVE_STATUSES)
        for candidate in candidates:
            with self._locked(candidate.id):
                # Re-read under the lock, an approval may have landed meanwhile
                instance = self.instances.get(candidate.id)
                if instance is None or instance.status not in ACTIVE_STATUSES:
                    continue

                route = self.routes.get_route(instance.workflow_route_id)
                if route is None:
                    continue

                step = route.get_step(instance.current_step_id)
                if step is None:
                    continue

                timeout_hours = self._timeout_hours_for(route, step)
                if not timeout_hours:
                    continue

                started_at = self._step_started_at(instance, step.id)
                if now <= started_at + timedelta(hours=timeout_hours):
                    continue

                path = find_escalation_path(route, step.id, EscalationCondition.TIMEOUT)
                if path is None:
                    logger.warning(
                        "timeout_escalation_missing",
                        workflow_instance_id=instance.id,
                        route_id=route.id,
                        step_id=step.id,
                        timeout_hours=timeout_hours,
                    )
                    continue

                try:
                    with self._transaction(instance):
                        self._handle_timeout(instance, route, step, path, timeout_hours)
                except ConcurrentModificationError:
                    # Another engine acted on it first; the next scan re-reads
                    self._conflict(instance.id, "timeout")
                    continue
                escalated += 1

        if escalated:
            logger.info("timeouts_escalated", count=escalated, scanned=len(candidates))
        return escalated

    def _handle_timeout(
        self,
        instance: WorkflowInstance,
        route: WorkflowRoute,
        step: WorkflowStep,
        path: EscalationPath,
        timeout_hours: float,
    ):
        # Trigger for the escalation record only, not appended itself
        timeout_action = WorkflowAction(
            step_id=step.id,
            action_type=ActionType.ESCALATE,
            performed_by=SYSTEM_ACTOR,
            comments=f"Escalated due to timeout ({timeout_hours:g} hours)",
            reason_code=EscalationCondition.TIMEOUT.value,
        )
        self.escalations.escalate(instance, route, path, timeout_action)

    # ========================================================================
    # Queries
    # ========================================================================

    def get_workflow_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        """A snapshot; changing it does not touch the stored instance"""
        return self.instances.get(instance_id)

    def get_workflow_route(self, route_id: str) -> Optional[WorkflowRoute]:
        return self.routes.get_route(route_id)

    def get_all_workflow_routes(self) -> List[WorkflowRoute]:
        return self.routes.list_routes()

    def get_all_active_routes(self) -> List[WorkflowRoute]:
        return self.routes.list_active_routes()

    def get_instances_by_user(self, user_id: str) -> List[WorkflowInstance]:
        """Instances the user initiated or acted on"""
        return self.instances.list(
            lambda instance: instance.initiated_by == user_id
            or any(action.performed_by == user_id for action in instance.history)
        )

    def get_pending_approvals(self, user_id: str) -> List[WorkflowInstance]:
        """Pending/in-progress instances whose current step the user may act on"""
        pending = []
        for instance in self.instances.list(lambda instance: instance.status in ACTIVE_STATUSES):
            route = self.routes.get_route(instance.workflow_route_id)
            if route is None:
                continue
            step = route.get_step(instance.current_step_id)
            if step is None:
                continue
            if self._can_act(user_id, step):
                pending.append(instance)
        return pending

    def get_notification_queue(self) -> List[NotificationPayload]:
        """Drain the outbound queue; a second call returns only newer payloads"""
        return self.notifications.drain()

    def get_workflow_metrics(self) -> WorkflowMetrics:
        return compute_metrics(self.instances.list())
