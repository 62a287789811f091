"""
Route registry.
Stores approval-process templates, validates them at save time and picks
the route that applies to a submitted document.
"""

from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
import structlog
from pydantic import BaseModel, ValidationError

from docflow.models.repository import InMemoryRepository, Repository
from docflow.models.schemas import (
    AutoEscalationPolicy,
    EscalationCondition,
    EscalationPath,
    RouteType,
    WorkflowRoute,
    WorkflowStep,
    new_id,
)

logger = structlog.get_logger()

# Routes with this document type apply to every document
WILDCARD_DOCUMENT_TYPE = "general"

# Fields callers may not set on create/update
_MANAGED_FIELDS = ("id", "created_at", "updated_at", "version")


class RouteConfigurationError(ValueError):
    """Raised when a route definition cannot be traversed safely"""

    def __init__(self, route_name: str, problems: List[str]):
        self.route_name = route_name
        self.problems = problems
        super().__init__(f"Invalid route '{route_name}': {'; '.join(problems)}")


def validate_route(route: WorkflowRoute):
    """
    Check that a route is safe to run.

    Raises RouteConfigurationError listing every problem found. Soft gaps
    (a timed step with no timeout escalation path) are only logged.
    """
    problems = []

    if not route.steps:
        problems.append("route has no steps")

    step_ids = Counter(step.id for step in route.steps)
    for step_id, count in step_ids.items():
        if count > 1:
            problems.append(f"step id '{step_id}' is used {count} times")

    orders = Counter(step.order for step in route.steps)
    for order, count in orders.items():
        if count > 1:
            problems.append(f"step order {order} is shared by {count} steps")

    for step in route.steps:
        if not step.role_required:
            problems.append(f"step '{step.name}' has no role_required")
        if route.step_requires_counter_approval(step) and not step.counter_approval_roles:
            problems.append(f"step '{step.name}' requires counter-approval but has no counter_approval_roles")

    for path in route.escalation_paths:
        if path.from_step_id not in step_ids:
            problems.append(f"escalation path '{path.id}' starts at unknown step '{path.from_step_id}'")
        if path.to_step_id is not None and path.to_step_id not in step_ids:
            problems.append(f"escalation path '{path.id}' targets unknown step '{path.to_step_id}'")

    if problems:
        logger.warning("route_validation_failed", route_id=route.id, route_name=route.name, problems=problems)
        raise RouteConfigurationError(route.name, problems)

    timeout_sources = {
        path.from_step_id
        for path in route.escalation_paths
        if path.condition == EscalationCondition.TIMEOUT
    }
    for step in route.steps:
        if step.timeout_hours and step.id not in timeout_sources:
            logger.warning(
                "timeout_without_escalation_path",
                route_id=route.id,
                step_id=step.id,
                timeout_hours=step.timeout_hours,
            )


def _as_dict(data: Union[BaseModel, Dict[str, Any]], exclude_unset: bool = False) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump(exclude_unset=exclude_unset)
    return dict(data)


class RouteRegistry:
    """
    Holds WorkflowRoute definitions. Routes are replaced whole by id on
    update, so in-flight instances keep their current_step_id.
    """

    def __init__(self, repository: Optional[Repository[WorkflowRoute]] = None):
        self.repository = repository if repository is not None else InMemoryRepository()

    def create_route(self, data: Union[BaseModel, Dict[str, Any]]) -> WorkflowRoute:
        """Assign id and timestamps, validate and store"""
        fields = {k: v for k, v in _as_dict(data).items() if k not in _MANAGED_FIELDS}
        now = datetime.now()
        route = WorkflowRoute(**fields, id=new_id("route"), created_at=now, updated_at=now)

        validate_route(route)
        self.repository.put(route)

        logger.info(
            "workflow_route_created",
            route_id=route.id,
            name=route.name,
            document_type=route.document_type,
            steps=len(route.steps),
        )
        return route

    def register_route(self, route: WorkflowRoute) -> WorkflowRoute:
        """Store a fully-formed route under its own id (used for seeding)"""
        validate_route(route)
        self.repository.put(route)
        logger.info("workflow_route_registered", route_id=route.id, name=route.name)
        return route

    def update_route(self, route_id: str, updates: Union[BaseModel, Dict[str, Any]]) -> Optional[WorkflowRoute]:
        """
        Merge fields into an existing route. Returns None for an unknown id.

        Raises RouteConfigurationError when the merged route is invalid,
        including explicit nulls on required fields.
        """
        route = self.repository.get(route_id)
        if route is None:
            logger.info("workflow_route_update_missed", route_id=route_id)
            return None

        changes = {k: v for k, v in _as_dict(updates, exclude_unset=True).items() if k not in _MANAGED_FIELDS}
        merged = route.model_dump()
        merged.update(changes)
        merged["updated_at"] = datetime.now()
        merged["version"] = route.version + 1

        try:
            updated = WorkflowRoute.model_validate(merged)
        except ValidationError as e:
            problems = [
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in e.errors()
            ]
            logger.warning("route_update_rejected", route_id=route_id, problems=problems)
            raise RouteConfigurationError(route.name, problems)

        validate_route(updated)
        # Raises ConcurrentModificationError if another update landed first
        self.repository.put(updated, expected_version=route.version)

        logger.info(
            "workflow_route_updated",
            route_id=route_id,
            fields=sorted(changes),
            version=updated.version,
        )
        return updated

    def clone_route(self, route_id: str, created_by: str = "system") -> Optional[WorkflowRoute]:
        """Copy a route under a new id and a '(Copy)' name"""
        route = self.repository.get(route_id)
        if route is None:
            return None

        data = route.model_dump()
        data["name"] = f"{route.name} (Copy)"
        data["created_by"] = created_by
        clone = self.create_route(data)

        logger.info("workflow_route_cloned", source_route_id=route_id, route_id=clone.id)
        return clone

    def get_route(self, route_id: str) -> Optional[WorkflowRoute]:
        return self.repository.get(route_id)

    def list_routes(self) -> List[WorkflowRoute]:
        return self.repository.list()

    def list_active_routes(self) -> List[WorkflowRoute]:
        return self.repository.list(lambda route: route.is_active)

    def find_applicable_route(
        self,
        document_type: str,
        department: Optional[str] = None,
        branch: Optional[str] = None,
    ) -> Optional[WorkflowRoute]:
        """
        First active route, in insertion order, whose document type matches
        (or is the wildcard) and whose department/branch scoping is unset or
        equal. Not priority-ranked.
        """
        for route in self.list_active_routes():
            if route.document_type not in (document_type, WILDCARD_DOCUMENT_TYPE):
                continue
            if route.department and route.department != department:
                continue
            if route.branch and route.branch != branch:
                continue
            return route
        return None

    def seed_default_routes(self):
        """Register the built-in routes that are not already present"""
        for route in default_routes():
            if self.repository.get(route.id) is None:
                self.register_route(route)


def default_routes() -> List[WorkflowRoute]:
    """Built-in academic approval route"""
    hod = WorkflowStep(
        id="step_hod_review",
        name="HOD Review",
        description="Initial review by Head of Department",
        order=1,
        approver_role="HOD",
        role_required=["hod"],
        timeout_hours=48,
        escalation_roles=["program-head"],
        requires_counter_approval=False,
    )
    program_head = WorkflowStep(
        id="step_program_head_approval",
        name="Program Head Approval",
        description="Approval by Program Department Head",
        order=2,
        approver_role="Program Department Head",
        role_required=["program-head"],
        timeout_hours=72,
        escalation_roles=["registrar"],
        requires_counter_approval=True,
        counter_approval_roles=["registrar"],
    )
    registrar = WorkflowStep(
        id="step_registrar_final",
        name="Registrar Final Approval",
        description="Final approval by Registrar",
        order=3,
        approver_role="Registrar",
        role_required=["registrar"],
        timeout_hours=96,
        escalation_roles=["principal"],
        requires_counter_approval=False,
    )

    academic = WorkflowRoute(
        id="route_academic_default",
        name="Academic Document Approval",
        description="Standard workflow for academic document approval",
        type=RouteType.SEQUENTIAL,
        document_type="academic",
        steps=[hod, program_head, registrar],
        escalation_paths=[
            EscalationPath(
                id="esc_hod_reject",
                condition=EscalationCondition.REJECTION,
                from_step_id=hod.id,
                to_step_id=program_head.id,
                escalate_to_roles=["program-head"],
                requires_reason=True,
                notification_template="Document rejected by HOD, escalated to Program Head",
            ),
            EscalationPath(
                id="esc_timeout_hod",
                condition=EscalationCondition.TIMEOUT,
                from_step_id=hod.id,
                to_step_id=program_head.id,
                escalate_to_roles=["program-head"],
                notification_template="HOD review timeout, escalated to Program Head",
            ),
        ],
        requires_counter_approval=True,
        auto_escalation=AutoEscalationPolicy(enabled=True, timeout_hours=72),
        is_active=True,
        created_by="system",
    )
    return [academic]
