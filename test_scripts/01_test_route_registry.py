#!/usr/bin/env python3
"""
Test: Route Registry
Purpose: Verify route storage, save-time validation and route selection

Tests:
- Created routes get a fresh id and timestamps
- Broken routes are rejected when saved
- Updates merge fields and bump the version
- Explicit nulls on required fields and racing updates are refused
- In-flight instances keep their step across route updates
- Cloning copies steps under a new id
- Applicable route lookup honours type, wildcard, scoping and is_active
- Default academic route seeding
"""

import sys

from fixtures import (
    print_test_header, print_pass, print_fail, print_summary,
    make_step, two_step_route_data, escalation, make_engine, engine_with_route, start,
    assert_equal, assert_not_equal, assert_true, assert_false, assert_in,
    assert_is_none, assert_raises
)

from docflow.core.route_registry import (
    RouteConfigurationError, RouteRegistry, default_routes, validate_route
)
from docflow.core.workflow_engine import NoApplicableRouteError
from docflow.models.repository import ConcurrentModificationError, InMemoryRepository
from docflow.models.schemas import RouteUpdate, WorkflowRoute, WorkflowStep


# ============================================================================
# Test: Route Creation
# ============================================================================

def test_create_assigns_identity():
    """Caller-supplied id and version are replaced"""
    registry = RouteRegistry()
    data = two_step_route_data()
    data["id"] = "my-own-id"
    data["version"] = 9

    route = registry.create_route(data)

    assert_not_equal(route.id, "my-own-id")
    assert_true(route.id.startswith("route_"))
    assert_equal(route.version, 1)
    assert_equal(route.created_at, route.updated_at)
    assert_equal(registry.get_route(route.id).name, "Two Step Review")


def test_create_rejects_order_ties():
    """Two steps sharing an order make next-step ambiguous"""
    registry = RouteRegistry()
    data = two_step_route_data()
    data["steps"] = [
        make_step("a", 1, ["hod"]),
        make_step("b", 1, ["registrar"]),
    ]

    error = assert_raises(RouteConfigurationError, registry.create_route, data)

    assert_true(any("order 1" in problem for problem in error.problems), str(error.problems))
    assert_equal(len(registry.list_routes()), 0, "Rejected route must not be stored")


def test_create_rejects_unknown_escalation_target():
    registry = RouteRegistry()
    data = two_step_route_data(escalation_paths=[escalation("rejection", "hod", "nowhere")])

    error = assert_raises(RouteConfigurationError, registry.create_route, data)
    assert_true(any("nowhere" in problem for problem in error.problems))


def test_create_rejects_counter_approval_without_roles():
    """A counter-approved step nobody can counter-approve would hang forever"""
    registry = RouteRegistry()
    data = two_step_route_data()
    data["steps"][0] = make_step("hod", 1, ["hod"], requires_counter_approval=True)

    assert_raises(RouteConfigurationError, registry.create_route, data)


def test_create_rejects_empty_routes_and_roles():
    registry = RouteRegistry()

    assert_raises(RouteConfigurationError, registry.create_route, {
        "name": "Empty", "document_type": "academic", "steps": [],
    })

    nobody = WorkflowStep(id="x", name="Nobody", order=1, role_required=[])
    assert_raises(RouteConfigurationError, registry.create_route, {
        "name": "No Roles", "document_type": "academic", "steps": [nobody],
    })


def test_route_level_counter_approval_is_inherited():
    """A step with requires_counter_approval unset follows the route flag"""
    step = make_step("hod", 1, ["hod"], counter_approval_roles=["registrar"])
    route = WorkflowRoute(
        name="Inherited", document_type="academic", steps=[step], requires_counter_approval=True
    )

    validate_route(route)
    assert_true(route.step_requires_counter_approval(step))

    step.requires_counter_approval = False
    assert_false(route.step_requires_counter_approval(step), "Explicit step flag wins")


# ============================================================================
# Test: Route Updates
# ============================================================================

def test_update_merges_and_bumps_version():
    registry = RouteRegistry()
    route = registry.create_route(two_step_route_data())

    updated = registry.update_route(route.id, RouteUpdate(name="Renamed", is_active=False))

    assert_equal(updated.id, route.id)
    assert_equal(updated.name, "Renamed")
    assert_false(updated.is_active)
    assert_equal(updated.version, 2)
    assert_equal(updated.document_type, route.document_type, "Unset fields are kept")
    assert_equal([s.id for s in updated.steps], ["hod", "registrar"])
    assert_equal(updated.created_at, route.created_at)


def test_update_unknown_route_returns_none():
    registry = RouteRegistry()
    assert_is_none(registry.update_route("route_missing", {"name": "x"}))


def test_invalid_update_keeps_stored_route():
    registry = RouteRegistry()
    route = registry.create_route(two_step_route_data())

    assert_raises(RouteConfigurationError, registry.update_route, route.id, {"steps": []})

    stored = registry.get_route(route.id)
    assert_equal(len(stored.steps), 2)
    assert_equal(stored.version, 1)


def test_null_update_is_a_configuration_error():
    registry = RouteRegistry()
    route = registry.create_route(two_step_route_data(department="cs"))

    error = assert_raises(RouteConfigurationError, registry.update_route, route.id, RouteUpdate(name=None))
    assert_in("name", str(error))
    assert_raises(RouteConfigurationError, registry.update_route, route.id, {"steps": None})

    stored = registry.get_route(route.id)
    assert_equal(stored.name, route.name)
    assert_equal(stored.version, 1)

    # Optional scoping can still be cleared
    updated = registry.update_route(route.id, RouteUpdate(department=None))
    assert_is_none(updated.department)


class RacingRepository(InMemoryRepository):
    """Runs a callback once, right after the next read"""

    def __init__(self):
        super().__init__()
        self.after_get = None

    def get(self, entity_id):
        entity = super().get(entity_id)
        callback, self.after_get = self.after_get, None
        if callback is not None:
            callback()
        return entity


def test_racing_updates_are_refused():
    repository = RacingRepository()
    registry = RouteRegistry(repository)
    route = registry.create_route(two_step_route_data())

    repository.after_get = lambda: registry.update_route(route.id, {"name": "First"})
    assert_raises(ConcurrentModificationError, registry.update_route, route.id, {"name": "Second"})

    stored = registry.get_route(route.id)
    assert_equal(stored.name, "First")
    assert_equal(stored.version, 2)


def test_update_does_not_move_in_flight_instances():
    engine, route = engine_with_route(two_step_route_data())
    instance = start(engine)

    engine.update_workflow_route(route.id, {"description": "Revised"})

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.current_step_id, "hod")
    result = engine.process_approval(instance.id, "hod", "approve", "hodUser")
    assert_true(result.success, result.message)


# ============================================================================
# Test: Cloning
# ============================================================================

def test_clone_route():
    registry = RouteRegistry()
    route = registry.create_route(two_step_route_data())

    clone = registry.clone_route(route.id, created_by="admin")

    assert_not_equal(clone.id, route.id)
    assert_equal(clone.name, "Two Step Review (Copy)")
    assert_equal(clone.created_by, "admin")
    assert_equal([s.id for s in clone.steps], [s.id for s in route.steps])
    assert_equal(len(registry.list_routes()), 2)
    assert_is_none(registry.clone_route("route_missing"))


# ============================================================================
# Test: Applicable Route Lookup
# ============================================================================

def test_find_route_by_document_type():
    registry = RouteRegistry()
    academic = registry.create_route(two_step_route_data(document_type="academic"))
    financial = registry.create_route(two_step_route_data(document_type="financial", name="Finance"))

    assert_equal(registry.find_applicable_route("academic").id, academic.id)
    assert_equal(registry.find_applicable_route("financial").id, financial.id)
    assert_is_none(registry.find_applicable_route("administrative"))


def test_general_route_matches_any_type():
    registry = RouteRegistry()
    general = registry.create_route(two_step_route_data(document_type="general"))

    assert_equal(registry.find_applicable_route("administrative").id, general.id)


def test_first_registered_route_wins():
    registry = RouteRegistry()
    general = registry.create_route(two_step_route_data(document_type="general"))
    registry.create_route(two_step_route_data(document_type="academic", name="Specific"))

    assert_equal(registry.find_applicable_route("academic").id, general.id)


def test_department_and_branch_scoping():
    registry = RouteRegistry()
    scoped = registry.create_route(two_step_route_data(department="cs", branch="north", name="CS North"))
    unscoped = registry.create_route(two_step_route_data(name="Fallback"))

    assert_equal(registry.find_applicable_route("academic", "cs", "north").id, scoped.id)
    assert_equal(registry.find_applicable_route("academic", "cs", "south").id, unscoped.id)
    assert_equal(registry.find_applicable_route("academic").id, unscoped.id)


def test_inactive_routes_are_skipped():
    registry = RouteRegistry()
    route = registry.create_route(two_step_route_data())
    registry.update_route(route.id, {"is_active": False})

    assert_is_none(registry.find_applicable_route("academic"))
    assert_equal(len(registry.list_active_routes()), 0)
    assert_equal(len(registry.list_routes()), 1)


def test_initiate_without_route_raises():
    engine = make_engine()
    assert_raises(NoApplicableRouteError, engine.initiate_workflow, "doc1", "academic", "emp1")
    assert_equal(len(engine.get_notification_queue()), 0)


# ============================================================================
# Test: Default Routes
# ============================================================================

def test_seed_default_routes_is_idempotent():
    registry = RouteRegistry()
    registry.seed_default_routes()
    registry.seed_default_routes()

    routes = registry.list_routes()
    assert_equal(len(routes), 1)
    assert_equal(routes[0].id, "route_academic_default")


def test_default_academic_route_shape():
    route = default_routes()[0]
    validate_route(route)

    assert_equal([s.id for s in route.steps],
                 ["step_hod_review", "step_program_head_approval", "step_registrar_final"])
    assert_false(route.step_requires_counter_approval(route.get_step("step_hod_review")))
    assert_true(route.step_requires_counter_approval(route.get_step("step_program_head_approval")))
    assert_in("esc_timeout_hod", [p.id for p in route.escalation_paths])


# ============================================================================
# Main Test Runner
# ============================================================================

def main():
    """Run all route registry tests"""
    print_test_header("Route Registry Tests")

    tests_passed = 0
    tests_failed = 0

    tests = [
        ("Create assigns id and timestamps", test_create_assigns_identity),
        ("Reject step order ties", test_create_rejects_order_ties),
        ("Reject unknown escalation target", test_create_rejects_unknown_escalation_target),
        ("Reject counter-approval without roles", test_create_rejects_counter_approval_without_roles),
        ("Reject empty routes and role lists", test_create_rejects_empty_routes_and_roles),
        ("Route-level counter-approval inherited", test_route_level_counter_approval_is_inherited),
        ("Update merges and bumps version", test_update_merges_and_bumps_version),
        ("Update unknown route", test_update_unknown_route_returns_none),
        ("Invalid update keeps stored route", test_invalid_update_keeps_stored_route),
        ("Null update is a configuration error", test_null_update_is_a_configuration_error),
        ("Racing updates are refused", test_racing_updates_are_refused),
        ("Update leaves in-flight instances", test_update_does_not_move_in_flight_instances),
        ("Clone route", test_clone_route),
        ("Find route by document type", test_find_route_by_document_type),
        ("General route matches any type", test_general_route_matches_any_type),
        ("First registered route wins", test_first_registered_route_wins),
        ("Department and branch scoping", test_department_and_branch_scoping),
        ("Inactive routes skipped", test_inactive_routes_are_skipped),
        ("Initiate without route raises", test_initiate_without_route_raises),
        ("Seed default routes idempotent", test_seed_default_routes_is_idempotent),
        ("Default academic route shape", test_default_academic_route_shape),
    ]

    for test_name, test_func in tests:
        try:
            test_func()
            print_pass(test_name)
            tests_passed += 1
        except Exception as e:
            print_fail(test_name, str(e))
            import traceback
            traceback.print_exc()
            tests_failed += 1

    print_summary(tests_passed, tests_failed)
    return 0 if tests_failed == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
