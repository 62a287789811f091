#!/usr/bin/env python3
"""
Test: Storage and Startup
Purpose: Verify the SQLite-backed repositories and engine assembly

Tests:
- SqlRepository stores, replaces and lists entities in insertion order
- Versioned writes refuse stale copies in both repositories
- Engines sharing a database cannot both advance a step
- A full approval run persists across engine instances
- Timeout scans work against the database
- build_engine seeds the default academic route
- Settings validation and role resolver selection
"""

import sys
from datetime import datetime, timedelta

from fixtures import (
    print_test_header, print_pass, print_fail, print_summary,
    counter_route_data, two_step_route_data, escalation, make_role_resolver,
    temporary_database, make_sql_engine, hours_from_now, InterleavingRoleResolver,
    assert_equal, assert_true, assert_false, assert_is_none, assert_raises
)

from docflow.config.settings import Settings
from docflow.core.roles import AllowAllRoleResolver, StaticRoleResolver
from docflow.core.startup import build_engine, build_role_resolver
from docflow.models.orm import WorkflowRouteRecord
from docflow.models.repository import ConcurrentModificationError, InMemoryRepository, SqlRepository
from docflow.models.schemas import ActionType, FailureKind, InstanceStatus, WorkflowRoute


# ============================================================================
# Test: SqlRepository
# ============================================================================

def test_sql_repository_round_trip():
    with temporary_database() as db:
        repository = SqlRepository(db, WorkflowRouteRecord, WorkflowRoute)
        first = WorkflowRoute(**two_step_route_data(name="First"))
        second = WorkflowRoute(**two_step_route_data(name="Second"))
        repository.put(first)
        repository.put(second)

        loaded = repository.get(first.id)
        assert_equal(loaded.name, "First")
        assert_equal([s.id for s in loaded.steps], ["hod", "registrar"])
        assert_equal(loaded.steps[0].timeout_hours, 48)
        assert_is_none(repository.get("route_missing"))

        # Replacing keeps the original position
        first.name = "First (renamed)"
        repository.put(first)
        assert_equal([r.name for r in repository.list()], ["First (renamed)", "Second"])
        assert_equal(len(repository), 2)
        assert_equal([r.name for r in repository.list(lambda r: r.name == "Second")], ["Second"])


def test_versioned_put_refuses_stale_copies():
    with temporary_database() as db:
        repositories = [
            InMemoryRepository(),
            SqlRepository(db, WorkflowRouteRecord, WorkflowRoute),
        ]
        for repository in repositories:
            route = WorkflowRoute(**two_step_route_data())
            repository.put(route)

            first = repository.get(route.id)
            second = repository.get(route.id)

            first.name = "First writer"
            first.version += 1
            repository.put(first, expected_version=1)

            second.name = "Second writer"
            second.version += 1
            assert_raises(ConcurrentModificationError, repository.put, second, expected_version=1)

            stored = repository.get(route.id)
            assert_equal(stored.name, "First writer")
            assert_equal(stored.version, 2)

            # A versioned write never creates a missing entity
            missing = WorkflowRoute(**two_step_route_data())
            assert_raises(ConcurrentModificationError, repository.put, missing, expected_version=1)
            assert_is_none(repository.get(missing.id))


def test_engines_sharing_database_advance_once():
    with temporary_database() as db:
        engine = make_sql_engine(db)
        other = make_sql_engine(db)
        engine.create_workflow_route(two_step_route_data())
        instance = engine.initiate_workflow("doc1", "academic", "emp1")
        engine.get_notification_queue()

        # The other engine approves after this one has read the instance
        engine.roles = InterleavingRoleResolver(
            lambda: other.process_approval(instance.id, "hod", "approve", "hodUser")
        )
        result = engine.process_approval(instance.id, "hod", "approve", "hodUser")

        assert_false(result.success)
        assert_equal(result.error, FailureKind.CONFLICT)
        assert_equal(engine.get_notification_queue(), [])

        stored = engine.get_workflow_instance(instance.id)
        assert_equal(stored.current_step_id, "registrar")
        assert_equal([a.action_type for a in stored.history], [ActionType.APPROVE])
        assert_equal(stored.version, 2)
        assert_equal(len(other.get_notification_queue()), 1)


def test_workflow_persists_across_engines():
    with temporary_database() as db:
        engine = make_sql_engine(db)
        engine.create_workflow_route(counter_route_data())
        instance = engine.initiate_workflow("doc1", "academic", "emp1")
        engine.process_approval(instance.id, "hod", "approve", "hodUser")
        approval_id = engine.get_workflow_instance(instance.id).history[-1].id

        # A second engine over the same database picks up where the first left off
        restarted = make_sql_engine(db)
        stored = restarted.get_workflow_instance(instance.id)
        assert_equal(stored.current_step_id, "hod")
        assert_equal(stored.status, InstanceStatus.PENDING)
        assert_equal(len(restarted.get_pending_approvals("hodUser")), 1)

        result = restarted.process_counter_approval(instance.id, approval_id, "counter-approve", "regUser")
        assert_true(result.success, result.message)
        result = restarted.process_approval(instance.id, "principal", "approve", "principalUser")
        assert_true(result.success, result.message)

        stored = engine.get_workflow_instance(instance.id)
        assert_equal(stored.status, InstanceStatus.COMPLETED)
        assert_equal(len(stored.history), 3)
        assert_true(stored.history[1].is_counter_approval)
        assert_equal(stored.version, 4)


def test_failed_calls_do_not_write():
    with temporary_database() as db:
        engine = make_sql_engine(db)
        engine.create_workflow_route(two_step_route_data())
        instance = engine.initiate_workflow("doc1", "academic", "emp1")

        result = engine.process_approval(instance.id, "hod", "approve", "emp1")
        assert_false(result.success)

        stored = engine.get_workflow_instance(instance.id)
        assert_equal(stored.history, [])
        assert_equal(stored.version, 1)


def test_timeouts_against_database():
    with temporary_database() as db:
        engine = make_sql_engine(db)
        engine.create_workflow_route(two_step_route_data(
            escalation_paths=[escalation("timeout", "hod", "registrar", roles=("registrar",))]
        ))
        instance = engine.initiate_workflow("doc1", "academic", "emp1")

        assert_equal(engine.check_timeouts(now=hours_from_now(49)), 1)
        assert_equal(engine.check_timeouts(now=hours_from_now(49)), 0)

        stored = engine.get_workflow_instance(instance.id)
        assert_equal(stored.status, InstanceStatus.ESCALATED)
        assert_equal(stored.current_step_id, "registrar")


def test_route_lookup_order_in_database():
    with temporary_database() as db:
        engine = make_sql_engine(db)
        general = engine.create_workflow_route(two_step_route_data(document_type="general", name="General"))
        engine.create_workflow_route(two_step_route_data(name="Academic"))

        assert_equal(engine.routes.find_applicable_route("academic").id, general.id)

        engine.update_workflow_route(general.id, {"is_active": False})
        assert_equal(engine.routes.find_applicable_route("academic").name, "Academic")
        assert_equal(len(engine.get_all_workflow_routes()), 2)
        assert_equal(len(engine.get_all_active_routes()), 1)


# ============================================================================
# Test: Engine Assembly
# ============================================================================

def test_build_engine_seeds_default_route():
    config = Settings(storage_backend="sqlite", seed_default_routes=True)
    with temporary_database() as db:
        engine = build_engine(config, db, make_role_resolver())
        # Seeding twice (a restart) does not duplicate
        build_engine(config, db, make_role_resolver())

        routes = engine.get_all_workflow_routes()
        assert_equal([r.id for r in routes], ["route_academic_default"])

        instance = engine.initiate_workflow("doc1", "academic", "emp1")
        assert_equal(instance.current_step_id, "step_hod_review")

        # HOD rejection on the default route escalates to the Program Head
        result = engine.process_approval(instance.id, "step_hod_review", "reject", "hodUser")
        assert_true(result.escalated)
        stored = engine.get_workflow_instance(instance.id)
        assert_equal(stored.current_step_id, "step_program_head_approval")


def test_build_engine_in_memory_without_seed():
    config = Settings(seed_default_routes=False, use_route_timeout_fallback=True)
    engine = build_engine(config, role_resolver=make_role_resolver())

    assert_equal(engine.get_all_workflow_routes(), [])
    assert_true(engine.use_route_timeout_fallback)


def test_default_route_timeout_escalation():
    config = Settings(seed_default_routes=True)
    engine = build_engine(config, role_resolver=make_role_resolver())
    instance = engine.initiate_workflow("doc1", "academic", "emp1")
    engine.get_notification_queue()

    stored = engine.get_workflow_instance(instance.id)
    stored.initiated_at = datetime.now() - timedelta(hours=50)
    engine.instances.put(stored)

    assert_equal(engine.check_timeouts(), 1)
    notification = engine.get_notification_queue()[0]
    assert_equal(notification.message, "HOD review timeout, escalated to Program Head")


def test_role_resolver_selection():
    assert_true(isinstance(build_role_resolver(Settings(trust_all_roles=True)), AllowAllRoleResolver))

    resolver = build_role_resolver(Settings(role_assignments={"u1": ["hod", "registrar"]}))
    assert_true(isinstance(resolver, StaticRoleResolver))
    assert_true(resolver.has_role("u1", "registrar"))
    assert_false(resolver.has_role("u2", "hod"))
    assert_equal(resolver.roles_for("u1"), ["hod", "registrar"])

    resolver.assign("u2", "principal")
    assert_true(resolver.has_any_role("u2", ["hod", "principal"]))


def test_settings_validation():
    Settings(role_assignments={"u1": ["hod"]}).validate_critical_config()

    assert_raises(ValueError, Settings(trust_all_roles=True, environment="production").validate_critical_config)
    assert_raises(ValueError, Settings(timeout_check_interval_seconds=0).validate_critical_config)
    assert_true(Settings(storage_backend="sqlite").uses_database)
    assert_false(Settings(storage_backend="memory").uses_database)


# ============================================================================
# Main Test Runner
# ============================================================================

def main():
    """Run all storage and startup tests"""
    print_test_header("Storage and Startup Tests")

    tests_passed = 0
    tests_failed = 0

    tests = [
        ("SqlRepository round trip", test_sql_repository_round_trip),
        ("Versioned put refuses stale copies", test_versioned_put_refuses_stale_copies),
        ("Engines sharing database advance once", test_engines_sharing_database_advance_once),
        ("Workflow persists across engines", test_workflow_persists_across_engines),
        ("Failed calls do not write", test_failed_calls_do_not_write),
        ("Timeouts against database", test_timeouts_against_database),
        ("Route lookup order in database", test_route_lookup_order_in_database),
        ("build_engine seeds default route", test_build_engine_seeds_default_route),
        ("build_engine in memory without seed", test_build_engine_in_memory_without_seed),
        ("Default route timeout escalation", test_default_route_timeout_escalation),
        ("Role resolver selection", test_role_resolver_selection),
        ("Settings validation", test_settings_validation),
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
