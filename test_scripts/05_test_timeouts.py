#!/usr/bin/env python3
"""
Test: Timeout Escalation
Purpose: Verify the timeout scanner and the background timeout manager

Tests:
- Overdue steps with a timeout path are escalated exactly once
- Steps inside their window, or without a timeout path, are left alone
- Step start is the first action on the step, else initiation
- Route-level auto-escalation timeout is used only when enabled
- TimeoutManager runs scans and starts/stops cleanly
"""

import asyncio
import sys
from datetime import datetime, timedelta

from fixtures import (
    print_test_header, print_pass, print_fail, print_summary,
    make_step, two_step_route_data, escalation, engine_with_route, start, hours_from_now,
    assert_equal, assert_true, assert_false
)

from docflow.core.escalation import SYSTEM_ACTOR
from docflow.core.timeout_manager import TimeoutManager
from docflow.models.schemas import ActionType, InstanceStatus, NotificationType


def timed_route_data(**kwargs):
    """HOD times out after 48h and escalates to the registrar step"""
    return two_step_route_data(
        hod_timeout=48,
        escalation_paths=[escalation(
            "timeout", "hod", "registrar", roles=("registrar",),
            notification_template="HOD review timeout, escalated to Registrar",
        )],
        **kwargs,
    )


# ============================================================================
# Test: Scanner
# ============================================================================

def test_overdue_step_escalates_once():
    engine, _ = engine_with_route(timed_route_data())
    instance = start(engine)

    escalated = engine.check_timeouts(now=hours_from_now(49))
    assert_equal(escalated, 1)

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.status, InstanceStatus.ESCALATED)
    assert_equal(stored.current_step_id, "registrar")

    action = stored.history[-1]
    assert_equal(action.action_type, ActionType.ESCALATE)
    assert_equal(action.performed_by, SYSTEM_ACTOR)
    assert_equal(action.reason_code, "timeout")
    assert_equal(len(stored.history), 1)

    notifications = engine.get_notification_queue()
    assert_equal(len(notifications), 1)
    assert_equal(notifications[0].type, NotificationType.ESCALATION)
    assert_equal(notifications[0].message, "HOD review timeout, escalated to Registrar")
    assert_equal(notifications[0].metadata["triggered_by"], SYSTEM_ACTOR)

    # Escalated instances are no longer scanned
    assert_equal(engine.check_timeouts(now=hours_from_now(200)), 0)
    assert_equal(len(engine.get_workflow_instance(instance.id).history), 1)
    assert_equal(engine.get_notification_queue(), [])


def test_step_within_window_untouched():
    engine, _ = engine_with_route(timed_route_data())
    instance = start(engine)

    assert_equal(engine.check_timeouts(now=hours_from_now(47)), 0)
    assert_equal(engine.get_workflow_instance(instance.id).status, InstanceStatus.PENDING)


def test_missing_timeout_path_is_ignored():
    engine, _ = engine_with_route(two_step_route_data(hod_timeout=1))
    instance = start(engine)

    assert_equal(engine.check_timeouts(now=hours_from_now(500)), 0)

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.status, InstanceStatus.PENDING)
    assert_equal(stored.history, [])


def test_step_without_timeout_untouched():
    """The registrar step has no timeout_hours"""
    engine, _ = engine_with_route(timed_route_data())
    instance = start(engine)
    engine.process_approval(instance.id, "hod", "approve", "hodUser")

    assert_equal(engine.check_timeouts(now=hours_from_now(1000)), 0)
    assert_equal(engine.get_workflow_instance(instance.id).current_step_id, "registrar")


def test_terminal_instances_not_scanned():
    engine, _ = engine_with_route(timed_route_data())
    instance = start(engine)
    engine.process_approval(instance.id, "hod", "reject", "hodUser")

    assert_equal(engine.check_timeouts(now=hours_from_now(100)), 0)
    assert_equal(engine.get_workflow_instance(instance.id).status, InstanceStatus.REJECTED)


def test_step_start_is_first_action_on_step():
    engine, _ = engine_with_route(timed_route_data())
    instance = start(engine)

    # Submitted long ago, but HOD asked for changes just now
    stored = engine.get_workflow_instance(instance.id)
    stored.initiated_at = datetime.now() - timedelta(hours=100)
    engine.instances.put(stored)
    engine.process_approval(instance.id, "hod", "request-changes", "hodUser")

    assert_equal(engine.check_timeouts(now=hours_from_now(1)), 0)
    assert_equal(engine.check_timeouts(now=hours_from_now(49)), 1)


def test_scan_counts_each_overdue_instance():
    engine, _ = engine_with_route(timed_route_data())
    first = start(engine, document_id="doc1")
    second = start(engine, document_id="doc2")
    start(engine, document_id="doc3")
    engine.process_approval(second.id, "hod", "approve", "hodUser")

    assert_equal(engine.check_timeouts(now=hours_from_now(49)), 2)
    assert_equal(engine.get_workflow_instance(first.id).status, InstanceStatus.ESCALATED)
    assert_equal(engine.get_workflow_instance(second.id).status, InstanceStatus.IN_PROGRESS)


# ============================================================================
# Test: Route-Level Timeout Fallback
# ============================================================================

def fallback_route_data():
    return dict(
        name="Fallback Timeout",
        document_type="academic",
        steps=[make_step("hod", 1, ["hod"]), make_step("registrar", 2, ["registrar"])],
        escalation_paths=[escalation("timeout", "hod", "registrar", roles=("registrar",))],
        auto_escalation={"enabled": True, "timeout_hours": 72},
    )


def test_route_timeout_ignored_by_default():
    engine, _ = engine_with_route(fallback_route_data())
    start(engine)

    assert_equal(engine.check_timeouts(now=hours_from_now(100)), 0)


def test_route_timeout_fallback_when_enabled():
    engine, route = engine_with_route(fallback_route_data(), use_route_timeout_fallback=True)
    instance = start(engine)

    assert_equal(engine.check_timeouts(now=hours_from_now(71)), 0)
    assert_equal(engine.check_timeouts(now=hours_from_now(73)), 1)
    assert_equal(engine.get_workflow_instance(instance.id).current_step_id, "registrar")

    # A disabled policy is never consulted
    engine.update_workflow_route(route.id, {"auto_escalation": {"enabled": False, "timeout_hours": 1}})
    another = start(engine, document_id="doc2")
    assert_equal(engine.check_timeouts(now=hours_from_now(100)), 0)
    assert_equal(engine.get_workflow_instance(another.id).status, InstanceStatus.PENDING)


# ============================================================================
# Test: TimeoutManager
# ============================================================================

def test_timeout_manager_run_once():
    engine, _ = engine_with_route(timed_route_data())
    instance = start(engine)
    stored = engine.get_workflow_instance(instance.id)
    stored.initiated_at = datetime.now() - timedelta(hours=49)
    engine.instances.put(stored)

    manager = TimeoutManager(engine, check_interval=3600)
    escalated = asyncio.run(manager.run_once())

    assert_equal(escalated, 1)
    stats = manager.get_stats()
    assert_equal(stats["total_escalated"], 1)
    assert_true(stats["last_checked_at"] is not None)
    assert_false(stats["running"])


def test_timeout_manager_start_stop():
    engine, _ = engine_with_route(timed_route_data())
    manager = TimeoutManager(engine, check_interval=3600)

    async def scenario():
        await manager.start()
        assert_true(manager.running)
        await manager.start()  # no second loop
        await asyncio.sleep(0.2)
        await manager.stop()

    asyncio.run(scenario())

    assert_false(manager.running)
    assert_true(manager.last_checked_at is not None, "First scan runs immediately")


# ============================================================================
# Main Test Runner
# ============================================================================

def main():
    """Run all timeout tests"""
    print_test_header("Timeout Escalation Tests")

    tests_passed = 0
    tests_failed = 0

    tests = [
        ("Overdue step escalates once", test_overdue_step_escalates_once),
        ("Step within window untouched", test_step_within_window_untouched),
        ("Missing timeout path ignored", test_missing_timeout_path_is_ignored),
        ("Step without timeout untouched", test_step_without_timeout_untouched),
        ("Terminal instances not scanned", test_terminal_instances_not_scanned),
        ("Step start is first action on step", test_step_start_is_first_action_on_step),
        ("Scan counts each overdue instance", test_scan_counts_each_overdue_instance),
        ("Route timeout ignored by default", test_route_timeout_ignored_by_default),
        ("Route timeout fallback when enabled", test_route_timeout_fallback_when_enabled),
        ("TimeoutManager run_once", test_timeout_manager_run_once),
        ("TimeoutManager start/stop", test_timeout_manager_start_stop),
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
