#!/usr/bin/env python3
"""
Test: Escalation
Purpose: Verify rule-driven escalation on rejection and manual request

Tests:
- Rejection with a configured path redirects instead of terminating
- Escalated instances can be acted on at their new step
- Manual escalation with and without a path
- Paths with no target step only change the status
- Escalation path lookup
"""

import sys

from fixtures import (
    print_test_header, print_pass, print_fail, print_summary,
    make_step, two_step_route_data, escalation, engine_with_route, start,
    assert_equal, assert_true, assert_false, assert_is_none
)

from docflow.core.escalation import SYSTEM_ACTOR, find_escalation_path
from docflow.models.schemas import (
    ActionType, FailureKind, InstanceStatus, NotificationPriority, NotificationType, WorkflowRoute
)


def three_step_route_data(escalation_paths):
    return dict(
        name="Escalating Review",
        document_type="academic",
        steps=[
            make_step("hod", 1, ["hod"]),
            make_step("program", 2, ["program-head"]),
            make_step("registrar", 3, ["registrar"]),
        ],
        escalation_paths=escalation_paths,
    )


# ============================================================================
# Test: Rejection Escalation
# ============================================================================

def test_rejection_redirects_to_target():
    paths = [escalation(
        "rejection", "hod", "program",
        notification_template="Document rejected by HOD, escalated to Program Head",
    )]
    engine, _ = engine_with_route(three_step_route_data(paths))
    instance = start(engine)

    result = engine.process_approval(instance.id, "hod", "reject", "hodUser", comments="Out of scope")
    assert_true(result.success)
    assert_true(result.escalated)
    assert_equal(result.message, "Escalated to program-head due to rejection")

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.status, InstanceStatus.ESCALATED)
    assert_equal(stored.current_step_id, "program")
    assert_is_none(stored.completed_at)

    # Caller's rejection plus the system escalation record
    assert_equal([a.action_type for a in stored.history], [ActionType.REJECT, ActionType.ESCALATE])
    system_action = stored.history[-1]
    assert_equal(system_action.performed_by, SYSTEM_ACTOR)
    assert_equal(system_action.reason_code, "rejection")
    assert_equal(system_action.escalated_to, ["program-head"])
    assert_equal(system_action.step_id, "hod")

    notifications = engine.get_notification_queue()
    assert_equal(len(notifications), 1)
    notification = notifications[0]
    assert_equal(notification.type, NotificationType.ESCALATION)
    assert_equal(notification.priority, NotificationPriority.URGENT)
    assert_equal(notification.recipients, ["program-head"])
    assert_equal(notification.message, "Document rejected by HOD, escalated to Program Head")
    assert_equal(notification.metadata["escalation_reason"], "rejection")
    assert_equal(notification.metadata["triggered_by"], "hodUser")
    assert_equal(notification.metadata["requires_reason"], False)


def test_escalated_instance_continues():
    paths = [escalation("rejection", "hod", "program")]
    engine, _ = engine_with_route(three_step_route_data(paths))
    instance = start(engine)
    engine.process_approval(instance.id, "hod", "reject", "hodUser")

    # Escalated instances are not in the pending list but still accept actions
    assert_equal(engine.get_pending_approvals("progUser"), [])

    result = engine.process_approval(instance.id, "program", "approve", "progUser")
    assert_true(result.success, result.message)
    assert_equal(result.next_step.id, "registrar")

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.status, InstanceStatus.IN_PROGRESS)


def test_rejection_elsewhere_still_terminates():
    """A path from one step does not cover the others"""
    paths = [escalation("rejection", "hod", "program")]
    engine, _ = engine_with_route(three_step_route_data(paths))
    instance = start(engine)
    engine.process_approval(instance.id, "hod", "approve", "hodUser")

    engine.process_approval(instance.id, "program", "reject", "progUser")

    assert_equal(engine.get_workflow_instance(instance.id).status, InstanceStatus.REJECTED)


# ============================================================================
# Test: Manual Escalation
# ============================================================================

def test_manual_escalation_with_path():
    paths = [escalation("manual", "hod", "registrar", roles=("registrar",))]
    engine, _ = engine_with_route(three_step_route_data(paths))
    instance = start(engine)

    result = engine.process_approval(instance.id, "hod", "escalate", "hodUser", comments="Needs registrar")
    assert_true(result.escalated)

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.current_step_id, "registrar")
    assert_equal(stored.status, InstanceStatus.ESCALATED)
    assert_equal(stored.history[0].comments, "Needs registrar")
    assert_equal(stored.history[-1].reason_code, "manual")


def test_manual_escalation_without_path():
    engine, _ = engine_with_route(two_step_route_data())
    instance = start(engine)

    result = engine.process_approval(instance.id, "hod", "escalate", "hodUser")
    assert_false(result.success)
    assert_equal(result.error, FailureKind.INVALID_STATE)
    assert_equal(result.message, "No escalation path available for manual escalation")

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.status, InstanceStatus.PENDING)
    assert_equal(stored.current_step_id, "hod")
    assert_equal(len(stored.history), 1, "The request itself stays on record")
    assert_equal(engine.get_notification_queue(), [])


def test_path_without_target_step():
    """Only the status changes; no notification is sent"""
    paths = [escalation("rejection", "hod", None, roles=("principal",))]
    engine, _ = engine_with_route(three_step_route_data(paths))
    instance = start(engine)

    result = engine.process_approval(instance.id, "hod", "reject", "hodUser")
    assert_true(result.escalated)

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.status, InstanceStatus.ESCALATED)
    assert_equal(stored.current_step_id, "hod")
    assert_equal(engine.get_notification_queue(), [])


# ============================================================================
# Test: Path Lookup
# ============================================================================

def test_find_escalation_path():
    route = WorkflowRoute(
        name="Lookup",
        document_type="academic",
        steps=[make_step("hod", 1, ["hod"]), make_step("program", 2, ["program-head"])],
        escalation_paths=[
            escalation("timeout", "hod", "program", id="first"),
            escalation("timeout", "hod", "program", id="second"),
            escalation("rejection", "program", None, id="reject"),
        ],
    )

    assert_equal(find_escalation_path(route, "hod", "timeout").id, "first")
    assert_equal(find_escalation_path(route, "program", "rejection").id, "reject")
    assert_is_none(find_escalation_path(route, "hod", "rejection"))
    assert_is_none(find_escalation_path(route, "program", "manual"))


# ============================================================================
# Main Test Runner
# ============================================================================

def main():
    """Run all escalation tests"""
    print_test_header("Escalation Tests")

    tests_passed = 0
    tests_failed = 0

    tests = [
        ("Rejection redirects to target", test_rejection_redirects_to_target),
        ("Escalated instance continues", test_escalated_instance_continues),
        ("Rejection elsewhere still terminates", test_rejection_elsewhere_still_terminates),
        ("Manual escalation with path", test_manual_escalation_with_path),
        ("Manual escalation without path", test_manual_escalation_without_path),
        ("Path without target step", test_path_without_target_step),
        ("Find escalation path", test_find_escalation_path),
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
