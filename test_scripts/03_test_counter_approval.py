#!/usr/bin/env python3
"""
Test: Counter-Approval
Purpose: Verify the counter-approval gate on approved steps

Tests:
- Approving a counter-approved step holds the document in place
- Only a counter-approve against that approval advances the step
- Counter-rejection behaves like a rejection (terminal or escalated)
- Counter-approver permissions are enforced before anything is recorded
- An approval can be counter-processed at most once
"""

import sys

from fixtures import (
    print_test_header, print_pass, print_fail, print_summary,
    counter_route_data, two_step_route_data, escalation, engine_with_route, start,
    assert_equal, assert_true, assert_false
)

from docflow.models.schemas import (
    ActionType, FailureKind, InstanceStatus, NotificationPriority, NotificationType
)


def approve_hod(engine, instance):
    """Approve the HOD step and return the recorded approve action"""
    result = engine.process_approval(instance.id, "hod", "approve", "hodUser")
    assert_true(result.success, result.message)
    return engine.get_workflow_instance(instance.id).history[-1]


# ============================================================================
# Test: The Gate
# ============================================================================

def test_approval_waits_for_counter_approval():
    engine, _ = engine_with_route(counter_route_data())
    instance = start(engine)

    result = engine.process_approval(instance.id, "hod", "approve", "hodUser")
    assert_true(result.success)
    assert_equal(result.message, "Approval recorded. Counter-approval required before proceeding.")
    assert_equal(result.next_step, None)

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.status, InstanceStatus.PENDING)
    assert_equal(stored.current_step_id, "hod")

    notifications = engine.get_notification_queue()
    assert_equal(len(notifications), 1)
    notification = notifications[0]
    assert_equal(notification.type, NotificationType.COUNTER_APPROVAL_REQUIRED)
    assert_equal(notification.recipients, ["registrar"])
    assert_equal(notification.priority, NotificationPriority.HIGH)
    assert_equal(notification.metadata["original_action_id"], stored.history[-1].id)
    assert_equal(notification.metadata["original_approver"], "hodUser")


def test_counter_approve_advances():
    engine, _ = engine_with_route(counter_route_data())
    instance = start(engine)
    approval = approve_hod(engine, instance)
    engine.get_notification_queue()

    result = engine.process_counter_approval(instance.id, approval.id, "counter-approve", "regUser", comments="Verified")
    assert_true(result.success, result.message)
    assert_equal(result.next_step.id, "principal")

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.status, InstanceStatus.IN_PROGRESS)
    assert_equal(stored.current_step_id, "principal")

    counter_action = stored.history[-1]
    assert_equal(counter_action.action_type, ActionType.COUNTER_APPROVE)
    assert_true(counter_action.is_counter_approval)
    assert_equal(counter_action.original_action_id, approval.id)
    assert_equal(counter_action.step_id, "hod")

    notification = engine.get_notification_queue()[0]
    assert_equal(notification.type, NotificationType.APPROVAL_REQUEST)
    assert_equal(notification.recipients, ["principal"])


def test_repeat_approvals_do_not_advance():
    """Re-approving while waiting only adds history"""
    engine, _ = engine_with_route(counter_route_data())
    instance = start(engine)

    approve_hod(engine, instance)
    approve_hod(engine, instance)

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.current_step_id, "hod")
    assert_equal(len(stored.history), 2)


# ============================================================================
# Test: Counter-Rejection
# ============================================================================

def test_counter_reject_terminates():
    engine, _ = engine_with_route(counter_route_data())
    instance = start(engine)
    approval = approve_hod(engine, instance)
    engine.get_notification_queue()

    result = engine.process_counter_approval(instance.id, approval.id, "reject", "regUser", comments="Not verified")
    assert_true(result.success)

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.status, InstanceStatus.REJECTED)
    assert_true(stored.completed_at is not None)
    assert_true(stored.history[-1].is_counter_approval)

    notification = engine.get_notification_queue()[0]
    assert_equal(notification.type, NotificationType.APPROVAL_REJECTED)
    assert_true(notification.metadata["counter_rejection"])


def test_counter_reject_follows_rejection_path():
    paths = [escalation("rejection", "hod", "principal", roles=("principal",))]
    engine, _ = engine_with_route(counter_route_data(escalation_paths=paths))
    instance = start(engine)
    approval = approve_hod(engine, instance)

    result = engine.process_counter_approval(instance.id, approval.id, "reject", "regUser")
    assert_true(result.escalated)

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.status, InstanceStatus.ESCALATED)
    assert_equal(stored.current_step_id, "principal")


# ============================================================================
# Test: Refusals
# ============================================================================

def test_counter_approver_permission():
    engine, _ = engine_with_route(counter_route_data())
    instance = start(engine)
    approval = approve_hod(engine, instance)

    for user in ("hodUser", "principalUser", "emp1"):
        result = engine.process_counter_approval(instance.id, approval.id, "counter-approve", user)
        assert_equal(result.error, FailureKind.PERMISSION_DENIED)
        assert_equal(result.message, "User does not have permission to counter-approve")

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(len(stored.history), 1)
    assert_equal(stored.current_step_id, "hod")


def test_counter_approval_not_required():
    engine, _ = engine_with_route(two_step_route_data())
    instance = start(engine)
    approval = approve_hod(engine, instance)

    result = engine.process_counter_approval(instance.id, approval.id, "counter-approve", "regUser")
    assert_false(result.success)
    assert_equal(result.error, FailureKind.INVALID_STATE)
    assert_equal(result.message, "Counter-approval not required for this step")


def test_unknown_references():
    engine, _ = engine_with_route(counter_route_data())
    instance = start(engine)
    approval = approve_hod(engine, instance)

    result = engine.process_counter_approval("wf_missing", approval.id, "counter-approve", "regUser")
    assert_equal(result.message, "Workflow instance not found")

    result = engine.process_counter_approval(instance.id, "act_missing", "counter-approve", "regUser")
    assert_equal(result.error, FailureKind.NOT_FOUND)
    assert_equal(result.message, "Original action not found")


def test_only_approvals_can_be_counter_processed():
    engine, _ = engine_with_route(counter_route_data())
    instance = start(engine)
    engine.process_approval(instance.id, "hod", "request-changes", "hodUser")
    change_request = engine.get_workflow_instance(instance.id).history[-1]

    result = engine.process_counter_approval(instance.id, change_request.id, "counter-approve", "regUser")
    assert_equal(result.error, FailureKind.INVALID_STATE)

    approval = approve_hod(engine, instance)
    result = engine.process_counter_approval(instance.id, approval.id, "approve", "regUser")
    assert_equal(result.error, FailureKind.INVALID_STATE, "approve is not a counter-approver verdict")


def test_approval_counter_processed_once():
    engine, _ = engine_with_route(counter_route_data())
    instance = start(engine)
    approval = approve_hod(engine, instance)

    assert_true(engine.process_counter_approval(instance.id, approval.id, "counter-approve", "regUser").success)

    again = engine.process_counter_approval(instance.id, approval.id, "counter-approve", "regUser")
    assert_false(again.success)
    assert_equal(again.error, FailureKind.INVALID_STATE)

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.current_step_id, "principal", "Second verdict must not skip a step")
    assert_equal(len(stored.history), 2)


def test_full_counter_route_completes():
    engine, _ = engine_with_route(counter_route_data())
    instance = start(engine)
    approval = approve_hod(engine, instance)
    engine.process_counter_approval(instance.id, approval.id, ActionType.COUNTER_APPROVE, "regUser")

    result = engine.process_approval(instance.id, "principal", "approve", "principalUser")
    assert_true(result.success)
    assert_equal(engine.get_workflow_instance(instance.id).status, InstanceStatus.COMPLETED)


# ============================================================================
# Main Test Runner
# ============================================================================

def main():
    """Run all counter-approval tests"""
    print_test_header("Counter-Approval Tests")

    tests_passed = 0
    tests_failed = 0

    tests = [
        ("Approval waits for counter-approval", test_approval_waits_for_counter_approval),
        ("Counter-approve advances", test_counter_approve_advances),
        ("Repeat approvals do not advance", test_repeat_approvals_do_not_advance),
        ("Counter-reject terminates", test_counter_reject_terminates),
        ("Counter-reject follows rejection path", test_counter_reject_follows_rejection_path),
        ("Counter-approver permission", test_counter_approver_permission),
        ("Counter-approval not required", test_counter_approval_not_required),
        ("Unknown references", test_unknown_references),
        ("Only approvals can be counter-processed", test_only_approvals_can_be_counter_processed),
        ("Approval counter-processed once", test_approval_counter_processed_once),
        ("Full counter route completes", test_full_counter_route_completes),
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
