#!/usr/bin/env python3
"""
Test: Approval Flow
Purpose: Verify the approver-side state machine

Tests:
- Initiation places the document on the lowest-order step
- Approvals walk the steps in order and complete the workflow
- Rejection without an escalation path is terminal
- Change requests keep the document on its step
- Lookup and permission failures leave history untouched
- Stale-step and terminal-instance submissions are refused
- History only ever grows
- Concurrent approvals of one step advance it once
- Per-instance locks are released; lookups return snapshots
"""

import sys
import threading

from fixtures import (
    print_test_header, print_pass, print_fail, print_summary,
    make_step, two_step_route_data, make_engine, engine_with_route, start, hours_from_now,
    InterleavingRoleResolver,
    assert_equal, assert_true, assert_false, assert_in, assert_is_none
)

from docflow.models.schemas import (
    ActionType, FailureKind, InstanceStatus, NotificationType
)


def shuffled_route_data():
    """Four steps registered out of order"""
    return dict(
        name="Four Step Review",
        document_type="administrative",
        steps=[
            make_step("dean", 30, ["principal"]),
            make_step("hod", 10, ["hod"]),
            make_step("final", 40, ["registrar"]),
            make_step("program", 20, ["program-head"]),
        ],
    )


# ============================================================================
# Test: Initiation
# ============================================================================

def test_initiate_starts_at_first_step():
    engine, route = engine_with_route(two_step_route_data())

    instance = engine.initiate_workflow("doc1", "academic", "emp1", department="cs", metadata={"title": "Syllabus"})

    assert_equal(instance.status, InstanceStatus.PENDING)
    assert_equal(instance.current_step_id, "hod")
    assert_equal(instance.workflow_route_id, route.id)
    assert_equal(instance.history, [])
    assert_is_none(instance.completed_at)
    assert_equal(instance.metadata["title"], "Syllabus")
    assert_equal(instance.metadata["route_name"], route.name)
    assert_equal(instance.metadata["department"], "cs")

    notifications = engine.get_notification_queue()
    assert_equal(len(notifications), 1)
    assert_equal(notifications[0].type, NotificationType.APPROVAL_REQUEST)
    assert_equal(notifications[0].recipients, ["hod"])


# ============================================================================
# Test: Two-Step Happy Path
# ============================================================================

def test_two_step_route_completes():
    engine, _ = engine_with_route(two_step_route_data())
    instance = start(engine)

    result = engine.process_approval(instance.id, "hod", "approve", "hodUser", comments="Looks good")
    assert_true(result.success, result.message)
    assert_equal(result.next_step.id, "registrar")
    assert_equal(result.message, "Approved. Moved to next step: Registrar")

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.status, InstanceStatus.IN_PROGRESS)
    assert_equal(stored.current_step_id, "registrar")

    result = engine.process_approval(instance.id, "registrar", ActionType.APPROVE, "regUser")
    assert_true(result.success, result.message)
    assert_true(result.message.endswith("Workflow completed."))
    assert_is_none(result.next_step)

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.status, InstanceStatus.COMPLETED)
    assert_true(stored.completed_at is not None)
    assert_equal([a.performed_by for a in stored.history], ["hodUser", "regUser"])

    kinds = [n.type for n in engine.get_notification_queue()]
    assert_equal(kinds, [NotificationType.APPROVAL_REQUEST, NotificationType.APPROVAL_GRANTED])


def test_steps_visited_in_order():
    """N approvals over N steps visit them by ascending order, then complete"""
    engine, route = engine_with_route(shuffled_route_data())
    instance = start(engine, document_type="administrative")

    approvers = {"hod": "hodUser", "program": "progUser", "dean": "principalUser", "final": "regUser"}
    visited = []
    for _ in range(len(route.steps)):
        current = engine.get_workflow_instance(instance.id).current_step_id
        visited.append(current)
        result = engine.process_approval(instance.id, current, "approve", approvers[current])
        assert_true(result.success, result.message)

    assert_equal(visited, ["hod", "program", "dean", "final"])
    assert_equal(engine.get_workflow_instance(instance.id).status, InstanceStatus.COMPLETED)


# ============================================================================
# Test: Rejection
# ============================================================================

def test_rejection_is_terminal():
    engine, _ = engine_with_route(two_step_route_data())
    instance = start(engine)

    result = engine.process_approval(instance.id, "hod", "reject", "hodUser", comments="Incomplete")
    assert_true(result.success)
    assert_equal(result.message, "Document rejected. Workflow terminated.")

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.status, InstanceStatus.REJECTED)
    assert_true(stored.completed_at is not None)

    notifications = engine.get_notification_queue()
    assert_equal(len(notifications), 1)
    assert_equal(notifications[0].type, NotificationType.APPROVAL_REJECTED)
    assert_equal(notifications[0].recipients, ["emp1"])
    assert_equal(notifications[0].metadata["rejection_comments"], "Incomplete")

    # Nothing moves a rejected instance
    for step_id, user in (("hod", "hodUser"), ("registrar", "regUser")):
        result = engine.process_approval(instance.id, step_id, "approve", user)
        assert_false(result.success)
        assert_equal(result.error, FailureKind.INVALID_STATE)

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.current_step_id, "hod")
    assert_equal(len(stored.history), 1)


# ============================================================================
# Test: Change Requests
# ============================================================================

def test_request_changes_keeps_step():
    engine, _ = engine_with_route(two_step_route_data())
    instance = start(engine)
    engine.process_approval(instance.id, "hod", "approve", "hodUser")
    engine.get_notification_queue()

    result = engine.process_approval(instance.id, "registrar", "request-changes", "regUser", comments="Fix dates")
    assert_true(result.success)
    assert_equal(result.message, "Change request sent to document initiator")

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.status, InstanceStatus.PENDING)
    assert_equal(stored.current_step_id, "registrar")
    assert_equal(stored.history[-1].action_type, ActionType.REQUEST_CHANGES)

    notification = engine.get_notification_queue()[0]
    assert_equal(notification.type, NotificationType.APPROVAL_REQUEST)
    assert_equal(notification.recipients, ["emp1"])
    assert_equal(notification.metadata["change_comments"], "Fix dates")

    # The same step can still be approved afterwards
    assert_true(engine.process_approval(instance.id, "registrar", "approve", "regUser").success)


# ============================================================================
# Test: Failures Before The Append
# ============================================================================

def test_lookup_failures():
    engine, _ = engine_with_route(two_step_route_data())
    instance = start(engine)

    result = engine.process_approval("wf_missing", "hod", "approve", "hodUser")
    assert_equal(result.error, FailureKind.NOT_FOUND)
    assert_equal(result.message, "Workflow instance not found")

    result = engine.process_approval(instance.id, "no_such_step", "approve", "hodUser")
    assert_equal(result.error, FailureKind.NOT_FOUND)
    assert_equal(result.message, "Workflow step not found")

    assert_equal(len(engine.get_workflow_instance(instance.id).history), 0)


def test_permission_denied():
    engine, _ = engine_with_route(two_step_route_data())
    instance = start(engine)

    for user in ("emp1", "regUser", "stranger"):
        result = engine.process_approval(instance.id, "hod", "approve", user)
        assert_false(result.success)
        assert_equal(result.error, FailureKind.PERMISSION_DENIED)
        assert_equal(result.message, "User does not have permission to perform this action")

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(len(stored.history), 0)
    assert_equal(stored.status, InstanceStatus.PENDING)
    assert_equal(engine.get_notification_queue(), [])


def test_stale_step_refused():
    """An approver for a later step cannot jump ahead"""
    engine, _ = engine_with_route(two_step_route_data())
    instance = start(engine)

    result = engine.process_approval(instance.id, "registrar", "approve", "regUser")
    assert_false(result.success)
    assert_equal(result.error, FailureKind.INVALID_STATE)

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.current_step_id, "hod")
    assert_equal(len(stored.history), 0)


def test_invalid_action_type():
    engine, _ = engine_with_route(two_step_route_data())
    instance = start(engine)

    for action_type in ("counter-approve", "archive"):
        result = engine.process_approval(instance.id, "hod", action_type, "hodUser")
        assert_equal(result.error, FailureKind.INVALID_STATE)

    assert_equal(len(engine.get_workflow_instance(instance.id).history), 0)


def test_history_only_grows():
    engine, _ = engine_with_route(two_step_route_data())
    instance = start(engine)

    calls = [
        ("hod", "approve", "emp1"),             # denied, no append
        ("hod", "request-changes", "hodUser"),  # +1
        ("hod", "escalate", "hodUser"),         # no manual path, still +1
        ("hod", "approve", "hodUser"),          # +1
        ("registrar", "approve", "regUser"),    # +1, completes
        ("registrar", "approve", "regUser"),    # terminal, no append
    ]
    expected = [0, 1, 2, 3, 4, 4]

    lengths = []
    for step_id, action_type, user in calls:
        engine.process_approval(instance.id, step_id, action_type, user)
        lengths.append(len(engine.get_workflow_instance(instance.id).history))

    assert_equal(lengths, expected)


def test_queries_by_user():
    engine, _ = engine_with_route(two_step_route_data())
    first = start(engine, document_id="doc1")
    second = start(engine, document_id="doc2", initiated_by="emp2")
    engine.process_approval(second.id, "hod", "approve", "hodUser")

    assert_equal([i.id for i in engine.get_instances_by_user("emp1")], [first.id])
    assert_equal([i.id for i in engine.get_instances_by_user("hodUser")], [second.id])

    assert_equal([i.id for i in engine.get_pending_approvals("hodUser")], [first.id])
    assert_equal([i.id for i in engine.get_pending_approvals("regUser")], [second.id])
    assert_equal(engine.get_pending_approvals("emp1"), [])

    engine.process_approval(second.id, "registrar", "approve", "regUser")
    assert_equal(engine.get_pending_approvals("regUser"), [])
    assert_in(second.id, [i.id for i in engine.get_instances_by_user("regUser")])


def test_version_increments_on_save():
    engine, _ = engine_with_route(two_step_route_data())
    instance = start(engine)
    initial = engine.get_workflow_instance(instance.id).version

    engine.process_approval(instance.id, "hod", "approve", "hodUser")
    assert_equal(engine.get_workflow_instance(instance.id).version, initial + 1)

    engine.process_approval(instance.id, "hod", "approve", "emp1")
    assert_equal(engine.get_workflow_instance(instance.id).version, initial + 1, "Refused calls do not save")


# ============================================================================
# Test: Concurrency
# ============================================================================

def test_concurrent_approvals_advance_once():
    """Many approvers racing on one step: one wins, the rest see a moved step"""
    engine, _ = engine_with_route(two_step_route_data())
    instance = start(engine)

    num_threads = 8
    barrier = threading.Barrier(num_threads)
    results = []
    results_lock = threading.Lock()

    def approve():
        barrier.wait()
        result = engine.process_approval(instance.id, "hod", "approve", "hodUser")
        with results_lock:
            results.append(result)

    threads = [threading.Thread(target=approve) for _ in range(num_threads)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert_equal(len(results), num_threads)
    assert_equal(len([r for r in results if r.success]), 1)
    for result in results:
        if not result.success:
            assert_equal(result.error, FailureKind.INVALID_STATE)

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.current_step_id, "registrar")
    assert_equal(stored.status, InstanceStatus.IN_PROGRESS)
    assert_equal([a.action_type for a in stored.history], [ActionType.APPROVE])

    notifications = engine.get_notification_queue()
    assert_equal(len(notifications), 1)
    assert_equal(notifications[0].recipients, ["registrar"])


def test_write_conflict_between_engines():
    """Two engines over one store: the stale writer is refused and queues nothing"""
    engine, _ = engine_with_route(two_step_route_data())
    other = make_engine(routes=engine.routes, instances=engine.instances)
    instance = start(engine)

    engine.roles = InterleavingRoleResolver(
        lambda: other.process_approval(instance.id, "hod", "approve", "hodUser")
    )
    result = engine.process_approval(instance.id, "hod", "request-changes", "hodUser")

    assert_false(result.success)
    assert_equal(result.error, FailureKind.CONFLICT)
    assert_equal(engine.get_notification_queue(), [])

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.current_step_id, "registrar")
    assert_equal([a.action_type for a in stored.history], [ActionType.APPROVE])
    assert_equal(stored.version, 2)
    assert_equal(len(other.get_notification_queue()), 1)


def test_lock_table_is_released():
    engine, _ = engine_with_route(two_step_route_data())
    instance = start(engine)

    for i in range(1000):
        result = engine.process_approval(f"wf_missing_{i}", "hod", "approve", "hodUser")
        assert_equal(result.error, FailureKind.NOT_FOUND)
    engine.process_approval(instance.id, "hod", "approve", "hodUser")
    engine.check_timeouts(now=hours_from_now(100))

    assert_equal(len(engine._locks), 0)


def test_lookups_return_snapshots():
    engine, route = engine_with_route(two_step_route_data())
    instance = start(engine)

    snapshot = engine.get_workflow_instance(instance.id)
    snapshot.current_step_id = "registrar"
    snapshot.status = InstanceStatus.COMPLETED
    engine.get_pending_approvals("hodUser")[0].status = InstanceStatus.REJECTED
    engine.get_workflow_route(route.id).steps.clear()

    stored = engine.get_workflow_instance(instance.id)
    assert_equal(stored.current_step_id, "hod")
    assert_equal(stored.status, InstanceStatus.PENDING)
    assert_equal(len(engine.get_workflow_route(route.id).steps), 2)


# ============================================================================
# Main Test Runner
# ============================================================================

def main():
    """Run all approval flow tests"""
    print_test_header("Approval Flow Tests")

    tests_passed = 0
    tests_failed = 0

    tests = [
        ("Initiate starts at first step", test_initiate_starts_at_first_step),
        ("Two-step route completes", test_two_step_route_completes),
        ("Steps visited in order", test_steps_visited_in_order),
        ("Rejection is terminal", test_rejection_is_terminal),
        ("Request changes keeps step", test_request_changes_keeps_step),
        ("Lookup failures", test_lookup_failures),
        ("Permission denied", test_permission_denied),
        ("Stale step refused", test_stale_step_refused),
        ("Invalid action type", test_invalid_action_type),
        ("History only grows", test_history_only_grows),
        ("Queries by user", test_queries_by_user),
        ("Version increments on save", test_version_increments_on_save),
        ("Concurrent approvals advance once", test_concurrent_approvals_advance_once),
        ("Write conflict between engines", test_write_conflict_between_engines),
        ("Lock table is released", test_lock_table_is_released),
        ("Lookups return snapshots", test_lookups_return_snapshots),
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
