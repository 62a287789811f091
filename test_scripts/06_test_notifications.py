#!/usr/bin/env python3
"""
Test: Notification Queue
Purpose: Verify queued payloads and read-once draining

Tests:
- Draining twice returns payloads then nothing
- Payloads carry recipients, priority and links for delivery
- Action URLs honour the configured prefix
- Concurrent producers never lose a payload
"""

import sys
import threading

from fixtures import (
    print_test_header, print_pass, print_fail, print_summary,
    two_step_route_data, engine_with_route, start,
    assert_equal, assert_true
)

from docflow.core.notifications import NotificationEmitter, NotificationQueue
from docflow.models.schemas import (
    NotificationPayload, NotificationPriority, NotificationType
)


# ============================================================================
# Test: Draining
# ============================================================================

def test_drain_is_read_once():
    engine, _ = engine_with_route(two_step_route_data())
    engine.initiate_workflow("doc1", "academic", "emp1")

    first = engine.get_notification_queue()
    second = engine.get_notification_queue()

    assert_equal(len(first), 1)
    assert_equal(second, [])


def test_drain_returns_only_newer_payloads():
    engine, _ = engine_with_route(two_step_route_data())
    instance = start(engine)

    engine.process_approval(instance.id, "hod", "approve", "hodUser")
    batch = engine.get_notification_queue()
    engine.process_approval(instance.id, "registrar", "approve", "regUser")
    later = engine.get_notification_queue()

    assert_equal([n.type for n in batch], [NotificationType.APPROVAL_REQUEST])
    assert_equal([n.type for n in later], [NotificationType.APPROVAL_GRANTED])


# ============================================================================
# Test: Payload Contents
# ============================================================================

def test_approval_request_payload():
    engine, route = engine_with_route(two_step_route_data())
    instance = engine.initiate_workflow("doc7", "academic", "emp1")

    notification = engine.get_notification_queue()[0]
    assert_equal(notification.workflow_instance_id, instance.id)
    assert_equal(notification.document_id, "doc7")
    assert_equal(notification.priority, NotificationPriority.MEDIUM)
    assert_equal(notification.subject, f"Approval Required: {route.name}")
    assert_equal(notification.action_url, f"/workflow/approve/{instance.id}")
    assert_equal(notification.metadata["step_id"], "hod")
    assert_equal(notification.metadata["document_type"], "academic")


def test_completion_payload():
    engine, _ = engine_with_route(two_step_route_data())
    instance = start(engine)
    engine.process_approval(instance.id, "hod", "approve", "hodUser")
    engine.process_approval(instance.id, "registrar", "approve", "regUser")

    notification = engine.get_notification_queue()[-1]
    assert_equal(notification.type, NotificationType.APPROVAL_GRANTED)
    assert_equal(notification.recipients, ["emp1"])
    assert_equal(notification.metadata["total_actions"], 2)
    assert_true(notification.metadata["completed_at"] is not None)
    assert_equal(notification.action_url, "/documents/doc1")


def test_action_url_prefix():
    engine, _ = engine_with_route(two_step_route_data(), action_url_prefix="https://docs.example.edu/")
    instance = engine.initiate_workflow("doc1", "academic", "emp1")

    notification = engine.get_notification_queue()[0]
    assert_equal(notification.action_url, f"https://docs.example.edu/workflow/approve/{instance.id}")


# ============================================================================
# Test: Queue
# ============================================================================

def make_payload(index):
    return NotificationPayload(
        type=NotificationType.APPROVAL_REQUEST,
        workflow_instance_id=f"wf_{index}",
        document_id=f"doc_{index}",
        recipients=["hod"],
        subject="Approval Required",
        message="A document requires your approval",
        action_url=f"/workflow/approve/wf_{index}",
    )


def test_concurrent_pushes_are_kept():
    queue = NotificationQueue()

    def produce(offset):
        for i in range(200):
            queue.push(make_payload(offset + i))

    threads = [threading.Thread(target=produce, args=(n * 1000,)) for n in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert_equal(len(queue), 1000)
    drained = queue.drain()
    assert_equal(len(drained), 1000)
    assert_equal(len({n.workflow_instance_id for n in drained}), 1000)
    assert_equal(len(queue), 0)


def test_emitter_defaults_to_own_queue():
    emitter = NotificationEmitter()
    assert_equal(len(emitter.queue), 0)


# ============================================================================
# Main Test Runner
# ============================================================================

def main():
    """Run all notification tests"""
    print_test_header("Notification Queue Tests")

    tests_passed = 0
    tests_failed = 0

    tests = [
        ("Drain is read-once", test_drain_is_read_once),
        ("Drain returns only newer payloads", test_drain_returns_only_newer_payloads),
        ("Approval request payload", test_approval_request_payload),
        ("Completion payload", test_completion_payload),
        ("Action URL prefix", test_action_url_prefix),
        ("Concurrent pushes are kept", test_concurrent_pushes_are_kept),
        ("Emitter defaults to own queue", test_emitter_defaults_to_own_queue),
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
