#!/usr/bin/env python3
"""
Test: Workflow Metrics
Purpose: Verify aggregate statistics over workflow instances

Tests:
- Empty engine reports zeroed metrics
- Status counts and rates over a mixed population
- Bottleneck steps and counter-approval usage
"""

import sys
from datetime import timedelta

from fixtures import (
    print_test_header, print_pass, print_fail, print_summary,
    make_step, escalation, engine_with_route, start, hours_from_now,
    assert_equal, assert_true, assert_is_none
)

from docflow.core.metrics import compute_metrics
from docflow.core.workflow_engine import WorkflowEngine


def metrics_route_data():
    return dict(
        name="Metrics Review",
        document_type="academic",
        steps=[
            make_step(
                "hod", 1, ["hod"], timeout_hours=24,
                requires_counter_approval=True, counter_approval_roles=["registrar"],
            ),
            make_step("registrar", 2, ["registrar"]),
        ],
        escalation_paths=[
            escalation("timeout", "hod", "registrar", roles=("registrar",)),
            escalation("manual", "registrar", None, roles=("principal",)),
        ],
    )


def test_empty_metrics():
    metrics = compute_metrics([])

    assert_equal(metrics.total_instances, 0)
    assert_equal(metrics.instances_by_status, {})
    assert_is_none(metrics.average_completion_hours)
    assert_equal(metrics.bottleneck_steps, [])
    assert_equal(metrics.escalation_rate, 0.0)


def populate(engine: WorkflowEngine):
    """One completed, one rejected, one timed out, one manually escalated"""
    completed = start(engine, document_id="completed")
    engine.process_approval(completed.id, "hod", "approve", "hodUser")
    approval = engine.get_workflow_instance(completed.id).history[-1]
    engine.process_counter_approval(completed.id, approval.id, "counter-approve", "regUser")
    engine.process_approval(completed.id, "registrar", "approve", "regUser")

    rejected = start(engine, document_id="rejected")
    engine.process_approval(rejected.id, "hod", "approve", "hodUser")
    approval = engine.get_workflow_instance(rejected.id).history[-1]
    engine.process_counter_approval(rejected.id, approval.id, "reject", "regUser")

    timed_out = start(engine, document_id="timed-out")
    manual = start(engine, document_id="manual")
    engine.check_timeouts(now=hours_from_now(25))

    engine.process_approval(manual.id, "registrar", "escalate", "regUser")
    return completed, rejected, timed_out, manual


def test_mixed_population():
    engine, _ = engine_with_route(metrics_route_data())
    populate(engine)

    metrics = engine.get_workflow_metrics()

    assert_equal(metrics.total_instances, 4)
    assert_equal(metrics.instances_by_status, {"completed": 1, "rejected": 1, "escalated": 2})
    assert_equal(metrics.rejection_rate, 0.25)
    assert_equal(metrics.escalation_rate, 0.5)
    assert_equal(metrics.timeout_rate, 0.5)
    assert_equal(metrics.counter_approval_usage, 2)
    assert_true(metrics.average_completion_hours is not None)
    assert_true(metrics.average_completion_hours < 1)


def test_bottleneck_steps():
    engine, _ = engine_with_route(metrics_route_data())
    populate(engine)

    metrics = engine.get_workflow_metrics()

    # Two timeouts at HOD, one manual escalation at the registrar
    assert_equal(metrics.bottleneck_steps, ["hod", "registrar"])


def test_average_completion_hours():
    engine, _ = engine_with_route(metrics_route_data())
    completed, _, _, _ = populate(engine)

    stored = engine.get_workflow_instance(completed.id)
    stored.initiated_at = stored.completed_at - timedelta(hours=6)
    engine.instances.put(stored)

    assert_equal(engine.get_workflow_metrics().average_completion_hours, 6.0)


def main():
    """Run all metrics tests"""
    print_test_header("Workflow Metrics Tests")

    tests_passed = 0
    tests_failed = 0

    tests = [
        ("Empty metrics", test_empty_metrics),
        ("Mixed population", test_mixed_population),
        ("Bottleneck steps", test_bottleneck_steps),
        ("Average completion hours", test_average_completion_hours),
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
