#!/usr/bin/env python3
"""
Test: HTTP API
Purpose: Verify the FastAPI surface end to end

Tests:
- Health and metrics endpoints
- Route CRUD, validation errors and cloning
- Workflow initiation and lookups
- Approval failures map to 404 / 403 / 409
- Counter-approval, pending approvals and notification draining
- SQLite storage backend through the application lifespan
"""

import os
import sys
import tempfile

from fixtures import (
    print_test_header, print_pass, print_fail, print_summary,
    make_role_resolver,
    assert_equal, assert_true, assert_in, assert_raises
)

from fastapi import HTTPException

from docflow.api.v1.dependencies import raise_for_failure
from docflow.config.settings import Settings
from docflow.models.schemas import ApprovalResult, FailureKind
from main import create_app


def route_body(**overrides):
    body = {
        "name": "API Review",
        "document_type": "academic",
        "steps": [
            {
                "id": "hod", "name": "HOD Review", "order": 1,
                "approver_role": "HOD", "role_required": ["hod"],
                "requires_counter_approval": True, "counter_approval_roles": ["registrar"],
            },
            {
                "id": "registrar", "name": "Registrar Approval", "order": 2,
                "approver_role": "Registrar", "role_required": ["registrar"],
            },
        ],
        "escalation_paths": [],
    }
    body.update(overrides)
    return body


def make_client(**settings_overrides):
    from fastapi.testclient import TestClient

    options = {"seed_default_routes": False, "timeout_check_interval_seconds": 3600}
    options.update(settings_overrides)
    app = create_app(Settings(**options), make_role_resolver())
    return TestClient(app)


def initiate(client, document_id="doc1"):
    response = client.post("/api/workflows", json={
        "document_id": document_id,
        "document_type": "academic",
        "initiated_by": "emp1",
    })
    assert_equal(response.status_code, 201, response.text)
    return response.json()


# ============================================================================
# Test: Health
# ============================================================================

def test_health_and_metrics():
    with make_client() as client:
        response = client.get("/health")
        assert_equal(response.status_code, 200)
        assert_equal(response.json()["status"], "healthy")

        response = client.get("/metrics")
        assert_equal(response.status_code, 200)
        data = response.json()
        assert_equal(data["workflows"]["total_instances"], 0)
        assert_equal(data["routes"], {"total": 0, "active": 0})
        assert_true(data["timeout_manager"]["running"])


# ============================================================================
# Test: Routes
# ============================================================================

def test_route_crud():
    with make_client() as client:
        response = client.post("/api/routes", json=route_body())
        assert_equal(response.status_code, 201, response.text)
        route = response.json()
        assert_true(route["id"].startswith("route_"))

        response = client.get(f"/api/routes/{route['id']}")
        assert_equal(response.json()["name"], "API Review")

        response = client.patch(f"/api/routes/{route['id']}", json={"is_active": False})
        assert_equal(response.status_code, 200)
        assert_equal(response.json()["version"], 2)

        assert_equal(len(client.get("/api/routes").json()), 1)
        assert_equal(client.get("/api/routes", params={"active_only": True}).json(), [])

        response = client.post(f"/api/routes/{route['id']}/clone", json={"created_by": "admin"})
        assert_equal(response.status_code, 201)
        assert_equal(response.json()["name"], "API Review (Copy)")


def test_route_errors():
    with make_client() as client:
        body = route_body()
        body["steps"][1]["order"] = 1
        response = client.post("/api/routes", json=body)
        assert_equal(response.status_code, 422)
        assert_in("order 1", response.json()["detail"])

        assert_equal(client.get("/api/routes/route_missing").status_code, 404)
        assert_equal(client.patch("/api/routes/route_missing", json={"name": "x"}).status_code, 404)
        assert_equal(client.post("/api/routes/route_missing/clone", json={}).status_code, 404)

        route = client.post("/api/routes", json=route_body()).json()
        response = client.patch(f"/api/routes/{route['id']}", json={"name": None})
        assert_equal(response.status_code, 422)
        assert_in("name", response.json()["detail"])
        stored = client.get(f"/api/routes/{route['id']}").json()
        assert_equal(stored["name"], "API Review")
        assert_equal(stored["version"], 1)


# ============================================================================
# Test: Workflows and Approvals
# ============================================================================

def test_workflow_lifecycle():
    with make_client() as client:
        client.post("/api/routes", json=route_body())
        instance = initiate(client)
        assert_equal(instance["status"], "pending")
        assert_equal(instance["current_step_id"], "hod")

        pending = client.get("/api/approvals/pending", params={"user_id": "hodUser"}).json()
        assert_equal([i["id"] for i in pending], [instance["id"]])

        response = client.post(f"/api/workflows/{instance['id']}/actions", json={
            "step_id": "hod", "action_type": "approve", "performed_by": "hodUser",
        })
        assert_equal(response.status_code, 200, response.text)
        assert_in("Counter-approval required", response.json()["message"])

        workflow = client.get(f"/api/workflows/{instance['id']}").json()
        approval_id = workflow["history"][-1]["id"]

        response = client.post(f"/api/workflows/{instance['id']}/counter-approvals", json={
            "original_action_id": approval_id, "action_type": "counter-approve", "performed_by": "regUser",
        })
        assert_equal(response.status_code, 200, response.text)
        assert_equal(response.json()["next_step"]["id"], "registrar")

        response = client.post(f"/api/workflows/{instance['id']}/actions", json={
            "step_id": "registrar", "action_type": "approve", "performed_by": "regUser",
        })
        assert_equal(response.status_code, 200)

        workflow = client.get(f"/api/workflows/{instance['id']}").json()
        assert_equal(workflow["status"], "completed")
        assert_equal(len(workflow["history"]), 3)

        mine = client.get("/api/workflows", params={"user_id": "emp1"}).json()
        assert_equal([i["id"] for i in mine], [instance["id"]])


def test_approval_failure_status_codes():
    with make_client() as client:
        client.post("/api/routes", json=route_body())
        instance = initiate(client)
        url = f"/api/workflows/{instance['id']}/actions"

        response = client.post("/api/workflows/wf_missing/actions", json={
            "step_id": "hod", "action_type": "approve", "performed_by": "hodUser",
        })
        assert_equal(response.status_code, 404)

        response = client.post(url, json={"step_id": "hod", "action_type": "approve", "performed_by": "emp1"})
        assert_equal(response.status_code, 403)

        response = client.post(url, json={"step_id": "registrar", "action_type": "approve", "performed_by": "regUser"})
        assert_equal(response.status_code, 409)

        response = client.post(url, json={"step_id": "hod", "action_type": "escalate", "performed_by": "hodUser"})
        assert_equal(response.status_code, 409)
        assert_equal(response.json()["detail"], "No escalation path available for manual escalation")

        response = client.post(url, json={"step_id": "hod", "action_type": "archive", "performed_by": "hodUser"})
        assert_equal(response.status_code, 422)

        response = client.post(f"/api/workflows/{instance['id']}/counter-approvals", json={
            "original_action_id": "act_missing", "action_type": "counter-approve", "performed_by": "regUser",
        })
        assert_equal(response.status_code, 404)

    conflict = ApprovalResult.failure(FailureKind.CONFLICT, "Workflow was modified concurrently. Please retry.")
    error = assert_raises(HTTPException, raise_for_failure, conflict)
    assert_equal(error.status_code, 409)


def test_initiate_without_route():
    with make_client() as client:
        response = client.post("/api/workflows", json={
            "document_id": "doc1", "document_type": "financial", "initiated_by": "emp1",
        })
        assert_equal(response.status_code, 404)
        assert_equal(client.get("/api/workflows/wf_missing").status_code, 404)


def test_notification_drain_and_timeout_check():
    with make_client() as client:
        client.post("/api/routes", json=route_body())
        initiate(client)

        drained = client.post("/api/notifications/drain").json()
        assert_equal(len(drained), 1)
        assert_equal(drained[0]["type"], "approval-request")
        assert_equal(client.post("/api/notifications/drain").json(), [])

        response = client.post("/api/workflows/check-timeouts")
        assert_equal(response.status_code, 200)
        assert_equal(response.json()["escalated"], 0)


def test_sqlite_backend():
    directory = tempfile.mkdtemp(prefix="docflow_api_")
    database_url = f"sqlite:///{os.path.join(directory, 'api.db')}"

    with make_client(storage_backend="sqlite", database_url=database_url, seed_default_routes=True) as client:
        routes = client.get("/api/routes").json()
        assert_equal([r["id"] for r in routes], ["route_academic_default"])
        instance = initiate(client)

    # A new application over the same file sees the stored instance
    with make_client(storage_backend="sqlite", database_url=database_url, seed_default_routes=True) as client:
        workflow = client.get(f"/api/workflows/{instance['id']}").json()
        assert_equal(workflow["current_step_id"], "step_hod_review")
        assert_equal(len(client.get("/api/routes").json()), 1)


# ============================================================================
# Main Test Runner
# ============================================================================

def main():
    """Run all API tests"""
    print_test_header("HTTP API Tests")

    tests_passed = 0
    tests_failed = 0

    tests = [
        ("Health and metrics", test_health_and_metrics),
        ("Route CRUD", test_route_crud),
        ("Route errors", test_route_errors),
        ("Workflow lifecycle", test_workflow_lifecycle),
        ("Approval failure status codes", test_approval_failure_status_codes),
        ("Initiate without route", test_initiate_without_route),
        ("Notification drain and timeout check", test_notification_drain_and_timeout_check),
        ("SQLite backend", test_sqlite_backend),
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
