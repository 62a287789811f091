"""
Test fixtures and helper utilities for standalone test scripts.
Provides engine setup, route factories and assertion helpers.
"""

import sys
import os
import tempfile
from datetime import datetime, timedelta
from contextlib import contextmanager

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from docflow.core.roles import StaticRoleResolver
from docflow.core.route_registry import RouteRegistry
from docflow.core.workflow_engine import WorkflowEngine
from docflow.models.database import Database
from docflow.models.orm import WorkflowInstanceRecord, WorkflowRouteRecord
from docflow.models.repository import SqlRepository
from docflow.models.schemas import (
    EscalationCondition,
    EscalationPath,
    WorkflowInstance,
    WorkflowRoute,
    WorkflowStep,
)


# ============================================================================
# Color codes for terminal output
# ============================================================================

GREEN = '\033[92m'
RED = '\033[91m'
YELLOW = '\033[93m'
BLUE = '\033[94m'
CYAN = '\033[96m'
RESET = '\033[0m'


# ============================================================================
# Test output helpers
# ============================================================================

def print_test_header(test_name):
    """Print formatted test header"""
    print(f"\n{'='*70}")
    print(f"{CYAN}Running: {test_name}{RESET}")
    print(f"{'='*70}\n")


def print_pass(test_name):
    """Print test pass message"""
    print(f"{GREEN}✓ PASS{RESET}: {test_name}")


def print_fail(test_name, error):
    """Print test failure message with error details"""
    print(f"{RED}✗ FAIL{RESET}: {test_name}")
    print(f"{RED}  Error: {error}{RESET}")


def print_info(message):
    """Print informational message"""
    print(f"{BLUE}ℹ {message}{RESET}")


def print_summary(tests_passed, tests_failed):
    """Print test summary"""
    print(f"\n{'='*70}")
    total = tests_passed + tests_failed
    if tests_failed == 0:
        print(f"{GREEN}✓ ALL TESTS PASSED{RESET}: {tests_passed}/{total}")
    else:
        print(f"{RED}✗ SOME TESTS FAILED{RESET}: {tests_passed} passed, {tests_failed} failed")
    print(f"{'='*70}\n")


# ============================================================================
# Users and roles
# ============================================================================

USER_ROLES = {
    "emp1": ["employee"],
    "hodUser": ["hod"],
    "progUser": ["program-head"],
    "regUser": ["registrar"],
    "principalUser": ["principal"],
}


def make_role_resolver(extra=None):
    assignments = {user: list(roles) for user, roles in USER_ROLES.items()}
    for user, roles in (extra or {}).items():
        assignments.setdefault(user, []).extend(roles)
    return StaticRoleResolver(assignments)


class InterleavingRoleResolver(StaticRoleResolver):
    """
    Runs a callback on the first role check, i.e. after the engine has read
    the instance and before it writes. Lets a second writer get in between.
    """

    def __init__(self, callback):
        super().__init__({user: list(roles) for user, roles in USER_ROLES.items()})
        self.callback = callback

    def has_role(self, user_id, role):
        callback, self.callback = self.callback, None
        if callback is not None:
            callback()
        return super().has_role(user_id, role)


# ============================================================================
# Route factories
# ============================================================================

def make_step(step_id, order, roles, **kwargs):
    """Build a WorkflowStep with a readable name"""
    return WorkflowStep(
        id=step_id,
        name=kwargs.pop("name", step_id.replace("_", " ").title()),
        order=order,
        approver_role=roles[0],
        role_required=list(roles),
        **kwargs,
    )


def two_step_route_data(document_type="academic", hod_timeout=48, escalation_paths=None, **kwargs):
    """
    HOD (order 1) -> Registrar (order 2), no counter-approval.
    """
    return dict(
        name=kwargs.pop("name", "Two Step Review"),
        description="HOD then Registrar",
        document_type=document_type,
        steps=[
            make_step("hod", 1, ["hod"], timeout_hours=hod_timeout),
            make_step("registrar", 2, ["registrar"]),
        ],
        escalation_paths=escalation_paths or [],
        **kwargs,
    )


def counter_route_data(document_type="academic", escalation_paths=None):
    """
    HOD (order 1, counter-approved by registrar) -> Principal (order 2).
    """
    return dict(
        name="Counter Approved Review",
        document_type=document_type,
        steps=[
            make_step(
                "hod", 1, ["hod"],
                requires_counter_approval=True,
                counter_approval_roles=["registrar"],
            ),
            make_step("principal", 2, ["principal"]),
        ],
        escalation_paths=escalation_paths or [],
    )


def escalation(condition, from_step, to_step=None, roles=("program-head",), **kwargs):
    return EscalationPath(
        condition=EscalationCondition(condition),
        from_step_id=from_step,
        to_step_id=to_step,
        escalate_to_roles=list(roles),
        **kwargs,
    )


def make_engine(role_resolver=None, **kwargs):
    """Engine over in-memory storage, no seeded routes"""
    return WorkflowEngine(role_resolver or make_role_resolver(), **kwargs)


def engine_with_route(route_data, **kwargs):
    """Engine plus one registered route; the notification queue starts empty"""
    engine = make_engine(**kwargs)
    route = engine.create_workflow_route(route_data)
    return engine, route


def start(engine, document_id="doc1", document_type="academic", initiated_by="emp1", **kwargs):
    """Initiate a workflow and discard the initial notification"""
    instance = engine.initiate_workflow(document_id, document_type, initiated_by, **kwargs)
    engine.get_notification_queue()
    return instance


def hours_from_now(hours):
    return datetime.now() + timedelta(hours=hours)


# ============================================================================
# Database helpers
# ============================================================================

@contextmanager
def temporary_database():
    """
    A fresh SQLite database file, removed afterwards.
    """
    directory = tempfile.mkdtemp(prefix="docflow_test_")
    db_path = os.path.join(directory, "workflows.db")
    db = Database(f"sqlite:///{db_path}", echo=False)
    db.init()
    try:
        yield db
    finally:
        db.close()
        for suffix in ("", "-shm", "-wal"):
            if os.path.exists(db_path + suffix):
                try:
                    os.remove(db_path + suffix)
                except OSError:
                    pass
        try:
            os.rmdir(directory)
        except OSError:
            pass


def make_sql_engine(db, role_resolver=None):
    """Engine whose registry and instance store persist in db"""
    routes = RouteRegistry(SqlRepository(db, WorkflowRouteRecord, WorkflowRoute))
    instances = SqlRepository(db, WorkflowInstanceRecord, WorkflowInstance)
    return WorkflowEngine(role_resolver or make_role_resolver(), routes=routes, instances=instances)


# ============================================================================
# Assertion helpers
# ============================================================================

def assert_equal(actual, expected, message=""):
    """Assert two values are equal"""
    if actual != expected:
        raise AssertionError(
            f"{message}\nExpected: {expected}\nActual: {actual}"
        )


def assert_not_equal(actual, expected, message=""):
    """Assert two values are not equal"""
    if actual == expected:
        raise AssertionError(
            f"{message}\nExpected values to be different, but both are: {actual}"
        )


def assert_true(condition, message=""):
    """Assert condition is true"""
    if not condition:
        raise AssertionError(f"{message}\nExpected: True\nActual: False")


def assert_false(condition, message=""):
    """Assert condition is false"""
    if condition:
        raise AssertionError(f"{message}\nExpected: False\nActual: True")


def assert_in(item, container, message=""):
    """Assert item is in container"""
    if item not in container:
        raise AssertionError(
            f"{message}\nExpected {item} to be in {container}"
        )


def assert_is_none(value, message=""):
    if value is not None:
        raise AssertionError(f"{message}\nExpected: None\nActual: {value}")


def assert_raises(exception_type, func, *args, **kwargs):
    """Assert function raises specific exception"""
    try:
        func(*args, **kwargs)
    except exception_type as e:
        return e
    except Exception as e:
        raise AssertionError(
            f"Expected {exception_type.__name__} to be raised, but got {type(e).__name__}: {e}"
        )
    raise AssertionError(
        f"Expected {exception_type.__name__} to be raised, but no exception was raised"
    )
