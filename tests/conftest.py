"""Shared fixtures for the lifecycle test suites.

Engine-level tests run once per audit log backend (in-memory and SQLite), so
both stores are held to the same contract.
"""

from pathlib import Path

import pytest

from job_lifecycle.models import Actor, JobState
from job_lifecycle.services.audit_log import AuditLog, InMemoryAuditLog
from job_lifecycle.services.collaborators import InMemoryCollaborators
from job_lifecycle.services.guards import GuardEvaluator
from job_lifecycle.services.sql_audit_log import SqlAuditLog
from job_lifecycle.services.transition_engine import TransitionEngine

# Happy path from pending up to each state, in order.
HAPPY_PATH: tuple[JobState, ...] = (
    JobState.SCHEDULED,
    JobState.EN_ROUTE,
    JobState.ON_SITE,
    JobState.IN_PROGRESS,
    JobState.COMPLETED,
    JobState.INVOICED,
    JobState.PAID,
)


@pytest.fixture()
def facts() -> InMemoryCollaborators:
    """Collaborator facts with nothing true yet.

    Returns:
        A fresh ``InMemoryCollaborators``.
    """
    return InMemoryCollaborators()


@pytest.fixture(params=["memory", "sql"])
def audit_log(request: pytest.FixtureRequest, tmp_path: Path) -> AuditLog:
    """Audit log backend, parametrised over both implementations.

    Args:
        request: Pytest fixture request carrying the backend name.
        tmp_path: Pytest-provided temporary directory for the SQLite file.

    Returns:
        An empty audit log.
    """
    if request.param == "memory":
        return InMemoryAuditLog()
    store = SqlAuditLog(f"sqlite:///{tmp_path / 'lifecycle.db'}")
    request.addfinalizer(store.dispose)
    return store


@pytest.fixture()
def engine(audit_log: AuditLog, facts: InMemoryCollaborators) -> TransitionEngine:
    """A ``TransitionEngine`` over the parametrised store and in-memory facts.

    Args:
        audit_log: Fixture-provided store.
        facts: Fixture-provided collaborator facts.

    Returns:
        A ready engine.
    """
    return TransitionEngine(audit_log, GuardEvaluator(facts.bundle(), timeout_seconds=1.0))


@pytest.fixture()
def actor() -> Actor:
    """A dispatcher acting through the UI."""
    return Actor(id="user-17", role="dispatcher")


def satisfy_all(facts: InMemoryCollaborators, job_id: str) -> None:
    """Make every guard pass for *job_id*."""
    for bucket in (
        facts.crew_assigned,
        facts.crew_checked_in,
        facts.forms_complete,
        facts.signature_captured,
        facts.invoice_finalized,
        facts.payment_recorded,
    ):
        bucket.add(job_id)
