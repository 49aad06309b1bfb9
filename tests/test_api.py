"""HTTP-level tests for the lifecycle API.

Exercises the FastAPI app through ``TestClient``: authentication, the
camelCase wire shape, status codes for each rejection kind, and the read
endpoints.
"""

import jwt
import pytest
from fastapi.testclient import TestClient

from job_lifecycle.config import LifecycleSettings
from job_lifecycle.main import create_app
from job_lifecycle.services.audit_log import InMemoryAuditLog
from job_lifecycle.services.collaborators import InMemoryCollaborators

SECRET = "lifecycle-test-secret-0123456789abcdef"


def _token(sub: str = "user-17", role: str = "dispatcher") -> str:
    return jwt.encode({"sub": sub, "role": role}, SECRET, algorithm="HS256")


@pytest.fixture()
def client(facts: InMemoryCollaborators) -> TestClient:
    """A client over a fresh app with in-memory storage.

    Args:
        facts: Fixture-provided collaborator facts.

    Returns:
        A ``TestClient`` bound to the app.
    """
    app = create_app(
        LifecycleSettings(jwt_secret=SECRET),
        collaborators=facts.bundle(),
        audit_log=InMemoryAuditLog(),
    )
    return TestClient(app)


@pytest.fixture()
def auth() -> dict[str, str]:
    """Authorization header for a dispatcher."""
    return {"Authorization": f"Bearer {_token()}"}


def _register(client: TestClient, auth: dict[str, str], job_id: str = "job-1") -> dict:
    resp = client.post("/jobs", json={"jobId": job_id}, headers=auth)
    assert resp.status_code == 201
    return resp.json()


def _move(client: TestClient, auth: dict[str, str], job_id: str, to_state: str, **body):
    return client.post(f"/jobs/{job_id}/transition", json={"toState": to_state, **body}, headers=auth)


class TestAuth:
    """Mutating endpoints require a valid bearer token."""

    def test_missing_token(self, client: TestClient) -> None:
        """No header is a 401."""
        resp = client.post("/jobs", json={"jobId": "job-1"})
        assert resp.status_code == 401

    def test_bad_signature(self, client: TestClient) -> None:
        """A token signed with another secret is a 401."""
        forged = jwt.encode({"sub": "user-17", "role": "dispatcher"}, "x" * 40, algorithm="HS256")
        resp = client.post("/jobs", json={"jobId": "job-1"}, headers={"Authorization": f"Bearer {forged}"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid token"

    def test_token_without_role(self, client: TestClient) -> None:
        """A token that does not name a role is a 401."""
        token = jwt.encode({"sub": "user-17"}, SECRET, algorithm="HS256")
        resp = client.post("/jobs", json={"jobId": "job-1"}, headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    def test_transition_requires_token(self, client: TestClient, auth: dict[str, str]) -> None:
        """Applying a transition without a token is refused and writes nothing."""
        _register(client, auth)
        resp = client.post("/jobs/job-1/transition", json={"toState": "scheduled"})
        assert resp.status_code == 401
        assert client.get("/jobs/job-1").json()["stateVersion"] == 0


class TestJobs:
    """Registration and the job summary."""

    def test_register(self, client: TestClient, auth: dict[str, str]) -> None:
        """A new job starts pending at version 0."""
        body = _register(client, auth)
        assert body == {
            "jobId": "job-1",
            "currentState": "pending",
            "currentStateName": "Pending",
            "stateVersion": 0,
        }

    def test_register_generates_id(self, client: TestClient, auth: dict[str, str]) -> None:
        """An omitted id is generated."""
        resp = client.post("/jobs", json={}, headers=auth)
        assert resp.status_code == 201
        assert resp.json()["jobId"]

    def test_register_duplicate(self, client: TestClient, auth: dict[str, str]) -> None:
        """Registering the same id twice is a 409."""
        _register(client, auth)
        resp = client.post("/jobs", json={"jobId": "job-1"}, headers=auth)
        assert resp.status_code == 409

    def test_unknown_job(self, client: TestClient, auth: dict[str, str]) -> None:
        """Every per-job endpoint 404s for an unknown id."""
        assert client.get("/jobs/nope").status_code == 404
        assert client.get("/jobs/nope/allowed-transitions").status_code == 404
        assert client.get("/jobs/nope/history").status_code == 404
        assert client.get("/jobs/nope/integrity").status_code == 404
        assert client.get("/jobs/nope/events").status_code == 404
        assert _move(client, auth, "nope", "scheduled").status_code == 404


class TestAllowedTransitions:
    """``GET /jobs/{id}/allowed-transitions``."""

    def test_blocked_edge_lists_reasons(self, client: TestClient, auth: dict[str, str]) -> None:
        """A scheduled job without crew shows en_route blocked with its reason."""
        _register(client, auth)
        assert _move(client, auth, "job-1", "scheduled").status_code == 200

        body = client.get("/jobs/job-1/allowed-transitions").json()
        assert body["currentState"] == "scheduled"
        assert body["currentStateName"] == "Scheduled"
        assert body["stateVersion"] == 1
        options = {t["state"]: t for t in body["transitions"]}
        assert set(options) == {"en_route", "on_hold", "cancelled"}
        assert options["en_route"] == {
            "state": "en_route",
            "stateName": "En Route",
            "allowed": False,
            "blockedReasons": ["Crew not assigned"],
        }
        assert options["cancelled"]["allowed"] is True


class TestApplyTransition:
    """``POST /jobs/{id}/transition`` outcomes and status codes."""

    def test_success(self, client: TestClient, auth: dict[str, str]) -> None:
        """An unguarded declared edge is applied."""
        _register(client, auth)
        resp = _move(client, auth, "job-1", "scheduled", reason="Booked by phone", expectedVersion=0)
        assert resp.status_code == 200
        body = resp.json()
        assert body["previousState"] == "pending"
        assert body["newState"] == "scheduled"
        assert body["newVersion"] == 1
        assert body["recordId"]

    def test_guard_failed(self, client: TestClient, auth: dict[str, str]) -> None:
        """A failing guard is a 422 carrying every reason."""
        _register(client, auth)
        _move(client, auth, "job-1", "scheduled")
        resp = _move(client, auth, "job-1", "en_route")
        assert resp.status_code == 422
        body = resp.json()
        assert body["kind"] == "GuardFailed"
        assert body["blockedReasons"] == ["Crew not assigned"]

    def test_guard_passes_once_crew_assigned(
        self, client: TestClient, auth: dict[str, str], facts: InMemoryCollaborators
    ) -> None:
        """Satisfying the guard unblocks the same request."""
        _register(client, auth)
        _move(client, auth, "job-1", "scheduled")
        facts.crew_assigned.add("job-1")
        resp = _move(client, auth, "job-1", "en_route")
        assert resp.status_code == 200
        assert resp.json()["newState"] == "en_route"

    def test_invalid_transition(self, client: TestClient, auth: dict[str, str]) -> None:
        """An undeclared edge is a 409 InvalidTransition."""
        _register(client, auth)
        resp = _move(client, auth, "job-1", "paid")
        assert resp.status_code == 409
        body = resp.json()
        assert body["kind"] == "InvalidTransition"
        assert body["blockedReasons"] == []

    def test_stale_version(self, client: TestClient, auth: dict[str, str]) -> None:
        """A stale expectedVersion is a 409 ConcurrentModification."""
        _register(client, auth)
        _move(client, auth, "job-1", "scheduled")
        resp = _move(client, auth, "job-1", "cancelled", expectedVersion=0)
        assert resp.status_code == 409
        body = resp.json()
        assert body["kind"] == "ConcurrentModification"
        assert "refetch" in body["detail"]
        assert client.get("/jobs/job-1").json()["currentState"] == "scheduled"

    def test_unknown_state(self, client: TestClient, auth: dict[str, str]) -> None:
        """A target outside the state set fails request validation."""
        _register(client, auth)
        assert _move(client, auth, "job-1", "teleported").status_code == 422

    def test_unknown_metadata_key(self, client: TestClient, auth: dict[str, str]) -> None:
        """Metadata outside the documented key set is refused."""
        _register(client, auth)
        resp = _move(client, auth, "job-1", "scheduled", metadata={"favourite_colour": "blue"})
        assert resp.status_code == 422
        assert client.get("/jobs/job-1").json()["stateVersion"] == 0

    def test_engine_metadata_keys_refused(self, client: TestClient, auth: dict[str, str]) -> None:
        """Callers cannot forge hold bookkeeping into the trail."""
        _register(client, auth)
        resp = _move(client, auth, "job-1", "scheduled", metadata={"held_from": "paid", "resumed_to": "invoiced"})
        assert resp.status_code == 422
        history = client.get("/jobs/job-1/history").json()["history"]
        assert [r["toState"] for r in history] == ["pending"]

    def test_oversize_reason(self, client: TestClient, auth: dict[str, str]) -> None:
        """Reasons longer than 500 characters are refused."""
        _register(client, auth)
        assert _move(client, auth, "job-1", "scheduled", reason="x" * 501).status_code == 422


class TestHistory:
    """``GET /jobs/{id}/history`` and ``GET /jobs/{id}/integrity``."""

    def test_history_attributes_actor(self, client: TestClient, auth: dict[str, str]) -> None:
        """Records carry the token's actor, the source, and the metadata."""
        _register(client, auth)
        crew = {"Authorization": f"Bearer {_token('crew-4', 'crew')}"}
        _move(
            client,
            crew,
            "job-1",
            "scheduled",
            changeSource="api",
            reason="Imported",
            notes="From partner portal",
            metadata={"integration": "partner-portal", "external_reference": "PO-889"},
        )

        body = client.get("/jobs/job-1/history").json()
        assert body["currentState"] == "scheduled"
        assert body["currentStateName"] == "Scheduled"
        created, scheduled = body["history"]
        assert created["fromState"] is None
        assert created["toState"] == "pending"
        assert created["sequence"] == 1
        assert scheduled["fromState"] == "pending"
        assert scheduled["toState"] == "scheduled"
        assert scheduled["changedBy"] == "crew-4"
        assert scheduled["changedByRole"] == "crew"
        assert scheduled["changeSource"] == "api"
        assert scheduled["reason"] == "Imported"
        assert scheduled["notes"] == "From partner portal"
        assert scheduled["metadata"] == {"integration": "partner-portal", "external_reference": "PO-889"}
        assert scheduled["prevHash"] == created["recordHash"]

    def test_failed_request_leaves_no_record(self, client: TestClient, auth: dict[str, str]) -> None:
        """Rejected requests do not appear in the trail."""
        _register(client, auth)
        _move(client, auth, "job-1", "paid")
        assert len(client.get("/jobs/job-1/history").json()["history"]) == 1

    def test_integrity(self, client: TestClient, auth: dict[str, str]) -> None:
        """A clean trail verifies and replays to the live state."""
        _register(client, auth)
        _move(client, auth, "job-1", "scheduled")
        _move(client, auth, "job-1", "on_hold", metadata={"hold_reason": "parts on order"})

        body = client.get("/jobs/job-1/integrity").json()
        assert body["chainValid"] is True
        assert body["stateMatches"] is True
        assert body["replayedState"] == "on_hold"
        assert body["recordCount"] == 3
        assert body["problems"] == []


def test_health(client: TestClient) -> None:
    """The health endpoint names the active store."""
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "store": "memory"}
