"""Tests for the guard evaluator.

Covers passing and failing guards, the signature rule, complete checklists,
and fail-closed behaviour when a collaborator errors or hangs.
"""

import asyncio

import pytest

from job_lifecycle import state_machine as sm
from job_lifecycle.services.collaborators import InMemoryCollaborators
from job_lifecycle.services.guards import GuardEvaluator, blocked_reasons, unverifiable_reason


class HangingCrew(InMemoryCollaborators):
    """Crew lookups that never answer in time."""

    async def is_crew_assigned(self, job_id: str) -> bool:
        await asyncio.sleep(5)
        return True


class BrokenBilling(InMemoryCollaborators):
    """Billing lookups that fail with a transport error."""

    async def is_payment_recorded(self, job_id: str) -> bool:
        raise ConnectionError("billing service unreachable")


@pytest.fixture()
def evaluator(facts: InMemoryCollaborators) -> GuardEvaluator:
    """Evaluator over the fixture facts.

    Args:
        facts: Fixture-provided collaborator facts.

    Returns:
        A ``GuardEvaluator`` with a short timeout.
    """
    return GuardEvaluator(facts.bundle(), timeout_seconds=0.5)


@pytest.mark.asyncio()
async def test_guard_passes(facts: InMemoryCollaborators, evaluator: GuardEvaluator) -> None:
    """A true collaborator fact passes with no reason.

    Args:
        facts: Fixture-provided collaborator facts.
        evaluator: Fixture-provided evaluator.
    """
    facts.crew_assigned.add("job-1")
    result = await evaluator.evaluate(sm.CREW_ASSIGNED, "job-1")
    assert result.passed
    assert result.reason == ""
    assert not result.unavailable


@pytest.mark.asyncio()
@pytest.mark.parametrize(
    ("guard", "reason"),
    [
        (sm.CREW_ASSIGNED, "Crew not assigned"),
        (sm.CREW_CHECKED_IN, "Crew not checked in"),
        (sm.REQUIRED_FORMS_COMPLETED, "Required job forms not completed"),
        (sm.LINE_ITEMS_FINALIZED, "Invoice line items not finalized"),
        (sm.PAYMENT_RECORDED, "Payment not recorded"),
    ],
)
async def test_guard_fails_with_reason(evaluator: GuardEvaluator, guard: str, reason: str) -> None:
    """A false collaborator fact fails with the guard's checklist text.

    Args:
        evaluator: Fixture-provided evaluator.
        guard: Guard under test.
        reason: Expected failure reason.
    """
    result = await evaluator.evaluate(guard, "job-1")
    assert not result.passed
    assert result.reason == reason
    assert not result.unavailable


@pytest.mark.asyncio()
async def test_signature_only_checked_when_required(facts: InMemoryCollaborators, evaluator: GuardEvaluator) -> None:
    """The signature guard passes when the template does not mandate one.

    Args:
        facts: Fixture-provided collaborator facts.
        evaluator: Fixture-provided evaluator.
    """
    assert (await evaluator.evaluate(sm.SIGNATURE_CAPTURED, "job-1")).passed

    facts.signature_required.add("job-1")
    missing = await evaluator.evaluate(sm.SIGNATURE_CAPTURED, "job-1")
    assert not missing.passed
    assert missing.reason == "Customer signature not captured"

    facts.signature_captured.add("job-1")
    assert (await evaluator.evaluate(sm.SIGNATURE_CAPTURED, "job-1")).passed


@pytest.mark.asyncio()
async def test_evaluate_all_reports_every_failure(facts: InMemoryCollaborators, evaluator: GuardEvaluator) -> None:
    """All failing guards are reported, in edge order, not just the first.

    Args:
        facts: Fixture-provided collaborator facts.
        evaluator: Fixture-provided evaluator.
    """
    facts.signature_required.add("job-1")
    results = await evaluator.evaluate_all([sm.REQUIRED_FORMS_COMPLETED, sm.SIGNATURE_CAPTURED], "job-1")
    assert [r.name for r in results] == [sm.REQUIRED_FORMS_COMPLETED, sm.SIGNATURE_CAPTURED]
    assert blocked_reasons(results) == ["Required job forms not completed", "Customer signature not captured"]


@pytest.mark.asyncio()
async def test_evaluate_all_empty() -> None:
    """An unguarded edge evaluates to no results and no reasons."""
    evaluator = GuardEvaluator(InMemoryCollaborators().bundle())
    results = await evaluator.evaluate_all([], "job-1")
    assert results == []
    assert blocked_reasons(results) == []


@pytest.mark.asyncio()
async def test_timeout_fails_closed() -> None:
    """A collaborator that does not answer in time blocks the edge."""
    evaluator = GuardEvaluator(HangingCrew().bundle(), timeout_seconds=0.05)
    result = await evaluator.evaluate(sm.CREW_ASSIGNED, "job-1")
    assert not result.passed
    assert result.unavailable
    assert result.reason == unverifiable_reason(sm.CREW_ASSIGNED)


@pytest.mark.asyncio()
async def test_collaborator_error_fails_closed() -> None:
    """A collaborator that raises blocks the edge instead of propagating."""
    facts = BrokenBilling()
    evaluator = GuardEvaluator(facts.bundle())
    result = await evaluator.evaluate(sm.PAYMENT_RECORDED, "job-1")
    assert not result.passed
    assert result.unavailable
    assert result.reason == unverifiable_reason(sm.PAYMENT_RECORDED)


@pytest.mark.asyncio()
async def test_unknown_guard_is_a_wiring_error(evaluator: GuardEvaluator) -> None:
    """Asking for a guard nobody registered raises ``KeyError``.

    Args:
        evaluator: Fixture-provided evaluator.
    """
    with pytest.raises(KeyError):
        await evaluator.evaluate("moon_phase_ok", "job-1")


def test_known_guards_cover_graph(evaluator: GuardEvaluator) -> None:
    """The default evaluator knows every guard the graph references.

    Args:
        evaluator: Fixture-provided evaluator.
    """
    assert sm.StateGraph().guard_names() <= evaluator.known_guards


@pytest.mark.asyncio()
async def test_each_unavailable_guard_is_named() -> None:
    """Two unreachable collaborators produce two distinguishable reasons."""

    class DarkBilling(InMemoryCollaborators):
        async def is_invoice_finalized(self, job_id: str) -> bool:
            raise ConnectionError("billing service unreachable")

        async def is_payment_recorded(self, job_id: str) -> bool:
            raise ConnectionError("billing service unreachable")

    evaluator = GuardEvaluator(DarkBilling().bundle())
    results = await evaluator.evaluate_all([sm.LINE_ITEMS_FINALIZED, sm.PAYMENT_RECORDED], "job-1")
    assert blocked_reasons(results) == [
        "precondition could not be verified (line_items_finalized)",
        "precondition could not be verified (payment_recorded)",
    ]
