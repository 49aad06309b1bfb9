"""Guard evaluator -- named lifecycle preconditions backed by collaborators.

Every guard is a small async predicate over a job id and the collaborator
bundle.  The same evaluator serves both the advisory listing and the commit
path, so what the UI shows as allowed is exactly what the engine enforces.

Guards fail closed: a collaborator that errors or does not answer within the
configured timeout produces a failing ``GuardResult`` with
``unavailable=True``; it never lets the edge through.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from job_lifecycle import state_machine as sm
from job_lifecycle.models import GuardResult
from job_lifecycle.services.collaborators import Collaborators

logger = logging.getLogger(__name__)

UNVERIFIABLE_REASON = "precondition could not be verified"


def unverifiable_reason(name: str) -> str:
    """Checklist text for a guard whose collaborator could not answer."""
    return f"{UNVERIFIABLE_REASON} ({name})"


Predicate = Callable[[str, Collaborators], Awaitable[bool]]


@dataclass(frozen=True)
class Guard:
    """A named precondition.

    Attributes:
        name: Identifier referenced from the edge table.
        check: Async predicate; ``True`` means the precondition holds.
        failure_reason: Checklist text shown when the check is ``False``.
    """

    name: str
    check: Predicate
    failure_reason: str


async def _signature_satisfied(job_id: str, collaborators: Collaborators) -> bool:
    if not await collaborators.forms.is_signature_required(job_id):
        return True
    return await collaborators.forms.is_signature_captured(job_id)


GUARDS: dict[str, Guard] = {
    guard.name: guard
    for guard in (
        Guard(sm.CREW_ASSIGNED, lambda job_id, c: c.crew.is_crew_assigned(job_id), "Crew not assigned"),
        Guard(sm.CREW_CHECKED_IN, lambda job_id, c: c.crew.is_crew_checked_in(job_id), "Crew not checked in"),
        Guard(
            sm.REQUIRED_FORMS_COMPLETED,
            lambda job_id, c: c.forms.are_required_forms_complete(job_id),
            "Required job forms not completed",
        ),
        Guard(sm.SIGNATURE_CAPTURED, _signature_satisfied, "Customer signature not captured"),
        Guard(
            sm.LINE_ITEMS_FINALIZED,
            lambda job_id, c: c.billing.is_invoice_finalized(job_id),
            "Invoice line items not finalized",
        ),
        Guard(sm.PAYMENT_RECORDED, lambda job_id, c: c.billing.is_payment_recorded(job_id), "Payment not recorded"),
    )
}


class GuardEvaluator:
    """Evaluates named guards against the collaborators, with a timeout each.

    Attributes:
        collaborators: Crew, forms and billing lookups.
        timeout_seconds: Upper bound on a single guard's collaborator calls.
    """

    def __init__(
        self,
        collaborators: Collaborators,
        timeout_seconds: float = 5.0,
        guards: dict[str, Guard] | None = None,
    ) -> None:
        self.collaborators = collaborators
        self.timeout_seconds = timeout_seconds
        self._guards = dict(GUARDS if guards is None else guards)

    @property
    def known_guards(self) -> frozenset[str]:
        return frozenset(self._guards)

    async def evaluate(self, name: str, job_id: str) -> GuardResult:
        """Evaluate one guard for one job.

        Args:
            name: Guard name as referenced by an edge.
            job_id: The job being checked.

        Returns:
            A ``GuardResult``; never raises for collaborator faults.

        Raises:
            KeyError: If *name* is not a registered guard (a wiring bug).
        """
        guard = self._guards[name]
        try:
            passed = await asyncio.wait_for(guard.check(job_id, self.collaborators), timeout=self.timeout_seconds)
        except TimeoutError:
            logger.warning("Guard %s timed out after %.1fs for job %s", name, self.timeout_seconds, job_id)
            return GuardResult(name=name, passed=False, reason=unverifiable_reason(name), unavailable=True)
        except Exception:
            logger.warning("Guard %s could not be evaluated for job %s", name, job_id, exc_info=True)
            return GuardResult(name=name, passed=False, reason=unverifiable_reason(name), unavailable=True)

        if passed:
            return GuardResult(name=name, passed=True)
        return GuardResult(name=name, passed=False, reason=guard.failure_reason)

    async def evaluate_all(self, names: Iterable[str], job_id: str) -> list[GuardResult]:
        """Evaluate several guards concurrently; results keep the input order.

        Every guard runs even when an earlier one fails, so callers can show
        a complete checklist.
        """
        return list(await asyncio.gather(*(self.evaluate(name, job_id) for name in names)))


def blocked_reasons(results: Iterable[GuardResult]) -> list[str]:
    """Collect the reasons of every failing guard, without duplicates."""
    reasons: list[str] = []
    for result in results:
        if not result.passed and result.reason not in reasons:
            reasons.append(result.reason)
    return reasons
