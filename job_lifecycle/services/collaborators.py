"""Collaborator interfaces consumed by the guard evaluator.

Crew assignment, job forms, and billing each live in their own component;
the lifecycle service only asks them yes/no questions.  The protocols below
are that boundary.  ``InMemoryCollaborators`` implements all three against
plain sets so the service can run stand-alone and tests can flip facts per
job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)


class CrewDirectory(Protocol):
    """Assignment / crew component."""

    async def is_crew_assigned(self, job_id: str) -> bool: ...

    async def is_crew_checked_in(self, job_id: str) -> bool: ...


class FormsService(Protocol):
    """Job forms component, including signature capture."""

    async def are_required_forms_complete(self, job_id: str) -> bool: ...

    async def is_signature_required(self, job_id: str) -> bool: ...

    async def is_signature_captured(self, job_id: str) -> bool: ...


class BillingService(Protocol):
    """Billing component."""

    async def is_invoice_finalized(self, job_id: str) -> bool: ...

    async def is_payment_recorded(self, job_id: str) -> bool: ...


@dataclass
class Collaborators:
    """The three collaborators a guard may consult, bundled for injection."""

    crew: CrewDirectory
    forms: FormsService
    billing: BillingService


@dataclass
class InMemoryCollaborators:
    """Set-backed stand-in for the crew, forms, and billing components.

    Each attribute holds the ids of jobs for which the fact is true.
    Implements ``CrewDirectory``, ``FormsService`` and ``BillingService``.
    """

    crew_assigned: set[str] = field(default_factory=set)
    crew_checked_in: set[str] = field(default_factory=set)
    forms_complete: set[str] = field(default_factory=set)
    signature_required: set[str] = field(default_factory=set)
    signature_captured: set[str] = field(default_factory=set)
    invoice_finalized: set[str] = field(default_factory=set)
    payment_recorded: set[str] = field(default_factory=set)

    async def is_crew_assigned(self, job_id: str) -> bool:
        return job_id in self.crew_assigned

    async def is_crew_checked_in(self, job_id: str) -> bool:
        return job_id in self.crew_checked_in

    async def are_required_forms_complete(self, job_id: str) -> bool:
        return job_id in self.forms_complete

    async def is_signature_required(self, job_id: str) -> bool:
        return job_id in self.signature_required

    async def is_signature_captured(self, job_id: str) -> bool:
        return job_id in self.signature_captured

    async def is_invoice_finalized(self, job_id: str) -> bool:
        return job_id in self.invoice_finalized

    async def is_payment_recorded(self, job_id: str) -> bool:
        return job_id in self.payment_recorded

    def bundle(self) -> Collaborators:
        """Expose this instance as all three collaborators at once."""
        logger.debug("Using in-memory collaborators for crew, forms and billing")
        return Collaborators(crew=self, forms=self, billing=self)
