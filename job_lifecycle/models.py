"""Pydantic models for the job lifecycle API contracts and internal records.

This module defines every request body, response body, and audit record used
by the lifecycle service.  All structured data flows through these models --
no loose dicts.  API-facing models serialise with camelCase field names so the
dispatch UI, crew app, and external integrations share one wire shape.
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class JobState(enum.StrEnum):
    """All possible states a job can occupy in its lifecycle.

    ``pending`` is the only initial state; ``paid`` and ``cancelled`` are
    terminal.  See ``job_lifecycle.state_machine`` for the edge table.
    """

    PENDING = "pending"
    SCHEDULED = "scheduled"
    EN_ROUTE = "en_route"
    ON_SITE = "on_site"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    INVOICED = "invoiced"
    PAID = "paid"
    CANCELLED = "cancelled"

    @property
    def label(self) -> str:
        """Human-readable name shown by the dispatch board and notifications."""
        return STATE_NAMES[self]


STATE_NAMES: dict[JobState, str] = {
    JobState.PENDING: "Pending",
    JobState.SCHEDULED: "Scheduled",
    JobState.EN_ROUTE: "En Route",
    JobState.ON_SITE: "On Site",
    JobState.IN_PROGRESS: "In Progress",
    JobState.ON_HOLD: "On Hold",
    JobState.COMPLETED: "Completed",
    JobState.INVOICED: "Invoiced",
    JobState.PAID: "Paid",
    JobState.CANCELLED: "Cancelled",
}


class ChangeSource(enum.StrEnum):
    """What triggered a transition.  Attribution only -- guards apply equally."""

    MANUAL = "manual"
    AUTOMATION = "automation"
    API = "api"


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

# Closed set of metadata keys a transition record may carry, grouped by the
# producer that writes them.
CALLER_METADATA_KEYS: frozenset[str] = frozenset(
    {
        # request context
        "request_id",
        "ip_address",
        "user_agent",
        # automation producers
        "automation_rule_id",
        "automation_run_id",
        # api producers
        "integration",
        "external_reference",
        # hold / cancel context
        "hold_reason",
        "hold_until",
        "cancellation_code",
    }
)
# Written by the engine on hold entry and resume; callers may not supply them.
ENGINE_METADATA_KEYS: frozenset[str] = frozenset({"held_from", "resumed_to"})
METADATA_KEYS: frozenset[str] = CALLER_METADATA_KEYS | ENGINE_METADATA_KEYS
MAX_METADATA_ENTRIES = 16
MAX_METADATA_VALUE_LENGTH = 500

MetadataValue = str | int | float | bool


def validate_metadata(metadata: dict[str, MetadataValue]) -> dict[str, MetadataValue]:
    """Check *metadata* against the documented key set and size bounds.

    Args:
        metadata: Candidate key/value map.

    Returns:
        The same map, unchanged, when valid.

    Raises:
        ValueError: On unknown keys, too many entries, or oversize values.
    """
    if len(metadata) > MAX_METADATA_ENTRIES:
        raise ValueError(f"metadata may hold at most {MAX_METADATA_ENTRIES} entries")
    unknown = sorted(set(metadata) - METADATA_KEYS)
    if unknown:
        raise ValueError(f"unknown metadata keys: {', '.join(unknown)}")
    for key, value in metadata.items():
        if isinstance(value, str) and len(value) > MAX_METADATA_VALUE_LENGTH:
            raise ValueError(f"metadata value for {key!r} exceeds {MAX_METADATA_VALUE_LENGTH} characters")
    return metadata


def validate_caller_metadata(metadata: dict[str, MetadataValue]) -> dict[str, MetadataValue]:
    """Like ``validate_metadata``, but also refuse the engine-written keys.

    Raises:
        ValueError: On engine-only keys, or anything ``validate_metadata`` rejects.
    """
    reserved = sorted(set(metadata) & ENGINE_METADATA_KEYS)
    if reserved:
        raise ValueError(f"metadata keys written by the lifecycle engine: {', '.join(reserved)}")
    return validate_metadata(metadata)


class ApiModel(BaseModel):
    """Base for wire models: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Actor
# ---------------------------------------------------------------------------


class Actor(BaseModel):
    """The authenticated principal a transition is attributed to.

    Resolved by the auth collaborator and passed explicitly into every
    mutating engine call.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, description="Actor identifier from the auth collaborator")
    role: str = Field(min_length=1, description="Role the actor acted in, e.g. 'dispatcher' or 'crew'")


# ---------------------------------------------------------------------------
# Audit records
# ---------------------------------------------------------------------------


class TransitionRecord(ApiModel):
    """A single immutable entry in a job's audit trail.

    ``sequence`` is gap-free per job and, together with ``prev_hash`` and
    ``record_hash``, makes the trail tamper-evident.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(description="Unique record identifier")
    job_id: str = Field(description="Job this record belongs to")
    sequence: int = Field(ge=1, description="1-based position in the job's trail")
    from_state: JobState | None = Field(default=None, description="State before the change; null for creation")
    to_state: JobState = Field(description="State after the change")
    changed_by: str | None = Field(default=None, description="Actor id")
    changed_by_role: str | None = Field(default=None, description="Actor role at the time of the change")
    change_source: ChangeSource = Field(default=ChangeSource.MANUAL, description="What triggered the change")
    reason: str | None = Field(default=None, description="Human-readable reason")
    notes: str | None = Field(default=None, description="Free-text notes")
    metadata: dict[str, MetadataValue] = Field(default_factory=dict, description="Bounded attribution map")
    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC), description="UTC commit time")
    prev_hash: str | None = Field(default=None, description="Hash of the previous record, null for the first")
    record_hash: str = Field(default="", description="SHA-256 over the content fields and prev_hash")

    @field_validator("metadata")
    @classmethod
    def _check_metadata(cls, value: dict[str, MetadataValue]) -> dict[str, MetadataValue]:
        return validate_metadata(value)


class JobStatePointer(ApiModel):
    """The denormalised current-state pointer for one job.

    Mutated only by an audit log commit, in the same atomic unit as the
    record append.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    job_id: str
    state: JobState = JobState.PENDING
    version: int = Field(default=0, ge=0)
    held_from: JobState | None = None
    last_sequence: int = Field(default=0, ge=0)
    last_hash: str | None = None


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


class GuardResult(BaseModel):
    """Outcome of evaluating one named guard for one job."""

    model_config = ConfigDict(frozen=True)

    name: str
    passed: bool
    reason: str = ""
    unavailable: bool = Field(default=False, description="True when the collaborator could not answer")


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class RegisterJobRequest(ApiModel):
    """Request body for ``POST /jobs``."""

    job_id: str | None = Field(default=None, min_length=1, max_length=64, description="Optional caller-chosen id")
    change_source: ChangeSource = Field(default=ChangeSource.MANUAL)


class JobSummary(ApiModel):
    """Response payload for ``POST /jobs`` and ``GET /jobs/{id}``."""

    job_id: str
    current_state: JobState
    current_state_name: str
    state_version: int


# ---------------------------------------------------------------------------
# Allowed transitions
# ---------------------------------------------------------------------------


class TransitionOption(ApiModel):
    """One outgoing edge from the job's current state, with its guard verdict."""

    state: JobState = Field(description="Target state of the edge")
    state_name: str = Field(description="Display name of the target state")
    allowed: bool = Field(description="True when every guard on the edge passed")
    blocked_reasons: list[str] = Field(default_factory=list, description="All failing guard reasons")


class AllowedTransitionsResponse(ApiModel):
    """Response payload for ``GET /jobs/{id}/allowed-transitions``.

    Advisory only: the result may be stale by the time a transition is
    submitted, which is re-validated at commit time.
    """

    job_id: str
    current_state: JobState
    current_state_name: str
    state_version: int
    transitions: list[TransitionOption] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Apply transition
# ---------------------------------------------------------------------------


class TransitionRequest(ApiModel):
    """Request body for ``POST /jobs/{id}/transition``."""

    to_state: JobState = Field(description="Requested target state")
    reason: str | None = Field(default=None, max_length=500)
    notes: str | None = Field(default=None, max_length=2000)
    change_source: ChangeSource = Field(default=ChangeSource.MANUAL)
    expected_version: int | None = Field(default=None, ge=0, description="Version the caller decided on")
    metadata: dict[str, MetadataValue] = Field(default_factory=dict)

    @field_validator("metadata")
    @classmethod
    def _check_metadata(cls, value: dict[str, MetadataValue]) -> dict[str, MetadataValue]:
        return validate_caller_metadata(value)


class TransitionResult(ApiModel):
    """Successful outcome of ``ApplyTransition``."""

    job_id: str
    previous_state: JobState
    new_state: JobState
    new_version: int
    record_id: str


class TransitionErrorResponse(ApiModel):
    """Structured body returned for a rejected transition request."""

    kind: str = Field(description="InvalidTransition, GuardFailed or ConcurrentModification")
    detail: str
    blocked_reasons: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# History / integrity
# ---------------------------------------------------------------------------


class HistoryResponse(ApiModel):
    """Response payload for ``GET /jobs/{id}/history``; records oldest first."""

    job_id: str
    current_state: JobState
    current_state_name: str
    history: list[TransitionRecord] = Field(default_factory=list)


class IntegrityReport(ApiModel):
    """Result of replaying and re-hashing a job's trail against its pointer."""

    job_id: str
    record_count: int
    chain_valid: bool
    replayed_state: JobState | None
    current_state: JobState
    state_matches: bool
    problems: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(ApiModel):
    """Response payload for ``GET /health``."""

    status: str = Field(description="Service health status string, e.g. 'ok'")
    store: str = Field(description="Audit log backend in use: 'memory' or 'sql'")
