"""Job lifecycle endpoints -- register jobs, list and apply transitions, read history.

Rejected transitions are raised as ``TransitionRejectedError`` subclasses and
rendered by the application-level exception handler in ``job_lifecycle.main``
as ``{kind, detail, blockedReasons}``.
"""

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, status

from job_lifecycle.auth import get_actor
from job_lifecycle.models import (
    Actor,
    AllowedTransitionsResponse,
    HistoryResponse,
    IntegrityReport,
    JobStatePointer,
    JobSummary,
    RegisterJobRequest,
    TransitionErrorResponse,
    TransitionRequest,
    TransitionResult,
)
from job_lifecycle.services.transition_engine import TransitionEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])

_engine: TransitionEngine | None = None


def set_engine(engine: TransitionEngine) -> None:
    """Wire the shared ``TransitionEngine`` into this router module.

    Args:
        engine: The application-wide ``TransitionEngine`` instance.
    """
    global _engine
    _engine = engine


def _get_engine() -> TransitionEngine:
    """Return the wired ``TransitionEngine`` or raise if not initialised.

    Raises:
        HTTPException: If the engine has not been set yet.
    """
    if _engine is None:
        raise HTTPException(status_code=503, detail="TransitionEngine not initialised")
    return _engine


def _not_found(job_id: str) -> HTTPException:
    logger.info("Job %s not found", job_id)
    return HTTPException(status_code=404, detail=f"Job {job_id!r} not found")


def _summary(pointer: JobStatePointer) -> JobSummary:
    return JobSummary(
        job_id=pointer.job_id,
        current_state=pointer.state,
        current_state_name=pointer.state.label,
        state_version=pointer.version,
    )


@router.post("", response_model=JobSummary, status_code=status.HTTP_201_CREATED)
async def register_job(request: RegisterJobRequest, actor: Actor = Depends(get_actor)) -> JobSummary:
    """Create the lifecycle pointer for a job, starting in ``pending``.

    Args:
        request: Optional caller-chosen job id and change source.
        actor: Resolved from the bearer token.

    Returns:
        The new job's state summary.

    Raises:
        HTTPException: 409 if the job id is already registered.
    """
    engine = _get_engine()
    job_id = request.job_id or uuid.uuid4().hex[:12]
    try:
        pointer = await engine.register_job(job_id, actor, request.change_source)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _summary(pointer)


@router.get("/{job_id}", response_model=JobSummary)
async def get_job(job_id: str) -> JobSummary:
    """Return the job's current state and version."""
    engine = _get_engine()
    try:
        pointer = await engine.get_pointer(job_id)
    except KeyError as exc:
        raise _not_found(job_id) from exc
    return _summary(pointer)


@router.get("/{job_id}/allowed-transitions", response_model=AllowedTransitionsResponse)
async def list_allowed_transitions(job_id: str) -> AllowedTransitionsResponse:
    """List every outgoing edge from the job's current state with its guard verdict.

    Advisory: the UI renders this as buttons plus a checklist of blocking
    reasons, but ``POST /jobs/{id}/transition`` re-validates everything.
    """
    engine = _get_engine()
    try:
        return await engine.list_allowed_transitions(job_id)
    except KeyError as exc:
        raise _not_found(job_id) from exc


@router.post(
    "/{job_id}/transition",
    response_model=TransitionResult,
    responses={
        409: {"model": TransitionErrorResponse, "description": "InvalidTransition or ConcurrentModification"},
        422: {"model": TransitionErrorResponse, "description": "GuardFailed"},
    },
)
async def apply_transition(
    job_id: str,
    request: TransitionRequest,
    actor: Actor = Depends(get_actor),
) -> TransitionResult:
    """Move the job to ``toState``, attributed to the calling actor.

    Args:
        job_id: Job to transition.
        request: Target state plus optional reason, notes, metadata, change
            source, and the version the caller decided on.
        actor: Resolved from the bearer token.

    Returns:
        The new state and version.

    Raises:
        HTTPException: 404 if the job does not exist.
    """
    engine = _get_engine()
    try:
        return await engine.apply_transition(
            job_id,
            request.to_state,
            actor,
            request.change_source,
            reason=request.reason,
            notes=request.notes,
            expected_version=request.expected_version,
            metadata=request.metadata,
        )
    except KeyError as exc:
        raise _not_found(job_id) from exc


@router.get("/{job_id}/history", response_model=HistoryResponse)
async def get_history(job_id: str) -> HistoryResponse:
    """Return the job's full audit trail, oldest first."""
    engine = _get_engine()
    try:
        return await engine.get_history(job_id)
    except KeyError as exc:
        raise _not_found(job_id) from exc


@router.get("/{job_id}/integrity", response_model=IntegrityReport)
async def verify_integrity(job_id: str) -> IntegrityReport:
    """Re-hash and replay the job's trail against its live state."""
    engine = _get_engine()
    try:
        return await engine.verify_integrity(job_id)
    except KeyError as exc:
        raise _not_found(job_id) from exc
