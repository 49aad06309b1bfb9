"""SSE events endpoint -- streams committed transitions for one job.

Uses ``sse-starlette`` to provide a standards-compliant Server-Sent Events
stream.  Dispatch boards connect here to refresh a job card the moment a crew
member or an automation moves it, instead of polling the history endpoint.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException
from sse_starlette.sse import EventSourceResponse

from job_lifecycle.models import JobSummary
from job_lifecycle.state_machine import TERMINAL_STATES

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from job_lifecycle.services.transition_engine import TransitionEngine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])

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


async def transition_events(engine: TransitionEngine, job_id: str) -> AsyncGenerator[dict[str, str], None]:
    """Async generator formatting a job's transitions for SSE.

    The first event (``state``) is the job's current summary.  Each later
    event (``transition``) is one committed record.  The stream ends once the
    job is in a terminal state, or when this subscriber falls too far
    behind and is detached.

    Args:
        engine: Engine to subscribe to.
        job_id: The job whose transitions should be streamed.

    Yields:
        Dicts with ``event`` and ``data`` keys suitable for
        ``EventSourceResponse``.

    Raises:
        KeyError: If the job does not exist.
    """
    # Subscribe before reading the pointer so no commit falls in between.
    queue = engine.subscribe(job_id)
    try:
        pointer = await engine.get_pointer(job_id)
        summary = JobSummary(
            job_id=job_id,
            current_state=pointer.state,
            current_state_name=pointer.state.label,
            state_version=pointer.version,
        )
        yield {"event": "state", "data": summary.model_dump_json(by_alias=True)}
        if pointer.state in TERMINAL_STATES:
            return

        while True:
            record = await queue.get()
            if record is None:
                logger.info("Transition stream for job %s closed after falling behind", job_id)
                break
            if record.sequence <= pointer.last_sequence:
                continue
            yield {"event": "transition", "data": record.model_dump_json(by_alias=True)}
            # Terminal states end the stream
            if record.to_state in TERMINAL_STATES:
                break
    finally:
        engine.unsubscribe(job_id, queue)


@router.get("/jobs/{job_id}/events")
async def stream_events(job_id: str) -> EventSourceResponse:
    """Open an SSE stream of the job's transitions.

    Args:
        job_id: Identifier of the job to stream.

    Returns:
        An ``EventSourceResponse`` that yields server-sent events.

    Raises:
        HTTPException: If the job does not exist.
    """
    engine = _get_engine()
    try:
        await engine.get_pointer(job_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Job {job_id!r} not found") from exc

    logger.debug("Opening transition stream for job %s", job_id)
    return EventSourceResponse(transition_events(engine, job_id))
