"""Transition engine -- lists, validates, and applies job state transitions.

The ``TransitionEngine`` is the central orchestration object.  It reads a
job's pointer from the audit log, walks the outgoing edges declared in the
state graph, runs each edge's guards through the guard evaluator, and commits
accepted transitions back to the audit log as one atomic unit.

Concurrency model: listing is a plain read and never blocks writers.
Applying re-reads the live pointer, validates against it, and commits with a
compare-and-set on the version it read.  Two racing applies on one job can
therefore never both succeed; the loser gets ``ConcurrentModificationError``
and leaves no trace.  Jobs share no locks with each other.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from job_lifecycle.models import (
    Actor,
    AllowedTransitionsResponse,
    ChangeSource,
    HistoryResponse,
    IntegrityReport,
    JobState,
    JobStatePointer,
    MetadataValue,
    TransitionOption,
    TransitionRecord,
    TransitionResult,
    validate_caller_metadata,
    validate_metadata,
)
from job_lifecycle.services.audit_log import AuditLog, PendingTransition, verify_trail
from job_lifecycle.services.broadcaster import SubscriberQueue, TransitionBroadcaster
from job_lifecycle.services.guards import GuardEvaluator, blocked_reasons
from job_lifecycle.state_machine import (
    INITIAL_STATE,
    ConcurrentModificationError,
    Edge,
    GuardFailedError,
    InvalidTransitionError,
    StateGraph,
)

logger = logging.getLogger(__name__)

RECORD_FAILURE_REASON = "transition could not be recorded"

TransitionHook = Callable[[TransitionRecord], Awaitable[None]]


class TransitionEngine:
    """Guarded, audited state transitions for field-service jobs.

    Attributes:
        audit_log: Store holding each job's pointer and trail.
        guards: Evaluator shared by the listing and enforcement paths.
        graph: Declared edges and their guard bindings.
        broadcaster: Receives every committed record for live streaming.
    """

    def __init__(
        self,
        audit_log: AuditLog,
        guards: GuardEvaluator,
        graph: StateGraph | None = None,
        broadcaster: TransitionBroadcaster | None = None,
    ) -> None:
        """Initialise the engine.

        Args:
            audit_log: Backend store for pointers and records.
            guards: Guard evaluator wired to the collaborators.
            graph: State graph; defaults to the standard lifecycle.
            broadcaster: Optional fan-out for committed records.

        Raises:
            ValueError: If an edge references a guard the evaluator does not know.
        """
        self.audit_log = audit_log
        self.guards = guards
        self.graph = graph or StateGraph()
        self.broadcaster = broadcaster or TransitionBroadcaster()
        self._hooks: dict[JobState, list[TransitionHook]] = {}

        missing = self.graph.guard_names() - guards.known_guards
        if missing:
            raise ValueError(f"Edges reference unknown guards: {', '.join(sorted(missing))}")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def register_job(
        self,
        job_id: str,
        actor: Actor,
        change_source: ChangeSource = ChangeSource.MANUAL,
    ) -> JobStatePointer:
        """Create the state pointer for a new job, with its creation record.

        Args:
            job_id: Identifier assigned by the job-management component.
            actor: Who created the job.
            change_source: What triggered the creation.

        Returns:
            The new pointer, in ``pending`` at version 0.

        Raises:
            ValueError: If the job is already registered.
        """
        pending = PendingTransition(
            job_id=job_id,
            from_state=None,
            to_state=INITIAL_STATE,
            changed_by=actor.id,
            changed_by_role=actor.role,
            change_source=change_source,
            reason="Job created",
        )
        pointer, record = await asyncio.to_thread(self.audit_log.create, pending)
        self.broadcaster.publish(record)
        logger.info("Registered job %s in state %s", job_id, pointer.state.value)
        return pointer

    async def get_pointer(self, job_id: str) -> JobStatePointer:
        """Return the job's live pointer.

        Raises:
            KeyError: If the job does not exist.
        """
        return await asyncio.to_thread(self.audit_log.get_pointer, job_id)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def _evaluate_edge(self, job_id: str, edge: Edge) -> TransitionOption:
        results = await self.guards.evaluate_all(edge.guards, job_id)
        reasons = blocked_reasons(results)
        return TransitionOption(
            state=edge.target,
            state_name=edge.target.label,
            allowed=not reasons,
            blocked_reasons=reasons,
        )

    async def list_allowed_transitions(self, job_id: str) -> AllowedTransitionsResponse:
        """Report every outgoing edge of the job's current state and its guard verdict.

        Edges that are not declared from the current state are omitted rather
        than reported as blocked.  The answer is advisory; ``apply_transition``
        re-validates at commit time.

        Args:
            job_id: The job to inspect.

        Returns:
            One ``TransitionOption`` per usable edge.

        Raises:
            KeyError: If the job does not exist.
        """
        pointer = await self.get_pointer(job_id)
        edges = self.graph.outgoing_edges(pointer.state, pointer.held_from)
        options = await asyncio.gather(*(self._evaluate_edge(job_id, edge) for edge in edges))
        return AllowedTransitionsResponse(
            job_id=job_id,
            current_state=pointer.state,
            current_state_name=pointer.state.label,
            state_version=pointer.version,
            transitions=list(options),
        )

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    async def apply_transition(
        self,
        job_id: str,
        to_state: JobState,
        actor: Actor,
        change_source: ChangeSource,
        reason: str | None = None,
        notes: str | None = None,
        expected_version: int | None = None,
        metadata: dict[str, MetadataValue] | None = None,
    ) -> TransitionResult:
        """Move *job_id* to *to_state* if the edge is declared and its guards pass.

        The live pointer is re-read here; any earlier listing the caller
        looked at is not trusted.  Guard enforcement is identical for every
        ``change_source``.

        Args:
            job_id: The job to transition.
            to_state: Requested target state.
            actor: Authenticated principal the record is attributed to.
            change_source: What triggered the request.
            reason: Optional human-readable reason.
            notes: Optional free-text notes.
            expected_version: Version the caller based its decision on.
            metadata: Optional bounded attribution map.

        Returns:
            The new state and version.

        Raises:
            KeyError: If the job does not exist.
            ConcurrentModificationError: If *expected_version* is stale, or
                another transition committed while this one was validating.
            InvalidTransitionError: If the edge is not declared from the
                current state.
            GuardFailedError: If any guard fails, or the record could not be
                written.
            ValueError: If *metadata* has unknown or oversize entries, or sets
                a key only the engine writes.
        """
        validate_caller_metadata(metadata or {})
        pointer = await self.get_pointer(job_id)

        if expected_version is not None and expected_version != pointer.version:
            logger.info(
                "Rejected %s for job %s: expected version %d, live version %d",
                to_state.value,
                job_id,
                expected_version,
                pointer.version,
            )
            raise ConcurrentModificationError(job_id, expected_version, pointer.version)

        edge = self.graph.get_edge(pointer.state, to_state, pointer.held_from)
        if edge is None:
            logger.info("Rejected %s -> %s for job %s: edge not declared", pointer.state.value, to_state.value, job_id)
            raise InvalidTransitionError(job_id, pointer.state, to_state)

        results = await self.guards.evaluate_all(edge.guards, job_id)
        reasons = blocked_reasons(results)
        if reasons:
            logger.info(
                "Rejected %s -> %s for job %s: %s",
                pointer.state.value,
                to_state.value,
                job_id,
                "; ".join(reasons),
            )
            raise GuardFailedError(
                job_id,
                f"Cannot move job {job_id!r} to {to_state.value!r}: preconditions not met",
                reasons,
            )

        record_metadata = dict(metadata or {})
        if to_state is JobState.ON_HOLD:
            record_metadata["held_from"] = pointer.state.value
        elif edge.is_hold_return:
            record_metadata["resumed_to"] = to_state.value
        validate_metadata(record_metadata)

        pending = PendingTransition(
            job_id=job_id,
            from_state=pointer.state,
            to_state=to_state,
            changed_by=actor.id,
            changed_by_role=actor.role,
            change_source=change_source,
            reason=reason,
            notes=notes,
            metadata=record_metadata,
        )
        # Once validation is done the commit runs to completion even if the
        # caller goes away, so a request is never half applied.
        return await asyncio.shield(self._commit(pending, pointer.version))

    async def _commit(self, pending: PendingTransition, expected_version: int) -> TransitionResult:
        try:
            pointer, record = await asyncio.to_thread(self.audit_log.commit, pending, expected_version)
        except ConcurrentModificationError:
            logger.info(
                "Rejected %s -> %s for job %s: version %d changed during validation",
                pending.from_state.value if pending.from_state else None,
                pending.to_state.value,
                pending.job_id,
                expected_version,
            )
            raise
        except KeyError:
            raise
        except Exception as exc:
            logger.exception("Audit log write failed for job %s; transition not applied", pending.job_id)
            raise GuardFailedError(
                pending.job_id,
                f"Transition of job {pending.job_id!r} could not be recorded",
                [RECORD_FAILURE_REASON],
            ) from exc

        logger.info(
            "Job %s transitioned %s -> %s (version %d, source %s)",
            pending.job_id,
            record.from_state.value if record.from_state else None,
            record.to_state.value,
            pointer.version,
            record.change_source.value,
        )
        self.broadcaster.publish(record)
        await self._run_hooks(record)
        return TransitionResult(
            job_id=pending.job_id,
            previous_state=record.from_state,
            new_state=pointer.state,
            new_version=pointer.version,
            record_id=record.id,
        )

    # ------------------------------------------------------------------
    # After-commit hooks
    # ------------------------------------------------------------------

    def on_enter(self, state: JobState, hook: TransitionHook) -> None:
        """Register *hook* to run after any transition into *state* commits.

        Hooks see the committed record.  A failing hook is logged and never
        affects the transition, which is already durable.
        """
        self._hooks.setdefault(state, []).append(hook)

    async def _run_hooks(self, record: TransitionRecord) -> None:
        for hook in self._hooks.get(record.to_state, ()):
            try:
                await hook(record)
            except Exception:
                logger.exception(
                    "After-commit hook %s failed for job %s entering %s",
                    getattr(hook, "__name__", repr(hook)),
                    record.job_id,
                    record.to_state.value,
                )

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def get_history(self, job_id: str) -> HistoryResponse:
        """Return the job's trail, oldest first, with the state it replays to.

        The current state is taken from the trail itself, not the pointer,
        so the answer is consistent with the records returned.

        Raises:
            KeyError: If the job does not exist.
        """
        records = await asyncio.to_thread(self.audit_log.read, job_id)
        current = records[-1].to_state if records else INITIAL_STATE
        return HistoryResponse(
            job_id=job_id,
            current_state=current,
            current_state_name=current.label,
            history=records,
        )

    async def verify_integrity(self, job_id: str) -> IntegrityReport:
        """Re-hash and replay the job's trail and compare it with the pointer.

        Records appended after the pointer was read are ignored, so a
        concurrent commit cannot produce a false alarm.

        Raises:
            KeyError: If the job does not exist.
        """
        pointer = await self.get_pointer(job_id)
        records = await asyncio.to_thread(self.audit_log.read, job_id)
        report = verify_trail(pointer, records[: pointer.last_sequence])
        if not (report.chain_valid and report.state_matches):
            logger.warning("Integrity check failed for job %s: %s", job_id, "; ".join(report.problems))
        return report

    # ------------------------------------------------------------------
    # Live events
    # ------------------------------------------------------------------

    def subscribe(self, job_id: str) -> SubscriberQueue:
        """Return a queue receiving every record committed for *job_id* from now on.

        A ``None`` on the queue means the subscriber fell too far behind and
        was detached.
        """
        return self.broadcaster.subscribe(job_id)

    def unsubscribe(self, job_id: str, queue: SubscriberQueue) -> None:
        self.broadcaster.unsubscribe(job_id, queue)
