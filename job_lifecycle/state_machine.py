"""Job lifecycle state graph with declarative, guarded edges.

The graph is data, not branching logic: ``EDGES`` lists every legal
``(from, to)`` pair together with the names of the guards that must pass
before the edge can be taken.  If a pair is not present here the transition
is forbidden.  The table is fixed at import time; changing the lifecycle is a
code change, which keeps guard/edge consistency checkable by a static test.

Holds are the one intentional cycle: ``on_hold`` is reachable from every
active state and may only return to the state it was held from.
"""

from __future__ import annotations

from dataclasses import dataclass

from job_lifecycle.models import JobState

INITIAL_STATE = JobState.PENDING
TERMINAL_STATES: frozenset[JobState] = frozenset({JobState.PAID, JobState.CANCELLED})
# States a job may be put on hold from (and resumed back into).
HOLDABLE_STATES: tuple[JobState, ...] = (
    JobState.SCHEDULED,
    JobState.EN_ROUTE,
    JobState.ON_SITE,
    JobState.IN_PROGRESS,
)

# Guard names, resolved to predicates by ``job_lifecycle.services.guards``.
CREW_ASSIGNED = "crew_assigned"
CREW_CHECKED_IN = "crew_checked_in"
REQUIRED_FORMS_COMPLETED = "required_forms_completed"
SIGNATURE_CAPTURED = "signature_captured"
LINE_ITEMS_FINALIZED = "line_items_finalized"
PAYMENT_RECORDED = "payment_recorded"


@dataclass(frozen=True)
class Edge:
    """A declared, directed transition and the guards gating it.

    Attributes:
        source: State the edge leaves.
        target: State the edge enters.
        guards: Guard names evaluated as a logical AND.
    """

    source: JobState
    target: JobState
    guards: tuple[str, ...] = ()

    @property
    def is_hold_return(self) -> bool:
        """True for the ``on_hold -> <active state>`` resume edges."""
        return self.source is JobState.ON_HOLD and self.target in HOLDABLE_STATES


_HAPPY_PATH: tuple[Edge, ...] = (
    Edge(JobState.PENDING, JobState.SCHEDULED),
    Edge(JobState.SCHEDULED, JobState.EN_ROUTE, (CREW_ASSIGNED,)),
    Edge(JobState.EN_ROUTE, JobState.ON_SITE),
    Edge(JobState.ON_SITE, JobState.IN_PROGRESS, (CREW_CHECKED_IN,)),
    Edge(JobState.IN_PROGRESS, JobState.COMPLETED, (REQUIRED_FORMS_COMPLETED, SIGNATURE_CAPTURED)),
    Edge(JobState.COMPLETED, JobState.INVOICED, (LINE_ITEMS_FINALIZED,)),
    Edge(JobState.INVOICED, JobState.PAID, (PAYMENT_RECORDED,)),
)

_HOLD_EDGES: tuple[Edge, ...] = tuple(Edge(state, JobState.ON_HOLD) for state in HOLDABLE_STATES) + tuple(
    Edge(JobState.ON_HOLD, state) for state in HOLDABLE_STATES
)

_CANCEL_EDGES: tuple[Edge, ...] = tuple(
    Edge(state, JobState.CANCELLED) for state in JobState if state not in TERMINAL_STATES
)

EDGES: tuple[Edge, ...] = _HAPPY_PATH + _HOLD_EDGES + _CANCEL_EDGES


class StateGraph:
    """Read-only registry over an edge table.

    Built once at process start; exposes lookups only.

    Attributes:
        edges: Every declared edge, in declaration order.
    """

    def __init__(self, edges: tuple[Edge, ...] = EDGES) -> None:
        """Index *edges* by source state.

        Args:
            edges: The edge table to serve.  Defaults to the field-service
                lifecycle declared in this module.

        Raises:
            ValueError: If the same ``(source, target)`` pair is declared twice.
        """
        self.edges = edges
        self._by_source: dict[JobState, tuple[Edge, ...]] = {}
        self._index: dict[tuple[JobState, JobState], Edge] = {}
        for edge in edges:
            key = (edge.source, edge.target)
            if key in self._index:
                raise ValueError(f"Duplicate edge {edge.source.value!r} -> {edge.target.value!r}")
            self._index[key] = edge
            self._by_source[edge.source] = self._by_source.get(edge.source, ()) + (edge,)

    def outgoing_edges(self, state: JobState, held_from: JobState | None = None) -> tuple[Edge, ...]:
        """Return the edges a job in *state* may take, in declaration order.

        From ``on_hold`` only the resume edge back to *held_from* survives,
        alongside the non-resume edges (cancellation).

        Args:
            state: The job's current state.
            held_from: For held jobs, the state the hold was entered from.

        Returns:
            The usable outgoing edges; empty for terminal states.
        """
        edges = self._by_source.get(state, ())
        if state is not JobState.ON_HOLD:
            return edges
        return tuple(edge for edge in edges if not edge.is_hold_return or edge.target == held_from)

    def get_edge(self, source: JobState, target: JobState, held_from: JobState | None = None) -> Edge | None:
        """Look up the usable edge from *source* to *target*, if any."""
        for edge in self.outgoing_edges(source, held_from):
            if edge.target == target:
                return edge
        return None

    def is_valid_edge(self, source: JobState, target: JobState, held_from: JobState | None = None) -> bool:
        """Check whether moving from *source* to *target* is declared.

        Args:
            source: The state the job occupies right now.
            target: The desired next state.
            held_from: For held jobs, the state the hold was entered from.

        Returns:
            ``True`` when the edge exists and is usable.
        """
        return self.get_edge(source, target, held_from) is not None

    def guard_names(self) -> frozenset[str]:
        """Every guard name referenced by at least one edge."""
        return frozenset(name for edge in self.edges for name in edge.guards)


def replay(records: list[tuple[JobState | None, JobState]]) -> JobState | None:
    """Fold ``(from, to)`` pairs into the state they lead to.

    Args:
        records: Transition pairs in commit order.

    Returns:
        The final ``to`` state, or ``None`` for an empty trail.

    Raises:
        ValueError: If a record's ``from`` does not match the state reached so far.
    """
    state: JobState | None = None
    for position, (source, target) in enumerate(records, start=1):
        if source != state:
            raise ValueError(f"Record {position} starts from {source!r} but the trail is at {state!r}")
        state = target
    return state


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------


class TransitionRejectedError(Exception):
    """Base for every per-request rejection of a transition.

    Rejections leave the job untouched and are reported to the caller; they
    never take the engine down.

    Attributes:
        kind: Stable machine-readable rejection category.
        job_id: The job the request targeted.
        blocked_reasons: Human-readable reasons, possibly empty.
    """

    kind = "TransitionRejected"

    def __init__(self, job_id: str, message: str, blocked_reasons: list[str] | None = None) -> None:
        self.job_id = job_id
        self.blocked_reasons = list(blocked_reasons or [])
        super().__init__(message)


class InvalidTransitionError(TransitionRejectedError):
    """Raised when the requested edge is not declared from the current state.

    Attributes:
        current: The state the job is currently in.
        target: The state the caller attempted to transition to.
    """

    kind = "InvalidTransition"

    def __init__(self, job_id: str, current: JobState, target: JobState) -> None:
        self.current = current
        self.target = target
        super().__init__(job_id, f"Transition from {current.value!r} to {target.value!r} is not allowed")


class GuardFailedError(TransitionRejectedError):
    """Raised when one or more guards on the requested edge did not pass."""

    kind = "GuardFailed"


class ConcurrentModificationError(TransitionRejectedError):
    """Raised when the job changed between the caller's read and the commit.

    Attributes:
        expected_version: Version the caller (or the engine's own read) assumed.
        actual_version: Live version at the time of the check, when known.
    """

    kind = "ConcurrentModification"

    def __init__(self, job_id: str, expected_version: int, actual_version: int | None = None) -> None:
        self.expected_version = expected_version
        self.actual_version = actual_version
        message = f"Job {job_id!r} is no longer at version {expected_version}"
        if actual_version is not None:
            message += f" (now {actual_version})"
        super().__init__(job_id, message + "; refetch and retry")
