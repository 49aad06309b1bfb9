"""Append-only audit log of job transitions, and the state pointer it guards.

The audit log is the source of truth for a job's lifecycle.  Each store keeps
two things per job -- the ordered list of ``TransitionRecord`` entries and the
denormalised ``JobStatePointer`` -- and only ever changes them together in a
single ``commit``: a compare-and-set on the pointer's version plus the record
append.  Either both happen or neither does.

Stores expose create, commit, and ordered reads.  There is deliberately no
update or delete.  Records are hash-chained (``prev_hash`` / ``record_hash``)
so retroactive edits made behind the store's back are detectable by
``verify_trail``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from job_lifecycle.models import (
    ChangeSource,
    IntegrityReport,
    JobState,
    JobStatePointer,
    MetadataValue,
    TransitionRecord,
)
from job_lifecycle.state_machine import ConcurrentModificationError, replay

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingTransition:
    """The caller-supplied content of a record, before the store seals it.

    The store assigns ``sequence``, ``prev_hash``, ``record_hash`` and
    ``created_at`` inside its atomic section so the chain cannot fork.
    """

    job_id: str
    from_state: JobState | None
    to_state: JobState
    changed_by: str | None
    changed_by_role: str | None
    change_source: ChangeSource = ChangeSource.MANUAL
    reason: str | None = None
    notes: str | None = None
    metadata: dict[str, MetadataValue] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


# ---------------------------------------------------------------------------
# Hash chain
# ---------------------------------------------------------------------------


def as_utc(value: datetime) -> datetime:
    """Normalise *value* to an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _json_default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return as_utc(obj).isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonical_json(data: dict[str, Any]) -> str:
    """Deterministic JSON: sorted keys, no whitespace."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_json_default)


def hash_record(record: TransitionRecord) -> str:
    """SHA-256 over the record's content fields and its ``prev_hash``.

    ``record_hash`` itself is excluded, so the value can be recomputed from a
    stored record and compared.
    """
    content = {
        "id": record.id,
        "job_id": record.job_id,
        "sequence": record.sequence,
        "from_state": record.from_state.value if record.from_state else None,
        "to_state": record.to_state.value,
        "changed_by": record.changed_by,
        "changed_by_role": record.changed_by_role,
        "change_source": record.change_source.value,
        "reason": record.reason,
        "notes": record.notes,
        "metadata": record.metadata,
        "created_at": record.created_at,
    }
    payload = canonical_json(content) + "|" + (record.prev_hash or "GENESIS")
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def seal(pending: PendingTransition, pointer: JobStatePointer | None) -> TransitionRecord:
    """Turn *pending* into the next record on top of *pointer*'s chain.

    Args:
        pending: Record content.
        pointer: The job's pointer before this record, or ``None`` when the
            record creates the job.

    Returns:
        A fully populated, hashed ``TransitionRecord``.
    """
    record = TransitionRecord(
        id=pending.id,
        job_id=pending.job_id,
        sequence=(pointer.last_sequence if pointer else 0) + 1,
        from_state=pending.from_state,
        to_state=pending.to_state,
        changed_by=pending.changed_by,
        changed_by_role=pending.changed_by_role,
        change_source=pending.change_source,
        reason=pending.reason,
        notes=pending.notes,
        metadata=dict(pending.metadata),
        created_at=datetime.now(tz=UTC),
        prev_hash=pointer.last_hash if pointer else None,
    )
    return record.model_copy(update={"record_hash": hash_record(record)})


def advance(pointer: JobStatePointer, record: TransitionRecord) -> JobStatePointer:
    """Return the pointer that results from committing *record* on *pointer*."""
    held_from = record.from_state if record.to_state is JobState.ON_HOLD else None
    return pointer.model_copy(
        update={
            "state": record.to_state,
            "version": pointer.version + 1,
            "held_from": held_from,
            "last_sequence": record.sequence,
            "last_hash": record.record_hash,
        }
    )


def verify_trail(pointer: JobStatePointer, records: list[TransitionRecord]) -> IntegrityReport:
    """Recompute the hash chain and replay *records* against *pointer*.

    Args:
        pointer: The job's live pointer.
        records: The job's full trail, oldest first.

    Returns:
        An ``IntegrityReport``; ``problems`` lists every inconsistency found.
    """
    problems: list[str] = []
    prev_hash: str | None = None
    for expected_sequence, record in enumerate(records, start=1):
        if record.sequence != expected_sequence:
            problems.append(f"record {record.id} has sequence {record.sequence}, expected {expected_sequence}")
        if record.prev_hash != prev_hash:
            problems.append(f"record {record.sequence} does not link to its predecessor")
        if hash_record(record) != record.record_hash:
            problems.append(f"record {record.sequence} content does not match its hash")
        prev_hash = record.record_hash
    if records and records[-1].record_hash != pointer.last_hash:
        problems.append("pointer does not reference the last record")
    chain_valid = not problems

    try:
        replayed: JobState | None = replay([(r.from_state, r.to_state) for r in records])
    except ValueError as exc:
        problems.append(str(exc))
        replayed = None

    state_matches = replayed == pointer.state
    if not state_matches:
        problems.append(f"replayed state {replayed!r} differs from current state {pointer.state.value!r}")

    return IntegrityReport(
        job_id=pointer.job_id,
        record_count=len(records),
        chain_valid=chain_valid,
        replayed_state=replayed,
        current_state=pointer.state,
        state_matches=state_matches,
        problems=problems,
    )


# ---------------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------------


class AuditLog(Protocol):
    """Storage contract shared by every audit log backend.

    All methods are blocking; the engine calls them via ``asyncio.to_thread``.
    """

    backend: str

    def create(self, pending: PendingTransition) -> tuple[JobStatePointer, TransitionRecord]:
        """Create the job's pointer at version 0 with *pending* as its first record.

        Raises:
            ValueError: If the job already exists.
        """
        ...

    def get_pointer(self, job_id: str) -> JobStatePointer:
        """Return the live pointer.

        Raises:
            KeyError: If the job does not exist.
        """
        ...

    def commit(self, pending: PendingTransition, expected_version: int) -> tuple[JobStatePointer, TransitionRecord]:
        """Append *pending* and advance the pointer iff its version is *expected_version*.

        Raises:
            KeyError: If the job does not exist.
            ConcurrentModificationError: If the live version differs.
        """
        ...

    def read(self, job_id: str) -> list[TransitionRecord]:
        """Return the job's records, oldest first.

        Raises:
            KeyError: If the job does not exist.
        """
        ...


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


@dataclass
class _JobSlot:
    pointer: JobStatePointer
    records: list[TransitionRecord] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)


class InMemoryAuditLog:
    """Process-local audit log with one lock per job.

    Commits against different jobs never contend; the registry lock is only
    taken to create or look up a job's slot.
    """

    backend = "memory"

    def __init__(self) -> None:
        self._slots: dict[str, _JobSlot] = {}
        self._registry_lock = threading.Lock()

    def _slot(self, job_id: str) -> _JobSlot:
        with self._registry_lock:
            if job_id not in self._slots:
                raise KeyError(f"Job {job_id!r} not found")
            return self._slots[job_id]

    def create(self, pending: PendingTransition) -> tuple[JobStatePointer, TransitionRecord]:
        record = seal(pending, None)
        pointer = JobStatePointer(
            job_id=pending.job_id,
            state=record.to_state,
            version=0,
            last_sequence=record.sequence,
            last_hash=record.record_hash,
        )
        with self._registry_lock:
            if pending.job_id in self._slots:
                raise ValueError(f"Job {pending.job_id!r} already exists")
            self._slots[pending.job_id] = _JobSlot(pointer=pointer, records=[record])
        return pointer, record

    def get_pointer(self, job_id: str) -> JobStatePointer:
        slot = self._slot(job_id)
        with slot.lock:
            return slot.pointer

    def commit(self, pending: PendingTransition, expected_version: int) -> tuple[JobStatePointer, TransitionRecord]:
        slot = self._slot(pending.job_id)
        with slot.lock:
            if slot.pointer.version != expected_version:
                raise ConcurrentModificationError(pending.job_id, expected_version, slot.pointer.version)
            record = seal(pending, slot.pointer)
            pointer = advance(slot.pointer, record)
            slot.records.append(record)
            slot.pointer = pointer
        return pointer, record

    def read(self, job_id: str) -> list[TransitionRecord]:
        slot = self._slot(job_id)
        with slot.lock:
            return list(slot.records)
