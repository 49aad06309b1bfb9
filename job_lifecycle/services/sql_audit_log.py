"""SQLAlchemy-backed audit log.

Two tables:

- ``job_state``: one row per job -- the current-state pointer and its version.
- ``job_state_transitions``: the append-only trail, unique on
  ``(job_id, sequence)``.

A commit is one database transaction: read the pointer row, compare-and-set
it with ``UPDATE ... WHERE version = :expected``, insert the record.  Zero
rows updated means another writer got there first.  On SQLite, triggers
reject any UPDATE or DELETE against the trail so immutability holds even for
writers that bypass this module.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import (
    DDL,
    JSON,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from job_lifecycle.models import ChangeSource, JobState, JobStatePointer, TransitionRecord
from job_lifecycle.services.audit_log import PendingTransition, advance, as_utc, seal
from job_lifecycle.state_machine import ConcurrentModificationError

logger = logging.getLogger(__name__)

Base = declarative_base()


class JobStateRow(Base):
    __tablename__ = "job_state"
    job_id = Column(String(64), primary_key=True)
    state = Column(String(32), nullable=False)
    held_from = Column(String(32), nullable=True)
    version = Column(Integer, nullable=False, default=0)
    last_sequence = Column(Integer, nullable=False, default=0)
    last_hash = Column(String(64), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class TransitionRow(Base):
    __tablename__ = "job_state_transitions"
    id = Column(String(64), primary_key=True)
    job_id = Column(String(64), index=True, nullable=False)
    sequence = Column(Integer, nullable=False)
    from_state = Column(String(32), nullable=True)       # NULL for the creation record
    to_state = Column(String(32), nullable=False)
    changed_by = Column(String(128), nullable=True)
    changed_by_role = Column(String(64), nullable=True)
    change_source = Column(String(16), nullable=False)
    reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
    prev_hash = Column(String(64), nullable=True)
    record_hash = Column(String(64), nullable=False)
    __table_args__ = (UniqueConstraint("job_id", "sequence", name="uq_transition_job_sequence"),)


for _op in ("UPDATE", "DELETE"):
    event.listen(
        TransitionRow.__table__,
        "after_create",
        DDL(
            f"CREATE TRIGGER IF NOT EXISTS job_state_transitions_no_{_op.lower()} "
            f"BEFORE {_op} ON job_state_transitions "
            "BEGIN SELECT RAISE(ABORT, 'job_state_transitions is append-only'); END"
        ).execute_if(dialect="sqlite"),
    )


def _pointer_from_row(row: JobStateRow) -> JobStatePointer:
    return JobStatePointer(
        job_id=row.job_id,
        state=JobState(row.state),
        version=row.version,
        held_from=JobState(row.held_from) if row.held_from else None,
        last_sequence=row.last_sequence,
        last_hash=row.last_hash,
    )


def _record_from_row(row: TransitionRow) -> TransitionRecord:
    return TransitionRecord(
        id=row.id,
        job_id=row.job_id,
        sequence=row.sequence,
        from_state=JobState(row.from_state) if row.from_state else None,
        to_state=JobState(row.to_state),
        changed_by=row.changed_by,
        changed_by_role=row.changed_by_role,
        change_source=ChangeSource(row.change_source),
        reason=row.reason,
        notes=row.notes,
        metadata=dict(row.meta or {}),
        created_at=as_utc(row.created_at),
        prev_hash=row.prev_hash,
        record_hash=row.record_hash,
    )


def _row_from_record(record: TransitionRecord) -> TransitionRow:
    return TransitionRow(
        id=record.id,
        job_id=record.job_id,
        sequence=record.sequence,
        from_state=record.from_state.value if record.from_state else None,
        to_state=record.to_state.value,
        changed_by=record.changed_by,
        changed_by_role=record.changed_by_role,
        change_source=record.change_source.value,
        reason=record.reason,
        notes=record.notes,
        meta=dict(record.metadata),
        created_at=record.created_at,
        prev_hash=record.prev_hash,
        record_hash=record.record_hash,
    )


class SqlAuditLog:
    """Durable audit log over any SQLAlchemy-supported database.

    Attributes:
        engine: The SQLAlchemy engine; exposed for tests and migrations.
    """

    backend = "sql"

    def __init__(self, database_url: str) -> None:
        """Connect to *database_url* and create the tables if needed.

        Args:
            database_url: SQLAlchemy URL, e.g. ``sqlite:///./lifecycle.db``.
        """
        kwargs: dict = {}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in {"sqlite://", "sqlite:///:memory:"}:
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **kwargs)
        self._sessions = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        Base.metadata.create_all(bind=self.engine)
        logger.info("SQL audit log ready at %s", self.engine.url.render_as_string(hide_password=True))

    def create(self, pending: PendingTransition) -> tuple[JobStatePointer, TransitionRecord]:
        record = seal(pending, None)
        try:
            with self._sessions.begin() as session:
                if session.get(JobStateRow, pending.job_id) is not None:
                    raise ValueError(f"Job {pending.job_id!r} already exists")
                session.add(
                    JobStateRow(
                        job_id=pending.job_id,
                        state=record.to_state.value,
                        held_from=None,
                        version=0,
                        last_sequence=record.sequence,
                        last_hash=record.record_hash,
                        updated_at=record.created_at,
                    )
                )
                # Pointer row first: the trail references a job that exists.
                session.flush()
                session.add(_row_from_record(record))
                pointer = JobStatePointer(
                    job_id=pending.job_id,
                    state=record.to_state,
                    version=0,
                    last_sequence=record.sequence,
                    last_hash=record.record_hash,
                )
        except IntegrityError as exc:
            # A concurrent create with the same id won the insert.
            raise ValueError(f"Job {pending.job_id!r} already exists") from exc
        return pointer, record

    def _get_row(self, session: Session, job_id: str) -> JobStateRow:
        row = session.get(JobStateRow, job_id)
        if row is None:
            raise KeyError(f"Job {job_id!r} not found")
        return row

    def get_pointer(self, job_id: str) -> JobStatePointer:
        with self._sessions() as session:
            return _pointer_from_row(self._get_row(session, job_id))

    def commit(self, pending: PendingTransition, expected_version: int) -> tuple[JobStatePointer, TransitionRecord]:
        with self._sessions.begin() as session:
            current = _pointer_from_row(self._get_row(session, pending.job_id))
            if current.version != expected_version:
                raise ConcurrentModificationError(pending.job_id, expected_version, current.version)

            record = seal(pending, current)
            pointer = advance(current, record)
            result = session.execute(
                update(JobStateRow)
                .where(JobStateRow.job_id == pending.job_id, JobStateRow.version == expected_version)
                .values(
                    state=pointer.state.value,
                    held_from=pointer.held_from.value if pointer.held_from else None,
                    version=pointer.version,
                    last_sequence=pointer.last_sequence,
                    last_hash=pointer.last_hash,
                    updated_at=datetime.now(tz=UTC),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrentModificationError(pending.job_id, expected_version)
            session.add(_row_from_record(record))
        return pointer, record

    def read(self, job_id: str) -> list[TransitionRecord]:
        with self._sessions() as session:
            self._get_row(session, job_id)
            rows = session.scalars(
                select(TransitionRow).where(TransitionRow.job_id == job_id).order_by(TransitionRow.sequence)
            ).all()
            return [_record_from_row(row) for row in rows]

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()
