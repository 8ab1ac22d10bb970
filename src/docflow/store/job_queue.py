"""Persistent job queue backed by the ``queue_jobs`` and ``queue_events`` tables."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.orm import Session, sessionmaker

from docflow.store import sql as sql_schema
from docflow.store.sql import session_factory as default_session_factory

LOGGER = logging.getLogger(__name__)

JOB_STATES = ("waiting", "delayed", "active", "completed", "failed")
READY_STATES = ("waiting", "delayed")
FINISHED_STATES = ("completed", "failed")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(slots=True)
class Backoff:
    """Retry delay policy; ``exponential`` doubles ``delay_ms`` per attempt."""

    type: str = "exponential"
    delay_ms: int = 0

    def compute_delay_ms(self, attempts_made: int) -> int:
        if self.type == "fixed":
            return self.delay_ms
        return int(self.delay_ms * 2 ** max(attempts_made - 1, 0))


@dataclass(slots=True)
class Retention:
    """Retention window for finished jobs. ``None`` fields mean keep forever."""

    age_seconds: int | None = None
    count: int | None = None


@dataclass(slots=True)
class JobOptions:
    """Per-job scheduling options."""

    priority: int = 0
    attempts: int = 1
    backoff: Backoff | None = None
    delay_ms: int = 0
    remove_on_complete: Retention | None = None
    remove_on_fail: Retention | None = None

    def merged(self, **overrides: Any) -> "JobOptions":
        values = {
            "priority": self.priority,
            "attempts": self.attempts,
            "backoff": self.backoff,
            "delay_ms": self.delay_ms,
            "remove_on_complete": self.remove_on_complete,
            "remove_on_fail": self.remove_on_fail,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return JobOptions(**values)


@dataclass(slots=True)
class Job:
    """Snapshot of a queue job row."""

    job_id: str
    queue: str
    name: str
    data: Dict[str, Any]
    state: str
    priority: int = 0
    attempts_made: int = 0
    max_attempts: int = 1
    progress: Any = 0
    return_value: Any = None
    failed_reason: Optional[str] = None
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_finished(self) -> bool:
        return self.state in FINISHED_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "queue": self.queue,
            "name": self.name,
            "data": self.data,
            "state": self.state,
            "priority": self.priority,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "progress": self.progress,
            "return_value": self.return_value,
            "failed_reason": self.failed_reason,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass(slots=True)
class QueueEvent:
    """One row of the ``queue_events`` log."""

    event_id: int
    queue: str
    job_id: str
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None


class JobStore:
    """CRUD and state transitions for queue jobs."""

    def __init__(self, *, session_factory: sessionmaker | None = None) -> None:
        self._session_factory = session_factory or default_session_factory()

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def add(
        self,
        queue: str,
        name: str,
        data: Mapping[str, Any] | None = None,
        *,
        job_id: str | None = None,
        options: JobOptions | None = None,
        user_id: str | None = None,
    ) -> str:
        """Insert a job and return its id. Existing ids are left untouched."""

        with self._session_scope() as session:
            return self._insert_job(
                session, queue, name, dict(data or {}), job_id=job_id, options=options or JobOptions(), user_id=user_id
            )

    def add_bulk(self, queue: str, jobs: Sequence[Mapping[str, Any]]) -> List[str]:
        """Insert several jobs in one transaction.

        Each entry is a mapping with ``name``, ``data`` and optional ``job_id``,
        ``options`` and ``user_id`` keys.
        """

        job_ids: List[str] = []
        with self._session_scope() as session:
            for entry in jobs:
                job_ids.append(
                    self._insert_job(
                        session,
                        queue,
                        entry["name"],
                        dict(entry.get("data") or {}),
                        job_id=entry.get("job_id"),
                        options=entry.get("options") or JobOptions(),
                        user_id=entry.get("user_id"),
                    )
                )
        return job_ids

    def _insert_job(
        self,
        session: Session,
        queue: str,
        name: str,
        data: Dict[str, Any],
        *,
        job_id: str | None,
        options: JobOptions,
        user_id: str | None,
    ) -> str:
        job_id = job_id or str(uuid.uuid4())
        existing = session.execute(
            sa.select(sql_schema.queue_jobs.c.job_id).where(sql_schema.queue_jobs.c.job_id == job_id)
        ).first()
        if existing:
            LOGGER.info("Job already queued job_id=%s queue=%s", job_id, queue)
            return job_id

        timestamp = _utcnow()
        delay_ms = max(options.delay_ms, 0)
        complete_keep = options.remove_on_complete or Retention()
        fail_keep = options.remove_on_fail or Retention()
        session.execute(
            sa.insert(sql_schema.queue_jobs).values(
                job_id=job_id,
                queue=queue,
                name=name,
                data=data,
                user_id=user_id or data.get("user_id"),
                priority=options.priority,
                state="delayed" if delay_ms else "waiting",
                attempts_made=0,
                max_attempts=max(options.attempts, 1),
                backoff_type=options.backoff.type if options.backoff else None,
                backoff_delay_ms=options.backoff.delay_ms if options.backoff else 0,
                progress=0,
                remove_on_complete_age=complete_keep.age_seconds,
                remove_on_complete_count=complete_keep.count,
                remove_on_fail_age=fail_keep.age_seconds,
                available_at=timestamp + timedelta(milliseconds=delay_ms),
                created_at=timestamp,
            )
        )
        self._append_event(session, queue, job_id, "added", {"name": name})
        LOGGER.info("Queued job job_id=%s queue=%s name=%s priority=%s", job_id, queue, name, options.priority)
        return job_id

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    def claim(self, queue: str, *, worker_id: str) -> Optional[Job]:
        """Move the next ready job to ``active`` and return it.

        The update is conditional on the state just read, so a job lost to a
        concurrent caller is skipped and the next candidate tried.
        """

        table = sql_schema.queue_jobs
        while True:
            with self._session_scope() as session:
                now = _utcnow()
                candidate = session.execute(
                    sa.select(table.c.job_id, table.c.state)
                    .where(
                        table.c.queue == queue,
                        table.c.state.in_(READY_STATES),
                        table.c.available_at <= now,
                    )
                    .order_by(table.c.priority.asc(), table.c.created_at.asc())
                    .limit(1)
                ).first()
                if candidate is None:
                    return None
                result = session.execute(
                    sa.update(table)
                    .where(table.c.job_id == candidate.job_id, table.c.state == candidate.state)
                    .values(state="active", locked_by=worker_id, processed_at=now)
                )
                if result.rowcount != 1:
                    # another worker won the race
                    continue
                self._append_event(session, queue, candidate.job_id, "active", {"worker_id": worker_id})
                row = session.execute(sa.select(table).where(table.c.job_id == candidate.job_id)).one()
                return _row_to_job(row)

    def update_progress(self, job_id: str, progress: Any) -> bool:
        """Store a numeric or structured progress value for an active job."""

        with self._session_scope() as session:
            queue = self._queue_for(session, job_id)
            if queue is None:
                return False
            session.execute(
                sa.update(sql_schema.queue_jobs)
                .where(sql_schema.queue_jobs.c.job_id == job_id)
                .values(progress=progress)
            )
            self._append_event(session, queue, job_id, "progress", {"progress": progress})
        return True

    def complete(self, job_id: str, return_value: Any = None) -> bool:
        """Mark ``job_id`` completed and apply completed-job retention."""

        table = sql_schema.queue_jobs
        with self._session_scope() as session:
            row = session.execute(sa.select(table).where(table.c.job_id == job_id)).first()
            if row is None:
                return False
            timestamp = _utcnow()
            session.execute(
                sa.update(table)
                .where(table.c.job_id == job_id)
                .values(
                    state="completed",
                    return_value=return_value,
                    attempts_made=row.attempts_made + 1,
                    finished_at=timestamp,
                    locked_by=None,
                )
            )
            self._append_event(
                session, row.queue, job_id, "completed", {"return_value": return_value, "user_id": row.user_id}
            )
            self._apply_retention(
                session,
                row.queue,
                "completed",
                age_seconds=row.remove_on_complete_age,
                count=row.remove_on_complete_count,
            )
        LOGGER.info("Completed job job_id=%s queue=%s", job_id, row.queue)
        return True

    def fail(self, job_id: str, reason: str) -> Optional[str]:
        """Record a failed attempt.

        Returns the resulting state: ``delayed`` when attempts remain and the job
        was rescheduled with backoff, ``failed`` once attempts are exhausted, or
        ``None`` when the job no longer exists.
        """

        table = sql_schema.queue_jobs
        with self._session_scope() as session:
            row = session.execute(sa.select(table).where(table.c.job_id == job_id)).first()
            if row is None:
                return None
            timestamp = _utcnow()
            attempts_made = row.attempts_made + 1
            if attempts_made < row.max_attempts:
                backoff = Backoff(type=row.backoff_type or "fixed", delay_ms=row.backoff_delay_ms or 0)
                delay_ms = backoff.compute_delay_ms(attempts_made)
                session.execute(
                    sa.update(table)
                    .where(table.c.job_id == job_id)
                    .values(
                        state="delayed",
                        attempts_made=attempts_made,
                        failed_reason=reason,
                        available_at=timestamp + timedelta(milliseconds=delay_ms),
                        locked_by=None,
                    )
                )
                self._append_event(
                    session,
                    row.queue,
                    job_id,
                    "retrying",
                    {"failed_reason": reason, "attempts_made": attempts_made, "delay_ms": delay_ms},
                )
                LOGGER.info(
                    "Retrying job job_id=%s attempt=%s/%s delay_ms=%s",
                    job_id,
                    attempts_made,
                    row.max_attempts,
                    delay_ms,
                )
                return "delayed"

            session.execute(
                sa.update(table)
                .where(table.c.job_id == job_id)
                .values(
                    state="failed",
                    attempts_made=attempts_made,
                    failed_reason=reason,
                    finished_at=timestamp,
                    locked_by=None,
                )
            )
            self._append_event(
                session,
                row.queue,
                job_id,
                "failed",
                {"failed_reason": reason, "attempts_made": attempts_made, "user_id": row.user_id},
            )
            self._apply_retention(session, row.queue, "failed", age_seconds=row.remove_on_fail_age, count=None)
        LOGGER.warning("Job failed permanently job_id=%s reason=%s", job_id, reason)
        return "failed"

    # ------------------------------------------------------------------
    # Inspection and maintenance
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._session_scope() as session:
            row = session.execute(
                sa.select(sql_schema.queue_jobs).where(sql_schema.queue_jobs.c.job_id == job_id)
            ).first()
        return _row_to_job(row) if row else None

    def get_state(self, job_id: str) -> Optional[str]:
        with self._session_scope() as session:
            return session.execute(
                sa.select(sql_schema.queue_jobs.c.state).where(sql_schema.queue_jobs.c.job_id == job_id)
            ).scalar_one_or_none()

    def get_jobs(
        self,
        queue: str,
        states: Sequence[str] | None = None,
        *,
        start: int = 0,
        end: int = -1,
        user_id: str | None = None,
    ) -> List[Job]:
        """Return jobs newest first, sliced like an inclusive ``start``/``end`` range."""

        table = sql_schema.queue_jobs
        stmt = sa.select(table).where(table.c.queue == queue)
        if states:
            stmt = stmt.where(table.c.state.in_(tuple(states)))
        if user_id:
            stmt = stmt.where(table.c.user_id == user_id)
        stmt = stmt.order_by(table.c.created_at.desc()).offset(max(start, 0))
        if end >= 0:
            stmt = stmt.limit(max(end - start + 1, 0))
        with self._session_scope() as session:
            rows = session.execute(stmt).fetchall()
        return [_row_to_job(row) for row in rows]

    def counts(self, queue: str) -> Dict[str, int]:
        """Return the number of jobs per state."""

        table = sql_schema.queue_jobs
        with self._session_scope() as session:
            rows = session.execute(
                sa.select(table.c.state, sa.func.count()).where(table.c.queue == queue).group_by(table.c.state)
            ).fetchall()
        counts = {state: 0 for state in JOB_STATES}
        for state, total in rows:
            counts[state] = int(total)
        return counts

    def remove(self, job_id: str) -> bool:
        with self._session_scope() as session:
            queue = self._queue_for(session, job_id)
            if queue is None:
                return False
            session.execute(sa.delete(sql_schema.queue_jobs).where(sql_schema.queue_jobs.c.job_id == job_id))
            self._append_event(session, queue, job_id, "removed", {})
        LOGGER.info("Removed job job_id=%s queue=%s", job_id, queue)
        return True

    def retry(self, job_id: str) -> bool:
        """Move a failed job back to ``waiting`` with a fresh attempt budget."""

        table = sql_schema.queue_jobs
        with self._session_scope() as session:
            row = session.execute(sa.select(table.c.queue, table.c.state).where(table.c.job_id == job_id)).first()
            if row is None or row.state != "failed":
                return False
            session.execute(
                sa.update(table)
                .where(table.c.job_id == job_id)
                .values(
                    state="waiting",
                    attempts_made=0,
                    failed_reason=None,
                    return_value=None,
                    progress=0,
                    finished_at=None,
                    available_at=_utcnow(),
                )
            )
            self._append_event(session, row.queue, job_id, "added", {"retried": True})
        LOGGER.info("Retried job job_id=%s", job_id)
        return True

    def obliterate(self, queue: str) -> int:
        """Delete every job and event for ``queue``."""

        with self._session_scope() as session:
            result = session.execute(sa.delete(sql_schema.queue_jobs).where(sql_schema.queue_jobs.c.queue == queue))
            session.execute(sa.delete(sql_schema.queue_events).where(sql_schema.queue_events.c.queue == queue))
        LOGGER.info("Obliterated queue=%s removed=%s", queue, result.rowcount)
        return int(result.rowcount or 0)

    def prune(self, queue: str) -> int:
        """Apply per-job age and count retention to every finished job in ``queue``.

        Count retention keeps the newest completed jobs up to the smallest
        ``remove_on_complete`` count stored on any of them.
        """

        table = sql_schema.queue_jobs
        removed = 0
        with self._session_scope() as session:
            keep = session.execute(
                sa.select(sa.func.min(table.c.remove_on_complete_count)).where(
                    table.c.queue == queue, table.c.state == "completed"
                )
            ).scalar()
            removed += self._apply_retention(session, queue, "completed", age_seconds=None, count=keep, per_row=True)
            removed += self._apply_retention(session, queue, "failed", age_seconds=None, count=None, per_row=True)
        return removed

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    def events_since(self, queue: str, cursor: int = 0, *, limit: int = 200) -> List[QueueEvent]:
        """Return events for ``queue`` with ``event_id`` greater than ``cursor``."""

        table = sql_schema.queue_events
        with self._session_scope() as session:
            rows = session.execute(
                sa.select(table)
                .where(table.c.queue == queue, table.c.event_id > cursor)
                .order_by(table.c.event_id.asc())
                .limit(limit)
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def recent_events(self, queue: str, *, up_to: int, since: datetime) -> List[QueueEvent]:
        """Return events at or below ``up_to`` written at or after ``since``.

        Writers commit out of id order on databases with concurrent
        transactions, so an id below a poller's cursor can still appear late.
        """

        table = sql_schema.queue_events
        with self._session_scope() as session:
            rows = session.execute(
                sa.select(table)
                .where(table.c.queue == queue, table.c.event_id <= up_to, table.c.created_at >= since)
                .order_by(table.c.event_id.asc())
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def latest_event_id(self, queue: str) -> int:
        table = sql_schema.queue_events
        with self._session_scope() as session:
            value = session.execute(sa.select(sa.func.max(table.c.event_id)).where(table.c.queue == queue)).scalar()
        return int(value or 0)

    def prune_events(self, *, older_than_hours: int, now: datetime | None = None) -> int:
        """Delete events of every queue written more than ``older_than_hours`` ago."""

        cutoff = (now or _utcnow()) - timedelta(hours=older_than_hours)
        with self._session_scope() as session:
            result = session.execute(
                sa.delete(sql_schema.queue_events).where(sql_schema.queue_events.c.created_at < cutoff)
            )
        return int(result.rowcount or 0)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _queue_for(session: Session, job_id: str) -> Optional[str]:
        return session.execute(
            sa.select(sql_schema.queue_jobs.c.queue).where(sql_schema.queue_jobs.c.job_id == job_id)
        ).scalar_one_or_none()

    @staticmethod
    def _append_event(session: Session, queue: str, job_id: str, event: str, payload: Dict[str, Any]) -> None:
        session.execute(
            sa.insert(sql_schema.queue_events).values(
                queue=queue,
                job_id=job_id,
                event=event,
                payload=payload,
                created_at=_utcnow(),
            )
        )

    @staticmethod
    def _apply_retention(
        session: Session,
        queue: str,
        state: str,
        *,
        age_seconds: int | None,
        count: int | None,
        per_row: bool = False,
    ) -> int:
        table = sql_schema.queue_jobs
        age_column = table.c.remove_on_complete_age if state == "completed" else table.c.remove_on_fail_age
        now = _utcnow()
        expired: List[str] = []

        if per_row or age_seconds is not None:
            rows = session.execute(
                sa.select(table.c.job_id, table.c.finished_at, age_column.label("age"))
                .where(table.c.queue == queue, table.c.state == state, age_column.is_not(None))
            ).fetchall()
            for row in rows:
                finished_at = _as_utc(row.finished_at)
                if finished_at and finished_at + timedelta(seconds=row.age) < now:
                    expired.append(row.job_id)

        if count is not None:
            overflow = session.execute(
                sa.select(table.c.job_id)
                .where(table.c.queue == queue, table.c.state == state)
                .order_by(table.c.finished_at.desc())
                .offset(count)
            ).scalars()
            expired.extend(job_id for job_id in overflow if job_id not in expired)

        if not expired:
            return 0
        session.execute(sa.delete(table).where(table.c.job_id.in_(expired)))
        return len(expired)


def _row_to_job(row: Any) -> Job:
    return Job(
        job_id=row.job_id,
        queue=row.queue,
        name=row.name,
        data=row.data or {},
        state=row.state,
        priority=row.priority,
        attempts_made=row.attempts_made,
        max_attempts=row.max_attempts,
        progress=row.progress if row.progress is not None else 0,
        return_value=row.return_value,
        failed_reason=row.failed_reason,
        user_id=row.user_id,
        created_at=_as_utc(row.created_at),
        processed_at=_as_utc(row.processed_at),
        finished_at=_as_utc(row.finished_at),
    )


def _row_to_event(row: Any) -> QueueEvent:
    return QueueEvent(
        event_id=row.event_id,
        queue=row.queue,
        job_id=row.job_id,
        event=row.event,
        payload=row.payload or {},
        created_at=_as_utc(row.created_at),
    )


__all__ = [
    "Backoff",
    "FINISHED_STATES",
    "JOB_STATES",
    "Job",
    "JobOptions",
    "JobStore",
    "QueueEvent",
    "Retention",
]
