"""User-facing background task records stored in ``background_tasks``.

Every queued job gets a companion task row that the UI polls or receives over the
notification hub. Failures in this layer never propagate: the helpers log the
error and return ``None``/``False``/``[]`` so that bookkeeping cannot break job
processing.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from docflow.store import sql as sql_schema
from docflow.store.sql import session_factory as default_session_factory

LOGGER = logging.getLogger(__name__)

TASK_TYPES = ("transcription", "ocr", "scraping", "embedding", "analysis")
TASK_STATUSES = ("queued", "running", "completed", "failed")
ACTIVE_STATUSES = ("queued", "running")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _clamp_progress(value: float) -> int:
    return int(max(0, min(100, round(value))))


@dataclass(slots=True)
class BackgroundTask:
    """Domain object mirroring one ``background_tasks`` row."""

    task_id: str
    user_id: str
    task_type: str
    status: str
    title: str
    description: Optional[str] = None
    progress: int = 0
    error_message: Optional[str] = None
    job_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "user_id": self.user_id,
            "task_type": self.task_type,
            "status": self.status,
            "title": self.title,
            "description": self.description,
            "progress": self.progress,
            "error_message": self.error_message,
            "job_id": self.job_id,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


class BackgroundTaskStore:
    """Create and update background task rows."""

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

    def create_task(
        self,
        *,
        user_id: str,
        task_type: str,
        title: str,
        description: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Optional[str]:
        """Insert a ``queued`` task and return its id (``None`` on failure)."""

        if task_type not in TASK_TYPES:
            LOGGER.error("Unknown task type %s", task_type)
            return None
        task_id = str(uuid.uuid4())
        meta = dict(metadata or {})
        try:
            with self._session_scope() as session:
                session.execute(
                    sa.insert(sql_schema.background_tasks).values(
                        task_id=task_id,
                        user_id=user_id,
                        task_type=task_type,
                        status="queued",
                        title=title,
                        description=description,
                        progress=0,
                        job_id=meta.get("job_id"),
                        metadata=meta,
                        created_at=_utcnow(),
                    )
                )
        except SQLAlchemyError:
            LOGGER.exception("Failed to create background task type=%s user=%s", task_type, user_id)
            return None
        LOGGER.info("Created background task task_id=%s type=%s user=%s", task_id, task_type, user_id)
        return task_id

    def start_task(self, task_id: str) -> bool:
        return self._update(task_id, status="running", started_at=_utcnow())

    def update_progress(self, task_id: str, progress: float, description: str | None = None) -> bool:
        values: Dict[str, Any] = {"progress": _clamp_progress(progress), "status": "running"}
        if description:
            values["description"] = description
        return self._update(task_id, **values)

    def complete_task(self, task_id: str, metadata: Mapping[str, Any] | None = None) -> bool:
        """Mark the task completed, merging ``metadata`` into the stored mapping."""

        values: Dict[str, Any] = {"status": "completed", "progress": 100, "completed_at": _utcnow()}
        if metadata:
            existing = self.get_task(task_id)
            merged = dict(existing.metadata) if existing else {}
            merged.update(metadata)
            values["metadata"] = merged
        return self._update(task_id, **values)

    def fail_task(self, task_id: str, error_message: str) -> bool:
        return self._update(task_id, status="failed", error_message=error_message, completed_at=_utcnow())

    def update_by_job_id(
        self,
        job_id: str,
        *,
        status: str,
        progress: float | None = None,
        description: str | None = None,
        error_message: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Optional[BackgroundTask]:
        """Update the task linked to a queue job and return the refreshed record."""

        if status not in TASK_STATUSES:
            LOGGER.error("Unknown task status %s for job %s", status, job_id)
            return None
        table = sql_schema.background_tasks
        try:
            with self._session_scope() as session:
                row = session.execute(sa.select(table).where(table.c.job_id == job_id)).first()
                if row is None:
                    LOGGER.debug("No background task linked to job %s", job_id)
                    return None
                values: Dict[str, Any] = {"status": status}
                if progress is not None:
                    values["progress"] = _clamp_progress(progress)
                if description:
                    values["description"] = description
                if error_message:
                    values["error_message"] = error_message
                if metadata:
                    merged = dict(row.metadata or {})
                    merged.update(metadata)
                    values["metadata"] = merged
                if status == "running" and row.started_at is None:
                    values["started_at"] = _utcnow()
                if status in ("completed", "failed"):
                    values["completed_at"] = _utcnow()
                    if status == "completed":
                        values["progress"] = 100
                session.execute(sa.update(table).where(table.c.task_id == row.task_id).values(**values))
                refreshed = session.execute(sa.select(table).where(table.c.task_id == row.task_id)).one()
                return _row_to_task(refreshed)
        except SQLAlchemyError:
            LOGGER.exception("Failed to update background task for job %s", job_id)
            return None

    def get_task(self, task_id: str) -> Optional[BackgroundTask]:
        table = sql_schema.background_tasks
        try:
            with self._session_scope() as session:
                row = session.execute(sa.select(table).where(table.c.task_id == task_id)).first()
        except SQLAlchemyError:
            LOGGER.exception("Failed to load background task %s", task_id)
            return None
        return _row_to_task(row) if row else None

    def get_task_by_job_id(self, job_id: str) -> Optional[BackgroundTask]:
        table = sql_schema.background_tasks
        try:
            with self._session_scope() as session:
                row = session.execute(sa.select(table).where(table.c.job_id == job_id)).first()
        except SQLAlchemyError:
            LOGGER.exception("Failed to load background task for job %s", job_id)
            return None
        return _row_to_task(row) if row else None

    def get_active_tasks(self, user_id: str) -> List[BackgroundTask]:
        """Return queued and running tasks for ``user_id``, newest first."""

        table = sql_schema.background_tasks
        try:
            with self._session_scope() as session:
                rows = session.execute(
                    sa.select(table)
                    .where(table.c.user_id == user_id, table.c.status.in_(ACTIVE_STATUSES))
                    .order_by(table.c.created_at.desc())
                ).fetchall()
        except SQLAlchemyError:
            LOGGER.exception("Failed to list active tasks for user %s", user_id)
            return []
        return [_row_to_task(row) for row in rows]

    def cleanup_old_tasks(self, days: int = 7) -> int:
        """Delete finished tasks whose ``completed_at`` is older than ``days``."""

        table = sql_schema.background_tasks
        cutoff = _utcnow() - timedelta(days=days)
        try:
            with self._session_scope() as session:
                result = session.execute(
                    sa.delete(table).where(
                        table.c.status.in_(("completed", "failed")),
                        table.c.completed_at < cutoff,
                    )
                )
        except SQLAlchemyError:
            LOGGER.exception("Failed to clean up background tasks")
            return 0
        removed = int(result.rowcount or 0)
        LOGGER.info("Removed %s background tasks older than %s days", removed, days)
        return removed

    def _update(self, task_id: str, **values: Any) -> bool:
        table = sql_schema.background_tasks
        try:
            with self._session_scope() as session:
                result = session.execute(sa.update(table).where(table.c.task_id == task_id).values(**values))
        except SQLAlchemyError:
            LOGGER.exception("Failed to update background task %s", task_id)
            return False
        return bool(result.rowcount)


def _row_to_task(row: Any) -> BackgroundTask:
    return BackgroundTask(
        task_id=row.task_id,
        user_id=row.user_id,
        task_type=row.task_type,
        status=row.status,
        title=row.title,
        description=row.description,
        progress=row.progress or 0,
        error_message=row.error_message,
        job_id=row.job_id,
        metadata=dict(row.metadata or {}),
        created_at=_iso(row.created_at),
        started_at=_iso(row.started_at),
        completed_at=_iso(row.completed_at),
    )


__all__ = ["ACTIVE_STATUSES", "BackgroundTask", "BackgroundTaskStore", "TASK_STATUSES", "TASK_TYPES"]
