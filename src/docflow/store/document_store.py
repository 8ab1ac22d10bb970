"""Document corpus, OCR job records, transcription records and data sources."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.orm import Session, sessionmaker

from docflow.store import sql as sql_schema
from docflow.store.sql import session_factory as default_session_factory

LOGGER = logging.getLogger(__name__)

TRANSCRIPTION_ACTIVE_STATUSES = ("pending", "downloading", "preprocessing", "transcribing", "analyzing", "saving")
TRANSCRIPTION_FINISHED_STATUSES = ("completed", "failed")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_dict(row: Any) -> Dict[str, Any]:
    """Convert a result row into a JSON-friendly dictionary."""

    data = dict(row._mapping)
    for key, value in data.items():
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            data[key] = value.isoformat()
    return data


class DocumentStore:
    """Read/write helpers for processed documents and their processing records."""

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
    # processed_documents
    # ------------------------------------------------------------------

    def insert_document(
        self,
        *,
        user_id: str,
        title: str,
        content: str | None,
        document_type: str = "other",
        source_url: str | None = None,
        publish_date: datetime | None = None,
        summary: str | None = None,
        keywords: Sequence[str] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> str:
        """Persist a processed document and return its id."""

        document_id = str(uuid.uuid4())
        with self._session_scope() as session:
            session.execute(
                sa.insert(sql_schema.processed_documents).values(
                    document_id=document_id,
                    user_id=user_id,
                    title=title,
                    content=content,
                    document_type=document_type,
                    source_url=source_url,
                    publish_date=publish_date,
                    summary=summary,
                    keywords=list(keywords or []),
                    metadata=dict(metadata or {}),
                    processed_at=_utcnow(),
                )
            )
        LOGGER.info("Stored document document_id=%s type=%s user=%s", document_id, document_type, user_id)
        return document_id

    def get_document(self, document_id: str, *, user_id: str | None = None) -> Optional[Dict[str, Any]]:
        table = sql_schema.processed_documents
        stmt = sa.select(table).where(table.c.document_id == document_id)
        if user_id:
            stmt = stmt.where(table.c.user_id == user_id)
        with self._session_scope() as session:
            row = session.execute(stmt).first()
        return _row_to_dict(row) if row else None

    def list_documents(
        self,
        *,
        user_id: str,
        document_type: str | None = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        table = sql_schema.processed_documents
        stmt = sa.select(table).where(table.c.user_id == user_id)
        if document_type:
            stmt = stmt.where(table.c.document_type == document_type)
        stmt = stmt.order_by(table.c.processed_at.desc()).limit(limit)
        with self._session_scope() as session:
            rows = session.execute(stmt).fetchall()
        return [_row_to_dict(row) for row in rows]

    def search_documents(
        self,
        *,
        user_id: str,
        query: str,
        exclude_id: str | None = None,
        limit: int = 5,
    ) -> List[Dict[str, Any]]:
        """Case-insensitive title/content search used for reference lookups."""

        table = sql_schema.processed_documents
        pattern = f"%{query.strip().lower()}%"
        stmt = sa.select(table).where(
            table.c.user_id == user_id,
            sa.or_(sa.func.lower(table.c.title).like(pattern), sa.func.lower(table.c.content).like(pattern)),
        )
        if exclude_id:
            stmt = stmt.where(table.c.document_id != exclude_id)
        stmt = stmt.order_by(table.c.processed_at.desc()).limit(limit)
        with self._session_scope() as session:
            rows = session.execute(stmt).fetchall()
        return [_row_to_dict(row) for row in rows]

    def find_by_source_url(self, *, user_id: str, source_url: str) -> Optional[Dict[str, Any]]:
        table = sql_schema.processed_documents
        with self._session_scope() as session:
            row = session.execute(
                sa.select(table).where(table.c.user_id == user_id, table.c.source_url == source_url).limit(1)
            ).first()
        return _row_to_dict(row) if row else None

    # ------------------------------------------------------------------
    # document_jobs
    # ------------------------------------------------------------------

    def create_document_job(
        self,
        *,
        user_id: str,
        job_id: str,
        file_name: str,
        mime_type: str | None,
        file_size: int,
    ) -> str:
        """Insert a ``pending`` OCR job record and return its record id."""

        record_id = str(uuid.uuid4())
        with self._session_scope() as session:
            session.execute(
                sa.insert(sql_schema.document_jobs).values(
                    record_id=record_id,
                    user_id=user_id,
                    job_id=job_id,
                    file_name=file_name,
                    mime_type=mime_type,
                    file_size=file_size,
                    status="pending",
                    progress=0,
                    created_at=_utcnow(),
                )
            )
        return record_id

    def get_document_job(self, job_id: str, *, user_id: str | None = None) -> Optional[Dict[str, Any]]:
        table = sql_schema.document_jobs
        stmt = sa.select(table).where(table.c.job_id == job_id)
        if user_id:
            stmt = stmt.where(table.c.user_id == user_id)
        with self._session_scope() as session:
            row = session.execute(stmt).first()
        return _row_to_dict(row) if row else None

    def list_document_jobs(self, *, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        table = sql_schema.document_jobs
        with self._session_scope() as session:
            rows = session.execute(
                sa.select(table)
                .where(table.c.user_id == user_id)
                .order_by(table.c.created_at.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_dict(row) for row in rows]

    def update_document_job(self, job_id: str, **values: Any) -> bool:
        """Apply column updates to the record for ``job_id``.

        Terminal statuses (``completed``/``failed``) stamp ``completed_at`` and
        full progress unless the caller supplies them.
        """

        status = values.get("status")
        if status in ("completed", "failed"):
            values.setdefault("completed_at", _utcnow())
            values.setdefault("progress", 100)
        with self._session_scope() as session:
            result = session.execute(
                sa.update(sql_schema.document_jobs).where(sql_schema.document_jobs.c.job_id == job_id).values(**values)
            )
        return bool(result.rowcount)

    def reset_document_job(self, job_id: str) -> bool:
        return self.update_document_job(
            job_id, status="pending", progress=0, error=None, result=None, started_at=None, completed_at=None
        )

    def delete_document_job(self, job_id: str, *, user_id: str) -> bool:
        table = sql_schema.document_jobs
        with self._session_scope() as session:
            result = session.execute(sa.delete(table).where(table.c.job_id == job_id, table.c.user_id == user_id))
        return bool(result.rowcount)

    # ------------------------------------------------------------------
    # transcription_jobs
    # ------------------------------------------------------------------

    def create_transcription_job(
        self,
        *,
        job_id: str,
        user_id: str,
        video_url: str,
        video_title: str,
        session_id: str | None = None,
        include_sentiment: bool = True,
        identify_speakers: bool = True,
    ) -> str:
        with self._session_scope() as session:
            session.execute(
                sa.insert(sql_schema.transcription_jobs).values(
                    job_id=job_id,
                    user_id=user_id,
                    video_url=video_url,
                    video_title=video_title,
                    session_id=session_id,
                    status="pending",
                    progress=0,
                    progress_message="Zadanie utworzone, oczekuje w kolejce...",
                    include_sentiment=include_sentiment,
                    identify_speakers=identify_speakers,
                    metadata={},
                    created_at=_utcnow(),
                )
            )
        return job_id

    def update_transcription_job(
        self,
        job_id: str,
        *,
        status: str | None = None,
        progress: int | None = None,
        progress_message: str | None = None,
        detailed_progress: Mapping[str, Any] | None = None,
        result_document_id: str | None = None,
        error: str | None = None,
    ) -> bool:
        """Update a transcription record; terminal statuses stamp ``completed_at``."""

        values: Dict[str, Any] = {}
        if status is not None:
            values["status"] = status
            if status in TRANSCRIPTION_FINISHED_STATUSES:
                values["completed_at"] = _utcnow()
        if progress is not None:
            values["progress"] = int(max(0, min(100, progress)))
        if progress_message is not None:
            values["progress_message"] = progress_message
        if detailed_progress is not None:
            values["detailed_progress"] = dict(detailed_progress)
        if result_document_id is not None:
            values["result_document_id"] = result_document_id
        if error is not None:
            values["error"] = error
        if not values:
            return False
        table = sql_schema.transcription_jobs
        with self._session_scope() as session:
            result = session.execute(sa.update(table).where(table.c.job_id == job_id).values(**values))
        return bool(result.rowcount)

    def get_transcription_job(self, job_id: str, *, user_id: str | None = None) -> Optional[Dict[str, Any]]:
        table = sql_schema.transcription_jobs
        stmt = sa.select(table).where(table.c.job_id == job_id)
        if user_id:
            stmt = stmt.where(table.c.user_id == user_id)
        with self._session_scope() as session:
            row = session.execute(stmt).first()
        return _row_to_dict(row) if row else None

    def list_transcription_jobs(
        self,
        *,
        statuses: Sequence[str] | None = None,
        created_before: datetime | None = None,
        user_id: str | None = None,
        limit: int | None = None,
    ) -> List[Dict[str, Any]]:
        table = sql_schema.transcription_jobs
        stmt = sa.select(table)
        if statuses:
            stmt = stmt.where(table.c.status.in_(tuple(statuses)))
        if created_before is not None:
            stmt = stmt.where(table.c.created_at < created_before)
        if user_id:
            stmt = stmt.where(table.c.user_id == user_id)
        stmt = stmt.order_by(table.c.created_at.desc())
        if limit:
            stmt = stmt.limit(limit)
        with self._session_scope() as session:
            rows = session.execute(stmt).fetchall()
        return [_row_to_dict(row) for row in rows]

    def delete_finished_transcriptions(self, *, completed_before: datetime) -> int:
        table = sql_schema.transcription_jobs
        with self._session_scope() as session:
            result = session.execute(
                sa.delete(table).where(
                    table.c.status.in_(TRANSCRIPTION_FINISHED_STATUSES),
                    table.c.completed_at < completed_before,
                )
            )
        return int(result.rowcount or 0)

    # ------------------------------------------------------------------
    # data_sources
    # ------------------------------------------------------------------

    def create_source(
        self,
        *,
        user_id: str,
        name: str,
        source_type: str,
        url: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> str:
        source_id = str(uuid.uuid4())
        with self._session_scope() as session:
            session.execute(
                sa.insert(sql_schema.data_sources).values(
                    source_id=source_id,
                    user_id=user_id,
                    name=name,
                    source_type=source_type,
                    url=url,
                    metadata=dict(metadata or {}),
                    created_at=_utcnow(),
                )
            )
        return source_id

    def get_source(self, source_id: str) -> Optional[Dict[str, Any]]:
        table = sql_schema.data_sources
        with self._session_scope() as session:
            row = session.execute(sa.select(table).where(table.c.source_id == source_id)).first()
        if row is None:
            return None
        source = _row_to_dict(row)
        # raw datetime is needed for priority calculations
        source["last_scraped_at"] = row.last_scraped_at
        return source

    def list_sources(self, *, user_id: str) -> List[Dict[str, Any]]:
        table = sql_schema.data_sources
        with self._session_scope() as session:
            rows = session.execute(
                sa.select(table).where(table.c.user_id == user_id).order_by(table.c.created_at.asc())
            ).fetchall()
        return [_row_to_dict(row) for row in rows]

    def mark_scraped(self, source_id: str) -> bool:
        table = sql_schema.data_sources
        with self._session_scope() as session:
            result = session.execute(
                sa.update(table).where(table.c.source_id == source_id).values(last_scraped_at=_utcnow())
            )
        return bool(result.rowcount)


__all__ = [
    "DocumentStore",
    "TRANSCRIPTION_ACTIVE_STATUSES",
    "TRANSCRIPTION_FINISHED_STATUSES",
]
