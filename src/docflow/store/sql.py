"""SQLAlchemy metadata and engine helpers for queue, task, and document tables."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import sqlalchemy as sa
from sqlalchemy import Engine
from sqlalchemy.dialects import postgresql
from sqlalchemy.engine import URL
from sqlalchemy.orm import sessionmaker

from docflow.settings import Settings, get_settings

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
TIMESTAMP = sa.DateTime(timezone=True)
UUID_TYPE = sa.String(length=64)

METADATA = sa.MetaData()

queue_jobs = sa.Table(
    "queue_jobs",
    METADATA,
    sa.Column("job_id", sa.String(length=128), primary_key=True),
    sa.Column("queue", sa.String(length=64), nullable=False),
    sa.Column("name", sa.Text(), nullable=False),
    sa.Column("data", JSON_TYPE, nullable=True),
    sa.Column("user_id", sa.Text(), nullable=True),
    sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("state", sa.String(length=16), nullable=False, server_default="waiting"),
    sa.Column("attempts_made", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="1"),
    sa.Column("backoff_type", sa.String(length=16), nullable=True),
    sa.Column("backoff_delay_ms", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("progress", JSON_TYPE, nullable=True),
    sa.Column("return_value", JSON_TYPE, nullable=True),
    sa.Column("failed_reason", sa.Text(), nullable=True),
    sa.Column("remove_on_complete_age", sa.Integer(), nullable=True),
    sa.Column("remove_on_complete_count", sa.Integer(), nullable=True),
    sa.Column("remove_on_fail_age", sa.Integer(), nullable=True),
    sa.Column("locked_by", sa.Text(), nullable=True),
    sa.Column("available_at", TIMESTAMP, nullable=False),
    sa.Column("created_at", TIMESTAMP, nullable=False),
    sa.Column("processed_at", TIMESTAMP, nullable=True),
    sa.Column("finished_at", TIMESTAMP, nullable=True),
)
sa.Index("idx_queue_jobs_ready", queue_jobs.c.queue, queue_jobs.c.state, queue_jobs.c.priority, queue_jobs.c.created_at)
sa.Index("idx_queue_jobs_user", queue_jobs.c.user_id)

queue_events = sa.Table(
    "queue_events",
    METADATA,
    sa.Column("event_id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("queue", sa.String(length=64), nullable=False),
    sa.Column("job_id", sa.String(length=128), nullable=False),
    sa.Column("event", sa.String(length=16), nullable=False),
    sa.Column("payload", JSON_TYPE, nullable=True),
    sa.Column("created_at", TIMESTAMP, nullable=False),
    # ids must never be reused or pollers skip events past their cursor
    sqlite_autoincrement=True,
)
sa.Index("idx_queue_events_queue_id", queue_events.c.queue, queue_events.c.event_id)

background_tasks = sa.Table(
    "background_tasks",
    METADATA,
    sa.Column("task_id", UUID_TYPE, primary_key=True),
    sa.Column("user_id", sa.Text(), nullable=False),
    sa.Column("task_type", sa.String(length=32), nullable=False),
    sa.Column("status", sa.String(length=16), nullable=False, server_default="queued"),
    sa.Column("title", sa.Text(), nullable=False),
    sa.Column("description", sa.Text(), nullable=True),
    sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("error_message", sa.Text(), nullable=True),
    sa.Column("job_id", sa.String(length=128), nullable=True),
    sa.Column("metadata", JSON_TYPE, nullable=True),
    sa.Column("created_at", TIMESTAMP, nullable=False),
    sa.Column("started_at", TIMESTAMP, nullable=True),
    sa.Column("completed_at", TIMESTAMP, nullable=True),
)
sa.Index("idx_background_tasks_user_status", background_tasks.c.user_id, background_tasks.c.status)
sa.Index("idx_background_tasks_job_id", background_tasks.c.job_id)

document_jobs = sa.Table(
    "document_jobs",
    METADATA,
    sa.Column("record_id", UUID_TYPE, primary_key=True),
    sa.Column("user_id", sa.Text(), nullable=False),
    sa.Column("job_id", sa.String(length=128), nullable=False, unique=True),
    sa.Column("file_name", sa.Text(), nullable=False),
    sa.Column("mime_type", sa.Text(), nullable=True),
    sa.Column("file_size", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
    sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("result", JSON_TYPE, nullable=True),
    sa.Column("error", sa.Text(), nullable=True),
    sa.Column("created_at", TIMESTAMP, nullable=False),
    sa.Column("started_at", TIMESTAMP, nullable=True),
    sa.Column("completed_at", TIMESTAMP, nullable=True),
)
sa.Index("idx_document_jobs_user_created", document_jobs.c.user_id, document_jobs.c.created_at)

transcription_jobs = sa.Table(
    "transcription_jobs",
    METADATA,
    sa.Column("job_id", UUID_TYPE, primary_key=True),
    sa.Column("user_id", sa.Text(), nullable=False),
    sa.Column("video_url", sa.Text(), nullable=False),
    sa.Column("video_title", sa.Text(), nullable=False),
    sa.Column("session_id", sa.Text(), nullable=True),
    sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
    sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("progress_message", sa.Text(), nullable=True),
    sa.Column("detailed_progress", JSON_TYPE, nullable=True),
    sa.Column("include_sentiment", sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column("identify_speakers", sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column("metadata", JSON_TYPE, nullable=True),
    sa.Column("result_document_id", UUID_TYPE, nullable=True),
    sa.Column("error", sa.Text(), nullable=True),
    sa.Column("created_at", TIMESTAMP, nullable=False),
    sa.Column("completed_at", TIMESTAMP, nullable=True),
)
sa.Index("idx_transcription_jobs_status_created", transcription_jobs.c.status, transcription_jobs.c.created_at)

processed_documents = sa.Table(
    "processed_documents",
    METADATA,
    sa.Column("document_id", UUID_TYPE, primary_key=True),
    sa.Column("user_id", sa.Text(), nullable=False),
    sa.Column("title", sa.Text(), nullable=False),
    sa.Column("content", sa.Text(), nullable=True),
    sa.Column("document_type", sa.String(length=64), nullable=False, server_default="other"),
    sa.Column("source_url", sa.Text(), nullable=True),
    sa.Column("publish_date", TIMESTAMP, nullable=True),
    sa.Column("summary", sa.Text(), nullable=True),
    sa.Column("keywords", JSON_TYPE, nullable=True),
    sa.Column("metadata", JSON_TYPE, nullable=True),
    sa.Column("processed_at", TIMESTAMP, nullable=False),
)
sa.Index("idx_processed_documents_user", processed_documents.c.user_id, processed_documents.c.processed_at)

data_sources = sa.Table(
    "data_sources",
    METADATA,
    sa.Column("source_id", UUID_TYPE, primary_key=True),
    sa.Column("user_id", sa.Text(), nullable=False),
    sa.Column("name", sa.Text(), nullable=False),
    sa.Column("source_type", sa.String(length=32), nullable=False),
    sa.Column("url", sa.Text(), nullable=False),
    sa.Column("metadata", JSON_TYPE, nullable=True),
    sa.Column("last_scraped_at", TIMESTAMP, nullable=True),
    sa.Column("created_at", TIMESTAMP, nullable=False),
)


def _resolve_database_url(settings: Settings | None = None) -> str:
    """Return the SQLAlchemy URL considering overrides and configured storage."""

    url_override = os.getenv("DOCFLOW_DATABASE_URL")
    if url_override:
        return url_override

    resolved = settings or get_settings()
    if resolved.storage.database_url:
        return resolved.storage.database_url
    sqlite_path = Path(resolved.storage.sqlite_path)
    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return URL.create("sqlite", database=sqlite_path.as_posix()).render_as_string(hide_password=False)


def build_engine(*, echo: bool = False, settings: Settings | None = None) -> Engine:
    """Instantiate a SQLAlchemy engine aligned with project settings."""

    url = _resolve_database_url(settings)
    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite:///"):
        connect_args["check_same_thread"] = False
    return sa.create_engine(url, echo=echo, future=True, pool_pre_ping=True, connect_args=connect_args)


def session_factory(*, settings: Settings | None = None, create_schema: bool = True) -> sessionmaker:
    """Return a configured sessionmaker bound to the active engine.

    The tables are created on first use when ``create_schema`` is set; deployments
    that manage the schema externally can pass ``False``.
    """

    engine = build_engine(settings=settings)
    if create_schema:
        METADATA.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
