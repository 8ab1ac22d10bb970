"""Unit tests for background task bookkeeping."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import sqlalchemy as sa

from docflow.store import sql as sql_schema
from docflow.store.task_store import BackgroundTaskStore


def test_create_and_track_task_by_job_id(session_factory) -> None:
    store = BackgroundTaskStore(session_factory=session_factory)
    task_id = store.create_task(
        user_id="u1", task_type="analysis", title="Analiza: Uchwała", metadata={"job_id": "job-1", "document_id": "d1"}
    )

    running = store.update_by_job_id("job-1", status="running", progress=42.6, description="Szukam referencji")
    assert running.task_id == task_id
    assert running.progress == 43
    assert running.started_at is not None

    done = store.update_by_job_id("job-1", status="completed", metadata={"score": 70})
    assert done.progress == 100
    assert done.completed_at is not None
    assert done.metadata == {"job_id": "job-1", "document_id": "d1", "score": 70}
    assert store.get_task_by_job_id("job-1").status == "completed"


def test_unknown_type_and_status_are_rejected(session_factory) -> None:
    store = BackgroundTaskStore(session_factory=session_factory)
    assert store.create_task(user_id="u1", task_type="mining", title="x") is None

    store.create_task(user_id="u1", task_type="ocr", title="x", metadata={"job_id": "j"})
    assert store.update_by_job_id("j", status="paused") is None
    assert store.update_by_job_id("missing", status="running") is None


def test_active_tasks_are_scoped_to_user(session_factory) -> None:
    store = BackgroundTaskStore(session_factory=session_factory)
    mine = store.create_task(user_id="u1", task_type="ocr", title="mine")
    done = store.create_task(user_id="u1", task_type="ocr", title="done")
    store.create_task(user_id="u2", task_type="ocr", title="theirs")
    store.complete_task(done)

    active = store.get_active_tasks("u1")
    assert [task.task_id for task in active] == [mine]


def test_progress_is_clamped_and_fail_records_error(session_factory) -> None:
    store = BackgroundTaskStore(session_factory=session_factory)
    task_id = store.create_task(user_id="u1", task_type="transcription", title="t")

    store.update_progress(task_id, 180)
    assert store.get_task(task_id).progress == 100

    store.fail_task(task_id, "Cancelled by user")
    task = store.get_task(task_id)
    assert task.status == "failed"
    assert task.error_message == "Cancelled by user"


def test_cleanup_only_removes_old_finished_tasks(session_factory) -> None:
    store = BackgroundTaskStore(session_factory=session_factory)
    old = store.create_task(user_id="u1", task_type="ocr", title="old")
    recent = store.create_task(user_id="u1", task_type="ocr", title="recent")
    running = store.create_task(user_id="u1", task_type="ocr", title="running")
    store.complete_task(old)
    store.complete_task(recent)
    store.start_task(running)

    stale = datetime.now(timezone.utc) - timedelta(days=10)
    with session_factory() as session:
        session.execute(
            sa.update(sql_schema.background_tasks)
            .where(sql_schema.background_tasks.c.task_id == old)
            .values(completed_at=stale)
        )
        session.commit()

    assert store.cleanup_old_tasks(days=7) == 1
    assert store.get_task(old) is None
    assert store.get_task(recent) is not None
    assert store.get_task(running) is not None
