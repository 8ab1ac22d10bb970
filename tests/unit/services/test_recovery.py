"""Unit tests for transcription recovery."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import sqlalchemy as sa

from docflow.queues.transcription import QUEUE_NAME, TranscriptionQueue
from docflow.services.recovery import INTERRUPTED_ERROR, RecoveryScheduler, TranscriptionRecoveryService
from docflow.store import sql as sql_schema
from docflow.store.document_store import DocumentStore
from docflow.store.job_queue import JobOptions, JobStore, Retention
from docflow.store.task_store import BackgroundTaskStore


def _build(session_factory):
    store = JobStore(session_factory=session_factory)
    documents = DocumentStore(session_factory=session_factory)
    queue = TranscriptionQueue(
        store=store, documents=documents, task_store=BackgroundTaskStore(session_factory=session_factory)
    )
    service = TranscriptionRecoveryService(
        documents=documents, queue=queue, stuck_after_minutes=10, timeout_hours=3, retention_days=30
    )
    return store, documents, queue, service


def _add(queue: TranscriptionQueue) -> str:
    return queue.add_job(user_id="u1", video_url="https://yt/v", video_title="Sesja")


def test_recover_stuck_jobs_reconciles_with_queue(session_factory) -> None:
    store, documents, queue, service = _build(session_factory)
    alive = _add(queue)
    vanished = _add(queue)
    broken = _add(queue)
    store.remove(vanished)
    store.claim(QUEUE_NAME, worker_id="w")
    store.claim(QUEUE_NAME, worker_id="w")
    for _ in range(3):
        store.fail(broken, "ffmpeg crashed")

    later = datetime.now(timezone.utc) + timedelta(hours=1)
    report = service.recover_stuck_jobs(now=later)

    assert (report.recovered, report.failed) == (1, 2)
    assert documents.get_transcription_job(alive)["status"] == "pending"
    assert documents.get_transcription_job(vanished)["error"] == INTERRUPTED_ERROR
    assert documents.get_transcription_job(broken)["error"] == "ffmpeg crashed"


def test_recent_jobs_are_not_considered_stuck(session_factory) -> None:
    _, documents, queue, service = _build(session_factory)
    job_id = _add(queue)
    queue.queue.store.remove(job_id)

    report = service.recover_stuck_jobs()

    assert report.failed == 0
    assert documents.get_transcription_job(job_id)["status"] == "pending"


def test_running_jobs_time_out_and_old_ones_are_cleaned(session_factory) -> None:
    _, documents, queue, service = _build(session_factory)
    running = _add(queue)
    waiting = _add(queue)
    documents.update_transcription_job(running, status="transcribing")

    timed_out = service.mark_timeout_jobs(now=datetime.now(timezone.utc) + timedelta(hours=4))

    assert timed_out == 1
    assert documents.get_transcription_job(running)["error"] == "Timeout after 3 hours"
    assert documents.get_transcription_job(waiting)["status"] == "pending"

    removed = service.cleanup_old_jobs(now=datetime.now(timezone.utc) + timedelta(days=31))
    assert removed == 1
    assert documents.get_transcription_job(running) is None


def test_full_cycle_reports_every_phase(session_factory) -> None:
    _, _, queue, service = _build(session_factory)
    _add(queue)

    report = service.run_recovery_cycle(now=datetime.now(timezone.utc) + timedelta(days=40))

    assert report.to_dict() == {
        "recovered": 1,
        "failed": 0,
        "timed_out": 0,
        "cleaned": 0,
        "pruned_jobs": 0,
        "pruned_events": 1,
    }


def test_cycle_prunes_expired_queue_jobs_and_old_events(session_factory) -> None:
    store, _, queue, service = _build(session_factory)
    expiring = JobOptions(remove_on_complete=Retention(age_seconds=60))
    job_id = store.add("vision-jobs", "vision-ocr", {}, options=expiring)
    store.claim("vision-jobs", worker_id="w")
    store.complete(job_id, {"success": True})
    with session_factory() as session:
        session.execute(
            sa.update(sql_schema.queue_jobs)
            .where(sql_schema.queue_jobs.c.job_id == job_id)
            .values(finished_at=datetime.now(timezone.utc) - timedelta(hours=1))
        )
        session.commit()

    assert service.prune_queues() == (1, 0)
    assert store.get_job(job_id) is None

    _add(queue)
    assert service.prune_queues(now=datetime.now(timezone.utc) + timedelta(days=2)) == (0, 4)
    assert store.latest_event_id(QUEUE_NAME) == 0


def test_scheduler_runs_initial_sweep_then_cycles() -> None:
    calls = []
    cycled = threading.Event()

    class FakeService:
        def recover_stuck_jobs(self):
            calls.append("sweep")

        def run_recovery_cycle(self):
            calls.append("cycle")
            cycled.set()

    scheduler = RecoveryScheduler(FakeService(), interval_seconds=0.01)
    scheduler.start()
    try:
        assert cycled.wait(timeout=2)
    finally:
        scheduler.stop()

    assert calls[0] == "sweep"
