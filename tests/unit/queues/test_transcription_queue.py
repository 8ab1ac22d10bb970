"""Unit tests for the transcription queue facade."""

from __future__ import annotations

from docflow.queues.base import QueueEvents
from docflow.queues.transcription import QUEUE_NAME, TRANSCRIPTION_STEPS, TranscriptionQueue
from docflow.store.document_store import DocumentStore
from docflow.store.job_queue import JobStore
from docflow.store.task_store import BackgroundTaskStore


def _build(session_factory):
    store = JobStore(session_factory=session_factory)
    documents = DocumentStore(session_factory=session_factory)
    tasks = BackgroundTaskStore(session_factory=session_factory)
    queue = TranscriptionQueue(store=store, documents=documents, task_store=tasks)
    return store, documents, tasks, queue


def _enqueue(queue: TranscriptionQueue, user_id: str = "u1") -> str:
    return queue.add_job(
        user_id=user_id,
        video_url="https://www.youtube.com/watch?v=abc",
        video_title="Sesja Rady Miejskiej",
        session_id="sesja-12",
        include_sentiment=False,
    )


def test_add_job_creates_record_with_step_plan(session_factory) -> None:
    store, documents, tasks, queue = _build(session_factory)
    job_id = _enqueue(queue)

    record = documents.get_transcription_job(job_id)
    assert record["status"] == "pending"
    assert record["include_sentiment"] is False
    steps = record["detailed_progress"]["steps"]
    assert [step["name"] for step in steps] == [name for name, _, _ in TRANSCRIPTION_STEPS]
    assert tasks.get_task_by_job_id(job_id).title == "Transkrypcja: Sesja Rady Miejskiej"
    assert store.get_job(job_id).priority == 5


def test_status_reports_progress_from_events(session_factory) -> None:
    store, _, tasks, queue = _build(session_factory)
    events = QueueEvents(QUEUE_NAME, store=store, from_latest=False, poll_interval=0.01)
    queue.attach(events)
    job_id = _enqueue(queue)

    store.claim(QUEUE_NAME, worker_id="w")
    store.update_progress(job_id, {"progress": 30, "message": "Transkrypcja"})
    events.poll_once()

    status = queue.get_job_status(job_id)
    assert status["status"] == "active"
    assert status["progress"] == 30
    assert status["progress_message"] == "Transkrypcja"
    assert tasks.get_task_by_job_id(job_id).progress == 30

    store.complete(job_id, {"success": True, "document_id": "doc-1"})
    events.poll_once()
    task = tasks.get_task_by_job_id(job_id)
    assert task.status == "completed"
    assert task.metadata["document_id"] == "doc-1"


def test_cancel_marks_record_and_task_failed(session_factory) -> None:
    store, documents, tasks, queue = _build(session_factory)
    job_id = _enqueue(queue)

    assert queue.cancel_job(job_id) is True
    assert store.get_job(job_id) is None
    assert documents.get_transcription_job(job_id)["error"] == "Cancelled by user"
    assert tasks.get_task_by_job_id(job_id).status == "failed"
    assert queue.cancel_job(job_id) is False


def test_cancel_refuses_job_claimed_by_worker(session_factory) -> None:
    store, documents, tasks, queue = _build(session_factory)
    job_id = _enqueue(queue)
    store.claim(QUEUE_NAME, worker_id="w")

    assert queue.cancel_job(job_id) is False
    assert store.get_state(job_id) == "active"
    assert documents.get_transcription_job(job_id)["error"] is None
    assert tasks.get_task_by_job_id(job_id).status != "failed"


def test_retry_and_user_listing(session_factory) -> None:
    store, documents, _, queue = _build(session_factory)
    first = _enqueue(queue)
    second = _enqueue(queue)
    _enqueue(queue, user_id="u2")

    store.claim(QUEUE_NAME, worker_id="w")
    for _ in range(3):
        store.fail(first, "yt-dlp failed")
    assert store.get_state(first) == "failed"

    listed = [item["id"] for item in queue.get_user_jobs("u1")]
    assert set(listed) == {first, second}

    assert queue.retry_job(second) is False
    assert queue.retry_job(first) is True
    assert store.get_state(first) == "waiting"
    assert documents.get_transcription_job(first)["status"] == "pending"
    assert queue.get_stats()["waiting"] == 3


def test_wait_for_result_returns_failure_reason(session_factory) -> None:
    store, _, _, queue = _build(session_factory)
    job_id = _enqueue(queue)
    store.claim(QUEUE_NAME, worker_id="w")
    for _ in range(3):
        store.fail(job_id, "no audio")

    assert queue.wait_for_result(job_id, timeout_seconds=1) == {"success": False, "error": "no audio"}
