"""Unit tests for the analysis queue facade."""

from __future__ import annotations

from docflow.queues.analysis import QUEUE_NAME, AnalysisQueue
from docflow.queues.base import QueueEvents
from docflow.store.job_queue import JobStore
from docflow.store.task_store import BackgroundTaskStore


def _build(session_factory):
    store = JobStore(session_factory=session_factory)
    tasks = BackgroundTaskStore(session_factory=session_factory)
    notified = []
    queue = AnalysisQueue(store=store, task_store=tasks, notifier=notified.append)
    events = QueueEvents(QUEUE_NAME, store=store, from_latest=False, poll_interval=0.01)
    queue.attach(events)
    return store, tasks, queue, events, notified


def test_add_job_creates_task_before_job(session_factory) -> None:
    store, tasks, queue, _, _ = _build(session_factory)

    result = queue.add_job(user_id="u1", document_id="d1", document_title="Uchwała " + "x" * 80)

    task = tasks.get_task(result["task_id"])
    assert task.job_id == result["job_id"]
    assert task.title == "Analiza: " + ("Uchwała " + "x" * 80)[:50]
    job = store.get_job(result["job_id"])
    assert job.priority == 1
    assert job.max_attempts == 3
    assert job.data == {"user_id": "u1", "document_id": "d1", "document_title": "Uchwała " + "x" * 80}


def test_completed_result_updates_task_and_notifies(session_factory) -> None:
    store, tasks, queue, events, notified = _build(session_factory)
    result = queue.add_job(user_id="u1", document_id="d1", document_title="Druk")

    store.claim(QUEUE_NAME, worker_id="w")
    store.update_progress(result["job_id"], {"progress": 30, "description": "Szukam dokumentów"})
    store.complete(result["job_id"], {"success": True, "document_id": "d1", "score": {"score": 80}})
    events.poll_once()

    task = tasks.get_task(result["task_id"])
    assert task.status == "completed"
    assert task.metadata["result"]["score"] == {"score": 80}
    assert [item.status for item in notified] == ["running", "completed"]
    assert notified[0].description == "Szukam dokumentów"


def test_unsuccessful_result_marks_task_failed(session_factory) -> None:
    store, tasks, queue, events, _ = _build(session_factory)
    result = queue.add_job(user_id="u1", document_id="missing", document_title="Brak")

    store.claim(QUEUE_NAME, worker_id="w")
    store.complete(result["job_id"], {"success": False, "error": "Document not found"})
    events.poll_once()

    task = tasks.get_task(result["task_id"])
    assert task.status == "failed"
    assert task.error_message == "Document not found"
