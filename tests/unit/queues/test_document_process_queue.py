"""Unit tests for the document processing queue facade."""

from __future__ import annotations

from docflow.queues.base import QueueEvents
from docflow.queues.document_process import QUEUE_NAME, DocumentProcessQueue
from docflow.store.document_store import DocumentStore
from docflow.store.job_queue import JobOptions, JobStore
from docflow.store.task_store import BackgroundTaskStore


def _build(session_factory):
    store = JobStore(session_factory=session_factory)
    documents = DocumentStore(session_factory=session_factory)
    tasks = BackgroundTaskStore(session_factory=session_factory)
    queue = DocumentProcessQueue(store=store, documents=documents, task_store=tasks)
    events = QueueEvents(QUEUE_NAME, store=store, from_latest=False, poll_interval=0.01)
    queue.attach(events)
    return store, documents, tasks, queue, events


def _enqueue(queue: DocumentProcessQueue) -> dict:
    return queue.add_job(
        user_id="u1",
        file_name="skan.png",
        file_base64="aGVsbG8=",
        mime_type="image/png",
        file_size=5,
        options={"use_vision_fallback": False},
    )


def test_add_job_writes_record_task_and_job(session_factory) -> None:
    store, documents, tasks, queue, _ = _build(session_factory)
    result = _enqueue(queue)

    record = queue.get_job(result["job_id"], "u1")
    assert record["record_id"] == result["record_id"]
    assert record["status"] == "pending"
    assert store.get_job(result["job_id"]).data["options"] == {"use_vision_fallback": False}
    assert tasks.get_task_by_job_id(result["job_id"]).task_type == "ocr"
    assert queue.get_job(result["job_id"], "someone-else") is None


def test_events_drive_record_status(session_factory) -> None:
    store, documents, tasks, queue, events = _build(session_factory)
    job_id = _enqueue(queue)["job_id"]

    store.claim(QUEUE_NAME, worker_id="w")
    store.update_progress(job_id, {"progress": 40, "description": "OCR"})
    events.poll_once()
    assert documents.get_document_job(job_id)["status"] == "processing"
    assert tasks.get_task_by_job_id(job_id).status == "running"

    store.complete(job_id, {"success": True, "text": "hello"})
    events.poll_once()
    record = documents.get_document_job(job_id)
    assert record["status"] == "completed"
    assert record["result"] == {"success": True, "text": "hello"}
    assert tasks.get_task_by_job_id(job_id).progress == 100


def test_retry_only_applies_to_failed_jobs(session_factory) -> None:
    store, documents, tasks, queue, events = _build(session_factory)
    job_id = queue.queue.add("process-document", {"user_id": "u1"}, job_id="doc-x", user_id="u1")
    documents.create_document_job(user_id="u1", job_id=job_id, file_name="a.txt", mime_type="text/plain", file_size=1)
    tasks.create_task(user_id="u1", task_type="ocr", title="OCR: a.txt", metadata={"job_id": job_id})
    assert queue.retry_job(job_id, "u1") is False

    store.claim(QUEUE_NAME, worker_id="w")
    store.fail(job_id, "Unsupported document type")
    events.poll_once()
    assert documents.get_document_job(job_id)["error"] == "Unsupported document type"

    assert queue.retry_job(job_id, "u1") is True
    assert documents.get_document_job(job_id)["status"] == "pending"
    assert store.get_state(job_id) == "waiting"
    assert tasks.get_task_by_job_id(job_id).status == "queued"


def test_delete_job_removes_record_and_queue_entry(session_factory) -> None:
    store, _, _, queue, _ = _build(session_factory)
    job_id = _enqueue(queue)["job_id"]

    assert queue.delete_job(job_id, "u2") is False
    assert queue.delete_job(job_id, "u1") is True
    assert store.get_job(job_id) is None
    assert queue.get_user_jobs("u1") == []


def test_default_options_retry_three_times() -> None:
    from docflow.queues.document_process import DEFAULT_OPTIONS

    assert isinstance(DEFAULT_OPTIONS, JobOptions)
    assert DEFAULT_OPTIONS.attempts == 3
    assert DEFAULT_OPTIONS.backoff.delay_ms == 5000
