"""Queue facade for uploaded documents awaiting OCR/text extraction.

The ``document_jobs`` row is written before the queue job so that users see their
upload immediately, even if the browser session ends before processing starts.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional

from docflow.queues.base import JobQueue, QueueEvents, TaskNotifier, progress_fields
from docflow.store.document_store import DocumentStore
from docflow.store.job_queue import Backoff, JobOptions, JobStore, QueueEvent
from docflow.store.task_store import BackgroundTask, BackgroundTaskStore

LOGGER = logging.getLogger(__name__)

QUEUE_NAME = "document-process-jobs"
JOB_NAME = "process-document"

DEFAULT_OPTIONS = JobOptions(attempts=3, backoff=Backoff(type="exponential", delay_ms=5000))


class DocumentProcessQueue:
    """Enqueue uploads and keep ``document_jobs`` and background tasks in sync."""

    def __init__(
        self,
        *,
        store: JobStore | None = None,
        documents: DocumentStore | None = None,
        task_store: BackgroundTaskStore | None = None,
        notifier: TaskNotifier | None = None,
    ) -> None:
        self.queue = JobQueue(QUEUE_NAME, default_options=DEFAULT_OPTIONS, store=store)
        self._documents = documents or DocumentStore()
        self._tasks = task_store or BackgroundTaskStore()
        self._notifier = notifier

    def add_job(
        self,
        *,
        user_id: str,
        file_name: str,
        file_base64: str,
        mime_type: str,
        file_size: int,
        options: Mapping[str, Any] | None = None,
    ) -> Dict[str, str]:
        job_id = f"doc-{uuid.uuid4()}"
        record_id = self._documents.create_document_job(
            user_id=user_id,
            job_id=job_id,
            file_name=file_name,
            mime_type=mime_type,
            file_size=file_size,
        )
        self.queue.add(
            JOB_NAME,
            {
                "user_id": user_id,
                "file_name": file_name,
                "file_base64": file_base64,
                "mime_type": mime_type,
                "file_size": file_size,
                "options": dict(options or {}),
            },
            job_id=job_id,
            priority=1,
            user_id=user_id,
        )
        self._tasks.create_task(
            user_id=user_id,
            task_type="ocr",
            title=f"OCR: {file_name}",
            metadata={"job_id": job_id, "record_id": record_id, "file_name": file_name},
        )
        LOGGER.info("Added document job %s for %s", job_id, file_name)
        return {"job_id": job_id, "record_id": record_id}

    def get_user_jobs(self, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        return self._documents.list_document_jobs(user_id=user_id, limit=limit)

    def get_job(self, job_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return self._documents.get_document_job(job_id, user_id=user_id)

    def delete_job(self, job_id: str, user_id: str) -> bool:
        if not self._documents.delete_document_job(job_id, user_id=user_id):
            return False
        # the queue job may already be pruned
        self.queue.remove(job_id)
        return True

    def retry_job(self, job_id: str, user_id: str) -> bool:
        """Requeue a failed job, resetting its record to ``pending``."""

        record = self.get_job(job_id, user_id)
        if not record or record.get("status") != "failed":
            return False
        job = self.queue.get_job(job_id)
        if job is None:
            return False
        self._documents.reset_document_job(job_id)
        if not self.queue.retry(job_id):
            return False
        self._notify(self._tasks.update_by_job_id(job_id, status="queued", progress=0))
        return True

    def get_stats(self) -> Dict[str, int]:
        return self.queue.get_stats()

    def attach(self, events: QueueEvents) -> None:
        events.on("active", self._on_active)
        events.on("completed", self._on_completed)
        events.on("failed", self._on_failed)
        events.on("progress", self._on_progress)

    def _on_active(self, event: QueueEvent) -> None:
        self._notify(self._tasks.update_by_job_id(event.job_id, status="running"))

    def _on_completed(self, event: QueueEvent) -> None:
        LOGGER.info("Document job %s completed", event.job_id)
        result = event.payload.get("return_value")
        self._documents.update_document_job(event.job_id, status="completed", result=result)
        self._notify(self._tasks.update_by_job_id(event.job_id, status="completed", progress=100))

    def _on_failed(self, event: QueueEvent) -> None:
        reason = event.payload.get("failed_reason") or "Unknown error"
        LOGGER.warning("Document job %s failed: %s", event.job_id, reason)
        self._documents.update_document_job(event.job_id, status="failed", error=reason)
        self._notify(self._tasks.update_by_job_id(event.job_id, status="failed", error_message=reason))

    def _on_progress(self, event: QueueEvent) -> None:
        progress, description = progress_fields(event.payload.get("progress"))
        self._documents.update_document_job(event.job_id, status="processing", progress=int(progress))
        self._notify(
            self._tasks.update_by_job_id(event.job_id, status="running", progress=progress, description=description)
        )

    def _notify(self, task: BackgroundTask | None) -> None:
        if task is not None and self._notifier is not None:
            self._notifier(task)


__all__ = ["DEFAULT_OPTIONS", "DocumentProcessQueue", "JOB_NAME", "QUEUE_NAME"]
