"""Queue facade for document analysis jobs."""

from __future__ import annotations

import logging
import uuid
from typing import Dict

from docflow.queues.base import JobQueue, QueueEvents, TaskNotifier, progress_fields
from docflow.store.job_queue import Backoff, JobOptions, JobStore, QueueEvent
from docflow.store.task_store import BackgroundTask, BackgroundTaskStore

LOGGER = logging.getLogger(__name__)

QUEUE_NAME = "analysis-jobs"
JOB_NAME = "analyze-document"

DEFAULT_OPTIONS = JobOptions(attempts=3, backoff=Backoff(type="exponential", delay_ms=5000))


class AnalysisQueue:
    """Enqueue analysis jobs and mirror their lifecycle onto background tasks."""

    def __init__(
        self,
        *,
        store: JobStore | None = None,
        task_store: BackgroundTaskStore | None = None,
        notifier: TaskNotifier | None = None,
    ) -> None:
        self.queue = JobQueue(QUEUE_NAME, default_options=DEFAULT_OPTIONS, store=store)
        self._tasks = task_store or BackgroundTaskStore()
        self._notifier = notifier

    def add_job(self, *, user_id: str, document_id: str, document_title: str) -> Dict[str, str]:
        """Create the background task first, then enqueue the analysis job."""

        job_id = f"analysis-{uuid.uuid4()}"
        task_id = self._tasks.create_task(
            user_id=user_id,
            task_type="analysis",
            title=f"Analiza: {document_title[:50]}",
            metadata={"job_id": job_id, "document_id": document_id, "document_title": document_title},
        )
        self.queue.add(
            JOB_NAME,
            {"user_id": user_id, "document_id": document_id, "document_title": document_title},
            job_id=job_id,
            priority=1,
            user_id=user_id,
        )
        LOGGER.info("Added analysis job %s for document %s", job_id, document_id)
        return {"job_id": job_id, "task_id": task_id or ""}

    def get_stats(self) -> Dict[str, int]:
        return self.queue.get_stats()

    def attach(self, events: QueueEvents) -> None:
        events.on("completed", self._on_completed)
        events.on("failed", self._on_failed)
        events.on("progress", self._on_progress)

    def _on_completed(self, event: QueueEvent) -> None:
        result = event.payload.get("return_value") or {}
        if not result.get("success", True):
            self._on_failed(
                QueueEvent(
                    event_id=event.event_id,
                    queue=event.queue,
                    job_id=event.job_id,
                    event="failed",
                    payload={"failed_reason": result.get("error") or "Analysis failed"},
                )
            )
            return
        LOGGER.info("Analysis job %s completed", event.job_id)
        task = self._tasks.update_by_job_id(
            event.job_id,
            status="completed",
            progress=100,
            metadata={
                "result": {
                    "document_id": result.get("document_id"),
                    "document_title": result.get("document_title"),
                    "score": result.get("score"),
                    "references": result.get("references"),
                    "analysis_prompt": result.get("analysis_prompt"),
                    "system_prompt": result.get("system_prompt"),
                }
            },
        )
        self._notify(task)

    def _on_failed(self, event: QueueEvent) -> None:
        reason = event.payload.get("failed_reason") or "Unknown error"
        LOGGER.warning("Analysis job %s failed: %s", event.job_id, reason)
        self._notify(self._tasks.update_by_job_id(event.job_id, status="failed", error_message=reason))

    def _on_progress(self, event: QueueEvent) -> None:
        progress, description = progress_fields(event.payload.get("progress"))
        task = self._tasks.update_by_job_id(event.job_id, status="running", progress=progress, description=description)
        self._notify(task)

    def _notify(self, task: BackgroundTask | None) -> None:
        if task is not None and self._notifier is not None:
            self._notifier(task)


__all__ = ["AnalysisQueue", "DEFAULT_OPTIONS", "JOB_NAME", "QUEUE_NAME"]
