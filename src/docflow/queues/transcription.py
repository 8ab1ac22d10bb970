"""Queue facade for long-running video transcription jobs."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from docflow.queues.base import JobQueue, QueueEvents, TaskNotifier, progress_fields
from docflow.store.document_store import DocumentStore
from docflow.store.job_queue import Backoff, Job, JobOptions, JobStore, QueueEvent, Retention
from docflow.store.task_store import BackgroundTask, BackgroundTaskStore

LOGGER = logging.getLogger(__name__)

QUEUE_NAME = "transcription-jobs"
JOB_NAME = "youtube-transcription"
DEFAULT_PRIORITY = 5
WAIT_POLL_SECONDS = 2.0
DEFAULT_WAIT_TIMEOUT_SECONDS = 2 * 60 * 60
WAITING_MESSAGE = "Oczekuje w kolejce..."

DEFAULT_OPTIONS = JobOptions(
    attempts=3,
    backoff=Backoff(type="exponential", delay_ms=5000),
    remove_on_complete=Retention(age_seconds=7 * 86400, count=500),
    remove_on_fail=Retention(age_seconds=30 * 86400),
)

# (name, label, global progress range)
TRANSCRIPTION_STEPS: tuple[tuple[str, str, tuple[int, int]], ...] = (
    ("download", "Pobieranie audio", (0, 15)),
    ("preprocessing", "Przetwarzanie audio", (15, 25)),
    ("transcription", "Transkrypcja", (25, 65)),
    ("analysis", "Analiza i identyfikacja", (65, 85)),
    ("saving", "Zapisywanie do bazy", (85, 100)),
)


def initial_detailed_progress() -> Dict[str, Any]:
    now = datetime.now(timezone.utc).isoformat()
    return {
        "global_progress": 0,
        "global_message": WAITING_MESSAGE,
        "current_step": TRANSCRIPTION_STEPS[0][0],
        "steps": [
            {"name": name, "label": label, "status": "pending", "progress": 0}
            for name, label, _ in TRANSCRIPTION_STEPS
        ],
        "started_at": now,
        "last_update": now,
    }


class TranscriptionQueue:
    """Enqueue transcriptions and expose status, cancel and retry operations."""

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
        self._progress: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def add_job(
        self,
        *,
        user_id: str,
        video_url: str,
        video_title: str,
        session_id: str | None = None,
        include_sentiment: bool = True,
        identify_speakers: bool = True,
        priority: int = DEFAULT_PRIORITY,
    ) -> str:
        job_id = str(uuid.uuid4())
        self._documents.create_transcription_job(
            job_id=job_id,
            user_id=user_id,
            video_url=video_url,
            video_title=video_title,
            session_id=session_id,
            include_sentiment=include_sentiment,
            identify_speakers=identify_speakers,
        )
        self._documents.update_transcription_job(job_id, detailed_progress=initial_detailed_progress())
        self._tasks.create_task(
            user_id=user_id,
            task_type="transcription",
            title=f"Transkrypcja: {video_title[:50]}",
            metadata={"job_id": job_id, "video_url": video_url, "session_id": session_id},
        )
        data = {
            "id": job_id,
            "user_id": user_id,
            "video_url": video_url,
            "video_title": video_title,
            "session_id": session_id,
            "include_sentiment": include_sentiment,
            "identify_speakers": identify_speakers,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self.queue.add(JOB_NAME, data, job_id=job_id, priority=priority, user_id=user_id)
        LOGGER.info('Added transcription job %s (video="%s")', job_id, video_title)
        return job_id

    def _status_for(self, job: Job) -> Dict[str, Any]:
        if isinstance(job.progress, dict):
            progress = job.progress.get("progress", 0)
            message = job.progress.get("message") or WAITING_MESSAGE
        else:
            with self._lock:
                cached = self._progress.get(job.job_id)
            progress = cached["progress"] if cached else 0
            message = cached["message"] if cached else WAITING_MESSAGE
        record = self._documents.get_transcription_job(job.job_id)
        return {
            "id": job.job_id,
            "status": job.state,
            "progress": progress,
            "progress_message": message,
            "result": job.return_value,
            "error": job.failed_reason,
            "created_at": job.created_at.isoformat() if job.created_at else None,
            "completed_at": job.finished_at.isoformat() if job.finished_at else None,
            "detailed_progress": (record or {}).get("detailed_progress"),
        }

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self.queue.get_job(job_id)
        if job is None:
            return None
        return self._status_for(job)

    def get_user_jobs(self, user_id: str) -> List[Dict[str, Any]]:
        """Return the user's jobs newest first (last 100 completed, last 50 failed)."""

        store = self.queue.store
        jobs: List[Job] = []
        jobs.extend(store.get_jobs(QUEUE_NAME, ["waiting", "active", "delayed"], user_id=user_id))
        jobs.extend(store.get_jobs(QUEUE_NAME, ["completed"], start=0, end=99, user_id=user_id))
        jobs.extend(store.get_jobs(QUEUE_NAME, ["failed"], start=0, end=49, user_id=user_id))
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        jobs.sort(key=lambda job: job.created_at or epoch, reverse=True)
        return [self._status_for(job) for job in jobs]

    def wait_for_result(self, job_id: str, timeout_seconds: float = DEFAULT_WAIT_TIMEOUT_SECONDS) -> Dict[str, Any]:
        if self.queue.get_job(job_id) is None:
            raise KeyError(f"Job {job_id} not found")
        deadline = time.monotonic() + timeout_seconds
        while time.monotonic() < deadline:
            job = self.queue.get_job(job_id)
            if job is None:
                return {"success": False, "error": "Job removed"}
            if job.state == "completed":
                return job.return_value or {"success": True, "document_id": None}
            if job.state == "failed":
                return {"success": False, "error": job.failed_reason or "Unknown error"}
            time.sleep(WAIT_POLL_SECONDS)
        return {"success": False, "error": f"Timeout after {int(timeout_seconds * 1000)}ms"}

    def get_stats(self) -> Dict[str, int]:
        counts = self.queue.store.counts(QUEUE_NAME)
        return {key: counts[key] for key in ("waiting", "active", "completed", "failed", "delayed")}

    def cancel_job(self, job_id: str) -> bool:
        """Remove a job that is still waiting; active and finished jobs stay."""

        job = self.queue.get_job(job_id)
        if job is None or job.is_finished or job.state == "active":
            return False
        self.queue.remove(job_id)
        with self._lock:
            self._progress.pop(job_id, None)
        self._documents.update_transcription_job(job_id, status="failed", error="Cancelled by user")
        self._notify(self._tasks.update_by_job_id(job_id, status="failed", error_message="Cancelled by user"))
        LOGGER.info("Cancelled transcription job %s", job_id)
        return True

    def retry_job(self, job_id: str) -> bool:
        job = self.queue.get_job(job_id)
        if job is None or job.state != "failed":
            return False
        self.queue.retry(job_id)
        self._documents.update_transcription_job(
            job_id, status="pending", progress=0, progress_message=WAITING_MESSAGE
        )
        self._notify(self._tasks.update_by_job_id(job_id, status="queued", progress=0))
        LOGGER.info("Retrying transcription job %s", job_id)
        return True

    def clear(self) -> None:
        self.queue.clear()
        with self._lock:
            self._progress.clear()
        LOGGER.info("Transcription queue cleared")

    def close(self) -> None:
        self.queue.close()

    def attach(self, events: QueueEvents) -> None:
        events.on("completed", self._on_completed)
        events.on("failed", self._on_failed)
        events.on("progress", self._on_progress)

    def _on_completed(self, event: QueueEvent) -> None:
        LOGGER.info("Transcription job %s completed", event.job_id)
        with self._lock:
            self._progress.pop(event.job_id, None)
        result = event.payload.get("return_value") or {}
        task = self._tasks.update_by_job_id(
            event.job_id,
            status="completed",
            metadata={"document_id": result.get("document_id")},
        )
        self._notify(task)

    def _on_failed(self, event: QueueEvent) -> None:
        reason = event.payload.get("failed_reason") or "Unknown error"
        LOGGER.error("Transcription job %s failed: %s", event.job_id, reason)
        with self._lock:
            self._progress.pop(event.job_id, None)
        self._notify(self._tasks.update_by_job_id(event.job_id, status="failed", error_message=reason))

    def _on_progress(self, event: QueueEvent) -> None:
        progress, message = progress_fields(event.payload.get("progress"))
        with self._lock:
            self._progress[event.job_id] = {"progress": progress, "message": message or WAITING_MESSAGE}
        self._notify(
            self._tasks.update_by_job_id(event.job_id, status="running", progress=progress, description=message)
        )

    def _notify(self, task: BackgroundTask | None) -> None:
        if task is not None and self._notifier is not None:
            self._notifier(task)


__all__ = [
    "DEFAULT_OPTIONS",
    "JOB_NAME",
    "QUEUE_NAME",
    "TRANSCRIPTION_STEPS",
    "TranscriptionQueue",
    "initial_detailed_progress",
]
