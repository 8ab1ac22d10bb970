"""Queue facade for vision/OCR jobs executed against a vision LLM."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from docflow.queues.base import JobQueue, QueueEvents
from docflow.store.job_queue import Backoff, JobOptions, JobStore, QueueEvent, Retention

LOGGER = logging.getLogger(__name__)

QUEUE_NAME = "vision-jobs"
JOB_NAME = "vision-ocr"
DEFAULT_PRIORITY = 5
RESULT_CACHE_TTL_SECONDS = 5 * 60
WAIT_POLL_SECONDS = 0.5

DEFAULT_OPTIONS = JobOptions(
    attempts=3,
    backoff=Backoff(type="exponential", delay_ms=2000),
    remove_on_complete=Retention(age_seconds=3600, count=100),
    remove_on_fail=Retention(age_seconds=86400),
)


def _failed_result(error: str) -> Dict[str, Any]:
    return {"success": False, "text": "", "error": error}


class VisionQueue:
    """Enqueue vision jobs, cache their results and let callers block on them."""

    def __init__(self, *, store: JobStore | None = None, cache_ttl_seconds: float = RESULT_CACHE_TTL_SECONDS) -> None:
        self.queue = JobQueue(QUEUE_NAME, default_options=DEFAULT_OPTIONS, store=store)
        self._cache_ttl = cache_ttl_seconds
        self._results: Dict[str, tuple[float, Optional[str], Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def _job_data(
        self,
        job_id: str,
        *,
        user_id: str,
        image_base64: str,
        prompt: str,
        provider: str,
        model: str,
        page_number: int | None,
        file_name: str | None,
    ) -> Dict[str, Any]:
        return {
            "id": job_id,
            "user_id": user_id,
            "image_base64": image_base64,
            "prompt": prompt,
            "page_number": page_number,
            "file_name": file_name,
            "provider": provider,
            "model": model,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }

    def add_job(
        self,
        *,
        user_id: str,
        image_base64: str,
        prompt: str,
        provider: str,
        model: str,
        page_number: int | None = None,
        file_name: str | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> str:
        job_id = str(uuid.uuid4())
        data = self._job_data(
            job_id,
            user_id=user_id,
            image_base64=image_base64,
            prompt=prompt,
            provider=provider,
            model=model,
            page_number=page_number,
            file_name=file_name,
        )
        self.queue.add(JOB_NAME, data, job_id=job_id, priority=priority, user_id=user_id)
        LOGGER.info("Added vision job %s (provider=%s, model=%s)", job_id, provider, model)
        return job_id

    def add_batch(
        self,
        *,
        user_id: str,
        pages: Sequence[Mapping[str, Any]],
        prompt: str,
        provider: str,
        model: str,
        file_name: str | None = None,
    ) -> List[str]:
        """Queue one job per page; earlier pages get a lower (sooner) priority."""

        entries = []
        for index, page in enumerate(pages):
            job_id = str(uuid.uuid4())
            entries.append(
                {
                    "name": JOB_NAME,
                    "job_id": job_id,
                    "user_id": user_id,
                    "priority": DEFAULT_PRIORITY + index,
                    "data": self._job_data(
                        job_id,
                        user_id=user_id,
                        image_base64=page["image_base64"],
                        prompt=prompt,
                        provider=provider,
                        model=model,
                        page_number=page.get("page_number"),
                        file_name=file_name,
                    ),
                }
            )
        job_ids = self.queue.add_bulk(entries)
        LOGGER.info("Added batch of %s vision jobs (provider=%s)", len(job_ids), provider)
        return job_ids

    def owner_of(self, job_id: str) -> Optional[str]:
        """Return the user that queued ``job_id``, from the queue or the result cache."""

        job = self.queue.get_job(job_id)
        if job is not None:
            return job.user_id
        entry = self._cached_entry(job_id)
        return entry[1] if entry else None

    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        job = self.queue.get_job(job_id)
        if job is None:
            cached = self._cached(job_id)
            if cached is not None:
                return {
                    "id": job_id,
                    "status": "completed" if cached.get("success") else "failed",
                    "result": cached,
                    "error": cached.get("error"),
                }
            return {"id": job_id, "status": "waiting"}
        state = "waiting" if job.state == "delayed" else job.state
        return {
            "id": job_id,
            "status": state,
            "progress": job.progress if isinstance(job.progress, (int, float)) else None,
            "result": job.return_value,
            "error": job.failed_reason,
        }

    def wait_for_result(self, job_id: str, timeout_seconds: float = 60.0) -> Dict[str, Any]:
        """Poll until the job finishes; timeouts come back as a failed result.

        Raises:
            KeyError: When neither the queue nor the result cache knows ``job_id``.
        """

        if self.queue.get_job(job_id) is None:
            cached = self._cached(job_id)
            if cached is not None:
                return cached
            raise KeyError(f"Job {job_id} not found")

        deadline = time.monotonic() + timeout_seconds
        while time.monotonic() < deadline:
            job = self.queue.get_job(job_id)
            if job is None:
                cached = self._cached(job_id)
                return cached if cached is not None else _failed_result("Job removed")
            if job.state == "completed":
                return job.return_value or {"success": True, "text": ""}
            if job.state == "failed":
                return _failed_result(job.failed_reason or "Unknown error")
            time.sleep(WAIT_POLL_SECONDS)
        return _failed_result(f"Timeout after {int(timeout_seconds * 1000)}ms")

    def get_stats(self) -> Dict[str, int]:
        return self.queue.get_stats()

    def clear(self) -> None:
        self.queue.clear()
        with self._lock:
            self._results.clear()
        LOGGER.info("Vision queue cleared")

    def close(self) -> None:
        self.queue.close()

    def attach(self, events: QueueEvents) -> None:
        events.on("completed", self._on_completed)
        events.on("failed", self._on_failed)

    def _on_completed(self, event: QueueEvent) -> None:
        result = event.payload.get("return_value")
        if result:
            self._remember(event.job_id, result, event.payload.get("user_id"))

    def _on_failed(self, event: QueueEvent) -> None:
        reason = event.payload.get("failed_reason") or "Unknown error"
        LOGGER.error("Vision job %s failed: %s", event.job_id, reason)
        self._remember(event.job_id, _failed_result(reason), event.payload.get("user_id"))

    def _remember(self, job_id: str, result: Dict[str, Any], user_id: str | None) -> None:
        with self._lock:
            self._results[job_id] = (time.monotonic() + self._cache_ttl, user_id, result)

    def _cached_entry(self, job_id: str) -> Optional[tuple[float, Optional[str], Dict[str, Any]]]:
        with self._lock:
            now = time.monotonic()
            for key in [key for key, (expires, _, _) in self._results.items() if expires <= now]:
                del self._results[key]
            return self._results.get(job_id)

    def _cached(self, job_id: str) -> Optional[Dict[str, Any]]:
        entry = self._cached_entry(job_id)
        return entry[2] if entry else None


__all__ = ["DEFAULT_OPTIONS", "JOB_NAME", "QUEUE_NAME", "VisionQueue"]
