"""In-process priority queue that bounds concurrent data-source scrapes."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from docflow.settings import get_settings
from docflow.store.task_store import BackgroundTask, BackgroundTaskStore

LOGGER = logging.getLogger(__name__)

ScrapeFn = Callable[[str, str, Dict[str, Any]], Any]
JobListener = Callable[["ScrapingJob"], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ScrapingJob:
    """A single scrape request for one data source."""

    job_id: str
    source_id: str
    user_id: str
    priority: int
    config: Dict[str, Any] = field(default_factory=dict)
    status: str = "queued"
    created_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "source_id": self.source_id,
            "user_id": self.user_id,
            "priority": self.priority,
            "config": dict(self.config),
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "result": self.result,
        }


class ScrapingQueueManager:
    """Run scrapes by descending priority with at most ``max_concurrent`` in flight.

    Events ``job:queued``, ``job:started``, ``job:completed``, ``job:failed`` and
    ``job:cancelled`` are delivered to listeners registered with :meth:`on`.
    """

    def __init__(
        self,
        scrape: ScrapeFn,
        *,
        max_concurrent: int | None = None,
        max_pages_parallel: int | None = None,
        default_priority: int | None = None,
    ) -> None:
        settings = get_settings().scraping
        self._scrape = scrape
        self.max_concurrent = max_concurrent or settings.max_concurrent
        self.max_pages_parallel = max_pages_parallel or settings.max_pages_parallel
        self.default_priority = default_priority if default_priority is not None else settings.default_priority
        self._queue: List[ScrapingJob] = []
        self._running: Dict[str, ScrapingJob] = {}
        self._completed: List[ScrapingJob] = []
        self._failed: List[ScrapingJob] = []
        self._listeners: Dict[str, List[JobListener]] = defaultdict(list)
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._executor = ThreadPoolExecutor(max_workers=self.max_concurrent, thread_name_prefix="scraping")
        LOGGER.info(
            "Scraping queue ready: max_concurrent=%s max_pages_parallel=%s",
            self.max_concurrent,
            self.max_pages_parallel,
        )

    def on(self, event: str, listener: JobListener) -> None:
        self._listeners[event].append(listener)

    def _emit(self, event: str, job: ScrapingJob) -> None:
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(job)
            except Exception:
                LOGGER.exception("Scraping listener for %s failed", event)

    def enqueue(
        self,
        source_id: str,
        user_id: str,
        *,
        priority: int | None = None,
        config: Mapping[str, Any] | None = None,
    ) -> str:
        """Queue a scrape; a source already queued or running returns its job id."""

        with self._lock:
            for job in self._queue:
                if job.source_id == source_id:
                    LOGGER.info("Job for source %s already queued, skipping", source_id)
                    return job.job_id
            for job in self._running.values():
                if job.source_id == source_id:
                    LOGGER.info("Job for source %s already running, skipping", source_id)
                    return job.job_id

            job = ScrapingJob(
                job_id=f"scrape-{uuid.uuid4().hex[:12]}",
                source_id=source_id,
                user_id=user_id,
                priority=self.default_priority if priority is None else priority,
                config=dict(config or {}),
            )
            self._queue.append(job)
            # stable sort keeps FIFO among equal priorities
            self._queue.sort(key=lambda item: item.priority, reverse=True)
            LOGGER.info(
                "Enqueued job %s for source %s (priority=%s, queue size=%s)",
                job.job_id,
                source_id,
                job.priority,
                len(self._queue),
            )
        self._emit("job:queued", job)
        self._process_queue()
        return job.job_id

    def _process_queue(self) -> None:
        started: List[ScrapingJob] = []
        with self._lock:
            while self._queue and len(self._running) < self.max_concurrent:
                job = self._queue.pop(0)
                job.status = "running"
                job.started_at = _utcnow()
                self._running[job.job_id] = job
                started.append(job)
        for job in started:
            LOGGER.info("Starting job %s for source %s", job.job_id, job.source_id)
            self._emit("job:started", job)
            self._executor.submit(self._run_job, job)

    def _run_job(self, job: ScrapingJob) -> None:
        config = {**job.config, "max_pages_parallel": self.max_pages_parallel}
        try:
            result = self._scrape(job.source_id, job.user_id, config)
        except Exception as exc:
            with self._lock:
                job.status = "failed"
                job.finished_at = _utcnow()
                job.error = str(exc)
                self._running.pop(job.job_id, None)
                self._failed.append(job)
            LOGGER.exception("Failed job %s for source %s", job.job_id, job.source_id)
            self._emit("job:failed", job)
        else:
            with self._lock:
                job.status = "completed"
                job.finished_at = _utcnow()
                job.result = result
                self._running.pop(job.job_id, None)
                self._completed.append(job)
            LOGGER.info("Completed job %s for source %s", job.job_id, job.source_id)
            self._emit("job:completed", job)
        finally:
            self._process_queue()
            with self._idle:
                self._idle.notify_all()

    def get_job_status(self, job_id: str) -> Optional[ScrapingJob]:
        with self._lock:
            for job in self._queue:
                if job.job_id == job_id:
                    return job
            if job_id in self._running:
                return self._running[job_id]
            for job in self._completed + self._failed:
                if job.job_id == job_id:
                    return job
        return None

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "queued": len(self._queue),
                "running": len(self._running),
                "completed": len(self._completed),
                "failed": len(self._failed),
                "total_processed": len(self._completed) + len(self._failed),
                "active_jobs": [job.to_dict() for job in self._running.values()],
            }

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a queued job; running jobs cannot be cancelled."""

        with self._lock:
            for index, job in enumerate(self._queue):
                if job.job_id == job_id:
                    del self._queue[index]
                    job.status = "failed"
                    job.error = "Cancelled by user"
                    job.finished_at = _utcnow()
                    self._failed.append(job)
                    break
            else:
                return False
        LOGGER.info("Cancelled job %s", job_id)
        self._emit("job:cancelled", job)
        return True

    def clear_history(self) -> None:
        with self._lock:
            self._completed = []
            self._failed = []
        LOGGER.info("Cleared scraping job history")

    def get_parallel_config(self) -> Dict[str, int]:
        return {"max_pages_parallel": self.max_pages_parallel}

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing is queued or running."""

        with self._idle:
            return self._idle.wait_for(lambda: not self._queue and not self._running, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def calculate_source_priority(source: Mapping[str, Any], *, now: datetime | None = None) -> int:
    """Score a data source from 0 to 100; higher scrapes sooner.

    YouTube sources gain 20 and BIP sources 15. Sources never scraped gain 30,
    sources idle for more than 30 days gain 20 and more than 7 days gain 10.
    An explicit ``metadata.priority`` replaces the computed value.
    """

    priority = 50
    source_type = source.get("source_type") or source.get("type")
    if source_type == "youtube":
        priority += 20
    if source_type == "bip":
        priority += 15

    last_scraped = source.get("last_scraped_at")
    if last_scraped:
        if isinstance(last_scraped, str):
            last_scraped = datetime.fromisoformat(last_scraped.replace("Z", "+00:00"))
        if last_scraped.tzinfo is None:
            last_scraped = last_scraped.replace(tzinfo=timezone.utc)
        days_idle = ((now or _utcnow()) - last_scraped).total_seconds() / 86400
        if days_idle > 30:
            priority += 20
        elif days_idle > 7:
            priority += 10
    else:
        priority += 30

    metadata = source.get("metadata") or {}
    if metadata.get("priority"):
        priority = int(metadata["priority"])

    return min(100, max(0, priority))


def attach_task_tracking(
    manager: ScrapingQueueManager,
    task_store: BackgroundTaskStore,
    notifier: Callable[[BackgroundTask], None] | None = None,
) -> None:
    """Mirror scraping jobs onto ``scraping`` background tasks."""

    def _notify(task: BackgroundTask | None) -> None:
        if task is not None and notifier is not None:
            notifier(task)

    def _queued(job: ScrapingJob) -> None:
        task_store.create_task(
            user_id=job.user_id,
            task_type="scraping",
            title=f"Scraping: {job.config.get('source_name') or job.source_id}",
            metadata={"job_id": job.job_id, "source_id": job.source_id, "priority": job.priority},
        )
        _notify(task_store.get_task_by_job_id(job.job_id))

    def _started(job: ScrapingJob) -> None:
        _notify(task_store.update_by_job_id(job.job_id, status="running", progress=10))

    def _completed(job: ScrapingJob) -> None:
        result = job.result if isinstance(job.result, dict) else {"result": job.result}
        _notify(task_store.update_by_job_id(job.job_id, status="completed", progress=100, metadata=result))

    def _failed(job: ScrapingJob) -> None:
        _notify(task_store.update_by_job_id(job.job_id, status="failed", error_message=job.error or "Unknown error"))

    manager.on("job:queued", _queued)
    manager.on("job:started", _started)
    manager.on("job:completed", _completed)
    manager.on("job:failed", _failed)
    manager.on("job:cancelled", _failed)


__all__ = ["ScrapingJob", "ScrapingQueueManager", "attach_task_tracking", "calculate_source_priority"]
