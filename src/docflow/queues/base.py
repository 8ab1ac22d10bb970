"""Queue facade and event poller shared by every named queue."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from docflow.observability import Observability, get_observability
from docflow.settings import get_settings
from docflow.store.job_queue import Job, JobOptions, JobStore, QueueEvent
from docflow.store.task_store import BackgroundTask

LOGGER = logging.getLogger(__name__)

EventListener = Callable[[QueueEvent], None]
TaskNotifier = Callable[[BackgroundTask], None]


def progress_fields(progress: Any) -> tuple[float, Optional[str]]:
    """Split a numeric or mapping progress value into percent and description."""

    if isinstance(progress, Mapping):
        return float(progress.get("progress") or 0), progress.get("description") or progress.get("message")
    if isinstance(progress, (int, float)):
        return float(progress), None
    return 0.0, None


class JobQueue:
    """Producer-side handle for one named queue with default job options."""

    def __init__(
        self,
        name: str,
        *,
        default_options: JobOptions | None = None,
        store: JobStore | None = None,
        observability: Observability | None = None,
    ) -> None:
        self.name = name
        self.default_options = default_options or JobOptions()
        self._store = store or JobStore()
        self._obs = observability or get_observability(component=f"queue.{name}")

    @property
    def store(self) -> JobStore:
        return self._store

    def add(
        self,
        job_name: str,
        data: Mapping[str, Any],
        *,
        job_id: str | None = None,
        priority: int | None = None,
        user_id: str | None = None,
        delay_ms: int | None = None,
    ) -> str:
        options = self.default_options.merged(priority=priority, delay_ms=delay_ms)
        job_id = self._store.add(self.name, job_name, data, job_id=job_id, options=options, user_id=user_id)
        self._obs.job_event("added", queue=self.name, job_id=job_id, name=job_name, priority=options.priority)
        return job_id

    def add_bulk(self, jobs: Sequence[Mapping[str, Any]]) -> List[str]:
        """Add several jobs; entries carry ``name``, ``data``, ``job_id`` and ``priority``."""

        entries = []
        for entry in jobs:
            entries.append(
                {
                    "name": entry["name"],
                    "data": entry.get("data") or {},
                    "job_id": entry.get("job_id"),
                    "user_id": entry.get("user_id"),
                    "options": self.default_options.merged(priority=entry.get("priority")),
                }
            )
        job_ids = self._store.add_bulk(self.name, entries)
        self._obs.job_event("added", queue=self.name, count=len(job_ids), job_ids=job_ids)
        return job_ids

    def get_job(self, job_id: str) -> Optional[Job]:
        job = self._store.get_job(job_id)
        if job is None or job.queue != self.name:
            return None
        return job

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self.get_job(job_id)
        if job is None:
            return None
        return {
            "id": job.job_id,
            "status": job.state,
            "progress": job.progress,
            "result": job.return_value,
            "error": job.failed_reason,
        }

    def get_jobs(self, states: Sequence[str] | None = None, *, start: int = 0, end: int = -1) -> List[Job]:
        return self._store.get_jobs(self.name, states, start=start, end=end)

    def get_stats(self) -> Dict[str, int]:
        counts = self._store.counts(self.name)
        return {
            "waiting": counts["waiting"],
            "active": counts["active"],
            "completed": counts["completed"],
            "failed": counts["failed"],
        }

    def remove(self, job_id: str) -> bool:
        if self.get_job(job_id) is None:
            return False
        return self._store.remove(job_id)

    def retry(self, job_id: str) -> bool:
        if self.get_job(job_id) is None:
            return False
        return self._store.retry(job_id)

    def clear(self) -> int:
        removed = self._store.obliterate(self.name)
        self._obs.job_event("cleared", queue=self.name, count=removed)
        return removed

    def close(self) -> None:
        LOGGER.debug("Queue %s closed", self.name)


class QueueEvents:
    """Poll ``queue_events`` for one queue and dispatch to registered listeners.

    Listeners run on the poller thread. An exception raised by one listener is
    logged and the remaining listeners still receive the event.

    Besides reading past the cursor, each poll re-reads events written within
    the last ``settle_seconds`` so an event whose transaction committed after a
    higher id was already consumed is still delivered, exactly once.
    """

    def __init__(
        self,
        queue_name: str,
        *,
        store: JobStore | None = None,
        poll_interval: float | None = None,
        settle_seconds: float | None = None,
        from_latest: bool = True,
    ) -> None:
        settings = get_settings().queue
        self.queue_name = queue_name
        self._store = store or JobStore()
        self._poll_interval = poll_interval if poll_interval is not None else settings.events_poll_interval_seconds
        self._settle = timedelta(
            seconds=settle_seconds if settle_seconds is not None else settings.events_settle_seconds
        )
        self._listeners: Dict[str, List[EventListener]] = defaultdict(list)
        self._delivered: Dict[int, datetime] = {}
        self._cursor = 0
        if from_latest:
            self._cursor = self._store.latest_event_id(queue_name)
            for event in self._store.recent_events(queue_name, up_to=self._cursor, since=self._settle_floor()):
                self._delivered[event.event_id] = event.created_at or datetime.now(timezone.utc)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def cursor(self) -> int:
        return self._cursor

    def on(self, event: str, listener: EventListener) -> None:
        self._listeners[event].append(listener)

    def _settle_floor(self) -> datetime:
        return datetime.now(timezone.utc) - self._settle

    def poll_once(self) -> int:
        """Dispatch pending events and return how many were processed."""

        floor = self._settle_floor()
        late = [
            event
            for event in self._store.recent_events(self.queue_name, up_to=self._cursor, since=floor)
            if event.event_id not in self._delivered
        ]
        fresh = self._store.events_since(self.queue_name, self._cursor)
        for event in late + fresh:
            self._cursor = max(self._cursor, event.event_id)
            self._delivered[event.event_id] = event.created_at or datetime.now(timezone.utc)
            self._dispatch(event)
        self._delivered = {event_id: at for event_id, at in self._delivered.items() if at >= floor}
        return len(late) + len(fresh)

    def _dispatch(self, event: QueueEvent) -> None:
        for listener in list(self._listeners.get(event.event, ())):
            try:
                listener(event)
            except Exception:
                LOGGER.exception("Listener for %s on %s failed job_id=%s", event.event, self.queue_name, event.job_id)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"queue-events-{self.queue_name}", daemon=True)
        self._thread.start()
        LOGGER.info("QueueEvents started for %s at cursor %s", self.queue_name, self._cursor)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                processed = self.poll_once()
            except Exception:
                LOGGER.exception("QueueEvents poll failed for %s", self.queue_name)
                processed = 0
            if not processed:
                self._stop.wait(self._poll_interval)

    def close(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None


__all__ = ["EventListener", "JobQueue", "QueueEvents", "TaskNotifier", "progress_fields"]
