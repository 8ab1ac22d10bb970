"""Polling worker that claims queue jobs and runs them on a thread pool."""

from __future__ import annotations

import logging
import socket
import threading
import time
import uuid
from collections import defaultdict, deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Deque, Dict, List, Optional

from docflow.observability import Observability, get_observability
from docflow.settings import get_settings
from docflow.store.job_queue import Job, JobStore

LOGGER = logging.getLogger(__name__)

WorkerListener = Callable[..., None]


class RateLimiter:
    """Sliding-window limiter: at most ``max_jobs`` starts per ``duration`` seconds."""

    def __init__(self, max_jobs: int, duration: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_jobs = max_jobs
        self.duration = duration
        self._clock = clock
        self._starts: Deque[float] = deque()
        self._lock = threading.Lock()

    def try_acquire(self) -> float:
        """Record a start and return 0, or return the seconds to wait for a slot."""

        with self._lock:
            now = self._clock()
            while self._starts and now - self._starts[0] >= self.duration:
                self._starts.popleft()
            if len(self._starts) < self.max_jobs:
                self._starts.append(now)
                return 0.0
            return self.duration - (now - self._starts[0])

    def acquire(self, stop: threading.Event) -> bool:
        """Block until a slot frees up; returns ``False`` if ``stop`` is set first."""

        while not stop.is_set():
            wait = self.try_acquire()
            if wait <= 0:
                return True
            stop.wait(min(wait, 1.0))
        return False


class JobContext:
    """Handle passed to processors for progress reporting and job logs."""

    def __init__(self, job: Job, store: JobStore, *, on_progress: Callable[[Job, Any], None] | None = None) -> None:
        self.job = job
        self._store = store
        self._on_progress = on_progress
        self.logs: List[str] = []

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def data(self) -> Dict[str, Any]:
        return self.job.data

    def update_progress(self, progress: Any) -> None:
        self._store.update_progress(self.job.job_id, progress)
        self.job.progress = progress
        if self._on_progress is not None:
            self._on_progress(self.job, progress)

    def log(self, message: str) -> None:
        self.logs.append(message)
        LOGGER.info("[%s] %s", self.job.job_id, message)


Processor = Callable[[Job, JobContext], Any]


class Worker:
    """Consume one named queue.

    Exceptions raised by ``processor`` fail the attempt; the job store schedules
    a retry with backoff until attempts run out. Listeners registered with
    :meth:`on` receive ``completed(job, result)``, ``failed(job, error)`` and
    ``progress(job, progress)``.
    """

    def __init__(
        self,
        queue_name: str,
        processor: Processor,
        *,
        concurrency: int = 1,
        limiter: RateLimiter | None = None,
        store: JobStore | None = None,
        poll_interval: float | None = None,
        observability: Observability | None = None,
    ) -> None:
        self.queue_name = queue_name
        self.concurrency = max(1, concurrency)
        self.worker_id = f"{socket.gethostname()}:{queue_name}:{uuid.uuid4().hex[:8]}"
        self._processor = processor
        self._limiter = limiter
        self._store = store or JobStore()
        self._poll_interval = (
            poll_interval if poll_interval is not None else get_settings().queue.poll_interval_seconds
        )
        self._obs = observability or get_observability(component=f"worker.{queue_name}")
        self._listeners: Dict[str, List[WorkerListener]] = defaultdict(list)
        self._slots = threading.Semaphore(self.concurrency)
        self._stop = threading.Event()
        self._executor: ThreadPoolExecutor | None = None
        self._thread: threading.Thread | None = None

    def on(self, event: str, listener: WorkerListener) -> None:
        self._listeners[event].append(listener)

    def _emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(*args)
            except Exception:
                LOGGER.exception("Worker listener for %s failed", event)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def process_job(self, job: Job) -> None:
        """Run ``processor`` for a claimed job and record the outcome."""

        tags = {"queue": self.queue_name}
        started = time.perf_counter()
        context = JobContext(job, self._store, on_progress=lambda j, p: self._emit("progress", j, p))
        try:
            result = self._processor(job, context)
        except Exception as exc:
            reason = str(exc) or exc.__class__.__name__
            state = self._store.fail(job.job_id, reason)
            LOGGER.exception("Job %s on %s failed (now %s)", job.job_id, self.queue_name, state)
            self._obs.job_event(
                "retrying" if state == "delayed" else "failed",
                queue=self.queue_name,
                job_id=job.job_id,
                attempt=job.attempts_made + 1,
                reason=reason,
            )
            if state == "failed":
                self._emit("failed", job, exc)
        else:
            self._store.complete(job.job_id, result)
            self._obs.job_event("completed", queue=self.queue_name, job_id=job.job_id, attempt=job.attempts_made + 1)
            self._emit("completed", job, result)
        finally:
            self._obs.record_timing("worker.job.duration_ms", (time.perf_counter() - started) * 1000, tags=tags)

    def run_once(self) -> bool:
        """Claim and process one job on the calling thread; ``False`` if none was ready."""

        job = self._store.claim(self.queue_name, worker_id=self.worker_id)
        if job is None:
            return False
        self.process_job(job)
        return True

    def _release_after(self, job: Job) -> None:
        try:
            self.process_job(job)
        finally:
            self._slots.release()

    def _loop(self) -> None:
        LOGGER.info(
            "Worker %s started (concurrency=%s, limiter=%s)",
            self.worker_id,
            self.concurrency,
            f"{self._limiter.max_jobs}/{self._limiter.duration}s" if self._limiter else "none",
        )
        while not self._stop.is_set():
            if not self._slots.acquire(timeout=self._poll_interval):
                continue
            if self._limiter is not None and not self._limiter.acquire(self._stop):
                self._slots.release()
                break
            try:
                job = self._store.claim(self.queue_name, worker_id=self.worker_id)
            except Exception:
                LOGGER.exception("Claim failed on %s", self.queue_name)
                job = None
            if job is None:
                self._slots.release()
                self._stop.wait(self._poll_interval)
                continue
            assert self._executor is not None
            self._executor.submit(self._release_after, job)
        LOGGER.info("Worker %s stopped polling", self.worker_id)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix=f"job-{self.queue_name}")
        self._thread = threading.Thread(target=self._loop, name=f"worker-{self.queue_name}", daemon=True)
        self._thread.start()

    def stop(self, *, wait: bool = True, timeout: float | None = 30.0) -> None:
        """Stop claiming jobs; with ``wait`` in-flight jobs are allowed to finish."""

        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def wait(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)


__all__ = ["JobContext", "Processor", "RateLimiter", "Worker"]
