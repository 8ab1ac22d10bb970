"""Unit tests for the polling worker and its rate limiter."""

from __future__ import annotations

import threading

import pytest

from docflow.store.job_queue import Backoff, JobOptions, JobStore
from docflow.worker.runner import RateLimiter, Worker

QUEUE = "test-jobs"


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_rate_limiter_uses_sliding_window() -> None:
    clock = FakeClock()
    limiter = RateLimiter(2, 60.0, clock=clock)

    assert limiter.try_acquire() == 0
    clock.now += 10
    assert limiter.try_acquire() == 0
    clock.now += 10
    assert limiter.try_acquire() == pytest.approx(40.0)

    clock.now += 40
    assert limiter.try_acquire() == 0


def test_rate_limiter_acquire_returns_false_once_stopped() -> None:
    limiter = RateLimiter(1, 60.0, clock=FakeClock())
    stop = threading.Event()
    assert limiter.acquire(stop)
    stop.set()
    assert not limiter.acquire(stop)


@pytest.fixture
def store(session_factory) -> JobStore:
    return JobStore(session_factory=session_factory)


def test_completed_job_stores_result_and_notifies(store: JobStore) -> None:
    seen = []

    def processor(job, ctx):
        ctx.update_progress(50)
        return {"echo": job.data["value"]}

    worker = Worker(QUEUE, processor, store=store, poll_interval=0.01)
    worker.on("progress", lambda job, progress: seen.append(("progress", progress)))
    worker.on("completed", lambda job, result: seen.append(("completed", result)))
    job_id = store.add(QUEUE, "echo", {"value": 7})

    assert worker.run_once()
    assert not worker.run_once()

    job = store.get_job(job_id)
    assert job.state == "completed"
    assert job.return_value == {"echo": 7}
    assert seen == [("progress", 50), ("completed", {"echo": 7})]


def test_failed_attempts_retry_before_failed_event(store: JobStore) -> None:
    failures = []

    def processor(job, ctx):
        raise RuntimeError("boom")

    worker = Worker(QUEUE, processor, store=store, poll_interval=0.01)
    worker.on("failed", lambda job, exc: failures.append(str(exc)))
    job_id = store.add(QUEUE, "explode", {}, options=JobOptions(attempts=2, backoff=Backoff("fixed", 0)))

    assert worker.run_once()
    assert store.get_state(job_id) in ("delayed", "waiting")
    assert failures == []

    assert worker.run_once()
    assert store.get_state(job_id) == "failed"
    assert store.get_job(job_id).failed_reason == "boom"
    assert failures == ["boom"]


def test_listener_errors_do_not_break_processing(store: JobStore) -> None:
    worker = Worker(QUEUE, lambda job, ctx: "ok", store=store, poll_interval=0.01)

    def broken(job, result):
        raise ValueError("listener")

    worker.on("completed", broken)
    job_id = store.add(QUEUE, "noop", {})

    assert worker.run_once()
    assert store.get_state(job_id) == "completed"


def test_started_worker_drains_queue(store: JobStore) -> None:
    done = threading.Event()
    processed = []

    def processor(job, ctx):
        processed.append(job.job_id)
        if len(processed) == 3:
            done.set()
        return None

    worker = Worker(QUEUE, processor, concurrency=2, store=store, poll_interval=0.01)
    for index in range(3):
        store.add(QUEUE, "noop", {"index": index})
    worker.start()
    try:
        assert done.wait(timeout=5)
    finally:
        worker.stop()

    assert not worker.running
    assert store.counts(QUEUE)["completed"] == 3
