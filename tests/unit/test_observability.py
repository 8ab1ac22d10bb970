"""Unit tests for structured job events and StatsD metrics."""

from __future__ import annotations

import json
import logging

from docflow.observability import Observability, format_statsd_line, get_observability, reset_observability_cache
from docflow.queues.base import JobQueue
from docflow.settings import get_settings
from docflow.store.job_queue import Backoff, JobOptions, JobStore
from docflow.worker.runner import Worker


class RecordingSink:
    def __init__(self) -> None:
        self.counters = []
        self.timings = []

    def increment(self, metric, value, tags):
        self.counters.append((metric, value, dict(tags)))

    def timing(self, metric, value_ms, tags):
        self.timings.append((metric, dict(tags)))


def _observability(sink: RecordingSink, component: str = "test") -> Observability:
    settings = get_settings()
    structured = settings.observability.model_copy(update={"structured_logging": True})
    settings = settings.model_copy(update={"observability": structured})
    return Observability(settings=settings, component=component, metrics=sink)


def test_statsd_line_carries_prefix_and_sorted_tags() -> None:
    line = format_statsd_line("queue.job.added", 1.0, "c", {"queue": "vision-jobs", "env": "dev"}, prefix="docflow")

    assert line == "docflow.queue.job.added:1|c|#env:dev,queue:vision-jobs"
    assert format_statsd_line("worker.job.duration_ms", 12.5, "ms", {}) == "worker.job.duration_ms:12.5|ms"


def test_job_event_logs_json_and_counts(caplog) -> None:
    sink = RecordingSink()
    obs = _observability(sink, component="queue.vision-jobs")

    with caplog.at_level(logging.INFO, logger="docflow.events"):
        obs.job_event("added", queue="vision-jobs", job_id="j1", name="vision-ocr")

    record = json.loads(caplog.records[-1].getMessage())
    assert record["event"] == "queue.job.added"
    assert record["component"] == "queue.vision-jobs"
    assert record["job_id"] == "j1"
    assert record["name"] == "vision-ocr"
    assert sink.counters == [("queue.job.added", 1.0, {"queue": "vision-jobs"})]


def test_queue_reports_added_and_cleared_jobs(session_factory) -> None:
    sink = RecordingSink()
    queue = JobQueue("alpha", store=JobStore(session_factory=session_factory), observability=_observability(sink))

    queue.add("job", {})
    queue.add_bulk([{"name": "job", "data": {}}, {"name": "job", "data": {}}])
    queue.clear()

    assert [(metric, value) for metric, value, _ in sink.counters] == [
        ("queue.job.added", 1.0),
        ("queue.job.added", 2.0),
        ("queue.job.cleared", 3.0),
    ]


def test_worker_reports_each_transition_and_duration(session_factory) -> None:
    store = JobStore(session_factory=session_factory)
    sink = RecordingSink()
    calls = {"n": 0}

    def flaky(job, context):
        calls["n"] += 1
        if job.data.get("broken"):
            raise RuntimeError("bad page")
        return {"ok": True}

    worker = Worker("obs-jobs", flaky, store=store, poll_interval=0.01, observability=_observability(sink))
    store.add("obs-jobs", "job", {})
    store.add("obs-jobs", "job", {"broken": True}, options=JobOptions(attempts=2, backoff=Backoff("fixed", 0)))

    while worker.run_once():
        pass

    assert [metric for metric, _, _ in sink.counters] == [
        "queue.job.completed",
        "queue.job.retrying",
        "queue.job.failed",
    ]
    assert calls["n"] == 3
    assert sink.timings == [("worker.job.duration_ms", {"queue": "obs-jobs"})] * 3


def test_metrics_are_disabled_without_statsd_host() -> None:
    reset_observability_cache()
    obs = get_observability(component="core")

    obs.increment("queue.job.added", tags={"queue": "q"})
    obs.record_timing("worker.job.duration_ms", 5.0)

    assert obs._metrics is None
