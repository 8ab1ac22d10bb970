"""Unit tests for the queue facade base and the event poller."""

from __future__ import annotations

from datetime import datetime, timezone

import sqlalchemy as sa

from docflow.queues.base import JobQueue, QueueEvents, progress_fields
from docflow.store import sql as sql_schema
from docflow.store.job_queue import JobOptions, JobStore


def test_progress_fields_accepts_numbers_and_mappings() -> None:
    assert progress_fields(40) == (40.0, None)
    assert progress_fields({"progress": 60, "description": "Generowanie"}) == (60.0, "Generowanie")
    assert progress_fields({"progress": 10, "message": "Pobieranie"}) == (10.0, "Pobieranie")
    assert progress_fields(None) == (0.0, None)


def test_job_queue_hides_jobs_from_other_queues(session_factory) -> None:
    store = JobStore(session_factory=session_factory)
    alpha = JobQueue("alpha", store=store, default_options=JobOptions(priority=3))
    beta = JobQueue("beta", store=store)
    job_id = alpha.add("job", {"x": 1})

    assert alpha.get_job(job_id).priority == 3
    assert beta.get_job(job_id) is None
    assert beta.remove(job_id) is False
    assert alpha.get_stats() == {"waiting": 1, "active": 0, "completed": 0, "failed": 0}


def test_add_bulk_applies_per_entry_priority(session_factory) -> None:
    store = JobStore(session_factory=session_factory)
    queue = JobQueue("bulk", store=store)
    ids = queue.add_bulk(
        [
            {"name": "job", "data": {"n": 1}, "priority": 9},
            {"name": "job", "data": {"n": 2}, "priority": 2},
        ]
    )

    assert store.claim("bulk", worker_id="w").job_id == ids[1]


def test_queue_events_dispatch_and_isolate_listener_errors(session_factory) -> None:
    store = JobStore(session_factory=session_factory)
    queue = JobQueue("events", store=store)
    events = QueueEvents("events", store=store, poll_interval=0.01)
    seen = []

    def broken(event):
        raise RuntimeError("listener bug")

    events.on("completed", broken)
    events.on("completed", lambda event: seen.append((event.job_id, event.payload["return_value"])))

    job_id = queue.add("job", {})
    store.claim("events", worker_id="w")
    store.complete(job_id, {"ok": True})

    assert events.poll_once() == 3
    assert seen == [(job_id, {"ok": True})]
    assert events.poll_once() == 0


def test_queue_events_can_start_from_latest(session_factory) -> None:
    store = JobStore(session_factory=session_factory)
    JobQueue("late", store=store).add("job", {})

    from_start = QueueEvents("late", store=store, from_latest=False, poll_interval=0.01)
    from_latest = QueueEvents("late", store=store, poll_interval=0.01)

    assert from_start.cursor == 0
    assert from_latest.cursor == store.latest_event_id("late")
    assert from_latest.poll_once() == 0


def test_queue_events_deliver_late_committed_event_once(session_factory) -> None:
    store = JobStore(session_factory=session_factory)
    queue = JobQueue("late-commit", store=store)
    events = QueueEvents("late-commit", store=store, poll_interval=0.01, settle_seconds=60)
    seen = []
    events.on("completed", lambda event: seen.append(event.job_id))

    queue.add("job", {})
    JobQueue("other", store=store).add("job", {})
    queue.add("job", {})
    assert events.poll_once() == 2
    gap_id = store.latest_event_id("other")
    assert gap_id < events.cursor

    # an earlier id becoming visible after the cursor moved past it
    with session_factory() as session:
        session.execute(sa.delete(sql_schema.queue_events).where(sql_schema.queue_events.c.event_id == gap_id))
        session.execute(
            sa.insert(sql_schema.queue_events).values(
                event_id=gap_id,
                queue="late-commit",
                job_id="slow",
                event="completed",
                payload={},
                created_at=datetime.now(timezone.utc),
            )
        )
        session.commit()

    assert events.poll_once() == 1
    assert seen == ["slow"]
    assert events.poll_once() == 0


def test_queue_events_keep_receiving_after_queue_is_cleared(session_factory) -> None:
    store = JobStore(session_factory=session_factory)
    queue = JobQueue("cleared", store=store)
    events = QueueEvents("cleared", store=store, poll_interval=0.01)
    completed = []
    events.on("completed", lambda event: completed.append(event.job_id))

    for _ in range(5):
        queue.add("job", {})
    assert events.poll_once() == 5

    queue.clear()
    job_id = queue.add("job", {}, job_id="new")
    store.claim("cleared", worker_id="w")
    store.complete(job_id, None)

    events.poll_once()
    assert completed == ["new"]
