"""Unit tests for the vision queue facade."""

from __future__ import annotations

import pytest

from docflow.queues.base import QueueEvents
from docflow.queues.vision import DEFAULT_PRIORITY, QUEUE_NAME, VisionQueue
from docflow.store.job_queue import JobStore


def _add(queue: VisionQueue) -> str:
    return queue.add_job(user_id="u1", image_base64="aW1n", prompt="Odczytaj tekst", provider="mock", model="llava")


def test_batch_gives_earlier_pages_sooner_priority(session_factory) -> None:
    store = JobStore(session_factory=session_factory)
    queue = VisionQueue(store=store)
    job_ids = queue.add_batch(
        user_id="u1",
        pages=[{"image_base64": "cDE=", "page_number": 1}, {"image_base64": "cDI=", "page_number": 2}],
        prompt="Odczytaj tekst",
        provider="mock",
        model="llava",
        file_name="uchwala.pdf",
    )

    priorities = [store.get_job(job_id).priority for job_id in job_ids]
    assert priorities == [DEFAULT_PRIORITY, DEFAULT_PRIORITY + 1]
    assert store.get_job(job_ids[1]).data["page_number"] == 2


def test_result_cache_outlives_removed_job(session_factory) -> None:
    store = JobStore(session_factory=session_factory)
    queue = VisionQueue(store=store)
    events = QueueEvents(QUEUE_NAME, store=store, from_latest=False, poll_interval=0.01)
    queue.attach(events)
    job_id = _add(queue)

    store.claim(QUEUE_NAME, worker_id="w")
    store.complete(job_id, {"success": True, "text": "Uchwała nr 1"})
    events.poll_once()
    store.remove(job_id)

    status = queue.get_job_status(job_id)
    assert status["status"] == "completed"
    assert queue.wait_for_result(job_id)["text"] == "Uchwała nr 1"
    assert queue.owner_of(job_id) == "u1"
    assert queue.owner_of("nope") is None


def test_delayed_retry_is_reported_as_waiting(session_factory) -> None:
    store = JobStore(session_factory=session_factory)
    queue = VisionQueue(store=store)
    job_id = _add(queue)

    store.claim(QUEUE_NAME, worker_id="w")
    store.fail(job_id, "timeout")

    assert store.get_state(job_id) == "delayed"
    assert queue.get_job_status(job_id)["status"] == "waiting"


def test_wait_for_unknown_job_raises(session_factory) -> None:
    queue = VisionQueue(store=JobStore(session_factory=session_factory))

    with pytest.raises(KeyError):
        queue.wait_for_result("nope", timeout_seconds=0.1)
    assert queue.get_job_status("nope") == {"id": "nope", "status": "waiting"}


def test_wait_times_out_with_failed_result(session_factory) -> None:
    queue = VisionQueue(store=JobStore(session_factory=session_factory))
    job_id = _add(queue)

    result = queue.wait_for_result(job_id, timeout_seconds=0.01)
    assert result["success"] is False
    assert result["error"].startswith("Timeout after")
