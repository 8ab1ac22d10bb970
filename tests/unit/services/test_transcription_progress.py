"""Unit tests for transcription step tracking."""

from __future__ import annotations

from docflow.services.transcription_progress import TranscriptionProgressTracker, global_progress
from docflow.store.document_store import DocumentStore


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _tracker(session_factory, reports, clock=None):
    documents = DocumentStore(session_factory=session_factory)
    documents.create_transcription_job(job_id="t1", user_id="u1", video_url="https://yt/1", video_title="Sesja")
    tracker = TranscriptionProgressTracker(
        "t1", documents=documents, report=reports.append, clock=clock or FakeClock()
    )
    return documents, tracker


def test_global_progress_interpolates_within_step_range() -> None:
    assert global_progress("download", 0) == 0
    assert global_progress("download", 30) == 5
    assert global_progress("transcription", 50) == 45
    assert global_progress("analysis", 50) == 75
    assert global_progress("saving", 250) == 100


def test_steps_update_row_status_and_reports(session_factory) -> None:
    reports = []
    documents, tracker = _tracker(session_factory, reports)

    tracker.start_step("download")
    assert documents.get_transcription_job("t1")["status"] == "downloading"

    tracker.complete_step("download")
    tracker.start_step("transcription")
    tracker.update_step("transcription", 50, chunk=1)

    row = documents.get_transcription_job("t1")
    assert row["status"] == "transcribing"
    assert row["progress"] == 45
    steps = {step["name"]: step for step in row["detailed_progress"]["steps"]}
    assert steps["download"]["status"] == "completed"
    assert steps["transcription"]["details"] == {"chunk": 1}
    assert row["detailed_progress"]["current_step"] == "transcription"
    assert [report["progress"] for report in reports] == [0, 15, 25, 45]
    assert tracker.current_step == "transcription"


def test_remaining_time_is_extrapolated_from_elapsed(session_factory) -> None:
    clock = FakeClock()
    _, tracker = _tracker(session_factory, [], clock)

    assert tracker.estimate_remaining_seconds(0) is None
    clock.now = 10.0
    assert tracker.estimate_remaining_seconds(50) == 10
    assert tracker.estimate_remaining_seconds(25) == 30


def test_fail_step_marks_row_failed(session_factory) -> None:
    reports = []
    documents, tracker = _tracker(session_factory, reports)
    tracker.start_step("download")

    tracker.fail_step("download", "Video unavailable")

    row = documents.get_transcription_job("t1")
    assert row["status"] == "failed"
    assert row["error"] == "Video unavailable"
    assert row["progress_message"] == "Błąd: Video unavailable"
    assert row["detailed_progress"]["steps"][0]["status"] == "failed"
    assert row["completed_at"] is not None
