"""Step-by-step progress reporting for transcription jobs.

Each step owns a slice of the global 0..100 range (see
:data:`docflow.queues.transcription.TRANSCRIPTION_STEPS`). Step-local progress
is interpolated into that slice and written both to the ``transcription_jobs``
row and to the queue job's progress, which the API relays to clients.
"""

from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from docflow.queues.transcription import TRANSCRIPTION_STEPS, initial_detailed_progress
from docflow.store.document_store import DocumentStore

LOGGER = logging.getLogger(__name__)

ProgressReporter = Callable[[Dict[str, Any]], None]

STEP_ROW_STATUS = {
    "download": "downloading",
    "preprocessing": "preprocessing",
    "transcription": "transcribing",
    "analysis": "analyzing",
    "saving": "saving",
}

_STEP_RANGES = {name: bounds for name, _, bounds in TRANSCRIPTION_STEPS}
_STEP_LABELS = {name: label for name, label, _ in TRANSCRIPTION_STEPS}


def global_progress(step: str, step_progress: float) -> int:
    """Map ``step_progress`` (0..100 within ``step``) onto the global scale."""

    start, end = _STEP_RANGES[step]
    fraction = max(0.0, min(100.0, step_progress)) / 100.0
    return math.floor(start + (end - start) * fraction + 0.5)


class TranscriptionProgressTracker:
    """Track one transcription job through its steps."""

    def __init__(
        self,
        job_id: str,
        *,
        documents: DocumentStore,
        report: ProgressReporter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.job_id = job_id
        self._documents = documents
        self._report = report
        self._clock = clock
        self._started = clock()
        self.state = initial_detailed_progress()
        self.current_step: Optional[str] = None

    def _step(self, name: str) -> Dict[str, Any]:
        for step in self.state["steps"]:
            if step["name"] == name:
                return step
        raise KeyError(f"Unknown transcription step {name!r}")

    def estimate_remaining_seconds(self, progress: int) -> Optional[int]:
        if progress <= 0:
            return None
        elapsed = self._clock() - self._started
        return int(elapsed * (100 - progress) / progress)

    def _publish(self, *, progress: int, message: str, status: str | None) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self.state["global_progress"] = progress
        self.state["global_message"] = message
        self.state["last_update"] = now
        self.state["estimated_time_remaining"] = self.estimate_remaining_seconds(progress)
        self._documents.update_transcription_job(
            self.job_id,
            status=status,
            progress=progress,
            progress_message=message,
            detailed_progress=self.state,
        )
        if self._report is not None:
            self._report({"progress": progress, "message": message, "detailed_progress": self.state})

    def start_step(self, name: str, message: str | None = None) -> None:
        step = self._step(name)
        step["status"] = "active"
        step["progress"] = 0
        step["started_at"] = datetime.now(timezone.utc).isoformat()
        self.current_step = name
        self.state["current_step"] = name
        LOGGER.info("Transcription %s: step %s started", self.job_id, name)
        self._publish(
            progress=global_progress(name, 0),
            message=message or f"{_STEP_LABELS[name]}...",
            status=STEP_ROW_STATUS[name],
        )

    def update_step(self, name: str, step_progress: float, message: str | None = None, **details: Any) -> None:
        step = self._step(name)
        step["progress"] = int(max(0.0, min(100.0, step_progress)))
        if details:
            step.setdefault("details", {}).update(details)
        self._publish(
            progress=global_progress(name, step_progress),
            message=message or f"{_STEP_LABELS[name]} ({step['progress']}%)",
            status=None,
        )

    def complete_step(self, name: str, message: str | None = None) -> None:
        step = self._step(name)
        step["status"] = "completed"
        step["progress"] = 100
        step["completed_at"] = datetime.now(timezone.utc).isoformat()
        self._publish(
            progress=global_progress(name, 100),
            message=message or f"{_STEP_LABELS[name]} zakończone",
            status=None,
        )

    def fail_step(self, name: str, error: str) -> None:
        """Mark ``name`` failed and record the error on the transcription row."""

        step = self._step(name)
        step["status"] = "failed"
        step["error"] = error
        self.state["global_message"] = f"Błąd: {error}"
        self.state["last_update"] = datetime.now(timezone.utc).isoformat()
        LOGGER.warning("Transcription %s: step %s failed: %s", self.job_id, name, error)
        self._documents.update_transcription_job(
            self.job_id,
            status="failed",
            progress_message=f"Błąd: {error}",
            detailed_progress=self.state,
            error=error,
        )


__all__ = ["STEP_ROW_STATUS", "TranscriptionProgressTracker", "global_progress"]
