"""Recovery of transcription records left behind by restarts and crashes."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Sequence

from docflow.queues import analysis, document_process, transcription, vision
from docflow.queues.transcription import TranscriptionQueue
from docflow.settings import get_settings
from docflow.store.document_store import TRANSCRIPTION_ACTIVE_STATUSES, DocumentStore
from docflow.store.job_queue import JobStore

LOGGER = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Process interrupted (API restart)"
RUNNING_STATUSES = tuple(status for status in TRANSCRIPTION_ACTIVE_STATUSES if status != "pending")
SQL_QUEUES = (analysis.QUEUE_NAME, vision.QUEUE_NAME, document_process.QUEUE_NAME, transcription.QUEUE_NAME)


@dataclass(slots=True)
class RecoveryReport:
    recovered: int = 0
    failed: int = 0
    timed_out: int = 0
    cleaned: int = 0
    pruned_jobs: int = 0
    pruned_events: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "recovered": self.recovered,
            "failed": self.failed,
            "timed_out": self.timed_out,
            "cleaned": self.cleaned,
            "pruned_jobs": self.pruned_jobs,
            "pruned_events": self.pruned_events,
        }


class TranscriptionRecoveryService:
    """Reconcile ``transcription_jobs`` rows with the transcription queue.

    Each full cycle also applies job retention to the SQL queues and trims the
    ``queue_events`` log.
    """

    def __init__(
        self,
        *,
        documents: DocumentStore | None = None,
        queue: TranscriptionQueue | None = None,
        stuck_after_minutes: int | None = None,
        timeout_hours: int | None = None,
        retention_days: int | None = None,
        job_store: JobStore | None = None,
        queue_names: Sequence[str] = SQL_QUEUES,
        events_retention_hours: int | None = None,
    ) -> None:
        settings = get_settings()
        self._documents = documents or DocumentStore()
        self._queue = queue or TranscriptionQueue(documents=self._documents)
        self._job_store = job_store or self._queue.queue.store
        self._queue_names = tuple(queue_names)
        self.events_retention_hours = events_retention_hours or settings.queue.events_retention_hours
        self.stuck_after = timedelta(minutes=stuck_after_minutes or settings.recovery.stuck_after_minutes)
        self.timeout_hours = timeout_hours or settings.recovery.timeout_hours
        self.retention_days = retention_days or settings.recovery.retention_days

    def recover_stuck_jobs(self, *, now: datetime | None = None) -> RecoveryReport:
        """Fail rows whose queue job vanished or failed; count the rest as recovered."""

        now = now or datetime.now(timezone.utc)
        report = RecoveryReport()
        stuck = self._documents.list_transcription_jobs(
            statuses=TRANSCRIPTION_ACTIVE_STATUSES, created_before=now - self.stuck_after
        )
        if not stuck:
            LOGGER.info("No stuck transcription jobs found")
            return report
        LOGGER.info("Found %s potentially stuck transcription jobs", len(stuck))

        for row in stuck:
            job_id = row["job_id"]
            status = self._queue.get_job_status(job_id)
            if status is None:
                LOGGER.info("Job %s not in queue, marking failed", job_id)
                self._documents.update_transcription_job(job_id, status="failed", error=INTERRUPTED_ERROR)
                report.failed += 1
            elif status["status"] == "failed":
                LOGGER.info("Job %s failed in queue, updating record", job_id)
                self._documents.update_transcription_job(
                    job_id, status="failed", error=status.get("error") or "Unknown error"
                )
                report.failed += 1
            else:
                report.recovered += 1

        LOGGER.info("Recovery complete: %s recovered, %s marked failed", report.recovered, report.failed)
        return report

    def mark_timeout_jobs(self, *, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        rows = self._documents.list_transcription_jobs(
            statuses=RUNNING_STATUSES, created_before=now - timedelta(hours=self.timeout_hours)
        )
        for row in rows:
            self._documents.update_transcription_job(
                row["job_id"], status="failed", error=f"Timeout after {self.timeout_hours} hours"
            )
        if rows:
            LOGGER.warning("Marked %s transcription jobs as timed out", len(rows))
        return len(rows)

    def cleanup_old_jobs(self, *, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        removed = self._documents.delete_finished_transcriptions(
            completed_before=now - timedelta(days=self.retention_days)
        )
        if removed:
            LOGGER.info("Cleaned up %s old transcription jobs", removed)
        return removed

    def prune_queues(self, *, now: datetime | None = None) -> tuple[int, int]:
        """Apply finished-job retention and drop old queue events; returns (jobs, events)."""

        jobs = sum(self._job_store.prune(name) for name in self._queue_names)
        events = self._job_store.prune_events(older_than_hours=self.events_retention_hours, now=now)
        if jobs or events:
            LOGGER.info("Pruned %s finished queue jobs and %s queue events", jobs, events)
        return jobs, events

    def run_recovery_cycle(self, *, now: datetime | None = None) -> RecoveryReport:
        report = self.recover_stuck_jobs(now=now)
        report.timed_out = self.mark_timeout_jobs(now=now)
        report.cleaned = self.cleanup_old_jobs(now=now)
        report.pruned_jobs, report.pruned_events = self.prune_queues(now=now)
        LOGGER.info(
            "Recovery cycle complete: %s recovered, %s failed, %s cleaned",
            report.recovered,
            report.failed + report.timed_out,
            report.cleaned,
        )
        return report


class RecoveryScheduler:
    """Run an initial stuck-job sweep, then a full cycle every ``interval_seconds``."""

    def __init__(self, service: TranscriptionRecoveryService, *, interval_seconds: float | None = None) -> None:
        self._service = service
        self._interval = interval_seconds or get_settings().recovery.interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="transcription-recovery", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        try:
            self._service.recover_stuck_jobs()
        except Exception:
            LOGGER.exception("Initial transcription recovery failed")
        while not self._stop.wait(self._interval):
            try:
                self._service.run_recovery_cycle()
            except Exception:
                LOGGER.exception("Transcription recovery cycle failed")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None


__all__ = ["INTERRUPTED_ERROR", "RecoveryReport", "RecoveryScheduler", "TranscriptionRecoveryService"]
