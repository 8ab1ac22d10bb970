"""Worker process entrypoint: one polling worker per configured queue."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import Callable, Dict, List, Sequence

from docflow.queues import analysis as analysis_queue
from docflow.queues import document_process as document_queue
from docflow.queues import transcription as transcription_queue
from docflow.queues import vision as vision_queue
from docflow.services.analysis import DocumentAnalysisService
from docflow.services.factories import build_document_scorer, build_document_store, build_job_store
from docflow.settings import Settings, get_settings
from docflow.store.job_queue import JobStore
from docflow.worker.jobs.analysis import AnalysisJobHandler
from docflow.worker.jobs.document_process import DocumentProcessJobHandler
from docflow.worker.jobs.transcription import TranscriptionJobHandler
from docflow.worker.jobs.vision import VisionJobHandler
from docflow.worker.runner import Processor, RateLimiter, Worker

LOGGER = logging.getLogger("docflow.worker.main")


def _configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.runtime.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")


def _processors() -> Dict[str, Callable[[], Processor]]:
    documents = build_document_store()
    return {
        analysis_queue.QUEUE_NAME: lambda: AnalysisJobHandler(
            analysis=DocumentAnalysisService(documents=documents), scorer=build_document_scorer()
        ),
        vision_queue.QUEUE_NAME: VisionJobHandler,
        document_queue.QUEUE_NAME: lambda: DocumentProcessJobHandler(documents=documents),
        transcription_queue.QUEUE_NAME: lambda: TranscriptionJobHandler(documents=documents),
    }


def build_workers(queues: Sequence[str], *, settings: Settings, store: JobStore) -> List[Worker]:
    """Instantiate workers with the concurrency and rate limits configured per queue."""

    limits = settings.worker
    tuning = {
        analysis_queue.QUEUE_NAME: (
            limits.analysis_concurrency,
            limits.analysis_limit_max,
            limits.analysis_limit_seconds,
        ),
        vision_queue.QUEUE_NAME: (limits.vision_concurrency, limits.vision_limit_max, limits.vision_limit_seconds),
        document_queue.QUEUE_NAME: (
            limits.document_concurrency,
            limits.document_limit_max,
            limits.document_limit_seconds,
        ),
        transcription_queue.QUEUE_NAME: (
            limits.transcription_concurrency,
            limits.transcription_limit_max,
            limits.transcription_limit_seconds,
        ),
    }
    processors = _processors()
    workers = []
    for queue_name in queues:
        if queue_name not in processors:
            raise ValueError(f"Unknown queue '{queue_name}'")
        concurrency, limit_max, limit_seconds = tuning[queue_name]
        worker = Worker(
            queue_name,
            processors[queue_name](),
            concurrency=concurrency,
            limiter=RateLimiter(limit_max, limit_seconds),
            store=store,
        )
        worker.on("failed", lambda job, exc: LOGGER.error("Job %s failed: %s", job.job_id, exc))
        workers.append(worker)
    return workers


def main(argv: Sequence[str] | None = None) -> int:
    """Run workers until SIGTERM or SIGINT."""

    settings = get_settings()
    _configure_logging(settings)
    parser = argparse.ArgumentParser(description="Run docflow queue workers.")
    parser.add_argument(
        "--queue",
        action="append",
        dest="queues",
        help="Queue to consume (repeatable). Defaults to worker.queues from settings.",
    )
    args = parser.parse_args(argv)
    queues = args.queues or list(settings.worker.queues)

    try:
        workers = build_workers(queues, settings=settings, store=build_job_store())
    except ValueError as exc:
        LOGGER.error("%s", exc)
        return 2

    stop = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        LOGGER.info("Received signal %s, shutting down workers", signum)
        stop.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    for worker in workers:
        worker.start()
    LOGGER.info("Workers running for queues: %s", ", ".join(queues))
    while not stop.wait(1.0):
        pass

    for worker in workers:
        worker.stop(wait=True)
    LOGGER.info("All workers stopped")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
