"""Factory helpers that instantiate stores and queue facades from configuration.

Every store built here shares one SQLAlchemy session factory so the API, the
queue event pollers and the workers of a process use a single connection pool.
"""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy.orm import sessionmaker

from docflow.queues.analysis import AnalysisQueue
from docflow.queues.base import TaskNotifier
from docflow.queues.document_process import DocumentProcessQueue
from docflow.queues.scraping import ScrapingQueueManager, attach_task_tracking
from docflow.queues.transcription import TranscriptionQueue
from docflow.queues.vision import VisionQueue
from docflow.services.scoring import DocumentScorer
from docflow.services.scraper import SourceScraper
from docflow.settings import get_settings
from docflow.store.document_store import DocumentStore
from docflow.store.job_queue import JobStore
from docflow.store.sql import session_factory as build_sql_session_factory
from docflow.store.task_store import BackgroundTaskStore


@lru_cache(maxsize=1)
def shared_session_factory() -> sessionmaker:
    """Return the process-wide session factory for the configured database."""

    return build_sql_session_factory()


def reset_factories() -> None:
    """Forget the cached session factory (used in tests after settings reloads)."""

    shared_session_factory.cache_clear()


def build_job_store(session_factory: sessionmaker | None = None) -> JobStore:
    return JobStore(session_factory=session_factory or shared_session_factory())


def build_task_store(session_factory: sessionmaker | None = None) -> BackgroundTaskStore:
    return BackgroundTaskStore(session_factory=session_factory or shared_session_factory())


def build_document_store(session_factory: sessionmaker | None = None) -> DocumentStore:
    return DocumentStore(session_factory=session_factory or shared_session_factory())


def build_analysis_queue(
    notifier: TaskNotifier | None = None, *, session_factory: sessionmaker | None = None
) -> AnalysisQueue:
    return AnalysisQueue(
        store=build_job_store(session_factory),
        task_store=build_task_store(session_factory),
        notifier=notifier,
    )


def build_vision_queue(*, session_factory: sessionmaker | None = None) -> VisionQueue:
    return VisionQueue(store=build_job_store(session_factory))


def build_document_process_queue(
    notifier: TaskNotifier | None = None, *, session_factory: sessionmaker | None = None
) -> DocumentProcessQueue:
    return DocumentProcessQueue(
        store=build_job_store(session_factory),
        documents=build_document_store(session_factory),
        task_store=build_task_store(session_factory),
        notifier=notifier,
    )


def build_transcription_queue(
    notifier: TaskNotifier | None = None, *, session_factory: sessionmaker | None = None
) -> TranscriptionQueue:
    return TranscriptionQueue(
        store=build_job_store(session_factory),
        documents=build_document_store(session_factory),
        task_store=build_task_store(session_factory),
        notifier=notifier,
    )


def build_scraping_queue(
    notifier: TaskNotifier | None = None, *, session_factory: sessionmaker | None = None
) -> ScrapingQueueManager:
    scraper = SourceScraper(documents=build_document_store(session_factory))
    manager = ScrapingQueueManager(scraper.scrape)
    attach_task_tracking(manager, build_task_store(session_factory), notifier)
    return manager


def build_document_scorer(*, session_factory: sessionmaker | None = None) -> DocumentScorer:
    return DocumentScorer(
        get_settings().analysis.council_location, documents=build_document_store(session_factory)
    )


__all__ = [
    "build_analysis_queue",
    "build_document_process_queue",
    "build_document_scorer",
    "build_document_store",
    "build_job_store",
    "build_scraping_queue",
    "build_task_store",
    "build_transcription_queue",
    "build_vision_queue",
    "reset_factories",
    "shared_session_factory",
]
