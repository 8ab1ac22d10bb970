"""Service registry shared by the API routers and its lifespan hook."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List

from fastapi import Request
from sqlalchemy.orm import sessionmaker

from docflow.queues.analysis import AnalysisQueue
from docflow.queues.base import QueueEvents
from docflow.queues.document_process import DocumentProcessQueue
from docflow.queues.scraping import ScrapingQueueManager
from docflow.queues.transcription import TranscriptionQueue
from docflow.queues.vision import VisionQueue
from docflow.services import factories
from docflow.services.notifications import NotificationHub
from docflow.services.recovery import RecoveryScheduler, TranscriptionRecoveryService
from docflow.services.scoring import DocumentScorer
from docflow.settings import get_settings
from docflow.store.document_store import DocumentStore
from docflow.store.job_queue import JobStore
from docflow.store.task_store import BackgroundTask, BackgroundTaskStore

LOGGER = logging.getLogger(__name__)


def task_to_hub_payload(task: BackgroundTask) -> dict:
    """Shape a background task the way WebSocket clients expect it."""

    return {
        "id": task.task_id,
        "type": task.task_type,
        "status": task.status,
        "title": task.title,
        "description": task.description,
        "progress": task.progress,
        "error": task.error_message,
        "job_id": task.job_id,
        "metadata": dict(task.metadata),
        "created_at": task.created_at,
        "completed_at": task.completed_at,
    }


@dataclass
class ServiceRegistry:
    hub: NotificationHub
    job_store: JobStore
    task_store: BackgroundTaskStore
    documents: DocumentStore
    analysis: AnalysisQueue
    vision: VisionQueue
    document_process: DocumentProcessQueue
    transcription: TranscriptionQueue
    scraping: ScrapingQueueManager
    scorer: DocumentScorer
    recovery: TranscriptionRecoveryService
    events: List[QueueEvents] = field(default_factory=list)
    scheduler: RecoveryScheduler | None = None

    def start_background(self, *, queue_bridge: bool = True, recovery: bool = True) -> None:
        """Start queue event pollers and the recovery schedule."""

        if queue_bridge:
            for facade in (self.analysis, self.vision, self.document_process, self.transcription):
                events = QueueEvents(facade.queue.name, store=self.job_store)
                facade.attach(events)
                events.start()
                self.events.append(events)
        if recovery:
            self.scheduler = RecoveryScheduler(self.recovery)
            self.scheduler.start()

    def close(self) -> None:
        for events in self.events:
            events.close()
        self.events.clear()
        if self.scheduler is not None:
            self.scheduler.stop()
            self.scheduler = None
        self.scraping.shutdown(wait=False)


def build_registry(hub: NotificationHub, *, session_factory: sessionmaker | None = None) -> ServiceRegistry:
    """Wire stores and queue facades; task changes are pushed to ``hub``."""

    def notify(task: BackgroundTask) -> None:
        hub.call_threadsafe(hub.publish_task, task.user_id, task_to_hub_payload(task))

    documents = factories.build_document_store(session_factory)
    transcription = factories.build_transcription_queue(notify, session_factory=session_factory)
    return ServiceRegistry(
        hub=hub,
        job_store=factories.build_job_store(session_factory),
        task_store=factories.build_task_store(session_factory),
        documents=documents,
        analysis=factories.build_analysis_queue(notify, session_factory=session_factory),
        vision=factories.build_vision_queue(session_factory=session_factory),
        document_process=factories.build_document_process_queue(notify, session_factory=session_factory),
        transcription=transcription,
        scraping=factories.build_scraping_queue(notify, session_factory=session_factory),
        scorer=factories.build_document_scorer(session_factory=session_factory),
        recovery=TranscriptionRecoveryService(documents=documents, queue=transcription),
    )


def get_registry(request: Request) -> ServiceRegistry:
    return request.app.state.services


def queue_bridge_enabled() -> bool:
    return get_settings().realtime.enable_queue_bridge


__all__ = ["ServiceRegistry", "build_registry", "get_registry", "queue_bridge_enabled", "task_to_hub_payload"]
