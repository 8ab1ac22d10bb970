"""Operator view over every queue and the notification hub."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from docflow.api.auth import require_admin
from docflow.api.dependencies import ServiceRegistry, get_registry

router = APIRouter(prefix="/diagnostics", tags=["diagnostics"])


@router.get("/queues", summary="Counters for all queues")
def queue_diagnostics(user=Depends(require_admin), services: ServiceRegistry = Depends(get_registry)):
    return {
        "analysis": services.analysis.get_stats(),
        "vision": services.vision.get_stats(),
        "document_process": services.document_process.get_stats(),
        "transcription": services.transcription.get_stats(),
        "scraping": services.scraping.get_stats(),
        "hub": services.hub.get_stats(),
    }


@router.post("/recovery", summary="Run one transcription recovery sweep now")
def run_recovery(user=Depends(require_admin), services: ServiceRegistry = Depends(get_registry)):
    return services.recovery.run_recovery_cycle().to_dict()
