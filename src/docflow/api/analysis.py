"""FastAPI router that queues document analyses."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from docflow.api.auth import require_token
from docflow.api.dependencies import ServiceRegistry, get_registry

router = APIRouter(prefix="/analysis", tags=["analysis"])


class AnalysisRequest(BaseModel):
    document_id: str


@router.post("", summary="Queue an analysis of a processed document", status_code=202)
def enqueue_analysis(
    payload: AnalysisRequest,
    user=Depends(require_token),
    services: ServiceRegistry = Depends(get_registry),
):
    document = services.documents.get_document(payload.document_id, user_id=user["user_id"])
    if not document:
        raise HTTPException(status_code=404, detail="Document not found")
    result = services.analysis.add_job(
        user_id=user["user_id"],
        document_id=payload.document_id,
        document_title=document.get("title") or "Bez tytułu",
    )
    return {**result, "status": "queued"}


@router.get("/stats", summary="Analysis queue counters")
def analysis_stats(user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    return services.analysis.get_stats()
