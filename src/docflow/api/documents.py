"""FastAPI router for document uploads (OCR jobs) and scored document listings."""

from __future__ import annotations

import base64
import json
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile

from docflow.api.auth import require_token
from docflow.api.dependencies import ServiceRegistry, get_registry

router = APIRouter(prefix="/documents", tags=["documents"])

MAX_UPLOAD_BYTES = 50 * 1024 * 1024


@router.post("/jobs", summary="Upload a document for text extraction", status_code=202)
async def upload_document(
    file: UploadFile = File(..., description="Document to process"),
    options: Optional[str] = Form(None, description="JSON processing options"),
    user=Depends(require_token),
    services: ServiceRegistry = Depends(get_registry),
):
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="File too large")
    try:
        parsed_options = json.loads(options) if options else {}
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="options must be valid JSON") from exc
    if not isinstance(parsed_options, dict):
        raise HTTPException(status_code=400, detail="options must be a JSON object")

    result = services.document_process.add_job(
        user_id=user["user_id"],
        file_name=file.filename or "upload",
        file_base64=base64.b64encode(data).decode("ascii"),
        mime_type=file.content_type or "application/octet-stream",
        file_size=len(data),
        options=parsed_options,
    )
    return {**result, "status": "pending"}


@router.get("/jobs", summary="List the caller's document jobs")
def list_document_jobs(
    limit: int = Query(20, ge=1, le=200),
    user=Depends(require_token),
    services: ServiceRegistry = Depends(get_registry),
):
    items = services.document_process.get_user_jobs(user["user_id"], limit=limit)
    return {"items": items, "count": len(items)}


@router.get("/jobs/{job_id}", summary="Fetch one document job")
def get_document_job(job_id: str, user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    record = services.document_process.get_job(job_id, user["user_id"])
    if not record:
        raise HTTPException(status_code=404, detail="Job not found")
    return record


@router.delete("/jobs/{job_id}", summary="Delete a document job")
def delete_document_job(job_id: str, user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    if not services.document_process.delete_job(job_id, user["user_id"]):
        raise HTTPException(status_code=404, detail="Job not found")
    return {"job_id": job_id, "deleted": True}


@router.post("/jobs/{job_id}/retry", summary="Retry a failed document job")
def retry_document_job(job_id: str, user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    record = services.document_process.get_job(job_id, user["user_id"])
    if not record:
        raise HTTPException(status_code=404, detail="Job not found")
    if not services.document_process.retry_job(job_id, user["user_id"]):
        raise HTTPException(status_code=409, detail="Only failed jobs can be retried")
    return {"job_id": job_id, "status": "pending"}


@router.get("/scored", summary="List processed documents ordered by importance")
def list_scored_documents(
    search: Optional[str] = None,
    document_type: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    priority: Optional[str] = Query(None, pattern="^(critical|high|medium|low)$"),
    sort_by: str = Query("score", pattern="^(score|date|title)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user=Depends(require_token),
    services: ServiceRegistry = Depends(get_registry),
):
    return services.scorer.get_documents_with_scores(
        user["user_id"],
        search=search,
        document_type=document_type,
        date_from=date_from,
        date_to=date_to,
        priority=priority,
        sort_by=sort_by,
        sort_order=sort_order,
        limit=limit,
        offset=offset,
    )


@router.get("/{document_id}", summary="Fetch one processed document")
def get_document(document_id: str, user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    document = services.documents.get_document(document_id, user_id=user["user_id"])
    if not document:
        raise HTTPException(status_code=404, detail="Document not found")
    return document
