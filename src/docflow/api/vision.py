"""FastAPI router for vision/OCR jobs."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from docflow.api.auth import require_token
from docflow.api.dependencies import ServiceRegistry, get_registry
from docflow.queues.vision import DEFAULT_PRIORITY
from docflow.settings import get_settings

router = APIRouter(prefix="/vision", tags=["vision"])


class VisionJobRequest(BaseModel):
    image_base64: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)
    provider: Optional[str] = None
    model: Optional[str] = None
    page_number: Optional[int] = None
    file_name: Optional[str] = None
    priority: int = Field(DEFAULT_PRIORITY, ge=1, le=100)


class VisionPage(BaseModel):
    image_base64: str = Field(..., min_length=1)
    page_number: Optional[int] = None


class VisionBatchRequest(BaseModel):
    pages: List[VisionPage] = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)
    provider: Optional[str] = None
    model: Optional[str] = None
    file_name: Optional[str] = None


def _owned_job(services: ServiceRegistry, job_id: str, user_id: str) -> None:
    if services.vision.owner_of(job_id) != user_id:
        raise HTTPException(status_code=404, detail="Job not found")


def _provider_and_model(provider: Optional[str], model: Optional[str]) -> tuple[str, str]:
    llm = get_settings().llm
    return provider or llm.provider, model or llm.vision_model


@router.post("", summary="Queue one image for vision OCR", status_code=202)
def enqueue_vision_job(
    payload: VisionJobRequest,
    user=Depends(require_token),
    services: ServiceRegistry = Depends(get_registry),
):
    provider, model = _provider_and_model(payload.provider, payload.model)
    job_id = services.vision.add_job(
        user_id=user["user_id"],
        image_base64=payload.image_base64,
        prompt=payload.prompt,
        provider=provider,
        model=model,
        page_number=payload.page_number,
        file_name=payload.file_name,
        priority=payload.priority,
    )
    return {"job_id": job_id, "status": "waiting"}


@router.post("/batch", summary="Queue several pages for vision OCR", status_code=202)
def enqueue_vision_batch(
    payload: VisionBatchRequest,
    user=Depends(require_token),
    services: ServiceRegistry = Depends(get_registry),
):
    provider, model = _provider_and_model(payload.provider, payload.model)
    job_ids = services.vision.add_batch(
        user_id=user["user_id"],
        pages=[page.model_dump() for page in payload.pages],
        prompt=payload.prompt,
        provider=provider,
        model=model,
        file_name=payload.file_name,
    )
    return {"job_ids": job_ids, "count": len(job_ids)}


@router.get("/stats", summary="Vision queue counters")
def vision_stats(user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    return services.vision.get_stats()


@router.get("/{job_id}", summary="Vision job status")
def vision_job_status(job_id: str, user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    _owned_job(services, job_id, user["user_id"])
    return services.vision.get_job_status(job_id)


@router.get("/{job_id}/wait", summary="Block until a vision job finishes")
def wait_for_vision_job(
    job_id: str,
    timeout: float = Query(60.0, gt=0, le=300),
    user=Depends(require_token),
    services: ServiceRegistry = Depends(get_registry),
):
    _owned_job(services, job_id, user["user_id"])
    try:
        return services.vision.wait_for_result(job_id, timeout_seconds=timeout)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
