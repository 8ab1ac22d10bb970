"""FastAPI router for data-source scraping."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from docflow.api.auth import require_admin, require_token
from docflow.api.dependencies import ServiceRegistry, get_registry
from docflow.queues.scraping import calculate_source_priority

router = APIRouter(prefix="/scraping", tags=["scraping"])


class SourceCreate(BaseModel):
    name: str = Field(..., min_length=1)
    source_type: str = "website"
    url: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ScrapeRequest(BaseModel):
    source_id: str
    priority: Optional[int] = Field(None, ge=0, le=100)
    max_pages: Optional[int] = Field(None, ge=1, le=500)


@router.post("/sources", summary="Register a data source", status_code=201)
def create_source(payload: SourceCreate, user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    source_id = services.documents.create_source(
        user_id=user["user_id"],
        name=payload.name,
        source_type=payload.source_type,
        url=payload.url,
        metadata=payload.metadata,
    )
    return {"source_id": source_id}


@router.get("/sources", summary="List the caller's data sources")
def list_sources(user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    items = services.documents.list_sources(user_id=user["user_id"])
    return {"items": items, "count": len(items)}


@router.post("/jobs", summary="Queue a scrape of a data source", status_code=202)
def enqueue_scrape(payload: ScrapeRequest, user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    source = services.documents.get_source(payload.source_id)
    if not source or source.get("user_id") != user["user_id"]:
        raise HTTPException(status_code=404, detail="Source not found")
    priority = payload.priority if payload.priority is not None else calculate_source_priority(source)
    config: Dict[str, Any] = {"source_name": source.get("name")}
    if payload.max_pages:
        config["max_pages"] = payload.max_pages
    job_id = services.scraping.enqueue(payload.source_id, user["user_id"], priority=priority, config=config)
    return {"job_id": job_id, "priority": priority}


@router.get("/stats", summary="Scraping queue counters")
def scraping_stats(user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    return {**services.scraping.get_stats(), **services.scraping.get_parallel_config()}


@router.post("/history/clear", summary="Forget completed and failed scrapes")
def clear_scraping_history(user=Depends(require_admin), services: ServiceRegistry = Depends(get_registry)):
    services.scraping.clear_history()
    return {"cleared": True}


@router.get("/jobs/{job_id}", summary="Scrape job status")
def scrape_status(job_id: str, user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    job = services.scraping.get_job_status(job_id)
    if job is None or job.user_id != user["user_id"]:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_dict()


@router.post("/jobs/{job_id}/cancel", summary="Cancel a queued scrape")
def cancel_scrape(job_id: str, user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    job = services.scraping.get_job_status(job_id)
    if job is None or job.user_id != user["user_id"]:
        raise HTTPException(status_code=404, detail="Job not found")
    if not services.scraping.cancel_job(job_id):
        raise HTTPException(status_code=409, detail="Only queued jobs can be cancelled")
    return {"job_id": job_id, "cancelled": True}
