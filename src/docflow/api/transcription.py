"""FastAPI router for video transcription jobs."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from docflow.api.auth import require_token
from docflow.api.dependencies import ServiceRegistry, get_registry

router = APIRouter(prefix="/transcriptions", tags=["transcriptions"])


class TranscriptionRequest(BaseModel):
    video_url: str = Field(..., min_length=1)
    video_title: str = Field(..., min_length=1)
    session_id: Optional[str] = None
    include_sentiment: bool = True
    identify_speakers: bool = True


def _owned_job(services: ServiceRegistry, job_id: str, user_id: str) -> None:
    job = services.transcription.queue.get_job(job_id)
    if job is None or job.user_id != user_id:
        raise HTTPException(status_code=404, detail="Job not found")


@router.post("", summary="Queue a video transcription", status_code=202)
def enqueue_transcription(
    payload: TranscriptionRequest,
    user=Depends(require_token),
    services: ServiceRegistry = Depends(get_registry),
):
    job_id = services.transcription.add_job(
        user_id=user["user_id"],
        video_url=payload.video_url,
        video_title=payload.video_title,
        session_id=payload.session_id,
        include_sentiment=payload.include_sentiment,
        identify_speakers=payload.identify_speakers,
    )
    return {"job_id": job_id, "status": "waiting"}


@router.get("", summary="List the caller's transcription jobs")
def list_transcriptions(user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    items = services.transcription.get_user_jobs(user["user_id"])
    return {"items": items, "count": len(items)}


@router.get("/stats", summary="Transcription queue counters")
def transcription_stats(user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    return services.transcription.get_stats()


@router.get("/{job_id}", summary="Transcription job status")
def transcription_status(job_id: str, user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    _owned_job(services, job_id, user["user_id"])
    return services.transcription.get_job_status(job_id)


@router.post("/{job_id}/cancel", summary="Cancel a transcription that has not started")
def cancel_transcription(job_id: str, user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    _owned_job(services, job_id, user["user_id"])
    if not services.transcription.cancel_job(job_id):
        raise HTTPException(status_code=409, detail="Job already running or finished")
    return {"job_id": job_id, "cancelled": True}


@router.post("/{job_id}/retry", summary="Retry a failed transcription")
def retry_transcription(job_id: str, user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    _owned_job(services, job_id, user["user_id"])
    if not services.transcription.retry_job(job_id):
        raise HTTPException(status_code=409, detail="Only failed jobs can be retried")
    return {"job_id": job_id, "status": "waiting"}
