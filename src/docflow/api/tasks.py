"""FastAPI router exposing background task status."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from docflow.api.auth import require_admin, require_token
from docflow.api.dependencies import ServiceRegistry, get_registry
from docflow.settings import get_settings

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.get("/active", summary="List the caller's queued and running tasks")
def list_active_tasks(user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    tasks = services.task_store.get_active_tasks(user["user_id"])
    return {"items": [task.to_dict() for task in tasks], "count": len(tasks)}


@router.get("/{task_id}", summary="Fetch one background task")
def get_task(task_id: str, user=Depends(require_token), services: ServiceRegistry = Depends(get_registry)):
    task = services.task_store.get_task(task_id)
    if task is None or task.user_id != user["user_id"]:
        raise HTTPException(status_code=404, detail="Task not found")
    return task.to_dict()


@router.post("/cleanup", summary="Delete finished tasks older than the retention window")
def cleanup_tasks(
    days: int | None = Query(None, ge=1, le=365),
    user=Depends(require_admin),
    services: ServiceRegistry = Depends(get_registry),
):
    retention = days or get_settings().analysis.task_retention_days
    deleted = services.task_store.cleanup_old_tasks(days=retention)
    return {"deleted": deleted, "days": retention}
