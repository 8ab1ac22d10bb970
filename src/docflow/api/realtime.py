"""WebSocket and Server-Sent Events endpoints backed by the notification hub."""

from __future__ import annotations

import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse

from docflow.api.auth import require_token
from docflow.services.notifications import SSE_HEARTBEAT, NotificationHub, SSEConnection, format_sse
from docflow.settings import get_settings

LOGGER = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

ANONYMOUS_USER = "anonymous"


def _hub_for(app) -> NotificationHub:
    return app.state.services.hub


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, userId: Optional[str] = Query(None)):
    user_id = userId or websocket.headers.get("x-user-id") or ANONYMOUS_USER
    hub = _hub_for(websocket.app)
    await websocket.accept()
    await hub.register_connection(user_id, websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            await hub.handle_client_message(websocket, raw)
    except WebSocketDisconnect:
        pass
    finally:
        hub.unregister_connection(user_id, websocket)


@router.get("/ws/stats", summary="Connected clients and active tasks")
def websocket_stats(request: Request):
    return _hub_for(request.app).get_stats()


async def _event_stream(
    request: Request, hub: NotificationHub, user_id: str, heartbeat: float
) -> AsyncIterator[str]:
    connection = SSEConnection()
    await hub.register_connection(user_id, connection)
    try:
        while not await request.is_disconnected():
            message = await connection.next_message(timeout=heartbeat)
            yield format_sse(message) if message is not None else SSE_HEARTBEAT
    finally:
        hub.unregister_connection(user_id, connection)
        LOGGER.debug("SSE stream closed for %s", user_id)


@router.get("/sse/events", summary="Stream task notifications as Server-Sent Events")
async def sse_events(request: Request, user=Depends(require_token)):
    hub = _hub_for(request.app)
    heartbeat = get_settings().realtime.sse_heartbeat_seconds
    return StreamingResponse(
        _event_stream(request, hub, user["user_id"], heartbeat),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/sse/stats", summary="Connected clients and active tasks")
def sse_stats(request: Request, user=Depends(require_token)):
    stats = _hub_for(request.app).get_stats()
    return {**stats, "active_tasks_for_user": len(_hub_for(request.app).get_active_tasks_for_user(user["user_id"]))}
