"""Real-time notification hub for WebSocket and SSE clients.

The hub lives on the API event loop. Worker threads and queue event pollers hand
work to it through :meth:`NotificationHub.call_threadsafe`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Set

from docflow.settings import get_settings

LOGGER = logging.getLogger(__name__)

ACTIVE_TASK_STATUSES = ("queued", "running")
FINISHED_TASK_STATUSES = ("completed", "failed")

HubListener = Callable[[Dict[str, Any]], None]


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_message(message_type: str, payload: Any) -> Dict[str, Any]:
    return {"type": message_type, "payload": payload, "timestamp": _now_iso()}


class NotificationHub:
    """Per-user connection registry plus an in-memory view of task progress."""

    def __init__(self, *, finished_task_ttl: float | None = None) -> None:
        self._connections: Dict[str, Set[Connection]] = {}
        self._tasks: Dict[str, Dict[str, Any]] = {}
        self._expiry: Dict[str, asyncio.TimerHandle] = {}
        self._listeners: Dict[str, List[HubListener]] = defaultdict(list)
        self._finished_task_ttl = (
            finished_task_ttl
            if finished_task_ttl is not None
            else get_settings().realtime.finished_task_ttl_seconds
        )
        self._loop: asyncio.AbstractEventLoop | None = None

    # ------------------------------------------------------------------
    # Loop binding
    # ------------------------------------------------------------------

    def bind_loop(self, loop: asyncio.AbstractEventLoop | None) -> None:
        self._loop = loop

    def call_threadsafe(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> bool:
        """Schedule ``fn(*args)`` on the hub loop from any thread."""

        loop = self._loop
        if loop is None or loop.is_closed():
            LOGGER.debug("Hub loop not bound; dropping %s", getattr(fn, "__name__", fn))
            return False
        asyncio.run_coroutine_threadsafe(fn(*args), loop)
        return True

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on(self, event: str, listener: HubListener) -> None:
        self._listeners[event].append(listener)

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(payload)
            except Exception:
                LOGGER.exception("Hub listener for %s failed", event)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def register_connection(self, user_id: str, connection: Connection) -> None:
        """Track ``connection`` for ``user_id`` and acknowledge it."""

        self._connections.setdefault(user_id, set()).add(connection)
        LOGGER.info("User %s connected. Total connections: %s", user_id, self.get_connection_count())
        await self._send(
            connection,
            build_message(
                "connection_ack",
                {
                    "user_id": user_id,
                    "connected_at": _now_iso(),
                    "active_tasks": self.get_active_tasks_for_user(user_id),
                },
            ),
        )

    def unregister_connection(self, user_id: str, connection: Connection) -> None:
        user_connections = self._connections.get(user_id)
        if user_connections is not None:
            user_connections.discard(connection)
            if not user_connections:
                del self._connections[user_id]
        LOGGER.info("User %s disconnected. Total connections: %s", user_id, self.get_connection_count())

    def get_connection_count(self) -> int:
        return sum(len(connections) for connections in self._connections.values())

    async def handle_client_message(self, connection: Connection, raw: str) -> None:
        """Answer ``ping`` frames; anything else is ignored."""

        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            return
        if isinstance(message, dict) and message.get("type") == "ping":
            await self._send(connection, build_message("pong", {"server_time": _now_iso()}))

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def _send(self, connection: Connection, message: Mapping[str, Any]) -> None:
        try:
            await connection.send_json(dict(message))
        except Exception:
            # closed sockets are unregistered by their endpoint
            LOGGER.debug("Dropping message for closed connection", exc_info=True)

    async def send_to_user(self, user_id: str, message: Mapping[str, Any]) -> None:
        for connection in list(self._connections.get(user_id, ())):
            await self._send(connection, {**message, "user_id": user_id})

    async def broadcast(self, message: Mapping[str, Any]) -> None:
        for user_id, connections in list(self._connections.items()):
            for connection in list(connections):
                await self._send(connection, {**message, "user_id": user_id})

    async def send_gis_notification(self, user_id: str, notification: Mapping[str, Any]) -> None:
        await self.send_to_user(user_id, build_message("gis_notification", dict(notification)))
        self._emit("gis_notification", {"user_id": user_id, "notification": dict(notification)})

    async def send_system_alert(self, user_id: str, alert: Mapping[str, Any]) -> None:
        await self.send_to_user(user_id, build_message("system_alert", dict(alert)))

    async def broadcast_system_alert(self, alert: Mapping[str, Any]) -> None:
        await self.broadcast(build_message("system_alert", dict(alert)))

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def register_task(self, user_id: str, task: Mapping[str, Any]) -> None:
        record = {**task, "user_id": user_id}
        self._cancel_expiry(record["id"])
        self._tasks[record["id"]] = record
        await self.send_to_user(user_id, build_message("task_update", record))
        self._emit("task_registered", {"user_id": user_id, "task": record})

    async def update_task(self, user_id: str, task_id: str, update: Mapping[str, Any]) -> None:
        """Merge ``update`` into a known task and notify the owner.

        Completed and failed tasks are forgotten after the finished-task TTL
        unless another update revives them first.
        Unknown task ids are ignored.
        """

        task = self._tasks.get(task_id)
        if task is None:
            return
        self._cancel_expiry(task_id)
        task.update(update)
        status = update.get("status")
        if status == "completed":
            message_type = "task_complete"
        elif status == "failed":
            message_type = "task_error"
        else:
            message_type = "task_update"
        await self.send_to_user(user_id, build_message(message_type, dict(task)))
        if task.get("status") in FINISHED_TASK_STATUSES:
            self._expiry[task_id] = asyncio.get_running_loop().call_later(
                self._finished_task_ttl, self._expire_task, task_id
            )
        self._emit("task_updated", {"user_id": user_id, "task": dict(task)})

    def _cancel_expiry(self, task_id: str) -> None:
        handle = self._expiry.pop(task_id, None)
        if handle is not None:
            handle.cancel()

    def _expire_task(self, task_id: str) -> None:
        self._expiry.pop(task_id, None)
        self._tasks.pop(task_id, None)

    async def publish_task(self, user_id: str, task: Mapping[str, Any]) -> None:
        """Register ``task`` on first sight, otherwise apply it as an update."""

        if task["id"] not in self._tasks:
            initial = dict(task)
            status = initial.get("status")
            if status in FINISHED_TASK_STATUSES:
                initial["status"] = "running"
            await self.register_task(user_id, initial)
            if status not in FINISHED_TASK_STATUSES:
                return
        await self.update_task(user_id, task["id"], task)

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        task = self._tasks.get(task_id)
        return dict(task) if task else None

    def get_active_tasks_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return [
            dict(task)
            for task in self._tasks.values()
            if task.get("user_id") == user_id and task.get("status") in ACTIVE_TASK_STATUSES
        ]

    def get_all_active_tasks(self) -> List[Dict[str, Any]]:
        return [dict(task) for task in self._tasks.values() if task.get("status") in ACTIVE_TASK_STATUSES]

    def get_stats(self) -> Dict[str, Any]:
        tasks_by_type: Dict[str, int] = {}
        for task in self._tasks.values():
            if task.get("status") in ACTIVE_TASK_STATUSES:
                task_type = task.get("type") or "unknown"
                tasks_by_type[task_type] = tasks_by_type.get(task_type, 0) + 1
        return {
            "total_connections": self.get_connection_count(),
            "connected_users": len(self._connections),
            "active_tasks": len(self.get_all_active_tasks()),
            "tasks_by_type": tasks_by_type,
        }


class SSEConnection:
    """Hub connection that buffers messages for a ``text/event-stream`` response."""

    def __init__(self, *, max_queue: int = 256) -> None:
        self.queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=max_queue)

    async def send_json(self, data: Any) -> None:
        if self.queue.full():
            # slow consumer: keep the newest messages
            self.queue.get_nowait()
        self.queue.put_nowait(data)

    async def next_message(self, timeout: float) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None


def format_sse(message: Mapping[str, Any]) -> str:
    return f"event: {message.get('type', 'message')}\ndata: {json.dumps(message, default=str)}\n\n"


SSE_HEARTBEAT = ": heartbeat\n\n"


_HUB: NotificationHub | None = None


def get_hub() -> NotificationHub:
    """Return the process-wide hub."""

    global _HUB
    if _HUB is None:
        _HUB = NotificationHub()
    return _HUB


def reset_hub() -> None:
    """Drop the process-wide hub (used in tests)."""

    global _HUB
    _HUB = None


__all__ = [
    "Connection",
    "NotificationHub",
    "SSEConnection",
    "SSE_HEARTBEAT",
    "build_message",
    "format_sse",
    "get_hub",
    "reset_hub",
]
