"""Structured job events and StatsD metrics for queues and workers.

Queue producers and workers report every job transition through
:meth:`Observability.job_event`, which writes one structured log line and bumps
the matching ``queue.job.<transition>`` counter. Metrics are only sent when
``observability.statsd_host`` is configured.
"""

from __future__ import annotations

import json
import logging
import socket
import threading
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol

from docflow.settings import Settings, get_settings

_LOGGER = logging.getLogger("docflow.events")
_STATSD_LOCK = threading.Lock()
_STATSD: "StatsdClient | None" = None


class MetricsSink(Protocol):
    def increment(self, metric: str, value: float, tags: Mapping[str, str]) -> None: ...

    def timing(self, metric: str, value_ms: float, tags: Mapping[str, str]) -> None: ...


class StatsdClient:
    """Fire-and-forget StatsD client with DogStatsD-style tags."""

    def __init__(self, host: str, port: int, prefix: str = "") -> None:
        self.address = (host, port)
        self.prefix = prefix
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    def increment(self, metric: str, value: float, tags: Mapping[str, str]) -> None:
        self._send(format_statsd_line(metric, value, "c", tags, prefix=self.prefix))

    def timing(self, metric: str, value_ms: float, tags: Mapping[str, str]) -> None:
        self._send(format_statsd_line(metric, value_ms, "ms", tags, prefix=self.prefix))

    def _send(self, line: str) -> None:
        try:
            self._socket.sendto(line.encode("utf-8"), self.address)
        except OSError:
            _LOGGER.debug("StatsD send failed: %s", line, exc_info=True)


def format_statsd_line(metric: str, value: float, kind: str, tags: Mapping[str, str], *, prefix: str = "") -> str:
    name = f"{prefix}.{metric}" if prefix else metric
    number = f"{value:.3f}".rstrip("0").rstrip(".") or "0"
    line = f"{name}:{number}|{kind}"
    if tags:
        line += "|#" + ",".join(f"{key}:{tags[key]}" for key in sorted(tags))
    return line


class Observability:
    """Per-component handle for structured events and metrics."""

    def __init__(
        self,
        *,
        settings: Settings,
        component: str | None = None,
        metrics: MetricsSink | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.component = component or "core"
        self._structured = bool(settings.observability.structured_logging)
        self._metrics = metrics
        self._logger = logger or _LOGGER

    def emit_event(self, event: str, **fields: Any) -> None:
        """Log ``event`` as one JSON line, or as plain text when structured logging is off."""

        record = {
            "event": event,
            "component": self.component,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **fields,
        }
        if self._structured:
            self._logger.info(json.dumps(record, default=str, ensure_ascii=False))
        else:
            self._logger.info("%s %s", event, " ".join(f"{key}={value}" for key, value in fields.items()))

    def increment(self, metric: str, *, value: float = 1.0, tags: Mapping[str, Any] | None = None) -> None:
        if self._metrics is not None:
            self._metrics.increment(metric, value, _clean_tags(tags))

    def record_timing(self, metric: str, value_ms: float, *, tags: Mapping[str, Any] | None = None) -> None:
        if self._metrics is not None:
            self._metrics.timing(metric, value_ms, _clean_tags(tags))

    def job_event(
        self, transition: str, *, queue: str, job_id: str | None = None, count: int = 1, **fields: Any
    ) -> None:
        """Record a job transition as a ``queue.job.<transition>`` event and counter."""

        name = f"queue.job.{transition}"
        self.emit_event(name, queue=queue, job_id=job_id, **fields)
        self.increment(name, value=float(count), tags={"queue": queue})


def _clean_tags(tags: Mapping[str, Any] | None) -> dict[str, str]:
    return {str(key): str(value) for key, value in (tags or {}).items() if value is not None}


def _shared_statsd(settings: Settings) -> StatsdClient | None:
    global _STATSD
    host = settings.observability.statsd_host
    if not host:
        return None
    with _STATSD_LOCK:
        if _STATSD is None:
            _STATSD = StatsdClient(host, settings.observability.statsd_port, settings.observability.statsd_prefix)
        return _STATSD


def get_observability(*, component: str | None = None, settings: Settings | None = None) -> Observability:
    resolved = settings or get_settings()
    return Observability(settings=resolved, component=component, metrics=_shared_statsd(resolved))


def reset_observability_cache() -> None:
    """Forget the shared StatsD client so the next lookup re-reads settings."""

    global _STATSD
    with _STATSD_LOCK:
        _STATSD = None


__all__ = [
    "MetricsSink",
    "Observability",
    "StatsdClient",
    "format_statsd_line",
    "get_observability",
    "reset_observability_cache",
]
