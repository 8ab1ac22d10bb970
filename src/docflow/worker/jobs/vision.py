"""Worker handler for ``vision-ocr`` jobs."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict

from docflow.services.llm_client import LLMClient
from docflow.store.job_queue import Job
from docflow.worker.runner import JobContext

LOGGER = logging.getLogger(__name__)

VISION_CONFIDENCE = 0.9

ClientFactory = Callable[[str], LLMClient]


def _default_client(provider: str) -> LLMClient:
    return LLMClient(provider=provider)


class VisionJobHandler:
    def __init__(self, *, client_factory: ClientFactory = _default_client) -> None:
        self._client_factory = client_factory

    def __call__(self, job: Job, ctx: JobContext) -> Dict[str, Any]:
        started = time.perf_counter()
        data = job.data
        page_number = data.get("page_number")
        try:
            ctx.update_progress(30)
            client = self._client_factory(data.get("provider") or "ollama")
            text = client.vision_chat(prompt=data["prompt"], image_base64=data["image_base64"], model=data.get("model"))
            ctx.update_progress(80)
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            ctx.update_progress(100)
            LOGGER.info("Vision job %s done page=%s in %sms", job.job_id, page_number, elapsed_ms)
            return {
                "success": True,
                "text": text,
                "confidence": VISION_CONFIDENCE,
                "page_number": page_number,
                "processing_time_ms": elapsed_ms,
            }
        except Exception as exc:
            LOGGER.exception("Vision job %s failed", job.job_id)
            return {
                "success": False,
                "text": "",
                "page_number": page_number,
                "error": str(exc) or "Vision request failed",
                "processing_time_ms": int((time.perf_counter() - started) * 1000),
            }


__all__ = ["VISION_CONFIDENCE", "VisionJobHandler"]
