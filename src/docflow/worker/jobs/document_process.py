"""Worker handler for ``process-document`` jobs (uploaded files awaiting text extraction)."""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Any, Callable, Dict, List

from docflow.ocr.pdf import extract_pdf_pages
from docflow.ocr.tesseract import OCRResult, extract_text_from_bytes
from docflow.services.llm_client import LLMClient
from docflow.settings import get_settings
from docflow.store.document_store import DocumentStore
from docflow.store.job_queue import Job
from docflow.worker.runner import JobContext

LOGGER = logging.getLogger(__name__)

TEXT_EXTENSIONS = (".txt", ".md", ".csv", ".json", ".html", ".htm", ".xml")

OCRFn = Callable[[bytes], OCRResult]
ClientFactory = Callable[[str], LLMClient]


class UnsupportedDocumentError(ValueError):
    """Raised for uploads whose type cannot be turned into text."""


def _default_client(provider: str) -> LLMClient:
    return LLMClient(provider=provider)


def detect_kind(file_name: str, mime_type: str | None) -> str:
    mime = (mime_type or "").lower()
    suffix = PurePath(file_name).suffix.lower()
    if mime.startswith("text/") or mime == "application/json" or suffix in TEXT_EXTENSIONS:
        return "text"
    if mime == "application/pdf" or suffix == ".pdf":
        return "pdf"
    if mime.startswith("image/") or suffix in (".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".webp"):
        return "image"
    return "unknown"


class DocumentProcessJobHandler:
    """Extract text from an upload.

    Text files are decoded directly. Images and PDF pages without a text layer
    go through Tesseract; pages scoring under the confidence threshold are
    re-read by the vision model when ``options.use_vision_fallback`` is true.
    """

    def __init__(
        self,
        *,
        documents: DocumentStore,
        ocr: OCRFn = extract_text_from_bytes,
        client_factory: ClientFactory = _default_client,
    ) -> None:
        self._documents = documents
        self._ocr = ocr
        self._client_factory = client_factory
        self._settings = get_settings()

    def __call__(self, job: Job, ctx: JobContext) -> Dict[str, Any]:
        data = job.data
        file_name = data["file_name"]
        options = data.get("options") or {}
        self._documents.update_document_job(
            job.job_id, status="processing", progress=5, started_at=datetime.now(timezone.utc)
        )
        ctx.update_progress({"progress": 10, "description": f"Odczyt pliku {file_name}..."})
        content = base64.b64decode(data["file_base64"])
        kind = detect_kind(file_name, data.get("mime_type"))

        used_vision = False
        confidences: List[float] = []
        if kind == "text":
            text = content.decode("utf-8", errors="replace")
            pages = 1
        elif kind == "image":
            ctx.update_progress({"progress": 30, "description": "Rozpoznawanie tekstu (OCR)..."})
            text, confidence, used_vision = self._image_text(content, options)
            confidences.append(confidence)
            pages = 1
        elif kind == "pdf":
            text, pages, used_vision = self._pdf_text(content, options, ctx, confidences)
        else:
            raise UnsupportedDocumentError(f"Unsupported file type: {data.get('mime_type') or file_name}")

        ctx.update_progress({"progress": 100, "description": "Przetwarzanie zakończone"})
        LOGGER.info("Processed %s kind=%s pages=%s chars=%s", file_name, kind, pages, len(text))
        return {
            "success": True,
            "text": text.strip(),
            "metadata": {
                "file_name": file_name,
                "mime_type": data.get("mime_type"),
                "file_size": data.get("file_size"),
                "kind": kind,
                "pages": pages,
                "ocr_confidence": round(sum(confidences) / len(confidences), 2) if confidences else None,
                "used_vision": used_vision,
            },
        }

    def _image_text(self, image: bytes, options: Dict[str, Any]) -> tuple[str, float, bool]:
        result = self._ocr(image)
        threshold = self._settings.ocr.confidence_threshold
        if result.confidence >= threshold or not options.get("use_vision_fallback", True):
            return result.text, result.confidence, False
        LOGGER.info("OCR confidence %.1f below %.1f; falling back to vision", result.confidence, threshold)
        provider = options.get("vision_provider") or self._settings.llm.provider
        client = self._client_factory(provider)
        text = client.vision_chat(
            prompt=self._settings.ocr.vision_prompt,
            image_base64=base64.b64encode(image).decode("ascii"),
            model=options.get("vision_model"),
        )
        return text, result.confidence, True

    def _pdf_text(
        self, content: bytes, options: Dict[str, Any], ctx: JobContext, confidences: List[float]
    ) -> tuple[str, int, bool]:
        pages = extract_pdf_pages(content)
        used_vision = False
        parts: List[str] = []
        for index, page in enumerate(pages, start=1):
            if page.needs_ocr and page.image_png is not None:
                text, confidence, vision = self._image_text(page.image_png, options)
                confidences.append(confidence)
                used_vision = used_vision or vision
            else:
                text = page.text
            parts.append(f"--- Strona {page.page_number} ---\n{text.strip()}")
            ctx.update_progress(
                {
                    "progress": 10 + int(85 * index / max(len(pages), 1)),
                    "description": f"Strona {index}/{len(pages)}",
                }
            )
        return "\n\n".join(parts), len(pages), used_vision


__all__ = ["DocumentProcessJobHandler", "UnsupportedDocumentError", "detect_kind"]
