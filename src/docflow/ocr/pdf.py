"""PDF page extraction: text layer first, rendered page image otherwise."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

import fitz  # PyMuPDF

LOGGER = logging.getLogger(__name__)

RENDER_ZOOM = 2  # higher resolution renders OCR better


@dataclass(slots=True)
class PdfPage:
    page_number: int
    text: str
    image_png: Optional[bytes] = None

    @property
    def needs_ocr(self) -> bool:
        return not self.text


def extract_pdf_pages(content: bytes) -> List[PdfPage]:
    """Return one entry per page; pages without a text layer carry a PNG render."""

    pages: List[PdfPage] = []
    with fitz.open(stream=content, filetype="pdf") as doc:
        for index, page in enumerate(doc):
            text = page.get_text().strip()
            image_png = None
            if not text:
                LOGGER.info("PDF page %s has no text layer; rendering for OCR", index + 1)
                pix = page.get_pixmap(matrix=fitz.Matrix(RENDER_ZOOM, RENDER_ZOOM))
                image_png = pix.tobytes("png")
            pages.append(PdfPage(page_number=index + 1, text=text, image_png=image_png))
    return pages


__all__ = ["PdfPage", "extract_pdf_pages"]
