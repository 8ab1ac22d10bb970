"""
OCR module using Tesseract for text extraction from uploaded images.
"""

from __future__ import annotations

import io
from dataclasses import dataclass

import pytesseract
from PIL import Image, ImageOps

from docflow.settings import get_settings


@dataclass(slots=True)
class OCRResult:
    text: str
    confidence: float


def _prepare(image: Image.Image) -> Image.Image:
    image = ImageOps.exif_transpose(image)  # auto-rotate if needed
    return image.convert("L")  # grayscale


def mean_confidence(data: dict) -> float:
    """Average the word-level confidences reported by ``image_to_data``.

    Tesseract marks non-word boxes with ``-1``; those are ignored.
    """

    values = []
    for raw in data.get("conf", []):
        try:
            value = float(raw)
        except (TypeError, ValueError):
            continue
        if value >= 0:
            values.append(value)
    return sum(values) / len(values) if values else 0.0


def extract_text_from_bytes(content: bytes, *, lang: str | None = None) -> OCRResult:
    """
    Perform OCR on raw image bytes.
    Args:
        content: Encoded image (PNG, JPEG, TIFF...).
        lang: Tesseract language codes, defaults to ``settings.ocr.language``.
    Returns:
        OCRResult with the text and mean word confidence (0..100).
    """
    lang = lang or get_settings().ocr.language
    with Image.open(io.BytesIO(content)) as raw:
        img = _prepare(raw)
    data = pytesseract.image_to_data(img, lang=lang, output_type=pytesseract.Output.DICT)
    text = pytesseract.image_to_string(img, lang=lang)
    return OCRResult(text=text.strip(), confidence=mean_confidence(data))


__all__ = ["OCRResult", "extract_text_from_bytes", "mean_confidence"]
