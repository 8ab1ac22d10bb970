"""Unit tests for Tesseract and PDF text extraction."""

from __future__ import annotations

import io

import fitz
from PIL import Image

from docflow.ocr import tesseract
from docflow.ocr.pdf import extract_pdf_pages
from docflow.ocr.tesseract import extract_text_from_bytes, mean_confidence


def _png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (40, 20), "white").save(buffer, format="PNG")
    return buffer.getvalue()


def test_mean_confidence_ignores_non_word_boxes() -> None:
    assert mean_confidence({"conf": ["-1", "90", 70, "bad"]}) == 80.0
    assert mean_confidence({"conf": ["-1"]}) == 0.0


def test_extract_text_uses_grayscale_and_language(monkeypatch) -> None:
    seen = {}

    def fake_data(image, lang, output_type):
        seen["mode"] = image.mode
        seen["lang"] = lang
        return {"conf": ["88", "92"]}

    monkeypatch.setattr(tesseract.pytesseract, "image_to_data", fake_data)
    monkeypatch.setattr(tesseract.pytesseract, "image_to_string", lambda image, lang: "  Uchwała nr 7\n")

    result = extract_text_from_bytes(_png_bytes(), lang="pol")

    assert result.text == "Uchwała nr 7"
    assert result.confidence == 90.0
    assert seen == {"mode": "L", "lang": "pol"}


def test_pdf_pages_without_text_layer_are_rendered() -> None:
    doc = fitz.open()
    doc.new_page().insert_text((72, 72), "Resolution 5")
    doc.new_page()
    content = doc.tobytes()
    doc.close()

    pages = extract_pdf_pages(content)

    assert [page.page_number for page in pages] == [1, 2]
    assert "Resolution 5" in pages[0].text
    assert not pages[0].needs_ocr
    assert pages[1].needs_ocr
    assert pages[1].image_png.startswith(b"\x89PNG")
