"""OCR package for docflow.

Tesseract extracts text from uploaded scans and photos of council documents.
Pages whose mean confidence falls below ``settings.ocr.confidence_threshold``
are re-read by the vision model in the document-process worker.
"""
