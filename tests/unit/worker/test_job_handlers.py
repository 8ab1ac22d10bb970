"""Unit tests for the per-queue job handlers."""

from __future__ import annotations

import base64

import pytest

from docflow.ocr.tesseract import OCRResult
from docflow.services.analysis import DocumentAnalysisService
from docflow.services.media import DownloadedAudio
from docflow.services.scoring import DocumentScorer
from docflow.store.document_store import DocumentStore
from docflow.store.job_queue import Job
from docflow.worker.jobs.analysis import AnalysisJobHandler
from docflow.worker.jobs.document_process import (
    DocumentProcessJobHandler,
    UnsupportedDocumentError,
    detect_kind,
)
from docflow.worker.jobs.transcription import TranscriptionJobHandler, format_transcript_markdown
from docflow.worker.jobs.vision import VISION_CONFIDENCE, VisionJobHandler


class RecordingContext:
    def __init__(self) -> None:
        self.progress = []

    def update_progress(self, progress) -> None:
        self.progress.append(progress)


class FakeClient:
    def __init__(self, text: str = "tekst z obrazu", error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.calls = []

    def vision_chat(self, *, prompt, image_base64, model=None):
        self.calls.append((prompt, model))
        if self.error:
            raise self.error
        return self.text

    def transcribe_audio(self, path):
        self.calls.append(path)
        return "Otwieram sesję.\n\nPrzechodzimy do punktu drugiego."


def _job(job_id: str, data: dict) -> Job:
    return Job(job_id=job_id, queue="q", name="n", data=data, state="active")


@pytest.fixture
def documents(session_factory) -> DocumentStore:
    return DocumentStore(session_factory=session_factory)


def test_analysis_handler_returns_prompt_score_and_references(documents: DocumentStore) -> None:
    document_id = documents.insert_document(
        user_id="u1",
        title="Sesja Rady Miejskiej",
        content="Porządek obrad obejmuje druk nr 12 oraz druk nr 99.",
        document_type="session_order",
    )
    documents.insert_document(user_id="u1", title="Druk nr 12 - projekt budżetu", content="Treść druku 12")
    handler = AnalysisJobHandler(
        analysis=DocumentAnalysisService(documents=documents), scorer=DocumentScorer(documents=documents)
    )
    ctx = RecordingContext()

    result = handler(_job("analysis-1", {"user_id": "u1", "document_id": document_id}), ctx)

    assert result["success"] is True
    assert result["document_title"] == "Sesja Rady Miejskiej"
    assert [ref["number"] for ref in result["references"]["found"]] == ["12"]
    assert result["references"]["missing"] == ["druk nr 99"]
    assert "Treść druku 12" in result["analysis_prompt"]
    assert result["score"]["total_score"] >= 0
    assert [step["progress"] for step in ctx.progress] == [10, 30, 60, 80, 100]


def test_analysis_handler_reports_missing_document_as_result(documents: DocumentStore) -> None:
    handler = AnalysisJobHandler(
        analysis=DocumentAnalysisService(documents=documents), scorer=DocumentScorer(documents=documents)
    )

    result = handler(
        _job("analysis-2", {"user_id": "u1", "document_id": "missing", "document_title": "X"}), RecordingContext()
    )

    assert result == {
        "success": False,
        "document_id": "missing",
        "document_title": "X",
        "error": "Nie znaleziono dokumentu",
    }


def test_vision_handler_success_and_error() -> None:
    client = FakeClient()
    handler = VisionJobHandler(client_factory=lambda provider: client)
    ctx = RecordingContext()
    data = {"prompt": "Czytaj", "image_base64": "aGk=", "page_number": 3, "provider": "openai", "model": "gpt"}

    result = handler(_job("v1", data), ctx)

    assert result["success"] is True
    assert result["text"] == "tekst z obrazu"
    assert result["confidence"] == VISION_CONFIDENCE
    assert result["page_number"] == 3
    assert ctx.progress == [30, 80, 100]
    assert client.calls == [("Czytaj", "gpt")]

    failing = VisionJobHandler(client_factory=lambda provider: FakeClient(error=RuntimeError("down")))
    error = failing(_job("v2", data), RecordingContext())
    assert error["success"] is False
    assert error["error"] == "down"
    assert error["text"] == ""


def test_detect_kind_by_mime_and_extension() -> None:
    assert detect_kind("notes.md", None) == "text"
    assert detect_kind("scan", "application/pdf") == "pdf"
    assert detect_kind("photo.JPG", "application/octet-stream") == "image"
    assert detect_kind("archive.zip", "application/zip") == "unknown"


def _upload(documents: DocumentStore, job_id: str, file_name: str, mime: str, content: bytes) -> Job:
    documents.create_document_job(
        user_id="u1", job_id=job_id, file_name=file_name, mime_type=mime, file_size=len(content)
    )
    return _job(
        job_id,
        {
            "user_id": "u1",
            "file_name": file_name,
            "file_base64": base64.b64encode(content).decode("ascii"),
            "mime_type": mime,
            "file_size": len(content),
            "options": {"use_vision_fallback": True},
        },
    )


def test_document_handler_decodes_text_files(documents: DocumentStore) -> None:
    handler = DocumentProcessJobHandler(documents=documents)
    job = _upload(documents, "doc-1", "uchwala.txt", "text/plain", "Uchwała nr 5\n".encode("utf-8"))

    result = handler(job, RecordingContext())

    assert result["text"] == "Uchwała nr 5"
    assert result["metadata"]["kind"] == "text"
    assert result["metadata"]["ocr_confidence"] is None
    assert documents.get_document_job("doc-1")["status"] == "processing"


def test_document_handler_falls_back_to_vision_for_low_confidence(documents: DocumentStore) -> None:
    client = FakeClient(text="Odczytane przez model")
    handler = DocumentProcessJobHandler(
        documents=documents,
        ocr=lambda image: OCRResult(text="??", confidence=20.0),
        client_factory=lambda provider: client,
    )
    job = _upload(documents, "doc-2", "skan.png", "image/png", b"\x89PNG fake")

    result = handler(job, RecordingContext())

    assert result["text"] == "Odczytane przez model"
    assert result["metadata"]["used_vision"] is True
    assert result["metadata"]["ocr_confidence"] == 20.0
    assert len(client.calls) == 1


def test_document_handler_keeps_confident_ocr(documents: DocumentStore) -> None:
    handler = DocumentProcessJobHandler(
        documents=documents,
        ocr=lambda image: OCRResult(text="Protokół z sesji", confidence=91.5),
        client_factory=lambda provider: pytest.fail("vision should not be used"),
    )
    job = _upload(documents, "doc-3", "skan.jpg", "image/jpeg", b"jpeg")

    result = handler(job, RecordingContext())

    assert result["text"] == "Protokół z sesji"
    assert result["metadata"]["used_vision"] is False


def test_document_handler_rejects_unknown_types(documents: DocumentStore) -> None:
    handler = DocumentProcessJobHandler(documents=documents)
    job = _upload(documents, "doc-4", "archive.zip", "application/zip", b"PK")

    with pytest.raises(UnsupportedDocumentError):
        handler(job, RecordingContext())


class FakeDownloader:
    def __init__(self, tmp_path, error: Exception | None = None) -> None:
        self.path = tmp_path / "audio.mp3"
        self.error = error

    def download(self, video_url: str) -> DownloadedAudio:
        if self.error:
            raise self.error
        self.path.write_bytes(b"\x00" * 2048)
        return DownloadedAudio(path=self.path, title="Sesja", duration="1:02:03")


def _transcription_job(documents: DocumentStore, job_id: str) -> Job:
    documents.create_transcription_job(
        job_id=job_id, user_id="u1", video_url="https://youtu.be/abc", video_title="Sesja XV"
    )
    return _job(
        job_id,
        {"user_id": "u1", "video_url": "https://youtu.be/abc", "video_title": "Sesja XV", "session_id": "s-15"},
    )


def test_transcription_handler_saves_markdown_document(documents: DocumentStore, tmp_path) -> None:
    downloader = FakeDownloader(tmp_path)
    client = FakeClient()
    handler = TranscriptionJobHandler(documents=documents, downloader=downloader, client_factory=lambda: client)
    ctx = RecordingContext()

    result = handler(_transcription_job(documents, "t-1"), ctx)

    assert result["success"] is True
    document = documents.get_document(result["document_id"])
    assert document["document_type"] == "transcription"
    assert document["title"] == "Transkrypcja: Sesja XV"
    assert "Przechodzimy do punktu drugiego." in document["content"]
    assert document["metadata"]["session_id"] == "s-15"
    row = documents.get_transcription_job("t-1")
    assert row["status"] == "completed"
    assert row["result_document_id"] == result["document_id"]
    assert ctx.progress[-1]["progress"] == 100
    assert not downloader.path.exists()


def test_transcription_handler_marks_row_failed_and_reraises(documents: DocumentStore, tmp_path) -> None:
    handler = TranscriptionJobHandler(
        documents=documents,
        downloader=FakeDownloader(tmp_path, error=RuntimeError("Video unavailable")),
        client_factory=FakeClient,
    )

    with pytest.raises(RuntimeError):
        handler(_transcription_job(documents, "t-2"), RecordingContext())

    row = documents.get_transcription_job("t-2")
    assert row["status"] == "failed"
    assert row["error"] == "Video unavailable"


def test_transcript_markdown_layout() -> None:
    markdown = format_transcript_markdown(
        video_title="Sesja", video_url="https://youtu.be/x", transcript="jeden dwa\n\ntrzy", duration=None, session_id=None
    )

    assert markdown.startswith("# Transkrypcja: Sesja")
    assert "| Czas trwania | brak danych |" in markdown
    assert "| Liczba słów | 3 |" in markdown
    assert "**Sesja:**" not in markdown
