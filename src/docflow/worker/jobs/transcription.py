"""Worker handler for ``youtube-transcription`` jobs."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Protocol

from docflow.services.llm_client import LLMClient
from docflow.services.media import AudioDownloader, DownloadedAudio
from docflow.services.transcription_progress import TranscriptionProgressTracker
from docflow.store.document_store import DocumentStore
from docflow.store.job_queue import Job
from docflow.worker.runner import JobContext

LOGGER = logging.getLogger(__name__)


class Downloader(Protocol):
    def download(self, video_url: str) -> DownloadedAudio: ...


def format_transcript_markdown(
    *, video_title: str, video_url: str, transcript: str, duration: str | None, session_id: str | None
) -> str:
    paragraphs = [line.strip() for line in transcript.splitlines() if line.strip()]
    lines = [
        f"# Transkrypcja: {video_title}",
        "",
        f"**Tytuł:** {video_title}",
        "",
        f"**Źródło:** [YouTube]({video_url})",
        "",
        f"**Data transkrypcji:** {datetime.now(timezone.utc).date().isoformat()}",
        "",
    ]
    if session_id:
        lines += [f"**Sesja:** {session_id}", ""]
    lines += [
        "---",
        "",
        "## Podsumowanie",
        "",
        "| Parametr | Wartość |",
        "|----------|--------|",
        f"| Czas trwania | {duration or 'brak danych'} |",
        f"| Liczba słów | {len(transcript.split())} |",
        "",
        "---",
        "",
        "## Pełna transkrypcja",
        "",
        "\n\n".join(paragraphs),
        "",
    ]
    return "\n".join(lines)


class TranscriptionJobHandler:
    """Download audio, transcribe it and store the transcript as a document.

    Failures are recorded on the ``transcription_jobs`` row and re-raised so the
    queue applies its retry policy.
    """

    def __init__(
        self,
        *,
        documents: DocumentStore,
        downloader: Downloader | None = None,
        client_factory: Callable[[], LLMClient] = LLMClient,
    ) -> None:
        self._documents = documents
        self._downloader = downloader or AudioDownloader()
        self._client_factory = client_factory

    def __call__(self, job: Job, ctx: JobContext) -> Dict[str, Any]:
        data = job.data
        job_id = job.job_id
        video_url = data["video_url"]
        video_title = data.get("video_title") or video_url
        tracker = TranscriptionProgressTracker(job_id, documents=self._documents, report=ctx.update_progress)
        audio: DownloadedAudio | None = None
        try:
            tracker.start_step("download", "Pobieranie audio z YouTube...")
            audio = self._downloader.download(video_url)
            tracker.complete_step("download", "Audio pobrane")

            tracker.start_step("preprocessing")
            size_mb = audio.path.stat().st_size / (1024 * 1024) if audio.path.exists() else 0.0
            tracker.complete_step("preprocessing", f"Audio gotowe ({size_mb:.1f} MB)")

            tracker.start_step("transcription", "Transkrypcja nagrania...")
            transcript = self._client_factory().transcribe_audio(audio.path)
            tracker.complete_step("transcription")

            tracker.start_step("analysis")
            content = format_transcript_markdown(
                video_title=video_title,
                video_url=video_url,
                transcript=transcript,
                duration=audio.duration,
                session_id=data.get("session_id"),
            )
            tracker.complete_step("analysis")

            tracker.start_step("saving")
            document_id = self._documents.insert_document(
                user_id=data["user_id"],
                title=f"Transkrypcja: {video_title}",
                content=content,
                document_type="transcription",
                source_url=video_url,
                metadata={
                    "transcription_job_id": job_id,
                    "session_id": data.get("session_id"),
                    "duration": audio.duration,
                    "include_sentiment": data.get("include_sentiment", True),
                    "identify_speakers": data.get("identify_speakers", True),
                },
            )
            tracker.complete_step("saving", "Transkrypcja zapisana")
            self._documents.update_transcription_job(
                job_id,
                status="completed",
                progress=100,
                progress_message="Zakończono",
                result_document_id=document_id,
            )
            LOGGER.info("Transcription job %s saved as document %s", job_id, document_id)
            return {"success": True, "document_id": document_id}
        except Exception as exc:
            tracker.fail_step(tracker.current_step or "download", str(exc) or exc.__class__.__name__)
            raise
        finally:
            if audio is not None:
                audio.path.unlink(missing_ok=True)


__all__ = ["TranscriptionJobHandler", "format_transcript_markdown"]
