"""Audio download for transcription through the ``yt-dlp`` command-line tool."""

from __future__ import annotations

import logging
import subprocess
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from docflow.settings import get_settings

LOGGER = logging.getLogger(__name__)


class AudioDownloadError(RuntimeError):
    pass


@dataclass(slots=True)
class DownloadedAudio:
    path: Path
    title: Optional[str] = None
    duration: Optional[str] = None


class AudioDownloader:
    """Extract a mono 16 kHz MP3 from a video URL."""

    def __init__(
        self,
        *,
        ytdlp_path: str | None = None,
        ffmpeg_path: str | None = None,
        temp_dir: Path | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        media = get_settings().media
        self.ytdlp_path = ytdlp_path or media.ytdlp_path
        self.ffmpeg_path = ffmpeg_path or media.ffmpeg_path
        self.temp_dir = Path(temp_dir or media.temp_dir)
        self.timeout_seconds = timeout_seconds or media.download_timeout_seconds

    def build_command(self, video_url: str, output_base: Path) -> List[str]:
        command = [
            self.ytdlp_path,
            "-x",
            "--audio-format",
            "mp3",
            "--audio-quality",
            "9",
            "--postprocessor-args",
            "ffmpeg:-ac 1 -ar 16000",
            "-o",
            f"{output_base}.%(ext)s",
            "--no-playlist",
            "--print",
            "after_move:filepath",
            "--print",
            "%(title)s|||%(duration_string)s",
            video_url,
        ]
        if self.ffmpeg_path:
            command[1:1] = ["--ffmpeg-location", self.ffmpeg_path]
        return command

    def download(self, video_url: str) -> DownloadedAudio:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        output_base = self.temp_dir / uuid.uuid4().hex
        command = self.build_command(video_url, output_base)
        LOGGER.info("Downloading audio from %s", video_url)
        try:
            completed = subprocess.run(
                command, capture_output=True, text=True, timeout=self.timeout_seconds, check=False
            )
        except FileNotFoundError as exc:
            raise AudioDownloadError(f"yt-dlp not found at {self.ytdlp_path}") from exc
        except subprocess.TimeoutExpired as exc:
            raise AudioDownloadError(f"Audio download timed out after {self.timeout_seconds}s") from exc
        if completed.returncode != 0:
            stderr = completed.stderr.strip()
            LOGGER.error("yt-dlp stderr: %s", stderr)
            raise AudioDownloadError(stderr.splitlines()[-1] if stderr else "yt-dlp failed")
        return self.parse_output(completed.stdout, default_path=output_base.with_suffix(".mp3"))

    @staticmethod
    def parse_output(stdout: str, *, default_path: Path) -> DownloadedAudio:
        """Read the file path line and the ``title|||duration`` line printed by yt-dlp."""

        path = default_path
        title = duration = None
        for line in (line.strip() for line in stdout.splitlines()):
            if not line:
                continue
            if "|||" in line:
                title, _, duration = line.partition("|||")
            else:
                path = Path(line)
        return DownloadedAudio(path=path, title=title or None, duration=duration or None)


__all__ = ["AudioDownloadError", "AudioDownloader", "DownloadedAudio"]
