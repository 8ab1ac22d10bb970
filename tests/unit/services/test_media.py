"""Unit tests for the yt-dlp audio downloader."""

from __future__ import annotations

import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest

from docflow.services import media
from docflow.services.media import AudioDownloader, AudioDownloadError


def _downloader(tmp_path, **kwargs) -> AudioDownloader:
    return AudioDownloader(ytdlp_path="yt-dlp", temp_dir=tmp_path, timeout_seconds=30, **kwargs)


def test_command_requests_mono_16k_mp3(tmp_path) -> None:
    command = _downloader(tmp_path, ffmpeg_path="/opt/ffmpeg").build_command("https://yt/v", tmp_path / "abc")

    assert command[:3] == ["yt-dlp", "--ffmpeg-location", "/opt/ffmpeg"]
    assert "ffmpeg:-ac 1 -ar 16000" in command
    assert f"{tmp_path / 'abc'}.%(ext)s" in command
    assert command[-1] == "https://yt/v"


def test_parse_output_is_order_independent(tmp_path) -> None:
    default = tmp_path / "x.mp3"
    first = AudioDownloader.parse_output("Sesja XII|||1:02:03\n/tmp/a.mp3\n", default_path=default)
    second = AudioDownloader.parse_output("/tmp/a.mp3\nSesja XII|||1:02:03\n", default_path=default)

    assert first == second
    assert first.path == Path("/tmp/a.mp3")
    assert first.title == "Sesja XII"
    assert first.duration == "1:02:03"
    assert AudioDownloader.parse_output("", default_path=default).path == default


def test_download_runs_ytdlp(monkeypatch, tmp_path) -> None:
    calls = []

    def fake_run(command, **kwargs):
        calls.append((command, kwargs))
        return SimpleNamespace(returncode=0, stdout=f"{tmp_path}/a.mp3\nTytuł|||10:00\n", stderr="")

    monkeypatch.setattr(media.subprocess, "run", fake_run)
    audio = _downloader(tmp_path).download("https://yt/v")

    assert audio.title == "Tytuł"
    assert calls[0][1]["timeout"] == 30


def test_download_failure_reports_last_stderr_line(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(
        media.subprocess,
        "run",
        lambda command, **kwargs: SimpleNamespace(returncode=1, stdout="", stderr="WARNING x\nERROR: Video unavailable"),
    )
    with pytest.raises(AudioDownloadError, match="Video unavailable"):
        _downloader(tmp_path).download("https://yt/v")


def test_missing_binary_and_timeout_become_download_errors(monkeypatch, tmp_path) -> None:
    def missing(command, **kwargs):
        raise FileNotFoundError(command[0])

    monkeypatch.setattr(media.subprocess, "run", missing)
    with pytest.raises(AudioDownloadError, match="not found"):
        _downloader(tmp_path).download("https://yt/v")

    def slow(command, **kwargs):
        raise subprocess.TimeoutExpired(command, 30)

    monkeypatch.setattr(media.subprocess, "run", slow)
    with pytest.raises(AudioDownloadError, match="timed out"):
        _downloader(tmp_path).download("https://yt/v")
