"""Unit tests for the vision/transcription HTTP client."""

from __future__ import annotations

import json

import httpx
import pytest

from docflow.services.llm_client import (
    MOCK_TRANSCRIPT,
    MOCK_VISION_TEXT,
    LLMClient,
    LLMClientError,
    build_vision_messages,
)


def test_ollama_messages_carry_raw_base64_images() -> None:
    messages = build_vision_messages("ollama", "Odczytaj", "abc")
    assert messages == [{"role": "user", "content": "Odczytaj", "images": ["abc"]}]


def test_openai_messages_use_data_url_parts() -> None:
    (message,) = build_vision_messages("openai", "Odczytaj", "abc")
    text, image = message["content"]
    assert text == {"type": "text", "text": "Odczytaj"}
    assert image["image_url"] == {"url": "data:image/png;base64,abc", "detail": "high"}


def test_mock_provider_never_calls_http(tmp_path) -> None:
    def handler(request):  # pragma: no cover - must not run
        raise AssertionError("unexpected HTTP call")

    client = LLMClient(provider="mock", transport=httpx.MockTransport(handler))
    assert client.vision_chat(prompt="p", image_base64="x") == MOCK_VISION_TEXT
    assert client.transcribe_audio(tmp_path / "missing.mp3") == MOCK_TRANSCRIPT


def test_vision_chat_posts_chat_completion() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "Uchwała nr 5"}}]})

    client = LLMClient(provider="openai", transport=httpx.MockTransport(handler))
    text = client.vision_chat(prompt="Odczytaj", image_base64="abc", model="gpt-4o")

    assert text == "Uchwała nr 5"
    assert seen["path"].endswith("/chat/completions")
    assert seen["body"]["model"] == "gpt-4o"
    assert seen["body"]["temperature"] == 0.1
    assert seen["body"]["messages"][0]["content"][1]["type"] == "image_url"


def test_vision_chat_without_choices_raises() -> None:
    client = LLMClient(
        provider="ollama", transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"choices": []}))
    )
    with pytest.raises(LLMClientError):
        client.vision_chat(prompt="p", image_base64="x")


def test_http_errors_propagate() -> None:
    client = LLMClient(provider="ollama", transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    with pytest.raises(httpx.HTTPStatusError):
        client.vision_chat(prompt="p", image_base64="x")


def test_transcribe_audio_uploads_multipart(tmp_path) -> None:
    audio = tmp_path / "sesja.mp3"
    audio.write_bytes(b"ID3fake")
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = request.read()
        return httpx.Response(200, json={"text": "Otwieram sesję."})

    client = LLMClient(provider="openai", transport=httpx.MockTransport(handler))
    text = client.transcribe_audio(audio, model="whisper-1", language="pl")

    assert text == "Otwieram sesję."
    assert seen["path"].endswith("/audio/transcriptions")
    assert b'filename="sesja.mp3"' in seen["body"]
    assert b"whisper-1" in seen["body"]
