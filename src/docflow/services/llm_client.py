"""OpenAI-compatible HTTP client for vision chat completions and audio transcription."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List

import httpx

from docflow.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)

MOCK_VISION_TEXT = "[mock] rozpoznany tekst"
MOCK_TRANSCRIPT = "[mock] transkrypcja nagrania"


class LLMClientError(RuntimeError):
    """Raised when the model endpoint rejects a request or returns no content."""


def build_vision_messages(provider: str, prompt: str, image_base64: str) -> List[Dict[str, Any]]:
    """Return chat messages carrying one image in the provider's expected shape.

    Ollama reads raw base64 from an ``images`` field on the message; OpenAI-style
    endpoints expect an ``image_url`` content part holding a data URL.
    """

    if provider == "ollama":
        return [{"role": "user", "content": prompt, "images": [image_base64]}]
    return [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:image/png;base64,{image_base64}", "detail": "high"},
                },
            ],
        }
    ]


class LLMClient:
    """Thin wrapper over ``/chat/completions`` and ``/audio/transcriptions``."""

    def __init__(
        self,
        *,
        provider: str | None = None,
        settings: Settings | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        llm = self._settings.llm
        self.provider = (provider or llm.provider).lower()
        if self.provider == "openai":
            self.base_url, self.api_key = llm.openai_base_url, llm.openai_api_key
        else:
            self.base_url, self.api_key = llm.ollama_base_url, llm.ollama_api_key
        self._timeout = llm.request_timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.Client:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        return httpx.Client(
            base_url=self.base_url.rstrip("/"),
            headers=headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    def vision_chat(self, *, prompt: str, image_base64: str, model: str | None = None) -> str:
        """Send one image with ``prompt`` and return the model's text reply."""

        if self.provider == "mock":
            return MOCK_VISION_TEXT
        payload = {
            "model": model or self._settings.llm.vision_model,
            "messages": build_vision_messages(self.provider, prompt, image_base64),
            "max_tokens": self._settings.llm.max_tokens,
            "temperature": 0.1,
        }
        with self._client() as client:
            response = client.post("/chat/completions", json=payload)
            response.raise_for_status()
            body = response.json()
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMClientError("Vision response contained no choices") from exc
        LOGGER.debug("Vision reply received provider=%s chars=%s", self.provider, len(content or ""))
        return content or ""

    def transcribe_audio(self, audio_path: Path | str, *, model: str | None = None, language: str | None = None) -> str:
        """Upload an audio file and return its transcript text."""

        if self.provider == "mock":
            return MOCK_TRANSCRIPT
        path = Path(audio_path)
        data = {
            "model": model or self._settings.llm.transcription_model,
            "language": language or self._settings.llm.transcription_language,
            "response_format": "json",
        }
        with path.open("rb") as handle, self._client() as client:
            response = client.post(
                "/audio/transcriptions",
                data=data,
                files={"file": (path.name, handle, "audio/mpeg")},
            )
            response.raise_for_status()
            body = response.json()
        text = body.get("text") if isinstance(body, dict) else None
        if text is None:
            raise LLMClientError("Transcription response contained no text")
        return text


__all__ = ["LLMClient", "LLMClientError", "build_vision_messages"]
