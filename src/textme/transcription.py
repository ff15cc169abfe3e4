"""Voice-note transcription through the OpenAI audio API."""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

import httpx

logger = logging.getLogger("textme.transcription")


class WhisperTranscriber:
    """Download an audio attachment and transcribe it.

    ``transcribe`` never raises: any failure is logged and returns None so the
    caller can fall back to a plain media notice.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "whisper-1",
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Any) -> WhisperTranscriber | None:
        if not settings.openai_api_key:
            return None
        return cls(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            model=settings.transcription_model,
        )

    def transcribe(self, audio_url: str) -> str | None:
        suffix = PurePosixPath(urlparse(audio_url).path).suffix.lower() or ".m4a"
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                audio = client.get(audio_url, follow_redirects=True)
                audio.raise_for_status()
                response = client.post(
                    f"{self.base_url}/audio/transcriptions",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    data={"model": self.model},
                    files={"file": (f"audio{suffix}", audio.content)},
                )
                response.raise_for_status()
                text = str(response.json().get("text") or "").strip()
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.warning("Transcription failed for %s: %s", audio_url, exc)
            return None
        if not text:
            return None
        logger.info("Transcribed voice note (%d chars)", len(text))
        return text
