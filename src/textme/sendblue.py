from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

import httpx

from .models import InboundMessage
from .transcription import WhisperTranscriber

logger = logging.getLogger("textme.sendblue")

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".heic", ".webp"}
AUDIO_EXTENSIONS = {".m4a", ".mp3", ".wav", ".caf", ".aac", ".ogg", ".amr"}


class TransportError(RuntimeError):
    """Sendblue request failed."""


def media_kind(media_url: str) -> str:
    suffix = PurePosixPath(urlparse(media_url).path).suffix.lower()
    if suffix in IMAGE_EXTENSIONS:
        return "image"
    if suffix in AUDIO_EXTENSIONS:
        return "audio"
    return "file"


def media_notice(media_url: str, transcriber: WhisperTranscriber | None = None) -> str:
    """Textual stand-in for an attachment so the worker knows it exists.

    Voice notes are transcribed when a transcriber is configured; a failed
    transcription falls back to the plain notice.
    """
    kind = media_kind(media_url)
    if kind == "image":
        return f"[User sent an image: {media_url}]"
    if kind == "audio":
        transcript = transcriber.transcribe(media_url) if transcriber is not None else None
        if transcript:
            return f'[Voice note transcription: "{transcript}"]'
        return f"[User sent a voice note: {media_url}]"
    return f"[User sent a file: {media_url}]"


def _to_inbound(item: dict[str, Any], transcriber: WhisperTranscriber | None = None) -> InboundMessage | None:
    handle = item.get("message_handle")
    sender = item.get("from_number")
    if not handle or not sender:
        return None
    text = str(item.get("content") or "").strip()
    media_url = item.get("media_url") or None
    if media_url:
        notice = media_notice(str(media_url), transcriber)
        text = f"{text}\n\n{notice}" if text else notice
    return InboundMessage(
        id=str(handle),
        sender=str(sender),
        text=text,
        received_at=str(item.get("date_sent") or item.get("created_at") or ""),
        media_url=str(media_url) if media_url else None,
    )


class SendblueClient:
    """Minimal Sendblue API client: poll inbound, send outbound."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        from_number: str,
        base_url: str = "https://api.sendblue.com/api",
        timeout: float = 30.0,
        fetch_limit: int = 50,
        transport: httpx.BaseTransport | None = None,
        transcriber: WhisperTranscriber | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_secret = api_secret
        self.from_number = from_number
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.fetch_limit = fetch_limit
        self._transport = transport
        self.transcriber = transcriber

    @classmethod
    def from_settings(cls, settings: Any) -> SendblueClient:
        return cls(
            api_key=settings.sendblue_api_key,
            api_secret=settings.sendblue_api_secret,
            from_number=settings.sendblue_phone_number,
            base_url=settings.sendblue_base_url,
            timeout=settings.sendblue_timeout_seconds,
            fetch_limit=settings.sendblue_fetch_limit,
            transcriber=WhisperTranscriber.from_settings(settings),
        )

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={
                "sb-api-key-id": self.api_key,
                "sb-api-secret-key": self.api_secret,
                "Content-Type": "application/json",
            },
            transport=self._transport,
        )

    def fetch_inbound(self, since: str) -> list[InboundMessage]:
        """Inbound (not outbound) messages created at or after ``since``, oldest first."""
        try:
            with self._client() as client:
                response = client.get(
                    "/v2/messages",
                    params={"limit": self.fetch_limit, "created_at_gte": since},
                )
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise TransportError(f"Failed to fetch messages: {exc}") from exc

        rows = payload.get("data", []) if isinstance(payload, dict) else payload
        messages = []
        for item in rows or []:
            if not isinstance(item, dict) or item.get("is_outbound"):
                continue
            message = _to_inbound(item, self.transcriber)
            if message is not None:
                messages.append(message)
        messages.sort(key=lambda m: m.received_at)
        return messages

    def send(self, recipient: str, text: str, media_url: str | None = None) -> str:
        body: dict[str, Any] = {
            "number": recipient,
            "content": text,
            "from_number": self.from_number,
        }
        if media_url:
            body["media_url"] = media_url
        try:
            with self._client() as client:
                response = client.post("/send-message", json=body)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise TransportError(f"Failed to send message to {recipient}: {exc}") from exc
        message_id = str(payload.get("message_handle") or payload.get("id") or "")
        logger.info("Sent message to %s (%d chars) id=%s", recipient, len(text), message_id)
        return message_id
