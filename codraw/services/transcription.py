from __future__ import annotations

import logging

import httpx

from codraw.core.exceptions import ConfigurationError, TranscriptionError
from codraw.core.settings import settings

logger = logging.getLogger(__name__)


class Transcriber:
    """Speech-to-text through the OpenAI transcription endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout_seconds: float = 60.0,
    ):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.model = model or settings.transcription_model
        self.timeout_seconds = timeout_seconds

    def transcribe(self, audio: bytes, filename: str = "audio.wav", content_type: str = "audio/wav") -> str:
        if not self.api_key:
            raise ConfigurationError("OPENAI_API_KEY not configured")
        if not audio:
            raise TranscriptionError("No audio provided")

        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                resp = client.post(
                    f"{self.base_url}/audio/transcriptions",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    data={"model": self.model},
                    files={"file": (filename, audio, content_type)},
                )
                resp.raise_for_status()
                text = resp.json().get("text") or ""
        except httpx.HTTPStatusError as exc:
            logger.error(
                "transcription.upstream_error",
                extra={"status_code": exc.response.status_code, "body": exc.response.text[:500]},
            )
            raise TranscriptionError("Transcription failed", detail=str(exc)) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("transcription.request_failed", extra={"error": str(exc)})
            raise TranscriptionError("Transcription failed", detail=str(exc)) from exc

        logger.info("transcription.completed", extra={"transcript_length": len(text)})
        return text
