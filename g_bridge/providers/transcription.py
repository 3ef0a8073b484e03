"""Voice-note transcription through Groq's Whisper endpoint."""

from __future__ import annotations

import os
from pathlib import Path

import httpx
from loguru import logger

GROQ_TRANSCRIPTION_URL = "https://api.groq.com/openai/v1/audio/transcriptions"


class GroqTranscriptionProvider:
    """
    Turns voice attachments into prompt text.

    Used by the content extractor when a platform delivers audio without
    its own speech recognition result. Returns "" on any failure so the
    extractor can fall back to a placeholder.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "whisper-large-v3-turbo",
        timeout_s: float = 60.0,
    ):
        self.api_key = api_key or os.environ.get("GROQ_API_KEY", "")
        self.model = model
        self.timeout_s = timeout_s

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def transcribe(self, file_path: str | Path) -> str:
        if not self.api_key:
            logger.debug("Transcription skipped: no Groq API key")
            return ""
        path = Path(file_path)
        if not path.is_file():
            logger.warning(f"Audio file missing for transcription: {path}")
            return ""

        try:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                response = await client.post(
                    GROQ_TRANSCRIPTION_URL,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    files={
                        "file": (path.name, path.read_bytes()),
                        "model": (None, self.model),
                        "response_format": (None, "json"),
                    },
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError, OSError) as e:
            logger.error(f"Groq transcription failed for {path.name}: {e}")
            return ""

        return str(data.get("text", "") or "").strip() if isinstance(data, dict) else ""
