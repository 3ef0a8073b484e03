"""Platform payloads and their mapping to prompt text plus attachments."""

from __future__ import annotations

import re
import tempfile
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import httpx
from loguru import logger

MAX_MEDIA_BYTES = 20 * 1024 * 1024
MEDIA_TIMEOUT_S = 30.0
EMPTY_TEXT = "[empty message]"

_LEADING_MENTION = re.compile(r"^@\S+\s*")


@dataclass(frozen=True, slots=True)
class MediaRef:
    """Opaque pointer to platform media (download code, file id, ...)."""

    code: str
    file_name: str = ""


@dataclass(frozen=True, slots=True)
class TextPayload:
    text: str


@dataclass(frozen=True, slots=True)
class VoicePayload:
    media: MediaRef | None = None
    recognition: str = ""


@dataclass(frozen=True, slots=True)
class ImagePayload:
    media: MediaRef | None = None
    caption: str = ""


@dataclass(frozen=True, slots=True)
class VideoPayload:
    media: MediaRef | None = None
    caption: str = ""


@dataclass(frozen=True, slots=True)
class FilePayload:
    media: MediaRef | None = None
    file_name: str = ""
    caption: str = ""


@dataclass(frozen=True, slots=True)
class RichSegment:
    """One part of a composite message: ``text``, ``picture`` or ``mention``."""

    kind: str
    text: str = ""
    media: MediaRef | None = None


@dataclass(frozen=True, slots=True)
class RichTextPayload:
    segments: tuple[RichSegment, ...] = ()


@dataclass(frozen=True, slots=True)
class UnsupportedPayload:
    kind: str
    text: str = ""


Payload = (
    TextPayload
    | VoicePayload
    | ImagePayload
    | VideoPayload
    | FilePayload
    | RichTextPayload
    | UnsupportedPayload
)

MediaFetcher = Callable[[MediaRef], Awaitable[Path | None]]


class Transcriber(Protocol):
    async def transcribe(self, file_path: str | Path) -> str: ...


@dataclass
class ExtractedContent:
    """Canonical inbound content handed to the agent loop."""

    text: str
    attachments: list[str] = field(default_factory=list)

    def as_prompt(self) -> str:
        if not self.attachments:
            return self.text
        notes = "\n".join(f"[Attachment: {path}]" for path in self.attachments)
        return f"{self.text}\n\n{notes}"


def strip_leading_mention(text: str) -> str:
    return _LEADING_MENTION.sub("", text.strip(), count=1).strip()


def placeholder_for(payload: Payload) -> str:
    if isinstance(payload, TextPayload):
        return EMPTY_TEXT
    if isinstance(payload, VoicePayload):
        return "[voice message]"
    if isinstance(payload, ImagePayload):
        return "[image message]"
    if isinstance(payload, VideoPayload):
        return "[video message]"
    if isinstance(payload, FilePayload):
        return f"[file: {payload.file_name or 'unnamed'}]"
    if isinstance(payload, RichTextPayload):
        return EMPTY_TEXT
    return f"[{payload.kind or 'unknown'} message]"


class ContentExtractor:
    """
    Turns a platform payload into ``ExtractedContent``.

    Never raises: download and transcription failures degrade to
    placeholder text so the agent loop always gets a prompt.
    """

    def __init__(self, fetch_media: MediaFetcher, transcriber: Transcriber | None = None):
        self._fetch_media = fetch_media
        self._transcriber = transcriber

    async def extract(self, payload: Payload) -> ExtractedContent:
        try:
            return await self._extract(payload)
        except Exception as e:
            logger.warning(f"Content extraction failed for {type(payload).__name__}: {e}")
            return ExtractedContent(text=placeholder_for(payload))

    async def _extract(self, payload: Payload) -> ExtractedContent:
        if isinstance(payload, TextPayload):
            return ExtractedContent(text=strip_leading_mention(payload.text) or EMPTY_TEXT)

        if isinstance(payload, VoicePayload):
            path = await self._download(payload.media)
            text = payload.recognition.strip()
            if not text and path and self._transcriber:
                text = (await self._transcriber.transcribe(path)).strip()
            return ExtractedContent(
                text=text or placeholder_for(payload),
                attachments=[str(path)] if path else [],
            )

        if isinstance(payload, (ImagePayload, VideoPayload, FilePayload)):
            path = await self._download(payload.media)
            text = payload.caption.strip() or placeholder_for(payload)
            if isinstance(payload, FilePayload) and payload.caption and payload.file_name:
                text = f"{payload.caption.strip()}\n[file: {payload.file_name}]"
            return ExtractedContent(text=text, attachments=[str(path)] if path else [])

        if isinstance(payload, RichTextPayload):
            parts: list[str] = []
            attachments: list[str] = []
            for segment in payload.segments:
                if segment.kind == "text" and segment.text.strip():
                    parts.append(segment.text.strip())
                elif segment.kind == "picture":
                    path = await self._download(segment.media)
                    if path:
                        attachments.append(str(path))
                    else:
                        parts.append("[image]")
                # mention segments carry no prompt content
            text = strip_leading_mention(" ".join(parts))
            if not text:
                text = "[image message]" if attachments else EMPTY_TEXT
            return ExtractedContent(text=text, attachments=attachments)

        text = payload.text.strip() if payload.text else ""
        return ExtractedContent(text=text or placeholder_for(payload))

    async def _download(self, media: MediaRef | None) -> Path | None:
        if media is None or not media.code:
            return None
        try:
            return await self._fetch_media(media)
        except Exception as e:
            logger.warning(f"Media download failed ({media.code[:32]}): {e}")
            return None


class MediaDownloader:
    """Bounded HTTP download of remote media into a temp directory."""

    def __init__(
        self,
        prefix: str,
        max_bytes: int = MAX_MEDIA_BYTES,
        timeout_s: float = MEDIA_TIMEOUT_S,
        directory: Path | None = None,
    ):
        self.prefix = prefix
        self.max_bytes = max_bytes
        self.timeout_s = timeout_s
        self.directory = directory or Path(tempfile.gettempdir())

    async def download(self, url: str, file_name: str = "", headers: dict[str, str] | None = None) -> Path | None:
        """Fetch ``url`` to a local file. Returns None when over the size limit."""
        async with httpx.AsyncClient(timeout=self.timeout_s, follow_redirects=True) as client:
            async with client.stream("GET", url, headers=headers) as response:
                response.raise_for_status()
                declared = int(response.headers.get("content-length") or 0)
                if declared > self.max_bytes:
                    logger.warning(f"Media too large ({declared} bytes), skipping download")
                    return None
                target = self.directory / self._file_name(file_name, response.headers.get("content-type", ""))
                received = 0
                with open(target, "wb") as fh:
                    async for chunk in response.aiter_bytes():
                        received += len(chunk)
                        if received > self.max_bytes:
                            break
                        fh.write(chunk)
        if received > self.max_bytes:
            target.unlink(missing_ok=True)
            logger.warning(f"Media exceeded {self.max_bytes} bytes, download dropped")
            return None
        logger.debug(f"Downloaded media to {target} ({received} bytes)")
        return target

    def _file_name(self, file_name: str, content_type: str) -> str:
        stamp = time.time_ns()
        if file_name:
            safe = re.sub(r"[^\w.\-]+", "_", Path(file_name).name)
            return f"{self.prefix}-{stamp}-{safe}"
        subtype = content_type.split(";", 1)[0].strip().split("/")[-1] or "bin"
        ext = "jpg" if subtype == "jpeg" else re.sub(r"[^\w]+", "", subtype) or "bin"
        return f"{self.prefix}-{stamp}.{ext}"

    def save_bytes(self, data: bytes, file_name: str = "", content_type: str = "") -> Path | None:
        """Write media fetched by a platform SDK. Returns None when over the size limit."""
        if len(data) > self.max_bytes:
            logger.warning(f"Media too large ({len(data)} bytes), skipping save")
            return None
        target = self.directory / self._file_name(file_name, content_type)
        target.write_bytes(data)
        logger.debug(f"Saved media to {target} ({len(data)} bytes)")
        return target
