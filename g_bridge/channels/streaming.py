"""Incremental draft delivery and size-limited chunking."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any, Protocol

from loguru import logger

from g_bridge.utils.helpers import truncate_text

MIN_SPLIT_RATIO = 0.3
DEFAULT_EDIT_INTERVAL_S = 1.2


def chunk_text(text: str, limit: int) -> list[str]:
    """
    Split ``text`` into pieces no longer than ``limit``.

    Prefers a paragraph break, then a line break, then a space, as long as
    the break falls in the last 70% of the window; otherwise cuts hard.
    Only the separator a split happens on is dropped, so indentation and
    other whitespace inside the text survive.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")
    if len(text) <= limit:
        return [text] if text else []

    chunks: list[str] = []
    remaining = text
    min_split = max(int(limit * MIN_SPLIT_RATIO), 1)
    while len(remaining) > limit:
        window = remaining[:limit]
        split, skip = limit, 0
        for separator in ("\n\n", "\n", " "):
            idx = window.rfind(separator)
            if idx >= min_split:
                split, skip = idx, len(separator)
                break
        chunk = remaining[:split]
        if chunk:
            chunks.append(chunk)
        remaining = remaining[split + skip :]
    if remaining:
        chunks.append(remaining)
    return chunks


class DraftTarget(Protocol):
    """Platform operations needed to stream a reply into one message."""

    async def create_draft(self, text: str) -> Any: ...

    async def edit_draft(self, handle: Any, text: str, final: bool = False) -> None: ...

    async def discard_draft(self, handle: Any) -> None: ...

    async def send_text(self, text: str) -> None: ...


class DraftStreamer:
    """
    Keeps at most one draft message per turn and edits it in place.

    Edits are throttled to ``min_interval`` seconds; tokens arriving in
    between only update the pending text.
    """

    def __init__(
        self,
        target: DraftTarget,
        limit: int,
        min_interval: float = DEFAULT_EDIT_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.target = target
        self.limit = limit
        self.min_interval = min_interval
        self._clock = clock
        self._handle: Any = None
        self._disabled = False
        self._last_edit = 0.0
        self._last_text = ""
        self.edits = 0

    @property
    def started(self) -> bool:
        return self._handle is not None

    def _preview(self, text: str) -> str:
        return truncate_text(text, self.limit)

    async def update(self, text: str) -> None:
        if self._disabled or not text.strip():
            return
        preview = self._preview(text)
        if self._handle is None:
            try:
                self._handle = await self.target.create_draft(preview)
            except Exception as e:
                logger.warning(f"Draft creation failed, falling back to a single reply: {e}")
                self._disabled = True
                return
            self._last_edit = self._clock()
            self._last_text = preview
            return

        now = self._clock()
        if now - self._last_edit < self.min_interval or preview == self._last_text:
            return
        try:
            await self.target.edit_draft(self._handle, preview)
            self.edits += 1
        except Exception as e:
            logger.debug(f"Draft edit skipped: {e}")
        self._last_edit = now
        self._last_text = preview

    async def finalize(self, text: str) -> None:
        """Deliver the complete reply, replacing the draft when needed."""
        chunks = chunk_text(text, self.limit) or [text]
        if self._handle is not None and len(chunks) == 1:
            try:
                await self.target.edit_draft(self._handle, chunks[0], final=True)
                return
            except Exception as e:
                logger.warning(f"Final draft edit failed, resending as new message: {e}")

        if self._handle is not None:
            try:
                await self.target.discard_draft(self._handle)
            except Exception as e:
                logger.debug(f"Draft discard failed: {e}")
            self._handle = None

        for chunk in chunks:
            await self.target.send_text(chunk)
