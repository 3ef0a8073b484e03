"""Detached asyncio tasks whose failures are logged instead of raised."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

from loguru import logger


def spawn_logged(
    coro: Coroutine[Any, Any, Any],
    name: str,
    registry: set[asyncio.Task[Any]],
) -> asyncio.Task[Any]:
    """Start ``coro`` as a tracked fire-and-forget task."""
    task = asyncio.create_task(coro, name=name)
    registry.add(task)

    def _done(finished: asyncio.Task[Any]) -> None:
        registry.discard(finished)
        if finished.cancelled():
            return
        exc = finished.exception()
        if exc is not None:
            logger.error(f"Background task {name} failed: {exc}")

    task.add_done_callback(_done)
    return task
