"""Small filesystem and text helpers shared across the bridge."""

from __future__ import annotations

import os
from pathlib import Path


def get_data_path() -> Path:
    """Return the active data directory (``G_BRIDGE_HOME`` or ``~/.g-bridge``)."""
    override = os.environ.get("G_BRIDGE_HOME", "").strip()
    base = Path(override).expanduser() if override else Path.home() / ".g-bridge"
    return ensure_dir(base)


def ensure_dir(path: Path) -> Path:
    """Create a directory (and parents) if missing and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def truncate_text(text: str, limit: int, suffix: str = "…") -> str:
    """Cut text to at most ``limit`` characters, marking the cut with ``suffix``."""
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    if len(suffix) >= limit:
        return text[:limit]
    return text[: limit - len(suffix)] + suffix
