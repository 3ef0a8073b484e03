"""Workspace memory consumed through ``build_context``."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Protocol

from loguru import logger

from g_bridge.utils.helpers import ensure_dir


class MemoryProvider(Protocol):
    """Anything that can turn a prompt into extra system-prompt context."""

    def build_context(self, prompt: str, assistant_id: str | None = None, cwd: str | None = None) -> str: ...

    def append_daily(self, line: str, assistant_id: str | None = None) -> None: ...


class NullMemory:
    def build_context(self, prompt: str, assistant_id: str | None = None, cwd: str | None = None) -> str:
        return ""

    def append_daily(self, line: str, assistant_id: str | None = None) -> None:
        return None


class WorkspaceMemory:
    """
    Plain markdown memory under a workspace directory.

    Layout:
        memory/MEMORY.md                 long-term notes, shared
        memory/<assistant_id>/MEMORY.md  per-assistant notes
        memory/daily/YYYY-MM-DD.md       daily log appended by the bridge
    """

    def __init__(self, workspace: Path, max_chars: int = 6000):
        self.workspace = Path(workspace).expanduser()
        self.max_chars = max_chars
        self.memory_dir = self.workspace / "memory"

    def _read(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8").strip() if path.is_file() else ""
        except OSError as e:
            logger.warning(f"Memory file unreadable {path}: {e}")
            return ""

    def _daily_path(self, day: datetime | None = None) -> Path:
        stamp = (day or datetime.now()).strftime("%Y-%m-%d")
        return self.memory_dir / "daily" / f"{stamp}.md"

    def build_context(self, prompt: str, assistant_id: str | None = None, cwd: str | None = None) -> str:
        sections: list[str] = []
        shared = self._read(self.memory_dir / "MEMORY.md")
        if shared:
            sections.append(f"## Long-term memory\n{shared}")
        if assistant_id:
            own = self._read(self.memory_dir / assistant_id / "MEMORY.md")
            if own:
                sections.append(f"## Assistant notes\n{own}")
        today = self._read(self._daily_path())
        if today:
            sections.append(f"## Today\n{today}")
        if cwd:
            sections.append(f"Working directory: {cwd}")

        context = "\n\n".join(sections)
        if len(context) > self.max_chars:
            # keep the most recent tail of the memory text
            context = context[-self.max_chars :]
        return context

    def append_daily(self, line: str, assistant_id: str | None = None) -> None:
        """Append one bullet to today's daily log."""
        path = self._daily_path()
        ensure_dir(path.parent)
        prefix = f"[{assistant_id}] " if assistant_id else ""
        stamp = datetime.now().strftime("%H:%M")
        with open(path, "a", encoding="utf-8") as fh:
            fh.write(f"- {stamp} {prefix}{line.strip()}\n")
