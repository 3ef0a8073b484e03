"""File read/write tools scoped to the assistant's working directory."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from g_bridge.agent.tools.base import Tool, ToolContext

DEFAULT_READ_CHARS = 10_000
MAX_READ_CHARS = 50_000


def _resolve(ctx: ToolContext, raw: str) -> Path:
    path = Path(raw).expanduser()
    return path if path.is_absolute() else (ctx.cwd / path)


class ReadFileTool(Tool):

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return (
            "Read a text file and return its content (up to 10000 characters by default). "
            "Binary files such as images or PDFs should be sent with send_file instead."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path, absolute or relative to cwd"},
                "max_chars": {"type": "integer", "description": "Maximum characters (max 50000)"},
            },
            "required": ["path"],
        }

    async def execute(
        self, ctx: ToolContext, path: str = "", max_chars: int = DEFAULT_READ_CHARS, **kwargs: Any
    ) -> str:
        if not (path or "").strip():
            return "Error: path is required"
        file_path = _resolve(ctx, path.strip())
        if not file_path.exists():
            return f"Error: file not found: {path}"
        if not file_path.is_file():
            return f"Error: not a file: {path}"
        limit = max(1, min(int(max_chars or DEFAULT_READ_CHARS), MAX_READ_CHARS))
        content = file_path.read_text(encoding="utf-8", errors="replace")
        if len(content) > limit:
            return f"{content[:limit]}\n…(truncated, {len(content)} characters total)"
        return content


class WriteFileTool(Tool):

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return (
            "Write text to a file, creating parent directories as needed. "
            "Overwrites by default; set append=true to append."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path, absolute or relative to cwd"},
                "content": {"type": "string", "description": "Text to write"},
                "append": {"type": "boolean", "description": "Append instead of overwrite"},
            },
            "required": ["path", "content"],
        }

    async def execute(
        self, ctx: ToolContext, path: str = "", content: str = "", append: bool = False, **kwargs: Any
    ) -> str:
        if not (path or "").strip():
            return "Error: path is required"
        file_path = _resolve(ctx, path.strip())
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "a" if append else "w", encoding="utf-8") as fh:
            fh.write(content or "")
        verb = "Appended" if append else "Wrote"
        return f"{verb} {file_path} ({file_path.stat().st_size} bytes)"
