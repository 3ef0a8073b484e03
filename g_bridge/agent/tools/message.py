"""Tools that talk back to the current conversation mid-turn."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from g_bridge.agent.tools.base import Tool, ToolContext

MAX_SEND_FILE_BYTES = 20 * 1024 * 1024


class SendMessageTool(Tool):
    """Send an interim progress message before the final reply."""

    @property
    def name(self) -> str:
        return "send_message"

    @property
    def description(self) -> str:
        return (
            "Immediately send a text/markdown message to the current conversation. "
            "Use it to report progress during long tasks. Your final reply is sent "
            "automatically, so do not repeat it here."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "text": {"type": "string", "description": "Message content (markdown allowed)"},
            },
            "required": ["text"],
        }

    async def execute(self, ctx: ToolContext, text: str = "", **kwargs: Any) -> str:
        content = (text or "").strip()
        if not content:
            return "Error: text is empty"
        if ctx.send_text is None:
            return "Error: this conversation does not accept progress messages"
        await ctx.send_text(content)
        return "Message sent"


class SendFileTool(Tool):
    """Upload a local file to the current conversation."""

    @property
    def name(self) -> str:
        return "send_file"

    @property
    def description(self) -> str:
        return (
            "Send a local file (image, PDF, document, video) to the user in the "
            "current conversation. file_path must be readable on this machine."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path of the file to send"},
            },
            "required": ["file_path"],
        }

    async def execute(self, ctx: ToolContext, file_path: str = "", **kwargs: Any) -> str:
        raw = (file_path or "").strip()
        if not raw:
            return "Error: file_path is required"
        path = Path(raw).expanduser()
        if not path.is_absolute():
            path = ctx.cwd / path
        if not path.is_file():
            return f"Error: file not found: {raw}"
        size = path.stat().st_size
        if size > MAX_SEND_FILE_BYTES:
            return f"Error: file is {size} bytes, over the {MAX_SEND_FILE_BYTES} byte limit"
        if ctx.send_file is None:
            return "Error: file sending is not supported on this channel"
        await ctx.send_file(path)
        return f"File sent: {path.name}"
