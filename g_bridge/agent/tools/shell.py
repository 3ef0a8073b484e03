"""Shell command tool."""

from __future__ import annotations

import asyncio
import os
from typing import Any

from loguru import logger

from g_bridge.agent.tools.base import Tool, ToolContext


class BashTool(Tool):
    """Run a shell command in the assistant's working directory."""

    def __init__(self, timeout_s: float = 15.0, max_output: int = 3000):
        self.timeout_s = timeout_s
        self.max_output = max_output

    @property
    def name(self) -> str:
        return "bash"

    @property
    def description(self) -> str:
        return (
            "Run a shell command on this machine (find files, read text, inspect the system). "
            f"Times out after {self.timeout_s:g}s; output is cut to {self.max_output} characters."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The shell command to run"},
            },
            "required": ["command"],
        }

    async def execute(self, ctx: ToolContext, command: str = "", **kwargs: Any) -> str:
        cmd = (command or "").strip()
        if not cmd:
            return "Error: command is empty"

        cwd = str(ctx.cwd) if ctx.cwd.is_dir() else os.getcwd()
        process = await asyncio.create_subprocess_shell(
            cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning(f"bash tool timed out after {self.timeout_s}s: {cmd[:80]}")
            return f"Error: command timed out after {self.timeout_s:g}s"

        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace").strip()
        if err:
            out = f"{out}\n[stderr] {err}"
        out = out.strip()
        if process.returncode:
            out = f"[exit {process.returncode}] {out}".strip()
        return out[: self.max_output] or "(no output)"
