"""Assemble the built-in tool set for one assistant."""

from __future__ import annotations

from loguru import logger

from g_bridge.agent.tools.base import Tool
from g_bridge.agent.tools.filesystem import ReadFileTool, WriteFileTool
from g_bridge.agent.tools.message import SendFileTool, SendMessageTool
from g_bridge.agent.tools.registry import ToolRegistry
from g_bridge.agent.tools.shell import BashTool
from g_bridge.agent.tools.web import WebFetchTool, WebSearchTool
from g_bridge.config.schema import AssistantToolsConfig


def build_tool_registry(
    config: AssistantToolsConfig,
    extra_tools: list[Tool] | None = None,
) -> ToolRegistry:
    """Register every enabled built-in tool, then freeze the registry."""
    available: dict[str, Tool] = {
        "send_message": SendMessageTool(),
        "send_file": SendFileTool(),
        "read_file": ReadFileTool(),
        "write_file": WriteFileTool(),
        "bash": BashTool(timeout_s=config.bash_timeout, max_output=config.bash_max_output),
        "web_fetch": WebFetchTool(max_chars=config.web_fetch_max_chars),
        "web_search": WebSearchTool(),
    }
    registry = ToolRegistry()
    for name in config.enabled:
        tool = available.get(name)
        if tool is None:
            logger.warning(f"Unknown built-in tool in config: {name}")
            continue
        registry.register(tool)
    for tool in extra_tools or []:
        registry.register(tool)
    return registry.freeze()
