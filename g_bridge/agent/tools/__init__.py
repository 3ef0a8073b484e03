"""Agent tools module."""

from g_bridge.agent.tools.base import Tool, ToolContext
from g_bridge.agent.tools.registry import ToolRegistry

__all__ = ["Tool", "ToolContext", "ToolRegistry"]
