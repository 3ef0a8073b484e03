"""Tool registry for dynamic tool management."""

from __future__ import annotations

from typing import Any

from g_bridge.agent.tools.base import Tool, ToolContext


class ToolRegistry:
    """
    Registry for agent tools.

    Populated once when a connection is built, then frozen.
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}
        self._frozen = False

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        if self._frozen:
            raise RuntimeError(f"Tool registry is frozen; cannot register '{tool.name}'")
        self._tools[tool.name] = tool

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions in OpenAI format."""
        return [tool.to_schema() for tool in self._tools.values()]

    async def execute(self, name: str, params: dict[str, Any], ctx: ToolContext) -> str:
        """
        Execute a tool by name.

        Raises:
            KeyError: If no tool with that name is registered.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise KeyError(name)
        return await tool.execute(ctx, **params)

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
