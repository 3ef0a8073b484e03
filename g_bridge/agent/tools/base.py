"""Base class for agent tools."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass
class ToolContext:
    """
    Per-turn context handed to every tool call.

    Built fresh for each inbound message, so tools never hold a
    conversation-specific handle between calls.
    """

    assistant_id: str
    conversation_id: str
    cwd: Path
    send_text: Callable[[str], Awaitable[None]] | None = None
    send_file: Callable[[Path], Awaitable[None]] | None = None
    extras: dict[str, Any] = field(default_factory=dict)


class Tool(ABC):
    """
    Abstract base class for agent tools.

    Tools are capabilities the model can invoke during a turn, such as
    reading files, fetching a URL, or sending a progress message.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Tool name used in function calls."""

    @property
    @abstractmethod
    def description(self) -> str:
        """Description of what the tool does."""

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON Schema for tool parameters."""

    @abstractmethod
    async def execute(self, ctx: ToolContext, **kwargs: Any) -> str:
        """
        Execute the tool with given parameters.

        Args:
            ctx: Context of the message being answered.
            **kwargs: Tool-specific parameters.

        Returns:
            String result of the tool execution.
        """

    def to_schema(self) -> dict[str, Any]:
        """Convert tool to OpenAI function schema format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }
