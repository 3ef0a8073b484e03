"""LLM provider abstraction module."""

from g_bridge.providers.base import LLMProvider, LLMResponse, StreamEvent, ToolCallRequest

__all__ = ["LLMProvider", "LLMResponse", "StreamEvent", "ToolCallRequest"]
