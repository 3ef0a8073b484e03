"""Agent core module."""

from g_bridge.agent.context import ContextBuilder
from g_bridge.agent.loop import EXHAUSTED_REPLY, MAX_TOOL_TURNS, AgentLoop, AgentTurnResult

__all__ = ["AgentLoop", "AgentTurnResult", "ContextBuilder", "EXHAUSTED_REPLY", "MAX_TOOL_TURNS"]
