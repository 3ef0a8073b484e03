"""Context builder for assembling agent prompts."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from g_bridge.agent.memory import MemoryProvider, NullMemory
from g_bridge.config.schema import AssistantConfig

OUTPUT_RULES = """## Output Rules
- Reply in the language the user wrote in.
- Keep replies short enough for a chat window; use markdown sparingly.
- Use `send_message` only for progress updates during long tasks; your final reply is sent automatically.
- Use `send_file` to deliver files instead of pasting their bytes."""


class ContextBuilder:
    """
    Builds the system prompt and message list for one assistant turn.

    Memory is consumed verbatim from ``MemoryProvider.build_context``.
    """

    def __init__(self, memory: MemoryProvider | None = None):
        self.memory = memory or NullMemory()

    def build_system_prompt(
        self,
        assistant: AssistantConfig,
        current_message: str,
        platform: str = "",
        tool_names: list[str] | None = None,
    ) -> str:
        """
        Build the system prompt for one turn.

        Args:
            assistant: Assistant whose persona and cwd apply.
            current_message: The user message, used for memory retrieval.
            platform: Chat platform name shown to the model.
            tool_names: Names of the tools available this turn.

        Returns:
            Complete system prompt.
        """
        parts = [self._get_identity(assistant, platform)]

        if assistant.persona.strip():
            parts.append(f"## Persona\n{assistant.persona.strip()}")

        memory = self.memory.build_context(
            current_message,
            assistant_id=assistant.id,
            cwd=assistant.cwd or None,
        )
        if memory:
            parts.append(f"# Memory\n\n{memory}")

        if tool_names:
            parts.append("## Tools\nAvailable: " + ", ".join(sorted(tool_names)))

        parts.append(OUTPUT_RULES)
        return "\n\n---\n\n".join(parts)

    def _get_identity(self, assistant: AssistantConfig, platform: str) -> str:
        now = datetime.now().strftime("%Y-%m-%d %H:%M (%A)")
        where = f" on {platform}" if platform else ""
        return (
            f"# {assistant.name}\n\n"
            f"You are {assistant.name}, an AI assistant chatting with users{where}.\n"
            f"Current time: {now}"
        )

    def build_messages(
        self,
        system_prompt: str,
        history: list[dict[str, str]],
    ) -> list[dict[str, Any]]:
        """System prompt first, then the conversation history (latest user turn last)."""
        messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        messages.extend(dict(m) for m in history)
        return messages

    def add_tool_result(
        self,
        messages: list[dict[str, Any]],
        tool_call_id: str,
        tool_name: str,
        result: str,
    ) -> list[dict[str, Any]]:
        """Append a tool result message."""
        messages.append(
            {
                "role": "tool",
                "tool_call_id": tool_call_id,
                "name": tool_name,
                "content": result,
            }
        )
        return messages

    def add_assistant_message(
        self,
        messages: list[dict[str, Any]],
        content: str | None,
        tool_calls: list[dict[str, Any]] | None = None,
    ) -> list[dict[str, Any]]:
        """Append an assistant message, with tool calls when present."""
        msg: dict[str, Any] = {"role": "assistant", "content": content or ""}
        if tool_calls:
            msg["tool_calls"] = tool_calls
        messages.append(msg)
        return messages

    def record_exchange(
        self,
        assistant: AssistantConfig,
        platform: str,
        user_text: str,
        reply: str,
    ) -> None:
        """Log one completed exchange to the memory daily log."""
        if not user_text.strip():
            return
        summary = " ".join(reply.split())[:200]
        self.memory.append_daily(
            f"[{platform}] user: {' '.join(user_text.split())[:200]} | {assistant.name}: {summary}",
            assistant_id=assistant.id,
        )
