"""Agent loop: bounded tool-using exchange with the model backend."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from g_bridge.agent.context import ContextBuilder
from g_bridge.agent.tools.base import ToolContext
from g_bridge.agent.tools.registry import ToolRegistry
from g_bridge.errors import ModelBackendError
from g_bridge.providers.base import LLMProvider, LLMResponse

MAX_TOOL_TURNS = 8
EXHAUSTED_REPLY = (
    "Sorry, I couldn't finish this within the allowed number of steps. "
    "Please try rephrasing or splitting the request."
)

DeltaCallback = Callable[[str], Awaitable[None]]


@dataclass
class AgentTurnResult:
    content: str
    tool_turns: int = 0
    tool_calls: list[str] = field(default_factory=list)
    exhausted: bool = False
    model: str = ""


class AgentLoop:
    """
    Runs one user turn against the model.

    1. Send system prompt, history and tool definitions to the provider
    2. No tool calls in the response: its text is the reply
    3. Otherwise run each requested tool in order, one at a time
    4. Append the results and ask again, up to ``max_tool_turns`` times
    """

    def __init__(
        self,
        provider: LLMProvider,
        tools: ToolRegistry,
        context: ContextBuilder | None = None,
        model: str | None = None,
        fallback_models: list[str] | None = None,
        max_tool_turns: int = MAX_TOOL_TURNS,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        request_timeout: float = 120.0,
        tool_timeout: float = 60.0,
    ):
        self.provider = provider
        self.tools = tools
        self.context = context or ContextBuilder()
        self.model = model or provider.get_default_model()
        self.model_chain = [self.model] + [m for m in (fallback_models or []) if m and m != self.model]
        self.max_tool_turns = max_tool_turns
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.request_timeout = request_timeout
        self.tool_timeout = tool_timeout

    async def run(
        self,
        system_prompt: str,
        history: list[dict[str, str]],
        ctx: ToolContext,
        on_delta: DeltaCallback | None = None,
    ) -> AgentTurnResult:
        """
        Produce the reply for the last user message in ``history``.

        Raises:
            ModelBackendError: The provider failed on every model in the chain.
        """
        messages = self.context.build_messages(system_prompt, history)
        tool_defs = self.tools.get_definitions() or None
        executed: list[str] = []

        for turn in range(self.max_tool_turns + 1):
            response, active_model = await self._chat_with_model_failover(
                messages=messages,
                tools=tool_defs,
                on_delta=on_delta,
            )

            if not response.has_tool_calls:
                return AgentTurnResult(
                    content=(response.content or "").strip(),
                    tool_turns=turn,
                    tool_calls=executed,
                    model=active_model,
                )

            if turn == self.max_tool_turns:
                break

            tool_call_dicts = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {
                        "name": tc.name,
                        "arguments": json.dumps(tc.arguments, ensure_ascii=False),
                    },
                }
                for tc in response.tool_calls
            ]
            messages = self.context.add_assistant_message(messages, response.content, tool_call_dicts)

            for tool_call in response.tool_calls:
                logger.debug(f"Executing tool: {tool_call.name} with arguments: {tool_call.arguments}")
                result = await self._execute_tool(tool_call.name, tool_call.arguments, ctx)
                executed.append(tool_call.name)
                messages = self.context.add_tool_result(messages, tool_call.id, tool_call.name, result)

        logger.warning(
            f"Agent loop for {ctx.assistant_id}/{ctx.conversation_id} hit the "
            f"{self.max_tool_turns}-turn tool cap"
        )
        return AgentTurnResult(
            content=EXHAUSTED_REPLY,
            tool_turns=self.max_tool_turns,
            tool_calls=executed,
            exhausted=True,
            model=self.model,
        )

    async def _execute_tool(self, name: str, args: dict[str, Any], ctx: ToolContext) -> str:
        """Run one tool; every failure comes back as text for the model."""
        if not self.tools.has(name):
            logger.warning(f"Model requested unknown tool: {name}")
            return f"tool failed: unknown tool '{name}'"
        try:
            result = await asyncio.wait_for(
                self.tools.execute(name, args, ctx),
                timeout=self.tool_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Tool {name} timed out after {self.tool_timeout}s")
            return f"tool failed: timed out after {self.tool_timeout:g}s"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Tool {name} failed: {e}")
            return f"tool failed: {type(e).__name__}: {e}"
        return result if isinstance(result, str) else str(result)

    def _should_failover_model(self, error_text: str) -> bool:
        """Classify whether an LLM error should move on to the next model."""
        text = (error_text or "").lower()
        if not text:
            return False
        retry_markers = (
            "notfounderror",
            "model not found",
            "timeout",
            "timed out",
            "rate limit",
            "ratelimit",
            "429",
            "overloaded",
            "500",
            "502",
            "503",
            "service unavailable",
            "connection",
        )
        return any(marker in text for marker in retry_markers)

    async def _call_model(
        self,
        model_name: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        on_delta: DeltaCallback | None,
    ) -> LLMResponse:
        if on_delta is None or not self.provider.supports_streaming:
            return await asyncio.wait_for(
                self.provider.chat(
                    messages=messages,
                    tools=tools,
                    model=model_name,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                ),
                timeout=self.request_timeout,
            )
        return await asyncio.wait_for(
            self._stream_model(model_name, messages, tools, on_delta),
            timeout=self.request_timeout,
        )

    async def _stream_model(
        self,
        model_name: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        on_delta: DeltaCallback,
    ) -> LLMResponse:
        accumulated = ""
        final: LLMResponse | None = None
        async for event in self.provider.stream_chat(
            messages=messages,
            tools=tools,
            model=model_name,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        ):
            if event.type == "delta" and event.delta:
                accumulated += event.delta
                await on_delta(accumulated)
            elif event.type == "final":
                final = event.response
        if final is None:
            return LLMResponse(content=accumulated)
        if final.content is None and accumulated:
            final.content = accumulated
        return final

    async def _chat_with_model_failover(
        self,
        *,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        on_delta: DeltaCallback | None = None,
    ) -> tuple[LLMResponse, str]:
        """Call the provider, walking the fallback chain on retryable errors."""
        last_error = ""
        for index, model_name in enumerate(self.model_chain):
            has_next = index < len(self.model_chain) - 1
            try:
                response = await self._call_model(model_name, messages, tools, on_delta)
            except asyncio.TimeoutError:
                last_error = f"timed out after {self.request_timeout:g}s"
                if has_next:
                    logger.warning(f"LLM call timed out on {model_name}; trying {self.model_chain[index + 1]}")
                    continue
                break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = str(e)
                if has_next and self._should_failover_model(last_error):
                    logger.warning(f"LLM call failed on {model_name}; trying {self.model_chain[index + 1]}")
                    continue
                break

            if response.finish_reason == "error":
                last_error = response.content or "unknown provider error"
                if has_next and self._should_failover_model(last_error):
                    logger.warning(f"LLM error on {model_name}; trying {self.model_chain[index + 1]}")
                    continue
                break

            return response, model_name

        raise ModelBackendError(last_error or "model backend failed")
