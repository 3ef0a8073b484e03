import asyncio
from pathlib import Path
from typing import Any

import pytest

from g_bridge.agent.loop import EXHAUSTED_REPLY, AgentLoop
from g_bridge.agent.tools.base import Tool, ToolContext
from g_bridge.agent.tools.registry import ToolRegistry
from g_bridge.errors import ModelBackendError
from g_bridge.providers.base import LLMProvider, LLMResponse, ToolCallRequest


class _ScriptedProvider(LLMProvider):
    def __init__(self, responses: list[Any], streaming: bool = False):
        super().__init__()
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []
        self.supports_streaming = streaming

    async def chat(self, messages, tools=None, model=None, max_tokens=4096, temperature=0.7):
        self.calls.append({"messages": [dict(m) for m in messages], "model": model, "tools": tools})
        item = self.responses.pop(0) if self.responses else LLMResponse(content="done")
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(model)
        return item

    def get_default_model(self) -> str:
        return "test-model"


class _LoopingProvider(_ScriptedProvider):
    """Always asks for another tool call."""

    async def chat(self, messages, tools=None, model=None, max_tokens=4096, temperature=0.7):
        self.calls.append({"messages": [dict(m) for m in messages], "model": model})
        return LLMResponse(
            content=None,
            tool_calls=[ToolCallRequest(id=f"call-{len(self.calls)}", name="echo", arguments={"text": "x"})],
        )


class _EchoTool(Tool):
    def __init__(self, name: str = "echo"):
        self._name = name
        self.calls: list[dict[str, Any]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return "Echo text back."

    @property
    def parameters(self) -> dict[str, Any]:
        return {"type": "object", "properties": {"text": {"type": "string"}}}

    async def execute(self, ctx: ToolContext, **kwargs: Any) -> str:
        self.calls.append(kwargs)
        return f"{self._name}-ok:{kwargs.get('text', '')}"


class _BoomTool(_EchoTool):
    async def execute(self, ctx: ToolContext, **kwargs: Any) -> str:
        raise RuntimeError("kaboom")


class _LookupTool(_EchoTool):
    async def execute(self, ctx: ToolContext, **kwargs: Any) -> str:
        return {}["missing"]


class _SlowTool(_EchoTool):
    async def execute(self, ctx: ToolContext, **kwargs: Any) -> str:
        await asyncio.sleep(1)
        return "late"


def _ctx() -> ToolContext:
    return ToolContext(assistant_id="a1", conversation_id="c1", cwd=Path("."))


def _registry(*tools: Tool) -> ToolRegistry:
    registry = ToolRegistry()
    for tool in tools:
        registry.register(tool)
    return registry.freeze()


def _history(text: str = "hi") -> list[dict[str, str]]:
    return [{"role": "user", "content": text}]


def test_plain_reply_needs_no_tools():
    provider = _ScriptedProvider([LLMResponse(content="  hello there  ")])
    loop = AgentLoop(provider=provider, tools=_registry())

    result = asyncio.run(loop.run("system", _history(), _ctx()))

    assert result.content == "hello there"
    assert result.tool_turns == 0
    assert result.model == "test-model"
    assert provider.calls[0]["messages"][0] == {"role": "system", "content": "system"}
    assert provider.calls[0]["tools"] is None


def test_failing_tool_does_not_stop_the_turn():
    provider = _ScriptedProvider(
        [
            LLMResponse(
                content=None,
                tool_calls=[
                    ToolCallRequest(id="t1", name="alpha", arguments={"text": "a"}),
                    ToolCallRequest(id="t2", name="beta", arguments={}),
                ],
            ),
            LLMResponse(content="final answer"),
        ]
    )
    loop = AgentLoop(provider=provider, tools=_registry(_EchoTool("alpha"), _BoomTool("beta")))

    result = asyncio.run(loop.run("system", _history(), _ctx()))

    assert result.content == "final answer"
    assert result.tool_calls == ["alpha", "beta"]
    second_call = provider.calls[1]["messages"]
    tool_messages = [m for m in second_call if m["role"] == "tool"]
    assert [m["tool_call_id"] for m in tool_messages] == ["t1", "t2"]
    assert tool_messages[0]["content"] == "alpha-ok:a"
    assert tool_messages[1]["content"].startswith("tool failed:")
    assert "kaboom" in tool_messages[1]["content"]
    assistant_msg = [m for m in second_call if m["role"] == "assistant"][0]
    assert [tc["function"]["name"] for tc in assistant_msg["tool_calls"]] == ["alpha", "beta"]


def test_unknown_tool_is_reported_back_to_model():
    provider = _ScriptedProvider(
        [
            LLMResponse(content=None, tool_calls=[ToolCallRequest(id="t1", name="nope", arguments={})]),
            LLMResponse(content="ok"),
        ]
    )
    loop = AgentLoop(provider=provider, tools=_registry(_EchoTool()))

    asyncio.run(loop.run("system", _history(), _ctx()))

    tool_msg = [m for m in provider.calls[1]["messages"] if m["role"] == "tool"][0]
    assert tool_msg["content"] == "tool failed: unknown tool 'nope'"


def test_tool_timeout_becomes_tool_failure():
    provider = _ScriptedProvider(
        [
            LLMResponse(content=None, tool_calls=[ToolCallRequest(id="t1", name="slow", arguments={})]),
            LLMResponse(content="ok"),
        ]
    )
    loop = AgentLoop(provider=provider, tools=_registry(_SlowTool("slow")), tool_timeout=0.01)

    asyncio.run(loop.run("system", _history(), _ctx()))

    tool_msg = [m for m in provider.calls[1]["messages"] if m["role"] == "tool"][0]
    assert tool_msg["content"] == "tool failed: timed out after 0.01s"


def test_tool_cap_returns_exhausted_reply():
    provider = _LoopingProvider([])
    echo = _EchoTool()
    loop = AgentLoop(provider=provider, tools=_registry(echo), max_tool_turns=3)

    result = asyncio.run(loop.run("system", _history(), _ctx()))

    assert result.exhausted is True
    assert result.content == EXHAUSTED_REPLY
    assert len(echo.calls) == 3
    assert len(provider.calls) == 4


def test_retryable_error_fails_over_to_next_model():
    provider = _ScriptedProvider(
        [
            LLMResponse(content="RateLimitError: 429 too many requests", finish_reason="error"),
            LLMResponse(content="from fallback"),
        ]
    )
    loop = AgentLoop(provider=provider, tools=_registry(), model="m1", fallback_models=["m2", "m1"])

    result = asyncio.run(loop.run("system", _history(), _ctx()))

    assert loop.model_chain == ["m1", "m2"]
    assert [call["model"] for call in provider.calls] == ["m1", "m2"]
    assert result.content == "from fallback"
    assert result.model == "m2"


def test_non_retryable_error_raises_model_backend_error():
    provider = _ScriptedProvider(
        [LLMResponse(content="invalid api key", finish_reason="error")]
    )
    loop = AgentLoop(provider=provider, tools=_registry(), model="m1", fallback_models=["m2"])

    with pytest.raises(ModelBackendError, match="invalid api key"):
        asyncio.run(loop.run("system", _history(), _ctx()))
    assert len(provider.calls) == 1


def test_provider_exception_raises_model_backend_error():
    provider = _ScriptedProvider([RuntimeError("socket closed")])
    loop = AgentLoop(provider=provider, tools=_registry())

    with pytest.raises(ModelBackendError, match="socket closed"):
        asyncio.run(loop.run("system", _history(), _ctx()))


def test_streaming_provider_reports_accumulated_deltas():
    provider = _ScriptedProvider([LLMResponse(content="streamed reply")], streaming=True)
    loop = AgentLoop(provider=provider, tools=_registry())
    seen: list[str] = []

    async def on_delta(text: str) -> None:
        seen.append(text)

    result = asyncio.run(loop.run("system", _history(), _ctx(), on_delta=on_delta))

    assert seen == ["streamed reply"]
    assert result.content == "streamed reply"


def test_key_error_inside_registered_tool_is_a_tool_failure():
    provider = _ScriptedProvider(
        [
            LLMResponse(content=None, tool_calls=[ToolCallRequest(id="t1", name="lookup", arguments={})]),
            LLMResponse(content="ok"),
        ]
    )
    loop = AgentLoop(provider=provider, tools=_registry(_LookupTool("lookup")))

    asyncio.run(loop.run("system", _history(), _ctx()))

    tool_msg = [m for m in provider.calls[1]["messages"] if m["role"] == "tool"][0]
    assert tool_msg["content"] == "tool failed: KeyError: 'missing'"
