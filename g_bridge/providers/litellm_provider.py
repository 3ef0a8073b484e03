"""LiteLLM provider implementation for multi-provider support."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import litellm
from litellm import acompletion
from loguru import logger

from g_bridge.providers.base import LLMProvider, LLMResponse, StreamEvent, ToolCallRequest

# bare model keyword -> litellm prefix
_MODEL_PREFIXES: dict[str, str] = {
    "claude": "anthropic",
    "gpt": "openai",
    "o1": "openai",
    "o3": "openai",
    "gemini": "gemini",
    "deepseek": "deepseek",
    "llama": "groq",
}


class LiteLLMProvider(LLMProvider):
    """
    LLM provider using LiteLLM for multi-provider support.

    Supports OpenRouter, Anthropic, OpenAI, Gemini, DeepSeek, Groq and any
    OpenAI-compatible proxy through a unified interface.
    """

    supports_streaming = True

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "anthropic/claude-sonnet-4-5",
        provider_name: str = "",
        request_timeout: float = 120.0,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.provider_name = provider_name
        self.request_timeout = request_timeout

        litellm.suppress_debug_info = True
        litellm.drop_params = True

    def _resolve_model(self, model: str) -> str:
        if self.provider_name == "openrouter":
            return model if model.startswith("openrouter/") else f"openrouter/{model}"
        if self.provider_name == "proxy":
            bare = model.split("/", 1)[-1] if model.startswith("openai/") else model
            return f"openai/{bare}"
        if "/" in model:
            return model
        lowered = model.lower()
        for keyword, prefix in _MODEL_PREFIXES.items():
            if lowered.startswith(keyword):
                return f"{prefix}/{model}"
        return model

    def _build_kwargs(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str | None,
        max_tokens: int,
        temperature: float,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self._resolve_model(model or self.default_model),
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "timeout": self.request_timeout,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        return kwargs

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        kwargs = self._build_kwargs(messages, tools, model, max_tokens, temperature)
        try:
            response = await acompletion(**kwargs)
        except Exception as e:
            logger.error(f"LiteLLM call failed for {kwargs['model']}: {e}")
            return LLMResponse(content=f"Error calling LLM: {e}", finish_reason="error")
        return self._parse_response(response)

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> AsyncIterator[StreamEvent]:
        kwargs = self._build_kwargs(messages, tools, model, max_tokens, temperature)
        chunks: list[Any] = []
        try:
            stream = await acompletion(stream=True, **kwargs)
            async for chunk in stream:
                chunks.append(chunk)
                choices = getattr(chunk, "choices", None) or []
                delta = getattr(choices[0], "delta", None) if choices else None
                text = getattr(delta, "content", None) if delta is not None else None
                if text:
                    yield StreamEvent(type="delta", delta=text)
            built = litellm.stream_chunk_builder(chunks, messages=messages)
        except Exception as e:
            logger.error(f"LiteLLM stream failed for {kwargs['model']}: {e}")
            yield StreamEvent(
                type="final",
                response=LLMResponse(content=f"Error calling LLM: {e}", finish_reason="error"),
            )
            return
        yield StreamEvent(type="final", response=self._parse_response(built))

    def _parse_response(self, response: Any) -> LLMResponse:
        """Parse LiteLLM response into our standard format."""
        choice = response.choices[0]
        message = choice.message

        tool_calls: list[ToolCallRequest] = []
        for tc in getattr(message, "tool_calls", None) or []:
            args: Any = tc.function.arguments
            if isinstance(args, str):
                try:
                    args = json.loads(args) if args.strip() else {}
                except json.JSONDecodeError:
                    args = {"raw": args}
            tool_calls.append(
                ToolCallRequest(
                    id=tc.id,
                    name=tc.function.name,
                    arguments=args if isinstance(args, dict) else {"value": args},
                )
            )

        usage: dict[str, int] = {}
        raw_usage = getattr(response, "usage", None)
        if raw_usage:
            usage = {
                "prompt_tokens": getattr(raw_usage, "prompt_tokens", 0) or 0,
                "completion_tokens": getattr(raw_usage, "completion_tokens", 0) or 0,
                "total_tokens": getattr(raw_usage, "total_tokens", 0) or 0,
            }

        return LLMResponse(
            content=message.content,
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
        )

    def get_default_model(self) -> str:
        return self.default_model
