"""Provider construction from configuration."""

from __future__ import annotations

from g_bridge.config.schema import Config, LLMRoute
from g_bridge.providers.base import LLMProvider


def build_provider(route: LLMRoute, config: Config) -> LLMProvider:
    """Build the runtime provider for a resolved route."""
    from g_bridge.providers.litellm_provider import LiteLLMProvider

    return LiteLLMProvider(
        api_key=route.api_key,
        api_base=route.api_base,
        default_model=route.model,
        provider_name=route.provider,
        request_timeout=config.agents.defaults.request_timeout,
    )


def build_title_generator(provider: LLMProvider, model: str | None = None):
    """Title generator backed by the same provider as the agent loop."""

    async def generate(context: list[dict[str, str]]) -> str:
        lines = "\n".join(
            f"{'User' if m['role'] == 'user' else 'Assistant'}: {m['content'][:200]}" for m in context
        )
        response = await provider.chat(
            messages=[
                {
                    "role": "user",
                    "content": (
                        "Write a short title (at most 8 words, no quotes, no trailing "
                        "punctuation) for this conversation. Output only the title.\n\n" + lines
                    ),
                }
            ],
            model=model,
            max_tokens=40,
            temperature=0.3,
        )
        if response.finish_reason == "error":
            raise RuntimeError(response.content or "title generation failed")
        return (response.content or "").strip()

    return generate
