from types import SimpleNamespace

from g_bridge.providers.litellm_provider import LiteLLMProvider


def test_resolve_model_openrouter_prefix():
    provider = LiteLLMProvider(api_key="sk-or-v1-test", provider_name="openrouter")

    assert provider._resolve_model("anthropic/claude-sonnet-4-5") == "openrouter/anthropic/claude-sonnet-4-5"
    assert provider._resolve_model("openrouter/auto") == "openrouter/auto"


def test_resolve_model_proxy_uses_openai_prefix():
    provider = LiteLLMProvider(api_key="sk-local", api_base="http://127.0.0.1:8317/v1", provider_name="proxy")

    assert provider._resolve_model("claude-opus") == "openai/claude-opus"
    assert provider._resolve_model("openai/gpt-4o") == "openai/gpt-4o"


def test_resolve_model_bare_names_get_provider_prefix():
    provider = LiteLLMProvider(api_key="sk-test", provider_name="anthropic")

    assert provider._resolve_model("claude-sonnet-4-5") == "anthropic/claude-sonnet-4-5"
    assert provider._resolve_model("gpt-4o-mini") == "openai/gpt-4o-mini"
    assert provider._resolve_model("deepseek/deepseek-chat") == "deepseek/deepseek-chat"
    assert provider._resolve_model("mystery") == "mystery"


def test_parse_response_with_tool_calls():
    provider = LiteLLMProvider(api_key="sk-test")
    response = SimpleNamespace(
        choices=[
            SimpleNamespace(
                finish_reason="tool_calls",
                message=SimpleNamespace(
                    content=None,
                    tool_calls=[
                        SimpleNamespace(
                            id="call-1",
                            function=SimpleNamespace(name="read_file", arguments='{"path": "a.md"}'),
                        ),
                        SimpleNamespace(
                            id="call-2",
                            function=SimpleNamespace(name="bash", arguments="not json"),
                        ),
                    ],
                ),
            )
        ],
        usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15),
    )

    parsed = provider._parse_response(response)

    assert parsed.has_tool_calls is True
    assert parsed.tool_calls[0].arguments == {"path": "a.md"}
    assert parsed.tool_calls[1].arguments == {"raw": "not json"}
    assert parsed.finish_reason == "tool_calls"
    assert parsed.usage["total_tokens"] == 15
