"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from g_bridge.utils.helpers import get_data_path


def _default_workspace() -> str:
    """Default memory workspace under the active data directory."""
    return str(get_data_path() / "workspace")


def _default_sessions_dir() -> str:
    return str(get_data_path() / "sessions")


def _default_state_file() -> str:
    return str(get_data_path() / "proactive_state.json")


class ReconnectConfig(BaseModel):
    """Backoff and liveness tuning for one channel connection."""
    max_connection_attempts: int = 10
    initial_reconnect_delay: float = 1.0  # seconds
    max_reconnect_delay: float = 60.0
    reconnect_jitter: float = 0.3
    heartbeat_interval: float = 60.0
    heartbeat_timeout: float = 10.0


class DingtalkConfig(BaseModel):
    """DingTalk stream-mode robot configuration."""
    enabled: bool = False
    app_key: str = ""  # Client ID of the DingTalk app
    app_secret: str = ""
    robot_code: str = ""  # Defaults to app_key
    message_type: str = "markdown"  # markdown | card
    card_template_id: str = ""  # Required for message_type=card
    card_template_key: str = "msgContent"
    dm_policy: str = "open"  # open | allowlist
    group_policy: str = "open"
    allow_from: list[str] = Field(default_factory=list)  # Staff IDs / conversation IDs
    owner_targets: list[str] = Field(default_factory=list)  # user:<id> or group:<cid>
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)


class TelegramConfig(BaseModel):
    """Telegram bot configuration (Bot API long polling)."""
    enabled: bool = False
    token: str = ""  # Bot token from @BotFather
    proxy: str | None = None  # HTTP/SOCKS5 proxy URL, e.g. "http://127.0.0.1:7890"
    require_mention: bool = True  # Groups: only respond when mentioned or replied to
    streaming: bool = True
    poll_timeout: int = 25  # getUpdates long-poll seconds
    dm_policy: str = "open"
    group_policy: str = "open"
    allow_from: list[str] = Field(default_factory=list)  # User IDs / chat IDs
    owner_targets: list[str] = Field(default_factory=list)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)


class FeishuConfig(BaseModel):
    """Feishu / Lark bot configuration (event WebSocket long connection)."""
    enabled: bool = False
    app_id: str = ""
    app_secret: str = ""
    domain: str = "feishu"  # feishu | lark
    encrypt_key: str = ""
    verification_token: str = ""
    require_mention: bool = True  # Groups: only respond when the bot is @mentioned
    dm_policy: str = "open"
    group_policy: str = "open"
    allow_from: list[str] = Field(default_factory=list)  # open_ids / chat_ids
    owner_targets: list[str] = Field(default_factory=list)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)


class AssistantChannelsConfig(BaseModel):
    """Chat platforms one assistant is reachable on."""
    dingtalk: DingtalkConfig = Field(default_factory=DingtalkConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    feishu: FeishuConfig = Field(default_factory=FeishuConfig)


class AssistantToolsConfig(BaseModel):
    """Built-in tools exposed to the model."""
    enabled: list[str] = Field(
        default_factory=lambda: [
            "send_message",
            "read_file",
            "write_file",
            "web_fetch",
            "web_search",
            "send_file",
        ]
    )
    bash_timeout: float = 15.0
    bash_max_output: int = 3000
    web_fetch_max_chars: int = 8000


class AssistantConfig(BaseModel):
    """One long-lived assistant and its channel bindings."""
    id: str
    name: str = "Assistant"
    persona: str = ""
    model: str = ""  # Empty uses agents.defaults.model
    cwd: str = ""
    tools: AssistantToolsConfig = Field(default_factory=AssistantToolsConfig)
    channels: AssistantChannelsConfig = Field(default_factory=AssistantChannelsConfig)

    @property
    def cwd_path(self) -> Path:
        return Path(self.cwd).expanduser() if self.cwd else Path.cwd()


class AgentDefaults(BaseModel):
    """Default agent loop settings."""
    model: str = "anthropic/claude-sonnet-4-5"
    max_tokens: int = 4096
    temperature: float = 0.7
    max_tool_turns: int = 8
    max_history_turns: int = 10
    request_timeout: float = 120.0
    tool_timeout: float = 60.0
    stream_interval: float = 1.2  # Minimum seconds between draft edits
    fallback_models: list[str] = Field(default_factory=list)


class AgentsConfig(BaseModel):
    """Agent configuration."""
    defaults: AgentDefaults = Field(default_factory=AgentDefaults)


class ProviderConfig(BaseModel):
    """LLM provider configuration."""
    api_key: str = ""
    api_base: str | None = None


class ProvidersConfig(BaseModel):
    """Configuration for LLM providers."""
    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)
    deepseek: ProviderConfig = Field(default_factory=ProviderConfig)
    groq: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)


class LLMRoute(BaseModel):
    """Resolved route for model/provider selection."""
    model: str
    provider: str
    api_key: str | None = None
    api_base: str | None = None
    fallback_models: list[str] = Field(default_factory=list)


class QuietHoursConfig(BaseModel):
    """Quiet hours policy for proactive delivery."""
    enabled: bool = False
    start: str = "22:00"
    end: str = "07:00"
    timezone: str = "local"


class ScheduledSendConfig(BaseModel):
    """A proactive message the gateway sends on a timer."""
    name: str
    assistant_id: str
    text: str
    platform: str = "dingtalk"
    targets: list[str] = Field(default_factory=list)  # Empty: owner targets, then last seen
    title: str = ""
    schedule_type: str = "daily"  # once | interval | daily
    at: str = "09:00"  # HH:MM for daily, ISO datetime for once
    days: list[int] = Field(default_factory=list)  # daily only; 0=Monday, empty = every day
    every_minutes: int = 60  # interval only
    timezone: str = "local"
    enabled: bool = True
    force: bool = False  # Send even during quiet hours


class ProactiveConfig(BaseModel):
    """Proactive send behavior."""
    quiet_hours: QuietHoursConfig = Field(default_factory=QuietHoursConfig)
    state_file: str = Field(default_factory=_default_state_file)  # Risk flags, last-seen targets, schedule runs
    schedules: list[ScheduledSendConfig] = Field(default_factory=list)


class MemoryConfig(BaseModel):
    """Workspace memory injected into system prompts."""
    enabled: bool = True
    workspace: str = Field(default_factory=_default_workspace)
    max_chars: int = 6000


class SessionsConfig(BaseModel):
    """Where conversation sessions are mirrored."""
    persist: bool = True
    directory: str = Field(default_factory=_default_sessions_dir)


_MODEL_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("openrouter", "openrouter"),
    ("anthropic", "anthropic"),
    ("claude", "anthropic"),
    ("openai", "openai"),
    ("gpt", "openai"),
    ("gemini", "gemini"),
    ("deepseek", "deepseek"),
    ("groq", "groq"),
    ("llama", "groq"),
)


class Config(BaseSettings):
    """Root configuration for g-bridge."""
    assistants: list[AssistantConfig] = Field(default_factory=list)
    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    proactive: ProactiveConfig = Field(default_factory=ProactiveConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)

    model_config = SettingsConfigDict(
        env_prefix="G_BRIDGE_",
        env_nested_delimiter="__",
    )

    @property
    def workspace_path(self) -> Path:
        """Get expanded memory workspace path."""
        return Path(self.memory.workspace).expanduser()

    def get_assistant(self, assistant_id: str) -> AssistantConfig | None:
        for assistant in self.assistants:
            if assistant.id == assistant_id:
                return assistant
        return None

    def _provider_map(self) -> dict[str, ProviderConfig]:
        return {
            "openrouter": self.providers.openrouter,
            "anthropic": self.providers.anthropic,
            "openai": self.providers.openai,
            "gemini": self.providers.gemini,
            "deepseek": self.providers.deepseek,
            "groq": self.providers.groq,
        }

    def _provider_for_model(self, model: str) -> str | None:
        lowered = model.lower()
        prefix = lowered.split("/", 1)[0] if "/" in lowered else ""
        providers = self._provider_map()
        if prefix in providers:
            return prefix
        for keyword, provider_name in _MODEL_KEYWORDS:
            if keyword in lowered:
                return provider_name
        return None

    def resolve_model_route(self, model: str | None = None) -> LLMRoute:
        """Resolve which provider credentials serve ``model``."""
        selected = (model or self.agents.defaults.model).strip()
        fallbacks = [m for m in self.agents.defaults.fallback_models if m and m != selected]
        providers = self._provider_map()

        # An OpenRouter key serves any model when the direct provider has no key.
        provider_name = self._provider_for_model(selected)
        if provider_name and providers[provider_name].api_key:
            cfg = providers[provider_name]
        elif providers["openrouter"].api_key:
            provider_name, cfg = "openrouter", providers["openrouter"]
        else:
            provider_name = provider_name or "unresolved"
            cfg = providers.get(provider_name, ProviderConfig())

        api_base = cfg.api_base
        if provider_name == "openrouter" and not api_base:
            api_base = "https://openrouter.ai/api/v1"
        return LLMRoute(
            model=selected,
            provider=provider_name,
            api_key=cfg.api_key or None,
            api_base=api_base,
            fallback_models=fallbacks,
        )
