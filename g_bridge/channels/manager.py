"""Connection pool: one channel connection per (assistant, platform)."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict
from typing import Any

from loguru import logger

from g_bridge.agent.context import ContextBuilder
from g_bridge.agent.loop import AgentLoop
from g_bridge.agent.memory import MemoryProvider
from g_bridge.agent.tools.builtin import build_tool_registry
from g_bridge.channels.base import BaseChannel, StatusListener
from g_bridge.config.schema import AssistantConfig, Config
from g_bridge.errors import ChannelHandshakeError
from g_bridge.providers.base import LLMProvider
from g_bridge.providers.factory import build_provider
from g_bridge.providers.transcription import GroqTranscriptionProvider
from g_bridge.state.context import BridgeState

PLATFORMS = ("dingtalk", "telegram", "feishu")
DRAIN_TIMEOUT_S = 30.0

ChannelKey = tuple[str, str]
ChannelFactory = Callable[[AssistantConfig, str], BaseChannel]


def enabled_platforms(assistant: AssistantConfig) -> list[str]:
    return [p for p in PLATFORMS if getattr(assistant.channels, p).enabled]


class ChannelPool:
    """
    Owns every channel connection in the process.

    Responsibilities:
    - Build connections (agent loop, tools, transcriber) from config
    - Start/stop single connections or all of them
    - Drop connections whose first handshake failed
    - Replace an assistant's connections on config update
    """

    def __init__(
        self,
        config: Config,
        state: BridgeState | None = None,
        provider: LLMProvider | None = None,
        memory: MemoryProvider | None = None,
        channel_factory: ChannelFactory | None = None,
    ):
        self.config = config
        self.state = state or BridgeState()
        self.provider = provider
        self.memory = memory
        self.channels: dict[ChannelKey, BaseChannel] = {}
        self._factory = channel_factory or self.build_channel
        self._status_listeners: list[StatusListener] = []

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)
        for channel in self.channels.values():
            channel.add_status_listener(listener)

    def build_channel(self, assistant: AssistantConfig, platform: str) -> BaseChannel:
        """Construct (but do not start) a connection for ``platform``."""
        defaults = self.config.agents.defaults
        route = self.config.resolve_model_route(assistant.model or None)
        provider = self.provider or build_provider(route, self.config)
        agent = AgentLoop(
            provider=provider,
            tools=build_tool_registry(assistant.tools),
            context=ContextBuilder(self.memory),
            model=route.model,
            fallback_models=route.fallback_models,
            max_tool_turns=defaults.max_tool_turns,
            max_tokens=defaults.max_tokens,
            temperature=defaults.temperature,
            request_timeout=defaults.request_timeout,
            tool_timeout=defaults.tool_timeout,
        )
        transcriber = GroqTranscriptionProvider(api_key=self.config.providers.groq.api_key or None)
        kwargs: dict[str, Any] = {
            "state": self.state,
            "agent": agent,
            "transcriber": transcriber if transcriber.enabled else None,
            "stream_interval": defaults.stream_interval,
        }

        if platform == "dingtalk":
            from g_bridge.channels.dingtalk import DingtalkChannel

            return DingtalkChannel(assistant.channels.dingtalk, assistant, **kwargs)
        if platform == "telegram":
            from g_bridge.channels.telegram import TelegramChannel

            return TelegramChannel(assistant.channels.telegram, assistant, **kwargs)
        if platform == "feishu":
            from g_bridge.channels.feishu import FeishuChannel

            return FeishuChannel(assistant.channels.feishu, assistant, **kwargs)
        raise ValueError(f"Unknown platform: {platform}")

    def get(self, assistant_id: str, platform: str) -> BaseChannel | None:
        return self.channels.get((assistant_id, platform))

    def channel_for_send(self, assistant_id: str, platform: str) -> BaseChannel:
        """Live connection if there is one, else an unstarted instance for REST sends."""
        channel = self.get(assistant_id, platform)
        if channel is not None:
            return channel
        assistant = self.config.get_assistant(assistant_id)
        if assistant is None:
            raise KeyError(f"Unknown assistant: {assistant_id}")
        return self._factory(assistant, platform)

    async def start(self, assistant_id: str, platform: str) -> BaseChannel:
        """
        Start one connection.

        Raises:
            KeyError: Unknown assistant.
            ChannelHandshakeError: First handshake failed; the connection is removed.
        """
        key = (assistant_id, platform)
        existing = self.channels.get(key)
        if existing is not None and existing.is_running:
            logger.warning(f"{platform} connection for {assistant_id} already running")
            return existing

        assistant = self.config.get_assistant(assistant_id)
        if assistant is None:
            raise KeyError(f"Unknown assistant: {assistant_id}")

        channel = existing or self._factory(assistant, platform)
        if existing is None:
            for listener in self._status_listeners:
                channel.add_status_listener(listener)
        self.channels[key] = channel
        logger.info(f"Starting {platform} connection for {assistant_id}...")
        try:
            await channel.start()
        except ChannelHandshakeError:
            self.channels.pop(key, None)
            raise
        return channel

    async def start_all(self) -> dict[ChannelKey, str]:
        """Start every enabled connection; returns handshake errors by key."""
        failures: dict[ChannelKey, str] = {}
        for assistant in self.config.assistants:
            for platform in enabled_platforms(assistant):
                try:
                    await self.start(assistant.id, platform)
                except ChannelHandshakeError as e:
                    logger.error(f"{platform} connection for {assistant.id} removed: {e}")
                    failures[(assistant.id, platform)] = str(e)
        if not self.channels and not failures:
            logger.warning("No channels enabled")
        return failures

    async def stop(self, assistant_id: str, platform: str) -> None:
        channel = self.channels.pop((assistant_id, platform), None)
        if channel is not None:
            await channel.stop()

    async def stop_all(self, drain_timeout: float = DRAIN_TIMEOUT_S) -> None:
        """Stop all connections, then wait up to ``drain_timeout`` for in-flight replies."""
        logger.info("Stopping all channels...")
        stopped: list[tuple[ChannelKey, BaseChannel]] = []
        for (assistant_id, platform), channel in list(self.channels.items()):
            try:
                await channel.stop()
            except Exception as e:
                logger.error(f"Error stopping {platform} for {assistant_id}: {e}")
            stopped.append(((assistant_id, platform), channel))
        self.channels.clear()

        for (assistant_id, platform), channel in stopped:
            try:
                await channel.drain(drain_timeout)
            except Exception as e:
                logger.error(f"Error draining {platform} for {assistant_id}: {e}")

    async def update_assistant(self, assistant: AssistantConfig) -> dict[ChannelKey, str]:
        """Swap in new assistant config and restart its connections from it."""
        self.config.assistants = [a for a in self.config.assistants if a.id != assistant.id] + [assistant]
        for assistant_id, platform in [key for key in self.channels if key[0] == assistant.id]:
            await self.stop(assistant_id, platform)

        failures: dict[ChannelKey, str] = {}
        for platform in enabled_platforms(assistant):
            try:
                await self.start(assistant.id, platform)
            except ChannelHandshakeError as e:
                failures[(assistant.id, platform)] = str(e)
        return failures

    def status(self) -> dict[str, dict[str, Any]]:
        return {
            f"{assistant_id}/{platform}": {
                "status": channel.status.value,
                "detail": channel.status_detail,
                "attempts": channel.attempts,
                "running": channel.is_running,
                **asdict(channel.stats),
            }
            for (assistant_id, platform), channel in self.channels.items()
        }
