import asyncio
from datetime import datetime, timezone
from typing import Any

from g_bridge.agent.loop import AgentLoop
from g_bridge.agent.tools.registry import ToolRegistry
from g_bridge.channels.base import BaseChannel
from g_bridge.channels.manager import ChannelPool
from g_bridge.config.schema import AssistantConfig, Config, QuietHoursConfig
from g_bridge.errors import ChannelSendError
from g_bridge.proactive import ProactiveSender, is_quiet_now
from g_bridge.providers.base import LLMProvider, LLMResponse
from g_bridge.state import BridgeState, ProactiveRiskRegistry

WEEK_S = 7 * 24 * 3600


class _Provider(LLMProvider):
    async def chat(self, messages, tools=None, model=None, max_tokens=4096, temperature=0.7):
        return LLMResponse(content="ok")

    def get_default_model(self) -> str:
        return "test-model"


class _Clock:
    def __init__(self):
        self.now = 1_000_000.0

    def __call__(self) -> float:
        return self.now


class _OutboxChannel(BaseChannel):
    """Records proactive sends; targets in ``denied`` fail with a permission error."""

    name = "dingtalk"
    message_limit = 20

    def __init__(self, config, assistant, state):
        super().__init__(
            config,
            assistant,
            state=state,
            agent=AgentLoop(provider=_Provider(), tools=ToolRegistry().freeze()),
        )
        self.denied: set[str] = set()
        self.calls: list[tuple[str, bool, str, str]] = []

    async def _handshake(self) -> Any:
        return None

    async def _open_transport(self, endpoint: Any) -> None:
        return None

    async def _read_transport(self) -> None:
        return None

    async def _close_transport(self) -> None:
        return None

    async def _check_alive(self) -> bool:
        return True

    async def send_reply(self, message, text: str) -> None:
        return None

    def infer_is_group(self, target_id: str) -> bool:
        return target_id.startswith("cid")

    async def send_proactive(self, target_id: str, is_group: bool, text: str, title: str = "") -> None:
        self.calls.append((target_id, is_group, text, title))
        if target_id in self.denied:
            raise ChannelSendError(
                "DingTalk send failed [Forbidden.AccessDenied]",
                code="Forbidden.AccessDenied",
                permission=True,
            )


def _setup(owner_targets: list[str] | None = None, clock: _Clock | None = None):
    assistant = AssistantConfig.model_validate(
        {
            "id": "ada",
            "name": "Ada",
            "channels": {"dingtalk": {"enabled": True, "owner_targets": owner_targets or []}},
        }
    )
    state = BridgeState(risk=ProactiveRiskRegistry(clock=clock or _Clock()))
    channels: dict[str, _OutboxChannel] = {}

    def factory(assistant_config: AssistantConfig, platform: str) -> BaseChannel:
        if platform not in channels:
            channels[platform] = _OutboxChannel(assistant_config.channels.dingtalk, assistant_config, state)
        return channels[platform]

    pool = ChannelPool(Config(assistants=[assistant]), state=state, channel_factory=factory)
    channel = pool.channel_for_send("ada", "dingtalk")
    return pool, channel


def _send(sender: ProactiveSender, text: str = "hello", **kwargs: Any):
    return asyncio.run(sender.send("ada", text, **kwargs))


def test_explicit_targets_win_over_owners_and_last_seen():
    pool, channel = _setup(owner_targets=["user:owner-1"])
    pool.state.last_seen.record("ada", "user:recent-1", False)
    sender = ProactiveSender(pool)

    assert sender.resolve_targets(channel, ["group:cidX"]) == ["group:cidX"]
    assert sender.resolve_targets(channel) == ["user:owner-1"]


def test_last_seen_targets_used_without_owners():
    pool, channel = _setup()
    pool.state.last_seen.record("ada", "user:recent-1", False)
    pool.state.last_seen.record("ada", "group:cidRecent", True)

    result = _send(ProactiveSender(pool))

    assert result.ok is True
    assert result.sent == ["cidRecent", "recent-1"]
    assert channel.calls[0][:2] == ("cidRecent", True)


def test_no_targets_is_an_error():
    pool, _ = _setup()

    result = _send(ProactiveSender(pool))

    assert result.ok is False
    assert "no proactive targets" in result.error


def test_permission_failure_flags_target_and_next_send_skips_it():
    clock = _Clock()
    pool, channel = _setup(clock=clock)
    channel.denied.add("staff-1")
    sender = ProactiveSender(pool)

    first = _send(sender, targets=["user:staff-1"])
    assert first.ok is False
    assert "Forbidden.AccessDenied" in first.error
    assert pool.state.risk.is_blocked("ada", "staff-1") is True

    second = _send(sender, targets=["user:staff-1"])
    assert second.ok is False
    assert second.skipped == ["staff-1"]
    assert second.error == "all targets skipped"
    assert len(channel.calls) == 1


def test_risk_flag_expires_after_a_week():
    clock = _Clock()
    pool, channel = _setup(clock=clock)
    channel.denied.add("staff-1")
    sender = ProactiveSender(pool)
    _send(sender, targets=["user:staff-1"])

    channel.denied.clear()
    clock.now += WEEK_S + 1
    result = _send(sender, targets=["user:staff-1"])

    assert result.ok is True
    assert result.sent == ["staff-1"]
    assert len(channel.calls) == 2
    assert pool.state.risk.get("ada", "staff-1") is None


def test_successful_send_clears_low_level_flag():
    pool, _ = _setup()
    pool.state.risk.record("ada", "staff-2", reason="flaky", level="low")

    result = _send(ProactiveSender(pool), targets=["user:staff-2"])

    assert result.ok is True
    assert pool.state.risk.get("ada", "staff-2") is None


def test_partial_failure_still_reports_ok():
    pool, channel = _setup()
    channel.denied.add("staff-bad")

    result = _send(ProactiveSender(pool), targets=["user:staff-bad", "user:staff-good"])

    assert result.ok is True
    assert result.sent == ["staff-good"]
    assert len(result.errors) == 1


def test_long_text_is_chunked_to_channel_limit():
    pool, channel = _setup()

    _send(ProactiveSender(pool), text="alpha beta gamma delta epsilon zeta", targets=["user:u1"])

    texts = [call[2] for call in channel.calls]
    assert len(texts) > 1
    assert all(len(text) <= 20 for text in texts)


def test_peer_id_casing_is_restored():
    pool, channel = _setup()
    pool.state.peers.register("StaffAbC")

    _send(ProactiveSender(pool), targets=["user:staffabc"])

    assert channel.calls[0][0] == "StaffAbC"


def test_quiet_hours_defer_unless_forced():
    pool, channel = _setup()
    quiet = QuietHoursConfig(enabled=True, start="22:00", end="07:00", timezone="UTC")
    late = datetime(2026, 3, 1, 23, 30, tzinfo=timezone.utc)
    sender = ProactiveSender(pool, quiet_hours=quiet, now=lambda: late)

    deferred = _send(sender, targets=["user:u1"])
    forced = _send(sender, targets=["user:u1"], force=True)

    assert deferred.ok is False
    assert "quiet hours" in deferred.error
    assert forced.ok is True
    assert len(channel.calls) == 1


def test_quiet_window_boundaries():
    quiet = QuietHoursConfig(enabled=True, start="22:00", end="07:00", timezone="UTC")

    def at(hour: int, minute: int = 0) -> datetime:
        return datetime(2026, 3, 1, hour, minute, tzinfo=timezone.utc)

    assert is_quiet_now(quiet, at(22)) is True
    assert is_quiet_now(quiet, at(6, 59)) is True
    assert is_quiet_now(quiet, at(7)) is False
    assert is_quiet_now(quiet, at(12)) is False
    assert is_quiet_now(QuietHoursConfig(enabled=False), at(23)) is False
    assert is_quiet_now(QuietHoursConfig(enabled=True, start="bad", end="07:00"), at(23)) is False


def test_unknown_assistant_is_reported():
    pool, _ = _setup()

    result = asyncio.run(ProactiveSender(pool).send("ghost", "hi"))

    assert result.ok is False
    assert "ghost" in result.error
