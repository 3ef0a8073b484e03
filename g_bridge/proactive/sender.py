"""Outbound messages that are not replies: target resolution and risk-based skip."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

import httpx
from loguru import logger

from g_bridge.channels.base import BaseChannel
from g_bridge.channels.manager import ChannelPool
from g_bridge.channels.streaming import chunk_text
from g_bridge.config.schema import QuietHoursConfig
from g_bridge.errors import ChannelSendError
from g_bridge.proactive.quiet_hours import is_quiet_now


@dataclass
class ProactiveResult:
    ok: bool
    error: str = ""
    sent: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class ProactiveSender:
    """
    Sends an unsolicited message on behalf of an assistant.

    Targets come from the caller, else the channel's ``owner_targets``, else
    the conversations most recently seen by the assistant. Targets flagged
    as risky are skipped without a network call until the flag expires or a
    later send to them succeeds.
    """

    def __init__(
        self,
        pool: ChannelPool,
        quiet_hours: QuietHoursConfig | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        self.pool = pool
        self.state = pool.state
        self.quiet_hours = quiet_hours or pool.config.proactive.quiet_hours
        self._now = now or (lambda: datetime.now(timezone.utc))

    def resolve_targets(self, channel: BaseChannel, explicit: list[str] | None = None) -> list[str]:
        if explicit:
            return [t for t in explicit if t.strip()]
        owners = list(getattr(channel.config, "owner_targets", []) or [])
        if owners:
            return owners
        return [entry.target for entry in self.state.last_seen.targets(channel.assistant_id)]

    async def send(
        self,
        assistant_id: str,
        text: str,
        *,
        platform: str = "dingtalk",
        targets: list[str] | None = None,
        title: str = "",
        force: bool = False,
    ) -> ProactiveResult:
        if not text.strip():
            return ProactiveResult(ok=False, error="empty message")
        if not force and is_quiet_now(self.quiet_hours, self._now()):
            logger.info(f"Proactive send for {assistant_id} deferred: quiet hours")
            return ProactiveResult(ok=False, error="quiet hours active (use force to override)")

        try:
            channel = self.pool.channel_for_send(assistant_id, platform)
        except (KeyError, ValueError) as e:
            return ProactiveResult(ok=False, error=str(e))

        resolved = self.resolve_targets(channel, targets)
        if not resolved:
            return ProactiveResult(
                ok=False,
                error=f"no proactive targets for {assistant_id} on {platform}: "
                "configure owner_targets or message the bot first",
            )

        result = ProactiveResult(ok=False)
        for raw in resolved:
            target_id, is_group = channel.parse_target(raw)
            target_id = self.state.peers.resolve(target_id)
            if not target_id:
                continue

            risk = self.state.risk.get(assistant_id, target_id)
            if risk is not None and risk.level == "high":
                logger.warning(f"Skipping risky proactive target {target_id}: {risk.reason}")
                result.skipped.append(target_id)
                continue

            try:
                for chunk in chunk_text(text, channel.message_limit):
                    await channel.send_proactive(target_id, is_group, chunk, title)
            except ChannelSendError as e:
                if e.permission:
                    self.state.risk.record(assistant_id, target_id, reason=str(e))
                else:
                    logger.error(f"Proactive send to {target_id} failed: {e}")
                result.errors.append(f"{target_id}: {e}")
                continue
            except httpx.HTTPError as e:
                logger.error(f"Proactive send to {target_id} failed: {e}")
                result.errors.append(f"{target_id}: {e}")
                continue

            self.state.risk.clear(assistant_id, target_id)
            result.sent.append(target_id)

        self.state.persist()
        result.ok = bool(result.sent)
        if not result.ok:
            if result.errors:
                result.error = "; ".join(result.errors)
            else:
                result.error = "all targets skipped"
        return result
