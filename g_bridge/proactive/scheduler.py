"""Timed proactive sends run inside the gateway process."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from loguru import logger

from g_bridge.config.schema import ScheduledSendConfig
from g_bridge.proactive.quiet_hours import parse_clock, zone_for
from g_bridge.proactive.sender import ProactiveResult, ProactiveSender
from g_bridge.state.store import ProactiveStateStore

TICK_S = 60.0


def _parse_moment(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat((value or "").strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def latest_occurrence(schedule: ScheduledSendConfig, now: datetime) -> datetime | None:
    """Most recent daily slot at or before ``now``; None when the schedule is malformed."""
    clock = parse_clock(schedule.at)
    if clock is None:
        return None
    local_now = now.astimezone(zone_for(schedule.timezone))
    for days_back in range(8):
        day = local_now.date() - timedelta(days=days_back)
        if schedule.days and day.weekday() not in schedule.days:
            continue
        slot = datetime.combine(day, clock, tzinfo=local_now.tzinfo)
        if slot <= local_now:
            return slot
    return None


def is_due(schedule: ScheduledSendConfig, now: datetime, anchor: datetime, last_run: datetime | None) -> bool:
    """
    Whether ``schedule`` should fire at ``now``.

    ``anchor`` is the last run, or the scheduler start for schedules that
    never ran, so starting the gateway never replays missed slots.
    """
    kind = schedule.schedule_type
    if kind == "once":
        at = _parse_moment(schedule.at)
        return at is not None and last_run is None and at <= now
    if kind == "interval":
        if schedule.every_minutes <= 0:
            return False
        return now - anchor >= timedelta(minutes=schedule.every_minutes)
    if kind == "daily":
        slot = latest_occurrence(schedule, now)
        return slot is not None and slot > anchor
    logger.warning(f"Schedule {schedule.name}: unknown schedule type '{kind}'")
    return False


class ProactiveScheduler:
    """
    Checks configured schedules once per tick and sends the due ones.

    Runs are recorded in the state store when one is attached, so a
    restarted gateway neither repeats a ``once`` send nor fires a daily
    slot twice.
    """

    def __init__(
        self,
        sender: ProactiveSender,
        schedules: list[ScheduledSendConfig],
        store: ProactiveStateStore | None = None,
        now: Callable[[], datetime] | None = None,
        tick_s: float = TICK_S,
    ):
        self.sender = sender
        self.schedules = [s for s in schedules if s.enabled]
        self.store = store
        self.tick_s = tick_s
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._started_at = self._now()
        self._last_runs: dict[str, datetime] = {}
        self._task: asyncio.Task[None] | None = None

    def last_run(self, name: str) -> datetime | None:
        if name in self._last_runs:
            return self._last_runs[name]
        return self.store.last_run(name) if self.store is not None else None

    def _mark_run(self, name: str, ran_at: datetime) -> None:
        self._last_runs[name] = ran_at
        if self.store is not None:
            self.store.mark_run(name, ran_at)

    async def run_due(self) -> dict[str, ProactiveResult]:
        """Send every schedule that is due now; returns results by schedule name."""
        now = self._now()
        results: dict[str, ProactiveResult] = {}
        for schedule in self.schedules:
            last_run = self.last_run(schedule.name)
            if not is_due(schedule, now, last_run or self._started_at, last_run):
                continue
            self._mark_run(schedule.name, now)
            try:
                result = await self.sender.send(
                    schedule.assistant_id,
                    schedule.text,
                    platform=schedule.platform,
                    targets=list(schedule.targets),
                    title=schedule.title,
                    force=schedule.force,
                )
            except Exception as e:
                logger.error(f"Scheduled send {schedule.name} crashed: {e}")
                result = ProactiveResult(ok=False, error=str(e))
            if result.ok:
                logger.info(f"Scheduled send {schedule.name} delivered to {len(result.sent)} target(s)")
            else:
                logger.warning(f"Scheduled send {schedule.name} failed: {result.error}")
            results[schedule.name] = result
        return results

    async def _loop(self) -> None:
        while True:
            await self.run_due()
            await asyncio.sleep(self.tick_s)

    def start(self) -> None:
        if not self.schedules:
            return
        if self._task is None or self._task.done():
            logger.info(f"Proactive scheduler started with {len(self.schedules)} schedule(s)")
            self._task = asyncio.create_task(self._loop(), name="proactive-scheduler")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
