import asyncio
import json
from datetime import datetime, timedelta, timezone

from g_bridge.config.schema import ScheduledSendConfig
from g_bridge.proactive import ProactiveResult, ProactiveScheduler
from g_bridge.proactive.scheduler import is_due, latest_occurrence
from g_bridge.state import BridgeState, LastSeenRegistry, ProactiveRiskRegistry, ProactiveStateStore

MONDAY_0930 = datetime(2026, 1, 5, 9, 30, tzinfo=timezone.utc)


def _schedule(**fields) -> ScheduledSendConfig:
    settings = {"name": "standup", "assistant_id": "ada", "text": "standup soon", "timezone": "UTC"}
    settings.update(fields)
    return ScheduledSendConfig(**settings)


class _Sender:
    def __init__(self, fail: Exception | None = None):
        self.fail = fail
        self.calls: list[tuple[str, str, dict]] = []

    async def send(self, assistant_id: str, text: str, **kwargs) -> ProactiveResult:
        self.calls.append((assistant_id, text, kwargs))
        if self.fail is not None:
            raise self.fail
        return ProactiveResult(ok=True, sent=["staff-1"])


class _Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def test_once_schedule_fires_a_single_time():
    schedule = _schedule(schedule_type="once", at="2026-01-05T09:00:00+00:00")
    anchor = MONDAY_0930 - timedelta(hours=1)

    assert is_due(schedule, MONDAY_0930, anchor, None) is True
    assert is_due(schedule, MONDAY_0930, MONDAY_0930, MONDAY_0930) is False
    assert is_due(schedule, MONDAY_0930 - timedelta(hours=2), anchor, None) is False


def test_interval_schedule_counts_from_anchor():
    schedule = _schedule(schedule_type="interval", every_minutes=60)

    assert is_due(schedule, MONDAY_0930, MONDAY_0930 - timedelta(minutes=59), None) is False
    assert is_due(schedule, MONDAY_0930, MONDAY_0930 - timedelta(minutes=60), None) is True
    assert is_due(_schedule(schedule_type="interval", every_minutes=0), MONDAY_0930, MONDAY_0930, None) is False


def test_daily_schedule_respects_days_and_anchor():
    schedule = _schedule(schedule_type="daily", at="09:00", days=[0])
    tuesday = MONDAY_0930 + timedelta(days=1)

    assert latest_occurrence(schedule, tuesday) == datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
    assert is_due(schedule, MONDAY_0930, MONDAY_0930 - timedelta(hours=2), None) is True
    assert is_due(schedule, MONDAY_0930, MONDAY_0930 - timedelta(minutes=10), None) is False
    assert is_due(schedule, tuesday, MONDAY_0930, MONDAY_0930) is False
    assert latest_occurrence(_schedule(at="9am"), MONDAY_0930) is None


def test_unknown_schedule_type_is_never_due():
    assert is_due(_schedule(schedule_type="hourly"), MONDAY_0930, MONDAY_0930 - timedelta(days=1), None) is False


def test_gateway_start_does_not_replay_earlier_slot():
    clock = _Clock(MONDAY_0930)
    sender = _Sender()
    scheduler = ProactiveScheduler(sender, [_schedule(at="09:00")], now=clock)

    assert asyncio.run(scheduler.run_due()) == {}

    clock.now = MONDAY_0930 + timedelta(days=1)
    results = asyncio.run(scheduler.run_due())

    assert results["standup"].ok is True
    assert sender.calls == [
        ("ada", "standup soon", {"platform": "dingtalk", "targets": [], "title": "", "force": False})
    ]


def test_recorded_run_survives_restart(tmp_path):
    store = ProactiveStateStore(tmp_path / "state.json")
    schedule = _schedule(schedule_type="once", at="2026-01-05T09:00:00Z")
    first = _Sender()

    asyncio.run(ProactiveScheduler(first, [schedule], store=store, now=_Clock(MONDAY_0930)).run_due())
    second = _Sender()
    restarted = ProactiveScheduler(second, [schedule], store=store, now=_Clock(MONDAY_0930 + timedelta(hours=1)))
    asyncio.run(restarted.run_due())

    assert len(first.calls) == 1
    assert second.calls == []
    assert restarted.last_run("standup") == MONDAY_0930


def test_crashing_send_is_reported_and_not_retried_every_tick():
    clock = _Clock(MONDAY_0930)
    sender = _Sender(fail=RuntimeError("gateway down"))
    scheduler = ProactiveScheduler(sender, [_schedule(schedule_type="interval", every_minutes=5)], now=clock)

    clock.now += timedelta(minutes=5)
    results = asyncio.run(scheduler.run_due())
    clock.now += timedelta(minutes=1)
    again = asyncio.run(scheduler.run_due())

    assert results["standup"].ok is False
    assert "gateway down" in results["standup"].error
    assert again == {}
    assert len(sender.calls) == 1


def test_disabled_schedules_leave_the_scheduler_idle():
    scheduler = ProactiveScheduler(_Sender(), [_schedule(enabled=False)])

    async def run():
        scheduler.start()
        task = scheduler._task
        await scheduler.stop()
        return task

    assert asyncio.run(run()) is None


def test_store_round_trips_risk_and_last_seen(tmp_path):
    path = tmp_path / "state.json"
    now = [1_000_000.0]
    state = BridgeState.persistent(
        ProactiveStateStore(path),
        risk=ProactiveRiskRegistry(clock=lambda: now[0]),
        last_seen=LastSeenRegistry(clock=lambda: now[0]),
    )
    state.risk.record("ada", "staff-1", reason="Forbidden.AccessDenied")
    state.last_seen.record("ada", "group:cid-1", True)
    state.store.mark_run("standup", MONDAY_0930)
    state.persist()

    restored = BridgeState.persistent(
        ProactiveStateStore(path),
        risk=ProactiveRiskRegistry(clock=lambda: now[0] + 60),
    )

    assert restored.risk.is_blocked("ada", "staff-1")
    assert [entry.target for entry in restored.last_seen.targets("ada")] == ["group:cid-1"]
    assert json.loads(path.read_text(encoding="utf-8"))["schedule_runs"] == {"standup": "2026-01-05T09:30:00+00:00"}


def test_unreadable_store_starts_empty(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")

    state = BridgeState.persistent(ProactiveStateStore(path))

    assert len(state.risk) == 0
    assert state.last_seen.targets("ada") == []
    assert state.store.last_run("standup") is None
