import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
from typer.testing import CliRunner

from g_bridge import __version__
from g_bridge.cli.commands import _build_runtime, _build_scheduler, app
from g_bridge.config.loader import load_config

runner = CliRunner()


def _write_config(tmp_path, monkeypatch, data: dict) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    monkeypatch.setenv("G_BRIDGE_CONFIG", str(path))


def test_help_lists_commands():
    result = runner.invoke(app, ["--help"])

    assert result.exit_code == 0
    assert "Usage: g-bridge" in result.stdout
    for command in ("gateway", "send", "status", "version"):
        assert command in result.stdout


def test_version_flag_and_command():
    flag = runner.invoke(app, ["--version"])
    command = runner.invoke(app, ["version"])

    assert flag.exit_code == 0
    assert f"v{__version__}" in flag.stdout
    assert f"v{__version__}" in command.stdout


def test_status_without_assistants(tmp_path, monkeypatch):
    _write_config(tmp_path, monkeypatch, {})

    result = runner.invoke(app, ["status"])

    assert result.exit_code == 0
    assert "No assistants configured" in result.stdout


def test_status_lists_assistant_channels(tmp_path, monkeypatch):
    _write_config(
        tmp_path,
        monkeypatch,
        {"assistants": [{"id": "ada", "name": "Ada", "channels": {"dingtalk": {"enabled": True}}}]},
    )

    result = runner.invoke(app, ["status"])

    assert result.exit_code == 0
    assert "ada" in result.stdout
    assert "dingtalk" in result.stdout
    assert "telegram" in result.stdout


def test_gateway_without_assistants_fails(tmp_path, monkeypatch):
    _write_config(tmp_path, monkeypatch, {})

    result = runner.invoke(app, ["gateway"])

    assert result.exit_code == 1
    assert "No assistants configured" in result.stdout


def test_send_to_unknown_assistant_fails(tmp_path, monkeypatch):
    _write_config(tmp_path, monkeypatch, {"assistants": [{"id": "ada"}]})

    result = runner.invoke(app, ["send", "ghost", "hello"])

    assert result.exit_code == 1
    assert "Unknown assistant: ghost" in result.stdout


def test_status_lists_feishu_channel(tmp_path, monkeypatch):
    _write_config(
        tmp_path,
        monkeypatch,
        {"assistants": [{"id": "ada", "name": "Ada", "channels": {"feishu": {"enabled": True}}}]},
    )

    result = runner.invoke(app, ["status"])

    assert result.exit_code == 0
    assert "feishu" in result.stdout


def _patch_dingtalk(monkeypatch, routes: dict) -> list[httpx.Request]:
    requests: list[httpx.Request] = []
    real_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        status, body = routes.get(request.url.path, (404, {"code": "NotFound"}))
        return httpx.Response(status, json=body)

    def factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr("g_bridge.channels.dingtalk.httpx.AsyncClient", factory)
    return requests


def test_target_flagged_by_gateway_schedule_is_skipped_by_send(tmp_path, monkeypatch):
    _write_config(
        tmp_path,
        monkeypatch,
        {
            "providers": {"openrouter": {"apiKey": "sk-test"}},
            "assistants": [
                {
                    "id": "ada",
                    "name": "Ada",
                    "channels": {"dingtalk": {"enabled": True, "appKey": "k", "appSecret": "s"}},
                }
            ],
            "proactive": {
                "schedules": [
                    {
                        "name": "standup",
                        "assistantId": "ada",
                        "text": "standup in 5",
                        "scheduleType": "interval",
                        "everyMinutes": 5,
                        "targets": ["user:staff-1"],
                    }
                ]
            },
        },
    )
    requests = _patch_dingtalk(
        monkeypatch,
        {
            "/v1.0/oauth2/accessToken": (200, {"accessToken": "t", "expireIn": 7200}),
            "/v1.0/robot/oToMessages/batchSend": (403, {"code": "Forbidden.AccessDenied.AccessTokenPermissionDenied"}),
        },
    )
    clock = [datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)]

    config = load_config()
    pool, _ = _build_runtime(config)
    scheduler = _build_scheduler(pool, config, now=lambda: clock[0])
    clock[0] += timedelta(minutes=6)
    results = asyncio.run(scheduler.run_due())

    assert results["standup"].ok is False
    assert pool.state.risk.is_blocked("ada", "staff-1")

    result = runner.invoke(app, ["send", "ada", "hi", "--target", "user:staff-1"])

    assert result.exit_code == 1
    assert "skipped staff-1" in result.stdout
    assert len([r for r in requests if r.url.path.endswith("batchSend")]) == 1
