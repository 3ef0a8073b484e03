"""JSON file persistence for proactive delivery state."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

from g_bridge.utils.helpers import ensure_dir

if TYPE_CHECKING:
    from g_bridge.state.context import BridgeState

STATE_VERSION = 1


class ProactiveStateStore:
    """
    Keeps risk flags, last-seen conversations and schedule runs across processes.

    The gateway and one-shot ``send`` commands share the same file, so a
    target flagged by one run is still skipped by the next.
    """

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()
        ensure_dir(self.path.parent)

    def _read(self) -> dict[str, Any]:
        try:
            if self.path.exists():
                parsed = json.loads(self.path.read_text(encoding="utf-8"))
                if isinstance(parsed, dict):
                    return parsed
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Proactive state unreadable at {self.path}: {e}")
        return {}

    def _write(self, payload: dict[str, Any]) -> bool:
        payload["version"] = STATE_VERSION
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            tmp_path.replace(self.path)
            return True
        except OSError as e:
            logger.warning(f"Proactive state write failed at {self.path}: {e}")
            return False

    def load_into(self, state: BridgeState) -> None:
        data = self._read()
        risks = state.risk.restore(data.get("risk") or {})
        seen = state.last_seen.restore(data.get("last_seen") or {})
        if risks or seen:
            logger.debug(f"Loaded {risks} risk flags and {seen} last-seen targets from {self.path}")

    def save_from(self, state: BridgeState) -> bool:
        payload = self._read()
        payload["risk"] = state.risk.snapshot()
        payload["last_seen"] = state.last_seen.snapshot()
        return self._write(payload)

    def last_run(self, schedule_name: str) -> datetime | None:
        runs = self._read().get("schedule_runs")
        if not isinstance(runs, dict) or schedule_name not in runs:
            return None
        try:
            parsed = datetime.fromisoformat(str(runs[schedule_name]))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    def mark_run(self, schedule_name: str, ran_at: datetime) -> bool:
        payload = self._read()
        runs = payload.get("schedule_runs")
        if not isinstance(runs, dict):
            runs = {}
        runs[schedule_name] = ran_at.astimezone(timezone.utc).replace(microsecond=0).isoformat()
        payload["schedule_runs"] = runs
        return self._write(payload)
