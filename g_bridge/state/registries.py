"""TTL registries shared by every channel connection in the process."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from loguru import logger

Clock = Callable[[], float]

DEDUP_TTL_S = 5 * 60.0
DEDUP_SWEEP_THRESHOLD = 5000
RISK_TTL_S = 7 * 24 * 60 * 60.0
LAST_SEEN_LIMIT = 50


class DedupRegistry:
    """
    Remembers recently processed message keys.

    Keys are namespaced by assistant id, so connections never collide.
    Expired keys are evicted lazily on lookup; a full sweep runs once the
    map grows past ``sweep_threshold`` entries.
    """

    def __init__(
        self,
        ttl_s: float = DEDUP_TTL_S,
        sweep_threshold: int = DEDUP_SWEEP_THRESHOLD,
        clock: Clock = time.monotonic,
    ):
        self.ttl_s = ttl_s
        self.sweep_threshold = sweep_threshold
        self._clock = clock
        self._seen: dict[str, float] = {}

    def is_duplicate(self, key: str) -> bool:
        first_seen = self._seen.get(key)
        if first_seen is None:
            return False
        if self._clock() - first_seen <= self.ttl_s:
            return True
        self._seen.pop(key, None)
        return False

    def mark_processed(self, key: str) -> None:
        self._seen[key] = self._clock()
        if len(self._seen) > self.sweep_threshold:
            self.sweep()

    def sweep(self) -> int:
        """Drop every expired key. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, seen_at in self._seen.items() if now - seen_at > self.ttl_s]
        for key in expired:
            del self._seen[key]
        if expired:
            logger.debug(f"Dedup sweep removed {len(expired)} expired keys")
        return len(expired)

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.is_duplicate(key)


@dataclass(slots=True)
class RiskEntry:
    """A proactive target that recently rejected a send."""

    target_id: str
    level: str
    reason: str
    observed_at: float


class ProactiveRiskRegistry:
    """Time-boxed flags for proactive targets, keyed by ``(assistant_id, target_id)``."""

    def __init__(self, ttl_s: float = RISK_TTL_S, clock: Clock = time.time):
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: dict[tuple[str, str], RiskEntry] = {}

    def record(self, assistant_id: str, target_id: str, reason: str, level: str = "high") -> RiskEntry:
        entry = RiskEntry(
            target_id=target_id,
            level=level,
            reason=reason,
            observed_at=self._clock(),
        )
        self._entries[(assistant_id, target_id)] = entry
        logger.warning(f"Proactive target {target_id} flagged {level} for {assistant_id}: {reason}")
        return entry

    def get(self, assistant_id: str, target_id: str) -> RiskEntry | None:
        key = (assistant_id, target_id)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.observed_at > self.ttl_s:
            del self._entries[key]
            return None
        return entry

    def is_blocked(self, assistant_id: str, target_id: str) -> bool:
        entry = self.get(assistant_id, target_id)
        return entry is not None and entry.level == "high"

    def clear(self, assistant_id: str, target_id: str) -> None:
        self._entries.pop((assistant_id, target_id), None)

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        """Unexpired entries grouped by assistant id, as plain JSON data."""
        now = self._clock()
        data: dict[str, list[dict[str, Any]]] = {}
        for (assistant_id, _), entry in self._entries.items():
            if now - entry.observed_at > self.ttl_s:
                continue
            data.setdefault(assistant_id, []).append(asdict(entry))
        return data

    def restore(self, data: dict[str, Any]) -> int:
        """Load entries from :meth:`snapshot` output; expired or malformed rows are skipped."""
        now = self._clock()
        loaded = 0
        for assistant_id, rows in (data or {}).items():
            if not isinstance(rows, list):
                continue
            for row in rows:
                try:
                    entry = RiskEntry(
                        target_id=str(row["target_id"]),
                        level=str(row.get("level", "high")),
                        reason=str(row.get("reason", "")),
                        observed_at=float(row["observed_at"]),
                    )
                except (KeyError, TypeError, ValueError, AttributeError):
                    continue
                if now - entry.observed_at > self.ttl_s:
                    continue
                self._entries[(assistant_id, entry.target_id)] = entry
                loaded += 1
        return loaded

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(slots=True)
class LastSeenEntry:
    target: str
    is_group: bool
    seen_at: float


class LastSeenRegistry:
    """Conversations that recently talked to each assistant, newest first."""

    def __init__(self, limit: int = LAST_SEEN_LIMIT, clock: Clock = time.time):
        self.limit = limit
        self._clock = clock
        self._entries: dict[str, list[LastSeenEntry]] = {}

    def record(self, assistant_id: str, target: str, is_group: bool) -> None:
        entries = [e for e in self._entries.get(assistant_id, []) if e.target != target]
        entries.insert(0, LastSeenEntry(target=target, is_group=is_group, seen_at=self._clock()))
        self._entries[assistant_id] = entries[: self.limit]

    def targets(self, assistant_id: str) -> list[LastSeenEntry]:
        return list(self._entries.get(assistant_id, []))

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        return {
            assistant_id: [asdict(entry) for entry in entries]
            for assistant_id, entries in self._entries.items()
        }

    def restore(self, data: dict[str, Any]) -> int:
        loaded = 0
        for assistant_id, rows in (data or {}).items():
            if not isinstance(rows, list):
                continue
            entries: list[LastSeenEntry] = []
            for row in rows:
                try:
                    entries.append(
                        LastSeenEntry(
                            target=str(row["target"]),
                            is_group=bool(row.get("is_group", False)),
                            seen_at=float(row["seen_at"]),
                        )
                    )
                except (KeyError, TypeError, ValueError, AttributeError):
                    continue
            entries.sort(key=lambda e: e.seen_at, reverse=True)
            self._entries[assistant_id] = entries[: self.limit]
            loaded += len(self._entries[assistant_id])
        return loaded


class PeerIdRegistry:
    """Maps lower-cased peer ids back to the casing the platform sent."""

    def __init__(self) -> None:
        self._ids: dict[str, str] = {}

    def register(self, original_id: str) -> None:
        if original_id:
            self._ids[original_id.lower()] = original_id

    def resolve(self, peer_id: str) -> str:
        return self._ids.get(peer_id.lower(), peer_id)
