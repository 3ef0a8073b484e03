"""Process-scoped bridge state shared by the pool and its connections."""

from __future__ import annotations

from dataclasses import dataclass, field

from g_bridge.session.manager import InMemorySessionStore, SessionTracker
from g_bridge.state.registries import (
    DedupRegistry,
    LastSeenRegistry,
    PeerIdRegistry,
    ProactiveRiskRegistry,
)
from g_bridge.state.store import ProactiveStateStore


@dataclass
class BridgeState:
    """
    Every piece of mutable state that outlives a single connection.

    One instance is created per process (or per test) and handed to the
    connection pool by reference. With a ``store`` attached, risk flags and
    last-seen targets are written back after every change.
    """

    dedup: DedupRegistry = field(default_factory=DedupRegistry)
    risk: ProactiveRiskRegistry = field(default_factory=ProactiveRiskRegistry)
    last_seen: LastSeenRegistry = field(default_factory=LastSeenRegistry)
    peers: PeerIdRegistry = field(default_factory=PeerIdRegistry)
    sessions: SessionTracker = field(
        default_factory=lambda: SessionTracker(InMemorySessionStore())
    )
    store: ProactiveStateStore | None = None

    @classmethod
    def persistent(cls, store: ProactiveStateStore, **kwargs) -> BridgeState:
        state = cls(store=store, **kwargs)
        store.load_into(state)
        return state

    def persist(self) -> None:
        if self.store is not None:
            self.store.save_from(self)
