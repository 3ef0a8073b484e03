"""Shared registries and the process-scoped bridge state."""

from g_bridge.state.context import BridgeState
from g_bridge.state.registries import (
    DedupRegistry,
    LastSeenRegistry,
    PeerIdRegistry,
    ProactiveRiskRegistry,
    RiskEntry,
)
from g_bridge.state.store import ProactiveStateStore

__all__ = [
    "BridgeState",
    "DedupRegistry",
    "LastSeenRegistry",
    "PeerIdRegistry",
    "ProactiveRiskRegistry",
    "ProactiveStateStore",
    "RiskEntry",
]
