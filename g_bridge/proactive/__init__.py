"""Proactive (unsolicited) delivery."""

from g_bridge.proactive.quiet_hours import is_quiet_now
from g_bridge.proactive.scheduler import ProactiveScheduler
from g_bridge.proactive.sender import ProactiveResult, ProactiveSender

__all__ = ["ProactiveResult", "ProactiveScheduler", "ProactiveSender", "is_quiet_now"]
