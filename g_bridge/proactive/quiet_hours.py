"""Quiet-hours window for proactive delivery."""

from __future__ import annotations

from datetime import datetime, time, timezone, tzinfo

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from g_bridge.config.schema import QuietHoursConfig


def parse_clock(value: str) -> time | None:
    """Parse ``HH:MM``; None for anything else."""
    hour, sep, minute = (value or "").strip().partition(":")
    if not sep or len(hour) != 2 or len(minute) != 2 or not (hour + minute).isdigit():
        return None
    h, m = int(hour), int(minute)
    if h > 23 or m > 59:
        return None
    return time(hour=h, minute=m)


def zone_for(name: str) -> tzinfo:
    """Named zone, or the machine's local zone for 'local' and unknown names."""
    raw = (name or "").strip()
    if raw and raw.lower() != "local":
        try:
            return ZoneInfo(raw)
        except ZoneInfoNotFoundError:
            pass
    return datetime.now().astimezone().tzinfo or timezone.utc


def in_quiet_window(moment: time, start: time, end: time) -> bool:
    if start == end:
        return False
    if start < end:
        return start <= moment < end
    # window wraps midnight
    return moment >= start or moment < end


def is_quiet_now(config: QuietHoursConfig, now: datetime | None = None) -> bool:
    """True when ``config`` is enabled and ``now`` falls inside its window."""
    if not config.enabled:
        return False
    start, end = parse_clock(config.start), parse_clock(config.end)
    if start is None or end is None:
        return False
    zone = zone_for(config.timezone)
    current = (now or datetime.now(timezone.utc)).astimezone(zone)
    return in_quiet_window(current.time(), start, end)
