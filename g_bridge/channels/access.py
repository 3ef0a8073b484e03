"""Access policy for direct and group conversations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from g_bridge.channels.events import InboundMessage

OPEN = "open"
ALLOWLIST = "allowlist"


@dataclass(frozen=True, slots=True)
class AccessPolicy:
    """Immutable per connection; rebuilt from config on every update."""

    dm_policy: str = OPEN
    group_policy: str = OPEN
    allow_from: frozenset[str] = frozenset()

    @classmethod
    def from_config(cls, config: Any) -> "AccessPolicy":
        return cls(
            dm_policy=_normalize_mode(getattr(config, "dm_policy", OPEN)),
            group_policy=_normalize_mode(getattr(config, "group_policy", OPEN)),
            allow_from=frozenset(
                str(item).strip() for item in getattr(config, "allow_from", []) or [] if str(item).strip()
            ),
        )


def _normalize_mode(value: str | None) -> str:
    mode = (value or OPEN).strip().lower()
    return ALLOWLIST if mode == ALLOWLIST else OPEN


def is_allowed(message: InboundMessage, policy: AccessPolicy) -> bool:
    """
    Check whether a message may be processed.

    Group allowlists match the conversation id; direct allowlists match
    the sender id.
    """
    if message.is_group:
        if policy.group_policy != ALLOWLIST:
            return True
        return message.conversation_id in policy.allow_from

    if policy.dm_policy != ALLOWLIST:
        return True
    return message.sender_id in policy.allow_from
