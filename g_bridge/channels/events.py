"""Normalized inbound message envelope and channel status values."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from g_bridge.channels.content import Payload


class ChannelStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class Scope(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


@dataclass
class InboundMessage:
    """A platform update after channel-specific parsing."""

    id: str
    conversation_id: str
    scope: Scope
    sender_id: str
    payload: Payload
    assistant_id: str = ""
    sender_name: str = ""
    reply_handle: Any = None  # session webhook, chat id, ...
    expires_at: float | None = None  # epoch seconds
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_group(self) -> bool:
        return self.scope == Scope.GROUP

    @property
    def dedup_key(self) -> str:
        return f"{self.assistant_id}:{self.id}" if self.id else ""

    @property
    def session_key(self) -> tuple[str, str]:
        return (self.assistant_id, self.conversation_id)

    @property
    def target(self) -> str:
        """Address usable for a later proactive send."""
        if self.is_group:
            return f"group:{self.conversation_id}"
        return f"user:{self.sender_id}"

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) > self.expires_at
