"""Conversation history and session tracking."""

from g_bridge.session.manager import (
    ConversationHistory,
    InMemorySessionStore,
    JsonlSessionStore,
    SessionRecord,
    SessionStore,
    SessionTracker,
)

__all__ = [
    "ConversationHistory",
    "InMemorySessionStore",
    "JsonlSessionStore",
    "SessionRecord",
    "SessionStore",
    "SessionTracker",
]
