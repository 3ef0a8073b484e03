"""Chat channel connections and the pool that owns them."""

from g_bridge.channels.base import BaseChannel
from g_bridge.channels.events import ChannelStatus, InboundMessage, Scope
from g_bridge.channels.manager import ChannelPool

__all__ = ["BaseChannel", "ChannelPool", "ChannelStatus", "InboundMessage", "Scope"]
