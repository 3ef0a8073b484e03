"""Exception taxonomy for the channel bridge."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for bridge failures."""


class ChannelHandshakeError(BridgeError):
    """Handshake or authentication with a platform gateway failed.

    Raised from ``start()``; never retried automatically.
    """


class ChannelTransportError(BridgeError):
    """The transport failed after a successful connect (recoverable)."""


class ChannelSendError(BridgeError):
    """A platform API rejected an outbound message."""

    def __init__(self, message: str, *, code: str | None = None, permission: bool = False):
        super().__init__(message)
        self.code = code
        self.permission = permission


class ModelBackendError(BridgeError):
    """The language-model backend returned an error instead of a reply."""
