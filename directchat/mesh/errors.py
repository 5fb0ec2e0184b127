"""Exception types raised by the chat core."""

from __future__ import annotations


class DirectChatError(Exception):
    """Base class for all chat core errors."""


class DiscoveryFailure(DirectChatError):
    """The link layer refused a discovery or connect request."""

    def __init__(self, code: int | str, message: str = ""):
        self.code = code
        super().__init__(message or f"link layer error ({code})")


class NegotiationFailure(DirectChatError):
    """A connect request never resolved into a host/client role."""


class BindFailure(DirectChatError):
    """The messaging endpoint could not bind its listening socket."""


class ConnectionFailure(DirectChatError):
    """A single inbound or outbound connection failed."""


class InvalidArgument(DirectChatError, ValueError):
    """A call was rejected before any I/O was attempted."""
