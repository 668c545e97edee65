"""Error taxonomy for uploads and retrieval."""

from __future__ import annotations


class WsdropError(Exception):
    """Base class for all wsdrop errors."""


class ProtocolFault(WsdropError):
    """Raised when an inbound upload message cannot be accepted.

    The connection stays open; ``reply`` is sent back to the client as-is.
    """

    def __init__(self, reply: str, detail: str | None = None):
        self.reply = reply
        super().__init__(detail or reply)


class StorageFault(WsdropError):
    """Raised when the filesystem refuses to reserve or write an upload."""


class FetchFault(WsdropError):
    """Raised when remote content cannot be fetched or exceeds the size ceiling."""


class NotFoundFault(WsdropError):
    """Raised when a token does not resolve to a readable file."""

    def __init__(self, token: str, reason: str = "unknown token"):
        self.token = token
        self.reason = reason
        super().__init__(f"{token}: {reason}")


class NotReadyFault(NotFoundFault):
    """Raised when a token is known but its content is still being fetched."""

    def __init__(self, token: str):
        super().__init__(token, "upload in progress")
