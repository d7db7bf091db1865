"""Exception types raised by the delivery core."""
from typing import Optional


class ChatSyncError(Exception):
    """Base class for all errors raised by chatsync."""


class ConnectivityError(ChatSyncError):
    """Transient transport fault. Absorbed internally and turned into a reconnect."""


class NotConnectedError(ConnectivityError):
    """A frame was sent while the channel was not connected; the caller should queue."""


class AuthenticationError(ConnectivityError):
    """The server rejected the credential during the handshake."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CapacityExceededError(ChatSyncError):
    """The offline queue is full."""

    def __init__(self, capacity: int):
        super().__init__(f"Offline queue is full ({capacity} messages)")
        self.capacity = capacity


class DeliveryError(ChatSyncError):
    """A queued message could not be delivered during a sync pass."""

    def __init__(self, message_id: str, details: str):
        super().__init__(f"Delivery of {message_id} failed: {details}")
        self.message_id = message_id
        self.details = details


class SerializationError(ChatSyncError):
    """An inbound frame could not be decoded."""


class StoreError(ChatSyncError):
    """The message store could not apply a mutation."""
