"""Exception hierarchy for the relay.

Per-message errors are recovered by the dispatcher and reported back to the
sender; transport errors end the current watch loop and are handled by the
daemon's reconnect policy.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all relay errors."""


# ----------------------------------------------------------------------
# Recipient store
# ----------------------------------------------------------------------


class StoreError(RelayError):
    """A recipient list mutation was refused."""

    def __init__(self, address: str, message: str) -> None:
        super().__init__(message)
        self.address = address


class AlreadyPresentError(StoreError):
    def __init__(self, address: str) -> None:
        super().__init__(address, f"Recipient already in list: {address}")


class NotPresentError(StoreError):
    def __init__(self, address: str) -> None:
        super().__init__(address, f"Recipient not in list: {address}")


class PersistenceError(RelayError):
    """The updated recipient list could not be written to disk."""


# ----------------------------------------------------------------------
# Transport
# ----------------------------------------------------------------------


class TransportError(RelayError):
    """The mail server connection failed or returned an error."""


class TransportDisconnectedError(TransportError):
    """The connection was dropped or logged out."""


class PushNotSupportedError(TransportError):
    """The server does not offer push notifications (no IDLE capability)."""


class SendError(TransportError):
    """An outbound message could not be handed to the SMTP server."""


class MessageBodyUnavailableError(TransportError):
    """The server did not return a body for a message."""

    def __init__(self, uid: str, reason: str = "server returned no message body") -> None:
        super().__init__(f"message {uid}: {reason}")
        self.uid = uid
