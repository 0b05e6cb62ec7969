"""MailTransport: the ABC the watcher, dispatcher and daemon talk to."""

from __future__ import annotations

import abc
from collections.abc import Sequence

from .models import ChangeEvent, InboundMessage


class MailTransport(abc.ABC):
    """Capability interface over one mailbox connection plus an SMTP relay.

    The concrete implementation is :class:`~listrelay.transport.ImapSmtpTransport`;
    tests use an in-memory fake.  Implementations are not reentrant: the
    daemon never runs two of these calls concurrently on one instance,
    except for :meth:`fetch_unseen`'s own internal fan-out.
    """

    @abc.abstractmethod
    async def connect(self) -> None:
        """Open and authenticate the mailbox connection."""

    @abc.abstractmethod
    async def disconnect(self) -> None:
        """Close the mailbox connection.  Safe to call when not connected."""

    @abc.abstractmethod
    async def fetch_unseen(self) -> list[InboundMessage]:
        """Return every unseen message, in mailbox order.

        Bodies are not downloaded; each message loads its own on demand.
        """

    @abc.abstractmethod
    async def mark_seen(self, uids: Sequence[str]) -> None:
        """Flag the given messages as seen."""

    @abc.abstractmethod
    async def send(self, from_address: str, to_addresses: Sequence[str], message: bytes) -> None:
        """Hand *message* to the SMTP server for *to_addresses*.

        Raises :class:`~listrelay.errors.SendError` on failure.
        """

    @abc.abstractmethod
    async def wait_for_change(self, timeout: float) -> ChangeEvent:
        """Block until the server announces a change or *timeout* elapses.

        Raises :class:`~listrelay.errors.PushNotSupportedError` when the
        server cannot push.  Cancelling the call must end the server-side
        wait before the cancellation completes.
        """

    @abc.abstractmethod
    async def noop(self) -> bool:
        """Probe the connection; ``False`` means it is gone."""

    async def health_check(self) -> dict[str, object]:
        """Return transport-specific health details."""
        return {}
