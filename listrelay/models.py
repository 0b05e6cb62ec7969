"""Data models shared by the watcher, the dispatcher and the transport."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from .envelope import extract_body_lines
from .errors import MessageBodyUnavailableError, TransportDisconnectedError, TransportError


class ChangeEvent(str, Enum):
    """Outcome of one wait for mailbox changes."""

    CHANGED = "changed"
    TIMEOUT = "timeout"
    DISCONNECTED = "disconnected"


class WatchMode(str, Enum):
    """Change-detection strategy currently used by the watcher."""

    IDLE = "idle"
    POLLING = "polling"


class DaemonStatus(str, Enum):
    """Runtime status of a relay daemon."""

    STARTING = "starting"
    RUNNING = "running"
    RECONNECTING = "reconnecting"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


class Command(str, Enum):
    """What the dispatcher does with an inbound message."""

    SHOW_LIST = "show_list"
    ADD_RECIPIENTS = "add_recipients"
    FORWARD = "forward"
    REJECT = "reject"


BodyLoader = Callable[[], Awaitable[bytes]]


@dataclass
class InboundMessage:
    """One unseen message from the watched mailbox.

    Only the envelope is known up front.  The full message is pulled
    through *loader* the first time :meth:`raw` or :meth:`body_lines` is
    awaited, so commands that never look at the body cost no extra
    round-trip.
    """

    uid: str
    sender: str
    subject: str
    loader: BodyLoader = field(repr=False, compare=False)
    _raw: bytes | None = field(default=None, init=False, repr=False, compare=False)

    async def raw(self) -> bytes:
        """Return the complete RFC 5322 message bytes.

        A dropped connection raises :class:`TransportDisconnectedError` so
        the daemon can reconnect; any other transport failure only makes
        this message unavailable.
        """
        if self._raw is None:
            try:
                raw = await self.loader()
            except (MessageBodyUnavailableError, TransportDisconnectedError):
                raise
            except TransportError as exc:
                raise MessageBodyUnavailableError(self.uid, str(exc)) from exc
            if not raw:
                raise MessageBodyUnavailableError(self.uid)
            self._raw = raw
        return self._raw

    async def body_lines(self) -> list[str]:
        """Return the physical lines of the text/plain body."""
        lines = extract_body_lines(await self.raw())
        if lines is None:
            raise MessageBodyUnavailableError(self.uid, "message has no text/plain body")
        return lines


@dataclass(frozen=True)
class DispatchFailure:
    """A message whose action could not be completed."""

    uid: str
    command: Command
    error: str


@dataclass
class DispatchReport:
    """Result of dispatching one batch of messages."""

    outcomes: list[tuple[str, Command]] = field(default_factory=list)
    failures: list[DispatchFailure] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    @property
    def rejected(self) -> int:
        return sum(1 for _, command in self.outcomes if command is Command.REJECT)
