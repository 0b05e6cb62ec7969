"""Shared test fixtures for the listrelay test suite."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from email.mime.text import MIMEText
from pathlib import Path

import pytest

from listrelay.config import ListConfig, MailConfig, RelayConfig, RetryConfig
from listrelay.envelope import extract_envelope
from listrelay.errors import (
    MessageBodyUnavailableError,
    PushNotSupportedError,
    SendError,
    TransportDisconnectedError,
)
from listrelay.interface import MailTransport
from listrelay.models import ChangeEvent, InboundMessage


@pytest.fixture
def mail_config() -> MailConfig:
    return MailConfig(
        imap_host="imap.test.com",
        imap_port=993,
        smtp_host="smtp.test.com",
        smtp_port=587,
        address="list@test.com",
        user="list@test.com",
        password="testpass",
        timeout_seconds=5.0,
    )


@pytest.fixture
def list_config() -> ListConfig:
    return ListConfig(
        interval=0.01,
        recipients=["alice@test.com", "bob@test.com"],
        admins=["alice@test.com"],
    )


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(
        max_attempts=3,
        initial_wait_seconds=0.01,
        max_wait_seconds=0.1,
        multiplier=2.0,
    )


@pytest.fixture
def relay_config(
    mail_config: MailConfig,
    list_config: ListConfig,
    retry_config: RetryConfig,
) -> RelayConfig:
    return RelayConfig(
        health_port=0,
        mail=mail_config,
        list=list_config,
        retry=retry_config,
    )


CONFIG_TOML = """\
# Mailing list for the test suite
[mail]
imapHost = "imap.test.com"
imapPort = 993
smtpHost = "smtp.test.com"
smtpPort = 587
address = "list@test.com"
user = "list@test.com"
pass = "testpass"

[list]
interval = 30 # seconds
recipients = ["alice@test.com", "bob@test.com"]
admins = ["alice@test.com"]

[relay]
healthPort = 0
logJson = false
"""


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "list.toml"
    path.write_text(CONFIG_TOML, encoding="utf-8")
    return path


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def _build_plain_email(
    *,
    subject: str = "Test Subject",
    from_addr: str = "alice@test.com",
    to_addr: str = "list@test.com",
    body: str = "Hello, World!",
    message_id: str = "<test-001@test.com>",
) -> bytes:
    """Build a simple plain-text email as raw bytes."""
    msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    msg["Message-ID"] = message_id
    msg["Date"] = "Mon, 01 Jun 2025 12:00:00 +0000"
    return msg.as_bytes()


def _header_block(raw: bytes) -> bytes:
    head, _, _ = raw.partition(b"\n\n")
    return head + b"\n\n"


def make_message(
    uid: str = "1",
    *,
    sender: str = "alice@test.com",
    subject: str = "Test Subject",
    body: str = "Hello, World!",
    raw: bytes | None = None,
) -> InboundMessage:
    """Build an InboundMessage whose loader serves a plain-text email."""
    payload = raw if raw is not None else _build_plain_email(subject=subject, from_addr=sender, body=body)
    loads: list[str] = []

    async def _load() -> bytes:
        loads.append(uid)
        return payload

    message = InboundMessage(uid=uid, sender=sender, subject=subject, loader=_load)
    message.loads = loads  # type: ignore[attr-defined]
    return message


# ------------------------------------------------------------------
# In-memory transport
# ------------------------------------------------------------------


class FakeTransport(MailTransport):
    """MailTransport over an in-memory mailbox.

    ``wait_for_change`` sleeps for the timeout and reports TIMEOUT unless
    events were queued with :meth:`push`.  Loading a body listed in
    ``dropping_bodies`` drops the connection once, and ``send_delay``
    makes every send take that long.
    """

    def __init__(self, *, push_supported: bool = True) -> None:
        self.mailbox: dict[str, bytes] = {}
        self.seen: set[str] = set()
        self.sent: list[tuple[str, list[str], bytes]] = []
        self.failing_recipients: set[str] = set()
        self.missing_bodies: set[str] = set()
        self.dropping_bodies: set[str] = set()
        self.send_delay = 0.0
        self.sending = False
        self.sends_cancelled = 0
        self.push_supported = push_supported
        self.alive = True
        self.connects = 0
        self.disconnects = 0
        self.waits = 0
        self.waits_cancelled = 0
        self.in_wait = False
        self._events: asyncio.Queue[ChangeEvent] = asyncio.Queue()

    def deliver(self, uid: str, raw: bytes) -> None:
        self.mailbox[uid] = raw

    def push(self, event: ChangeEvent = ChangeEvent.CHANGED) -> None:
        self._events.put_nowait(event)

    async def connect(self) -> None:
        self.connects += 1
        self.alive = True

    async def disconnect(self) -> None:
        self.disconnects += 1

    async def fetch_unseen(self) -> list[InboundMessage]:
        messages = []
        for uid in sorted(self.mailbox, key=int):
            if uid in self.seen:
                continue
            envelope = extract_envelope(_header_block(self.mailbox[uid]))
            assert envelope is not None
            messages.append(
                InboundMessage(
                    uid=uid,
                    sender=envelope.sender,
                    subject=envelope.subject,
                    loader=self._loader(uid),
                )
            )
        return messages

    def _loader(self, uid: str):
        async def _load() -> bytes:
            if uid in self.missing_bodies:
                raise MessageBodyUnavailableError(uid)
            if uid in self.dropping_bodies:
                self.dropping_bodies.discard(uid)
                self.alive = False
                raise TransportDisconnectedError("socket closed")
            return self.mailbox[uid]

        return _load

    async def mark_seen(self, uids: Sequence[str]) -> None:
        self.seen.update(uids)

    async def send(self, from_address: str, to_addresses: Sequence[str], message: bytes) -> None:
        if self.send_delay:
            self.sending = True
            try:
                await asyncio.sleep(self.send_delay)
            except asyncio.CancelledError:
                self.sends_cancelled += 1
                raise
            finally:
                self.sending = False
        if self.failing_recipients.intersection(to_addresses):
            raise SendError(f"refused: {sorted(self.failing_recipients)}")
        self.sent.append((from_address, list(to_addresses), message))

    async def wait_for_change(self, timeout: float) -> ChangeEvent:
        if not self.push_supported:
            raise PushNotSupportedError("no IDLE")
        self.waits += 1
        self.in_wait = True
        try:
            return await asyncio.wait_for(self._events.get(), timeout)
        except TimeoutError:
            return ChangeEvent.TIMEOUT
        except asyncio.CancelledError:
            self.waits_cancelled += 1
            raise
        finally:
            self.in_wait = False

    async def noop(self) -> bool:
        return self.alive


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Poll *predicate* until it is true or *timeout* expires."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)
