"""Async IMAP client wrapping stdlib imaplib with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import imaplib
import re
import select
import ssl
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from .config import MailConfig
from .errors import (
    MessageBodyUnavailableError,
    PushNotSupportedError,
    TransportDisconnectedError,
    TransportError,
)
from .models import ChangeEvent

logger = structlog.get_logger()

T = TypeVar("T")

# Untagged responses that mean the mailbox contents changed
_UPDATE_RESPONSE = re.compile(rb"^\* \d+ (EXISTS|RECENT|EXPUNGE|FETCH)\b", re.IGNORECASE)
_BYE_RESPONSE = re.compile(rb"^\* BYE\b", re.IGNORECASE)

# Longest stretch the IDLE thread blocks before re-checking its abort flag
IDLE_CHECK_SECONDS = 1.0


@dataclass
class FetchedHeader:
    """Raw header block of one message."""

    uid: str
    header_bytes: bytes


class AsyncImapClient:
    """Async-friendly IMAP client for the list mailbox.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()`` to avoid blocking the event loop, and run
    under a lock because one ``imaplib`` connection cannot be shared
    between threads.  Messages are only ever read with ``BODY.PEEK`` so
    the ``\\Seen`` flag changes solely through :meth:`mark_seen`.
    """

    def __init__(self, config: MailConfig) -> None:
        self._config = config
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._lock = threading.Lock()
        self._supports_idle = False

    @property
    def supports_idle(self) -> bool:
        return self._supports_idle

    @property
    def connected(self) -> bool:
        """Whether a session is open; does not probe the server."""
        return self._conn is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect, login, and select the configured mailbox."""
        await self._run(self._connect_sync)
        logger.info(
            "imap_connected",
            host=self._config.imap_host,
            mailbox=self._config.mailbox,
            idle=self._supports_idle,
        )

    def _connect_sync(self) -> None:
        with self._lock:
            cfg = self._config
            if cfg.imap_ssl:
                conn = imaplib.IMAP4_SSL(cfg.imap_host, cfg.imap_port, timeout=cfg.timeout_seconds)
            else:
                conn = imaplib.IMAP4(cfg.imap_host, cfg.imap_port, timeout=cfg.timeout_seconds)
            conn.login(cfg.user, cfg.password.get_secret_value())
            status, data = conn.select(cfg.mailbox)
            if status != "OK":
                raise imaplib.IMAP4.error(f"cannot select {cfg.mailbox}: {data!r}")
            self._supports_idle = "IDLE" in conn.capabilities
            self._conn = conn

    async def disconnect(self) -> None:
        """Close mailbox and logout."""
        if self._conn is not None:
            await asyncio.to_thread(self._disconnect_sync)
            self._conn = None
            logger.info("imap_disconnected")

    def _disconnect_sync(self) -> None:
        with self._lock:
            assert self._conn is not None
            try:
                self._conn.close()
            except (imaplib.IMAP4.error, OSError):
                pass
            try:
                self._conn.logout()
            except (imaplib.IMAP4.error, OSError):
                pass

    async def is_connected(self) -> bool:
        """Check connection liveness with a NOOP command."""
        if self._conn is None:
            return False
        try:
            status, _ = await asyncio.to_thread(self._noop_sync)
            return status == "OK"
        except (imaplib.IMAP4.error, OSError):
            return False

    def _noop_sync(self) -> tuple[str, list[Any]]:
        with self._lock:
            return self._require().noop()

    # ------------------------------------------------------------------
    # Message retrieval
    # ------------------------------------------------------------------

    async def search_unseen(self) -> list[str]:
        """Return the UIDs of all messages without the ``\\Seen`` flag."""
        uids = await self._run(self._search_unseen_sync)
        logger.debug("imap_search_complete", unseen=len(uids))
        return uids

    def _search_unseen_sync(self) -> list[str]:
        with self._lock:
            status, data = self._require().uid("SEARCH", None, "UNSEEN")
        if status != "OK":
            raise imaplib.IMAP4.error(f"UID SEARCH failed: {data!r}")
        if not data or not data[0]:
            return []
        return [uid.decode() for uid in data[0].split()]

    async def fetch_header(self, uid: str) -> FetchedHeader | None:
        """Fetch the header block of one message without marking it seen."""
        raw = await self._run(self._fetch_item_sync, uid, "(BODY.PEEK[HEADER])")
        if raw is None:
            return None
        return FetchedHeader(uid=uid, header_bytes=raw)

    async def fetch_message(self, uid: str) -> bytes:
        """Fetch the complete message without marking it seen."""
        raw = await self._run(self._fetch_item_sync, uid, "(BODY.PEEK[])")
        if raw is None:
            raise MessageBodyUnavailableError(uid)
        return raw

    def _fetch_item_sync(self, uid: str, item: str) -> bytes | None:
        with self._lock:
            status, data = self._require().uid("FETCH", uid, item)
        if status != "OK":
            raise imaplib.IMAP4.error(f"UID FETCH {uid} failed: {data!r}")
        for part in data or []:
            if isinstance(part, tuple) and len(part) >= 2 and part[1]:
                return part[1]
        return None

    async def mark_seen(self, uids: Sequence[str]) -> None:
        """Add the ``\\Seen`` flag to *uids*."""
        if not uids:
            return
        await self._run(self._mark_seen_sync, ",".join(uids))

    def _mark_seen_sync(self, uid_set: str) -> None:
        with self._lock:
            status, data = self._require().uid("STORE", uid_set, "+FLAGS", "(\\Seen)")
        if status != "OK":
            raise imaplib.IMAP4.error(f"UID STORE {uid_set} failed: {data!r}")

    # ------------------------------------------------------------------
    # IDLE (RFC 2177)
    # ------------------------------------------------------------------

    async def wait_for_change(self, timeout: float) -> ChangeEvent:
        """IDLE until the server reports a mailbox update or *timeout* passes.

        Cancelling this coroutine asks the worker thread to leave IDLE and
        waits for the server to acknowledge ``DONE`` before re-raising, so
        the connection is idle-free when the next command runs.
        """
        if not self._supports_idle:
            raise PushNotSupportedError(f"{self._config.imap_host} does not advertise IDLE")

        abort = threading.Event()
        waiter = asyncio.ensure_future(self._run(self._idle_sync, timeout, abort))
        try:
            return await asyncio.shield(waiter)
        except TransportDisconnectedError as exc:
            logger.warning("imap_idle_disconnected", error=str(exc))
            return ChangeEvent.DISCONNECTED
        except asyncio.CancelledError:
            abort.set()
            await asyncio.wait({waiter})
            if not waiter.cancelled() and waiter.exception() is not None:
                logger.warning("imap_idle_abort_failed", error=str(waiter.exception()))
            raise

    def _idle_sync(self, timeout: float, abort: threading.Event) -> ChangeEvent:
        with self._lock:
            conn = self._require()
            tag: bytes = conn._new_tag()
            conn.send(tag + b" IDLE\r\n")

            event = ChangeEvent.TIMEOUT
            # Untagged updates may arrive before the continuation
            while True:
                line = conn.readline()
                if not line or _BYE_RESPONSE.match(line):
                    return ChangeEvent.DISCONNECTED
                if line.startswith(b"+"):
                    break
                if line.startswith(tag):
                    raise imaplib.IMAP4.error(f"IDLE rejected: {line!r}")
                if _UPDATE_RESPONSE.match(line):
                    event = ChangeEvent.CHANGED

            deadline = time.monotonic() + timeout
            while event is ChangeEvent.TIMEOUT and not abort.is_set():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                if not _readable(conn, min(remaining, IDLE_CHECK_SECONDS)):
                    continue
                line = conn.readline()
                if not line or _BYE_RESPONSE.match(line):
                    return ChangeEvent.DISCONNECTED
                if _UPDATE_RESPONSE.match(line):
                    event = ChangeEvent.CHANGED

            conn.send(b"DONE\r\n")
            while True:
                line = conn.readline()
                if not line:
                    return ChangeEvent.DISCONNECTED
                if line.startswith(tag):
                    break
            if not line[len(tag):].strip().upper().startswith(b"OK"):
                raise imaplib.IMAP4.error(f"IDLE failed: {line!r}")

        logger.debug("imap_idle_complete", event=event.value, aborted=abort.is_set())
        return event

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self) -> imaplib.IMAP4:
        if self._conn is None:
            raise TransportDisconnectedError("not connected")
        return self._conn

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking helper in a thread and map imaplib failures."""
        try:
            return await asyncio.to_thread(fn, *args)
        except imaplib.IMAP4.abort as exc:
            raise TransportDisconnectedError(str(exc)) from exc
        except imaplib.IMAP4.error as exc:
            raise TransportError(str(exc)) from exc
        except OSError as exc:
            raise TransportDisconnectedError(str(exc)) from exc


def _readable(conn: imaplib.IMAP4, timeout: float) -> bool:
    sock = conn.socket()
    if isinstance(sock, ssl.SSLSocket) and sock.pending():
        return True
    readable, _, _ = select.select([sock], [], [], timeout)
    return bool(readable)
