"""ImapSmtpTransport: MailTransport over one IMAP connection and SMTP."""

from __future__ import annotations

import functools
from collections.abc import Sequence

import structlog

from .config import MailConfig, RetryConfig
from .envelope import extract_envelope
from .errors import TransportError
from .imap_client import AsyncImapClient, FetchedHeader
from .interface import MailTransport
from .models import ChangeEvent, InboundMessage
from .pool import gather_bounded
from .smtp_client import SmtpSender

logger = structlog.get_logger()


class ImapSmtpTransport(MailTransport):
    """Reads the list mailbox over IMAP and sends through SMTP.

    Unseen-message selection is ``UID SEARCH UNSEEN`` followed by a
    header-only fetch per message, fanned out over a bounded pool of
    workers.  Bodies are fetched later, and only for commands that need
    them.
    """

    def __init__(self, config: MailConfig, retry: RetryConfig, *, fetch_workers: int = 10) -> None:
        self._config = config
        self._imap = AsyncImapClient(config)
        self._smtp = SmtpSender(config, retry)
        self._fetch_workers = fetch_workers

    async def connect(self) -> None:
        await self._imap.connect()

    async def disconnect(self) -> None:
        await self._imap.disconnect()

    async def fetch_unseen(self) -> list[InboundMessage]:
        uids = await self._imap.search_unseen()
        if not uids:
            return []

        limit = min(len(uids), self._fetch_workers)
        try:
            headers = await gather_bounded(uids, self._imap.fetch_header, limit=limit)
        except ExceptionGroup as eg:
            # Surface the first connection failure as a plain TransportError
            failed = eg.subgroup(TransportError)
            if failed is None:
                raise
            raise failed.exceptions[0] from eg

        messages: list[InboundMessage] = []
        unusable: list[str] = []
        found = sorted((h for h in headers if h is not None), key=_uid_order)
        # Expunged between the search and the fetch
        for uid in sorted(set(uids) - {h.uid for h in found}, key=int):
            logger.debug("message_vanished", uid=uid)

        for header in found:
            envelope = extract_envelope(header.header_bytes)
            if envelope is None:
                logger.warning("message_without_sender", uid=header.uid)
                unusable.append(header.uid)
                continue
            messages.append(
                InboundMessage(
                    uid=header.uid,
                    sender=envelope.sender,
                    subject=envelope.subject,
                    loader=functools.partial(self._imap.fetch_message, header.uid),
                )
            )
            logger.info(
                "message_fetched",
                uid=header.uid,
                sender=envelope.sender,
                subject=envelope.subject,
                date=envelope.date,
            )

        # Nothing to dispatch for these; flag them so they are not re-read
        if unusable:
            await self._imap.mark_seen(unusable)

        logger.debug("fetch_unseen_complete", unseen=len(uids), messages=len(messages))
        return messages

    async def mark_seen(self, uids: Sequence[str]) -> None:
        await self._imap.mark_seen(uids)

    async def send(self, from_address: str, to_addresses: Sequence[str], message: bytes) -> None:
        await self._smtp.send(from_address, to_addresses, message)

    async def wait_for_change(self, timeout: float) -> ChangeEvent:
        return await self._imap.wait_for_change(timeout)

    async def noop(self) -> bool:
        return await self._imap.is_connected()

    async def health_check(self) -> dict[str, object]:
        return {
            "imap_connected": self._imap.connected,
            "imap_host": self._config.imap_host,
            "imap_mailbox": self._config.mailbox,
            "imap_idle": self._imap.supports_idle,
        }


def _uid_order(header: FetchedHeader) -> int:
    return int(header.uid)
