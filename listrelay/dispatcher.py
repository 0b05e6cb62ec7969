"""CommandDispatcher: turns inbound messages into list actions.

Classification, first match wins:

1. subject ``*show`` from a recipient -> reply with the list
2. subject ``*add`` from an admin -> add the addresses in the body
3. anything else from a recipient -> forward to the whole list
4. everything else -> reject
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence

import structlog
from pydantic import EmailStr, TypeAdapter, ValidationError

from .envelope import compose_reply
from .errors import (
    AlreadyPresentError,
    MessageBodyUnavailableError,
    PersistenceError,
    SendError,
)
from .interface import MailTransport
from .models import Command, DispatchFailure, DispatchReport, InboundMessage
from .store import RecipientStore

logger = structlog.get_logger()

SHOW_COMMAND = "*show"
ADD_COMMAND = "*add"
REPLY_SEPARATOR = "-" * 40

_EMAIL_ADDRESS = TypeAdapter(EmailStr)

Handler = Callable[[InboundMessage], Awaitable[None]]


def is_valid_address(candidate: str) -> bool:
    """Strict ``local-part@domain`` syntax check (no display names)."""
    # EmailStr would otherwise accept ``Name <addr>`` and strip padding
    if "<" in candidate or candidate != candidate.strip():
        return False
    try:
        _EMAIL_ADDRESS.validate_python(candidate)
    except ValidationError:
        return False
    return True


def classify(message: InboundMessage, store: RecipientStore) -> Command:
    if message.subject == SHOW_COMMAND and store.contains(message.sender):
        return Command.SHOW_LIST
    if message.subject == ADD_COMMAND and store.is_admin(message.sender):
        return Command.ADD_RECIPIENTS
    if store.contains(message.sender):
        return Command.FORWARD
    return Command.REJECT


class CommandDispatcher:
    """Classifies messages and runs the matching action.

    Every :class:`Command` member must have a handler; construction fails
    otherwise, so a new command cannot be added without one.
    """

    def __init__(self, store: RecipientStore, transport: MailTransport, list_address: str) -> None:
        self._store = store
        self._transport = transport
        self._list_address = list_address
        self._handlers: dict[Command, Handler] = {
            Command.SHOW_LIST: self._show_list,
            Command.ADD_RECIPIENTS: self._add_recipients,
            Command.FORWARD: self._forward,
            Command.REJECT: self._reject,
        }
        missing = set(Command) - self._handlers.keys()
        if missing:
            raise TypeError(f"no handler for commands: {sorted(c.value for c in missing)}")

    async def dispatch(self, message: InboundMessage) -> Command:
        """Classify and act on one message.  Errors propagate."""
        command = classify(message, self._store)
        logger.info(
            "message_classified",
            uid=message.uid,
            sender=message.sender,
            command=command.value,
        )
        await self._handlers[command](message)
        return command

    async def dispatch_batch(
        self,
        messages: Sequence[InboundMessage],
        on_dispatched: Callable[[str], Awaitable[None]] | None = None,
    ) -> DispatchReport:
        """Dispatch *messages* in order, collecting per-message failures.

        A missing body or a failed send affects only its own message; the
        rest of the batch is still processed.  *on_dispatched* is awaited
        with each uid as soon as that message has been handled, so a batch
        cut short by a dropped connection never repeats finished messages.
        """
        report = DispatchReport()
        for message in messages:
            command = classify(message, self._store)
            try:
                await self._handlers[command](message)
            except (MessageBodyUnavailableError, SendError) as exc:
                logger.warning(
                    "dispatch_failed",
                    uid=message.uid,
                    sender=message.sender,
                    command=command.value,
                    error=str(exc),
                )
                report.failures.append(DispatchFailure(uid=message.uid, command=command, error=str(exc)))
            report.outcomes.append((message.uid, command))
            if on_dispatched is not None:
                await on_dispatched(message.uid)
        return report

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _show_list(self, message: InboundMessage) -> None:
        logger.info("sending_list", to=message.sender)
        await self._reply(message, SHOW_COMMAND, self._store.render())

    async def _add_recipients(self, message: InboundMessage) -> None:
        try:
            lines = await message.body_lines()
        except MessageBodyUnavailableError as exc:
            await self._reply(
                message,
                ADD_COMMAND,
                [f"Could not read message body: {exc}", REPLY_SEPARATOR, *self._store.render()],
            )
            raise

        summary: list[str] = []
        for line in lines:
            candidate = line.strip()
            if not candidate:
                continue
            if not is_valid_address(candidate):
                logger.info("recipient_rejected", address=candidate, requested_by=message.sender)
                summary.append(f"Rejected: {candidate}")
                continue
            try:
                self._store.add(candidate)
            except AlreadyPresentError:
                summary.append(f"Already subscribed: {candidate}")
            except PersistenceError as exc:
                logger.error("recipient_add_failed", address=candidate, error=str(exc))
                summary.append(f"Failed to add {candidate}: {exc}")
            else:
                summary.append(f"Adding {candidate}")

        await self._reply(message, ADD_COMMAND, [*summary, REPLY_SEPARATOR, *self._store.render()])

    async def _forward(self, message: InboundMessage) -> None:
        raw = await message.raw()
        recipients = self._store.render()
        logger.info(
            "forwarding_message",
            uid=message.uid,
            sender=message.sender,
            subject=message.subject,
            recipients=len(recipients),
        )
        await self._transport.send(self._list_address, recipients, raw)

    async def _reject(self, message: InboundMessage) -> None:
        logger.warning(
            "message_rejected",
            uid=message.uid,
            sender=message.sender,
            reason="sender not in list",
        )

    async def _reply(self, message: InboundMessage, command: str, lines: Sequence[str]) -> None:
        reply = compose_reply(
            from_address=self._list_address,
            to_address=message.sender,
            command=command,
            lines=lines,
        )
        await self._transport.send(self._list_address, [message.sender], reply)
