"""Header extraction, body splitting and reply composition.

Uses ``email.parser.BytesHeaderParser`` for the envelope, which parses
*only* the headers, so selecting a batch never walks a MIME body.
"""

from __future__ import annotations

import email
import email.parser
import email.policy
import email.utils
import re
from collections.abc import Sequence
from dataclasses import dataclass
from email.message import EmailMessage

REPLY_SUBJECT_PREFIX = "Response: "

# Physical line ends only; str.splitlines also breaks on \f, \v and U+2028
_LINE_BREAK = re.compile(r"\r?\n")


@dataclass(frozen=True)
class Envelope:
    """The header fields the dispatcher needs."""

    sender: str
    subject: str
    message_id: str
    date: str


def extract_envelope(header_bytes: bytes) -> Envelope | None:
    """Extract the sender and subject from raw RFC 5322 header bytes.

    Returns ``None`` when the message has no usable ``From`` address.
    The sender is normalized to its ``mailbox@host`` form (display name
    dropped, case kept); the subject has RFC 2047 encoded words decoded.
    """
    parser = email.parser.BytesHeaderParser(policy=email.policy.default)
    headers = parser.parsebytes(header_bytes)

    sender = normalize_address(str(headers.get("From", "")))
    if sender is None:
        return None

    return Envelope(
        sender=sender,
        subject=str(headers.get("Subject", "")),
        message_id=str(headers.get("Message-ID", "")),
        date=str(headers.get("Date", "")),
    )


def normalize_address(header_value: str) -> str | None:
    """Return the bare ``mailbox@host`` of the first address in a header."""
    if not header_value:
        return None
    _, address = email.utils.parseaddr(header_value)
    address = address.strip()
    if "@" not in address:
        return None
    return address


def extract_body_lines(raw_bytes: bytes) -> list[str] | None:
    """Split the text/plain body of a message into physical lines.

    CRLF and bare LF line endings are both accepted.  Returns ``None``
    when the message has no text/plain part.
    """
    msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)
    part = msg.get_body(preferencelist=("plain",))
    if part is None:
        return None
    content = part.get_content()
    if not isinstance(content, str):
        return None
    lines = _LINE_BREAK.split(content)
    if lines[-1] == "":
        lines.pop()
    return lines


def compose_reply(*, from_address: str, to_address: str, command: str, lines: Sequence[str]) -> bytes:
    """Build a plain-text reply to a list command."""
    msg = EmailMessage()
    msg["From"] = from_address
    msg["To"] = to_address
    msg["Subject"] = f"{REPLY_SUBJECT_PREFIX}{command}"
    msg["Date"] = email.utils.formatdate(localtime=True)
    msg["Message-ID"] = email.utils.make_msgid(domain=from_address.rpartition("@")[2] or None)
    msg.set_content("\n".join(lines) + "\n")
    return msg.as_bytes()
