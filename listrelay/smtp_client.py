"""Outbound delivery through aiosmtplib."""

from __future__ import annotations

from collections.abc import Sequence

import aiosmtplib
import structlog

from .config import MailConfig, RetryConfig
from .errors import SendError
from .retry import with_retry

logger = structlog.get_logger()

# Connection-level failures worth another attempt; protocol refusals are not
_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    aiosmtplib.SMTPConnectError,
    aiosmtplib.SMTPServerDisconnected,
    aiosmtplib.SMTPTimeoutError,
)


class SmtpSender:
    """Sends pre-rendered messages, one SMTP session per message."""

    def __init__(self, config: MailConfig, retry: RetryConfig) -> None:
        self._config = config
        self._retry = retry

    async def send(self, from_address: str, to_addresses: Sequence[str], message: bytes) -> None:
        """Deliver *message* to *to_addresses* with *from_address* as envelope sender.

        Transient connection failures are retried per ``RetryConfig``;
        anything left over is raised as :class:`SendError`.  Recipients the
        server refuses while accepting others are logged, not raised.
        """
        if not to_addresses:
            logger.warning("smtp_send_skipped", reason="no recipients")
            return

        cfg = self._config
        recipients = list(to_addresses)

        @with_retry(self._retry, retryable_exceptions=_TRANSIENT_ERRORS)
        async def _send() -> dict[str, aiosmtplib.SMTPResponse]:
            refused, _ = await aiosmtplib.send(
                message,
                sender=from_address,
                recipients=recipients,
                hostname=cfg.smtp_host,
                port=cfg.smtp_port,
                username=cfg.user,
                password=cfg.password.get_secret_value(),
                use_tls=cfg.smtp_tls,
                start_tls=cfg.smtp_start_tls,
                timeout=cfg.timeout_seconds,
            )
            return refused

        try:
            refused = await _send()
        except (aiosmtplib.SMTPException, OSError) as exc:
            logger.error(
                "smtp_send_failed",
                host=cfg.smtp_host,
                recipients=len(recipients),
                error=str(exc),
            )
            raise SendError(f"cannot send to {len(recipients)} recipient(s): {exc}") from exc

        if refused:
            logger.warning("smtp_recipients_refused", refused=sorted(refused))
        logger.info("smtp_sent", recipients=len(recipients) - len(refused), size=len(message))
