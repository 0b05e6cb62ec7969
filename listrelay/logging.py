"""structlog configuration for the relay process."""

from __future__ import annotations

import logging
import sys

import structlog

# Third-party loggers that are noisy below WARNING
_QUIET_LOGGERS = ("aiosmtplib", "uvicorn.access", "uvicorn.error")


def setup_logging(*, json: bool = True, level: str = "INFO", list_address: str | None = None) -> None:
    """Route structlog and stdlib logging through one stdout handler.

    *json* selects JSON lines (for a supervisor or log shipper) over the
    coloured console renderer.  When *list_address* is given it is bound
    as a context variable, so every event names the list it belongs to.
    """
    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            # stdlib records (aiosmtplib, uvicorn) get the same fields
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer(),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.contextvars.clear_contextvars()
    if list_address:
        structlog.contextvars.bind_contextvars(list_address=list_address)
