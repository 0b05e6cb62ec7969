"""Stop the relay on SIGTERM / SIGINT."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from collections.abc import Iterator

import structlog

logger = structlog.get_logger()

STOP_SIGNALS = (signal.SIGTERM, signal.SIGINT)


@contextlib.contextmanager
def stop_on_signals(stop_event: asyncio.Event) -> Iterator[None]:
    """Set *stop_event* on SIGTERM or SIGINT while the block runs.

    Must be entered from the running event loop.  The watcher checks the
    event around every wait, so the relay winds down within one interval.
    The handlers are removed again on exit, leaving the loop as it was.
    """
    loop = asyncio.get_running_loop()

    def _on_signal(sig: signal.Signals) -> None:
        if stop_event.is_set():
            logger.info("shutdown_already_requested", signal=sig.name)
            return
        logger.info("shutdown_signal_received", signal=sig.name)
        stop_event.set()

    for sig in STOP_SIGNALS:
        loop.add_signal_handler(sig, _on_signal, sig)
    try:
        yield
    finally:
        for sig in STOP_SIGNALS:
            loop.remove_signal_handler(sig)
