"""ChangeWatcher: decides when the mailbox should be re-checked.

Each iteration races one wait on the transport against the stop event.
A push notification and a timeout both count as a tick: some servers
never announce new mail, so the timeout is also the poll interval.  When
the server cannot push at all the watcher drops to plain polling with a
NOOP liveness probe.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from .errors import PushNotSupportedError, TransportDisconnectedError
from .interface import MailTransport
from .models import ChangeEvent, WatchMode

logger = structlog.get_logger()

TickCallback = Callable[[], Awaitable[object]]

# Extra time a wait may take past its own timeout before it is abandoned
WATCHDOG_GRACE_SECONDS = 5.0


class ChangeWatcher:
    """Runs the idle/poll loop for one mailbox connection."""

    def __init__(
        self,
        transport: MailTransport,
        interval: float,
        stop_event: asyncio.Event,
        *,
        grace: float = WATCHDOG_GRACE_SECONDS,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._transport = transport
        self._interval = interval
        self._stop_event = stop_event
        self._grace = grace
        self._mode = WatchMode.IDLE
        self._ticks = 0

    @property
    def mode(self) -> WatchMode:
        return self._mode

    @property
    def ticks(self) -> int:
        return self._ticks

    async def run(self, on_tick: TickCallback, *, catch_up: bool = False) -> None:
        """Call *on_tick* once per detected change until stopped.

        With *catch_up* the callback also runs once before the first wait,
        for mail that arrived while nothing was watching.  Returns normally
        once the stop event is set; a tick still in flight at that point is
        cancelled.  Raises :class:`TransportDisconnectedError` if the
        connection drops while waiting; other transport errors propagate
        unchanged.  *on_tick* is awaited before the next wait starts, so
        ticks never overlap.
        """
        logger.info("watcher_started", mode=self._mode.value, interval=self._interval)
        if catch_up and not self._stop_event.is_set():
            await self._run_tick(on_tick)
        while not self._stop_event.is_set():
            event = await self._next_event()
            # Once stop is set no new cycle starts, even for a ready event
            if event is None or self._stop_event.is_set():
                break
            if event is ChangeEvent.DISCONNECTED:
                logger.error("watcher_disconnected", mode=self._mode.value, ticks=self._ticks)
                raise TransportDisconnectedError("connection lost while waiting for mailbox changes")

            self._ticks += 1
            logger.debug("watcher_tick", trigger=event.value, mode=self._mode.value, tick=self._ticks)
            await self._run_tick(on_tick)

        logger.info("watcher_stopped", ticks=self._ticks)

    async def _run_tick(self, on_tick: TickCallback) -> None:
        """Await *on_tick*, abandoning it if the stop event fires first."""
        tick = asyncio.ensure_future(on_tick())
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({tick, stopper}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            tick.cancel()
            raise
        finally:
            stopper.cancel()

        if tick.done():
            tick.result()
            return
        logger.info("watcher_tick_abandoned", tick=self._ticks)
        await _cancel_and_wait(tick)

    async def _next_event(self) -> ChangeEvent | None:
        """Wait for one detection event; ``None`` means the stop event fired."""
        while True:
            if self._mode is WatchMode.IDLE:
                wait = self._transport.wait_for_change(self._interval)
            else:
                wait = self._poll_once()
            try:
                return await self._race_stop(wait)
            except PushNotSupportedError as exc:
                self._mode = WatchMode.POLLING
                logger.warning("watcher_mode_changed", mode=self._mode.value, reason=str(exc))

    async def _poll_once(self) -> ChangeEvent:
        await asyncio.sleep(self._interval)
        if not await self._transport.noop():
            return ChangeEvent.DISCONNECTED
        return ChangeEvent.TIMEOUT

    async def _race_stop(self, wait: Awaitable[ChangeEvent]) -> ChangeEvent | None:
        waiter = asyncio.ensure_future(wait)
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {waiter, stopper},
                timeout=self._interval + self._grace,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            waiter.cancel()
            raise
        finally:
            stopper.cancel()

        if waiter in done:
            # run() drops results that arrive after the stop event
            return waiter.result()

        await _cancel_and_wait(waiter)
        if stopper in done or self._stop_event.is_set():
            return None

        logger.warning("watcher_wait_overran", mode=self._mode.value, interval=self._interval)
        return ChangeEvent.TIMEOUT


async def _cancel_and_wait(task: asyncio.Future[object]) -> None:
    """Cancel *task* and wait until the cancellation has been processed."""
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        current = asyncio.current_task()
        if current is not None and current.cancelling():
            raise
    except Exception as exc:  # the wait failed while being torn down
        logger.debug("watcher_cancelled_wait_failed", error=str(exc))
