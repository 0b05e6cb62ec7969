"""ListDaemon: wires the watcher, the dispatcher and the transport together."""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime
from pathlib import Path

import structlog
import uvicorn

from .config import RelayConfig
from .dispatcher import CommandDispatcher
from .errors import TransportError
from .health import create_health_app
from .interface import MailTransport
from .models import DaemonStatus, DispatchReport
from .persistence import ConfigFile
from .retry import with_retry
from .shutdown import stop_on_signals
from .store import RecipientStore
from .transport import ImapSmtpTransport
from .watcher import ChangeWatcher

logger = structlog.get_logger()


class ListDaemon:
    """Runs one mailing list until shutdown.

    ``run()`` starts the following concurrently via
    :class:`asyncio.TaskGroup`:

    * the watch loop: connect, catch up on unseen mail, then fetch and
      dispatch once per watcher tick
    * the FastAPI health server (unless ``health_port`` is 0)

    When the mailbox connection drops the watch loop reconnects (if
    ``reconnect`` is enabled), retrying the login with exponential
    backoff.  Login failures that outlast the retries stop the daemon.
    """

    def __init__(
        self,
        config: RelayConfig,
        store: RecipientStore,
        transport: MailTransport | None = None,
    ) -> None:
        self.config = config
        self.status: DaemonStatus = DaemonStatus.STARTING
        self.start_time: float = time.monotonic()

        self._store = store
        self._transport = transport or ImapSmtpTransport(
            config.mail,
            config.retry,
            fetch_workers=config.list.fetch_workers,
        )
        self._dispatcher = CommandDispatcher(store, self._transport, config.mail.address)
        self._shutdown_event = asyncio.Event()
        self._watcher = ChangeWatcher(self._transport, config.list.interval, self._shutdown_event)

        self._messages_processed: int = 0
        self._messages_rejected: int = 0
        self._dispatch_failures: int = 0
        self._reconnects: int = 0
        self._last_check_time: datetime | None = None

    @classmethod
    def from_config_file(cls, path: str | Path) -> ListDaemon:
        """Load the TOML config and back the recipient store with it."""
        config_file = ConfigFile.load(path)
        config = RelayConfig.from_file(config_file)
        store = RecipientStore(
            config.list.recipients,
            config.list.admins,
            persist=config_file.save_recipients,
        )
        return cls(config, store)

    # ------------------------------------------------------------------
    # Public properties (used by health checks)
    # ------------------------------------------------------------------

    @property
    def watcher(self) -> ChangeWatcher:
        return self._watcher

    @property
    def store(self) -> RecipientStore:
        return self._store

    @property
    def is_ready(self) -> bool:
        return self.status == DaemonStatus.RUNNING

    def stop(self) -> None:
        """Request shutdown; the watch loop exits within one interval."""
        self._shutdown_event.set()

    async def health_check(self) -> dict[str, object]:
        return {
            "watch_mode": self._watcher.mode.value,
            "ticks": self._watcher.ticks,
            "recipients": len(self._store),
            "messages_processed": self._messages_processed,
            "messages_rejected": self._messages_rejected,
            "dispatch_failures": self._dispatch_failures,
            "reconnects": self._reconnects,
            "last_check_time": (
                self._last_check_time.isoformat() if self._last_check_time else None
            ),
            **await self._transport.health_check(),
        }

    # ------------------------------------------------------------------
    # Fetch + dispatch
    # ------------------------------------------------------------------

    async def check_mailbox(self) -> DispatchReport:
        """Fetch unseen messages and dispatch them in order.

        Each message is marked seen right after it is handled.  If the
        connection drops part way, only the unfinished messages are seen
        again after the reconnect.
        """
        messages = await self._transport.fetch_unseen()
        self._last_check_time = datetime.now(UTC)
        if not messages:
            return DispatchReport()

        logger.info("new_mail", count=len(messages))
        report = await self._dispatcher.dispatch_batch(messages, on_dispatched=self._mark_seen)

        self._messages_processed += report.processed
        self._messages_rejected += report.rejected
        self._dispatch_failures += len(report.failures)
        logger.info(
            "batch_dispatched",
            processed=report.processed,
            rejected=report.rejected,
            failures=len(report.failures),
        )
        return report

    async def _mark_seen(self, uid: str) -> None:
        await self._transport.mark_seen([uid])

    # ------------------------------------------------------------------
    # Watch loop
    # ------------------------------------------------------------------

    async def _connect(self) -> None:
        @with_retry(self.config.retry, retryable_exceptions=(TransportError,))
        async def _attempt() -> None:
            await self._transport.connect()

        await _attempt()

    async def _run_watch_loop(self) -> None:
        """Watch the mailbox until shutdown, reconnecting after drops."""
        logger.info("watch_loop_started", mailbox=self.config.mail.mailbox)
        try:
            while not self._shutdown_event.is_set():
                await self._connect()
                try:
                    self.status = DaemonStatus.RUNNING
                    await self._watcher.run(self.check_mailbox, catch_up=True)
                    self.status = DaemonStatus.STOPPING
                    return
                except TransportError as exc:
                    if not self.config.reconnect or self._shutdown_event.is_set():
                        raise
                    self.status = DaemonStatus.RECONNECTING
                    self._reconnects += 1
                    logger.warning("mailbox_connection_lost", error=str(exc), reconnects=self._reconnects)
                finally:
                    await self._transport.disconnect()
        except Exception:
            self.status = DaemonStatus.FAILED
            logger.exception("watch_loop_error")
            raise
        finally:
            # Take the health server down with us
            self._shutdown_event.set()
            logger.info("watch_loop_stopped")

    # ------------------------------------------------------------------
    # Health server
    # ------------------------------------------------------------------

    async def _run_health_server(self) -> None:
        """Start the FastAPI health server and shut it down on signal."""
        app = create_health_app(self)
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.health_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        # Run until the shutdown event fires
        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Run the list until SIGTERM/SIGINT, :meth:`stop`, or a fatal error.

        Callers do::

            asyncio.run(daemon.run())
        """
        self.start_time = time.monotonic()

        logger.info(
            "relay_starting",
            address=self.config.mail.address,
            recipients=len(self._store),
            interval=self.config.list.interval,
        )

        try:
            with stop_on_signals(self._shutdown_event):
                async with asyncio.TaskGroup() as tg:
                    tg.create_task(self._run_watch_loop())
                    if self.config.health_port:
                        tg.create_task(self._run_health_server())
        except* Exception:
            logger.exception("relay_task_group_error")
        finally:
            if self.status != DaemonStatus.FAILED:
                self.status = DaemonStatus.STOPPED
            logger.info("relay_stopped", status=self.status.value)
