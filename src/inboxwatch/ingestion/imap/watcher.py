"""Long-running mailbox watcher.

``MailboxWatcher`` is the single owner of the IMAP session. Three tasks
share it under one ``asyncio.Lock``:

- the fetch worker, which waits on a single-slot trigger and runs a
  ``FetchCycle`` per wake-up (notifications arriving mid-fetch coalesce
  into one follow-up cycle),
- the listener, which runs IDLE rounds (or NOOP polls when the server lacks
  IDLE) and pulls the trigger on new mail,
- the optional forced-reconnect timer.

Whoever wants the lock while an IDLE round holds it sets the interrupt flag,
which ends the round within ``IDLE_CHECK_SLICE`` seconds.

Usage:
    async with watch_mailbox(config, credentials, slot) as watcher:
        batch = await watcher.batches.get()
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional

from inboxwatch.errors import (
    ConfigurationError,
    FatalConnectionError,
    MailboxConnectionError,
    TransientConnectionError,
    WatcherError,
)
from inboxwatch.privacy.audit import AuditLogger

from .attachment_sink import AttachmentSink
from .config import Criterion, MailboxWatchConfig, to_imap_criteria
from .connection_manager import (
    DEFAULT_CONNECTION_TIMEOUT,
    ConnectionMetrics,
    ConnectionState,
    ImapSession,
    classify_connection_error,
    is_connection_failure,
)
from .credentials import ImapCredentials
from .dedup import DeduplicationTracker
from .fetch_cycle import FetchCycle
from .formatter import MessageFormatter, NormalizedEvent
from .sync_state import StateSlot

logger = logging.getLogger(__name__)

EventHandler = Callable[[List[NormalizedEvent]], Awaitable[None]]


# ---------------------------------------------------------------------------
# Error channel
# ---------------------------------------------------------------------------


class ErrorChannel:
    """Delivers watcher errors, holding them back until the watcher is ready."""

    def __init__(self) -> None:
        self._ready = False
        self._pending: List[WatcherError] = []
        self._queue: "asyncio.Queue[WatcherError]" = asyncio.Queue()

    @property
    def ready(self) -> bool:
        return self._ready

    def publish(self, error: WatcherError) -> None:
        if not self._ready:
            self._pending.append(error)
            return
        self._queue.put_nowait(error)

    def mark_ready(self) -> None:
        """Open the channel and replay anything published before."""
        self._ready = True
        pending, self._pending = self._pending, []
        for error in pending:
            self._queue.put_nowait(error)

    async def get(self) -> WatcherError:
        return await self._queue.get()

    def drain(self) -> List[WatcherError]:
        errors = []
        while not self._queue.empty():
            errors.append(self._queue.get_nowait())
        return errors


# ---------------------------------------------------------------------------
# Watcher
# ---------------------------------------------------------------------------


class MailboxWatcher:
    """Watches one mailbox and emits batches of new-mail events."""

    def __init__(
        self,
        config: MailboxWatchConfig,
        credentials: ImapCredentials,
        state_slot: StateSlot,
        *,
        attachment_sink: Optional[AttachmentSink] = None,
        event_handler: Optional[EventHandler] = None,
        audit_logger: Optional[AuditLogger] = None,
        connection_timeout: float = DEFAULT_CONNECTION_TIMEOUT,
        stop_timeout: float = 30.0,
    ):
        """Create a watcher; nothing connects until ``start()``.

        Args:
            config: Watcher configuration, fixed for the watcher's lifetime
            credentials: Account to log in with
            state_slot: Persistent slot for the high-water-mark
            attachment_sink: Destination for extracted attachments
            event_handler: Coroutine receiving each non-empty batch; batches
                go to ``self.batches`` when omitted
            audit_logger: Optional audit log for connection and fetch events
            connection_timeout: Socket timeout for the IMAP connection
            stop_timeout: Seconds ``stop()`` waits for running tasks
        """
        self.config = config
        self.credentials = credentials
        self.event_handler = event_handler
        self.stop_timeout = stop_timeout
        self.metrics = ConnectionMetrics()

        self.tracker = DeduplicationTracker(state_slot)
        self.formatter = MessageFormatter(config, attachment_sink)
        self.fetch_cycle = FetchCycle(
            config, self.tracker, self.formatter, audit_logger=audit_logger
        )
        self.session = ImapSession(
            credentials,
            allow_unauthorized_certs=config.allow_unauthorized_certs,
            timeout=connection_timeout,
            audit_logger=audit_logger,
            metrics=self.metrics,
            job_id=f"imap_watcher_{state_slot.scope_key}",
        )

        self.batches: "asyncio.Queue[List[NormalizedEvent]]" = asyncio.Queue()
        self.errors = ErrorChannel()

        self._criteria: List[Criterion] = []
        self._supports_idle = False
        self._lock = asyncio.Lock()
        self._trigger = asyncio.Event()
        self._stopping = asyncio.Event()
        self._halted = False
        self._interrupt = threading.Event()
        self._tasks: List[asyncio.Task[None]] = []
        self._started = False

    @property
    def state(self) -> ConnectionState:
        return self.session.state

    @property
    def running(self) -> bool:
        return self._started and not self._stopping.is_set() and not self._halted

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect, open the mailbox and start watching.

        Raises:
            ConfigurationError: If the search criteria are invalid or the
                format needs an attachment sink that was not given; raised
                before any connection attempt
            FatalConnectionError: If the mailbox could not be opened
        """
        if self._started:
            raise RuntimeError("Watcher already started")

        criteria = self.config.search_criteria()
        to_imap_criteria(criteria)
        if self.formatter.requires_attachment_sink and self.formatter.attachment_sink is None:
            raise ConfigurationError(
                f"Format {self.config.format.value!r} extracts attachments but no "
                "attachment sink was given",
                details={"format": self.config.format.value},
            )
        self._criteria = criteria

        await self._run_blocking(self.tracker.load)
        try:
            await self._run_blocking(self._open_session)
        except MailboxConnectionError as exc:
            if isinstance(exc, FatalConnectionError):
                raise
            raise FatalConnectionError(
                f"Could not open mailbox {self.config.mailbox}: {exc.message}",
                details=exc.details,
            ) from exc

        self._started = True
        self._halted = False
        self._stopping.clear()
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._fetch_worker(), name="inboxwatch-fetch"),
            loop.create_task(self._listen(), name="inboxwatch-listen"),
        ]
        interval = self.config.force_reconnect_interval_seconds
        if interval:
            self._tasks.append(
                loop.create_task(
                    self._reconnect_timer(interval), name="inboxwatch-reconnect"
                )
            )

        # messages already waiting count as new mail on open
        self.notify()
        self.errors.mark_ready()
        logger.info(
            f"Watching {self.config.mailbox} on {self.credentials.host}",
            extra={
                "mailbox": self.config.mailbox,
                "idle": self._supports_idle,
                "high_water_mark": self.tracker.high_water_mark,
                "force_reconnect_seconds": interval,
            },
        )

    async def stop(self) -> None:
        """Stop all tasks and close the connection; safe to call twice."""
        if not self._started:
            return
        self._started = False
        self._stopping.set()
        self._trigger.set()
        self._interrupt.set()

        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=self.stop_timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(
                    "Watcher tasks did not finish in time and were cancelled",
                    extra={"pending": len(pending)},
                )
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error("Watcher task failed", exc_info=task.exception())
        self._tasks = []

        async with self._lock:
            await self._run_blocking(self.session.close)
        logger.info(
            f"Stopped watching {self.config.mailbox}",
            extra={"mailbox": self.config.mailbox, "events": self.metrics.events_emitted},
        )

    async def __aenter__(self) -> "MailboxWatcher":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    def notify(self) -> None:
        """Request a fetch cycle; repeated requests coalesce into one."""
        self._trigger.set()

    async def reconnect(self, reason: str = "manual") -> None:
        """Tear down and re-open the session, then fetch."""
        self._interrupt.set()
        async with self._lock:
            if not self.running:
                return
            try:
                await self._reconnect_locked(reason)
            except MailboxConnectionError as exc:
                self._fail(exc)
                return
        self.notify()

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def _fetch_worker(self) -> None:
        while True:
            await self._trigger.wait()
            if not self.running:
                return
            self._trigger.clear()
            self._interrupt.set()

            events: List[NormalizedEvent] = []
            async with self._lock:
                if not self.running:
                    return
                try:
                    events = await self._run_blocking(
                        self.fetch_cycle.run, self.session.require_client(), self._criteria
                    )
                    self.metrics.record_fetch(len(events))
                except MailboxConnectionError as exc:
                    self.metrics.record_fetch(0, success=False)
                    await self._handle_connection_error(exc)
                except WatcherError as exc:
                    # aborted cycle; nothing committed, the next one retries
                    self.metrics.record_fetch(0, success=False)
                    self.errors.publish(exc)
                except Exception as exc:
                    self.metrics.record_fetch(0, success=False)
                    if is_connection_failure(exc):
                        await self._handle_connection_error(exc)
                    else:
                        self._publish_cycle_failure(exc)

            if events:
                await self._emit(events)

    async def _listen(self) -> None:
        while self.running:
            if self._supports_idle:
                self._interrupt.clear()
                async with self._lock:
                    if not self.running:
                        return
                    try:
                        changed = await self._run_blocking(
                            self.session.wait_for_changes,
                            self.config.idle_timeout_seconds,
                            self._interrupt,
                        )
                    except Exception as exc:
                        await self._handle_connection_error(exc)
                        continue
            else:
                try:
                    await asyncio.wait_for(
                        self._stopping.wait(), timeout=self.config.idle_timeout_seconds
                    )
                    return
                except asyncio.TimeoutError:
                    pass
                async with self._lock:
                    if not self.running:
                        return
                    try:
                        await self._run_blocking(self.session.poll)
                    except Exception as exc:
                        await self._handle_connection_error(exc)
                        continue
                # without IDLE every poll is a fetch opportunity
                changed = True

            if changed:
                logger.debug("New mail notification", extra={"mailbox": self.config.mailbox})
                self.notify()

    async def _reconnect_timer(self, interval: float) -> None:
        while self.running:
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            if not self.running:
                return
            logger.info(
                "Forcing reconnect",
                extra={"mailbox": self.config.mailbox, "interval_seconds": interval},
            )
            await self.reconnect("forced")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _open_session(self) -> None:
        self.session.open(self.config.mailbox)
        self._supports_idle = self.session.supports_idle()
        self.tracker.check_epoch(
            self.session.uidvalidity, reset=self.config.reset_on_uidvalidity_change
        )

    async def _reconnect_locked(self, reason: str) -> None:
        self.metrics.record_reconnect(reason)
        self.session.record_reconnect("starting", reason)
        await self._run_blocking(self.session.close)
        try:
            await self._run_blocking(self._open_session)
        except MailboxConnectionError as exc:
            self.session.record_reconnect("failed", reason)
            if isinstance(exc, FatalConnectionError):
                raise
            raise FatalConnectionError(
                f"Reconnect failed: {exc.message}", details=exc.details
            ) from exc
        self.session.record_reconnect("success", reason)
        logger.info(
            f"Reconnected to {self.credentials.host}",
            extra={"mailbox": self.config.mailbox, "reason": reason},
        )

    async def _handle_connection_error(self, exc: BaseException) -> None:
        """Recover from a transient error or surface a fatal one; lock held."""
        error = classify_connection_error(exc)
        if not isinstance(error, TransientConnectionError):
            self._fail(error)
            return
        if not self.running:
            return
        logger.warning(
            f"Transient connection error, reconnecting: {error.message}",
            extra={"mailbox": self.config.mailbox, **error.details},
        )
        try:
            await self._reconnect_locked("transient_error")
        except MailboxConnectionError as reconnect_error:
            self._fail(reconnect_error)
            return
        self.notify()

    def _fail(self, error: MailboxConnectionError) -> None:
        if self._halted:
            return
        logger.error(
            f"Watcher stopped on connection error: {error.message}",
            extra={"mailbox": self.config.mailbox, "code": error.code},
        )
        self._halted = True
        self.session.mark_failed()
        self.errors.publish(error)
        # wake the fetch worker so it can exit
        self._trigger.set()
        self._interrupt.set()

    def _publish_cycle_failure(self, exc: Exception) -> None:
        """Surface a failure outside the connection; the watcher keeps running."""
        logger.error(
            f"Fetch cycle failed: {exc}",
            exc_info=exc,
            extra={"mailbox": self.config.mailbox, "error_type": type(exc).__name__},
        )
        error = WatcherError(
            f"Fetch cycle failed: {exc}", details={"error_type": type(exc).__name__}
        )
        error.__cause__ = exc
        self.errors.publish(error)

    async def _emit(self, events: List[NormalizedEvent]) -> None:
        if self.event_handler is None:
            await self.batches.put(events)
            return
        try:
            await self.event_handler(events)
        except Exception as exc:
            logger.exception("Event handler failed")
            self.errors.publish(
                WatcherError(
                    f"Event handler failed: {exc}",
                    details={"uids": [event.uid for event in events]},
                )
            )

    async def _run_blocking(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))


@asynccontextmanager
async def watch_mailbox(
    config: MailboxWatchConfig,
    credentials: ImapCredentials,
    state_slot: StateSlot,
    **kwargs: Any,
) -> AsyncIterator[MailboxWatcher]:
    """Run a watcher for the duration of the block; always stops it on exit."""
    watcher = MailboxWatcher(config, credentials, state_slot, **kwargs)
    await watcher.start()
    try:
        yield watcher
    finally:
        await watcher.stop()


__all__ = [
    "ErrorChannel",
    "EventHandler",
    "MailboxWatcher",
    "watch_mailbox",
]
