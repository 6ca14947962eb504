"""IMAP session handling for the mailbox watcher.

``ImapSession`` owns one ``IMAPClient`` at a time: it opens the TLS
connection, logs in, selects the watched mailbox and waits for mailbox
changes with IDLE. All of its methods block and are meant to be run in an
executor by ``MailboxWatcher``, which serializes access to the session.

Low-level failures are mapped onto the watcher's error taxonomy here:
connection resets, broken pipes and ``imaplib`` aborts are transient and
recovered by reconnecting; everything else is fatal.
"""

from __future__ import annotations

import errno
import logging
import ssl
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import certifi
from imapclient import IMAPClient
from imapclient.exceptions import LoginError

from inboxwatch.errors import (
    FatalConnectionError,
    MailboxConnectionError,
    TransientConnectionError,
)
from inboxwatch.privacy.audit import AuditEvent, AuditLogger

from .credentials import ImapCredentials

logger = logging.getLogger(__name__)

IMAPError = IMAPClient.Error
IMAPAbortError = IMAPClient.AbortError

DEFAULT_CONNECTION_TIMEOUT = 20

# Granularity at which an IDLE round notices an interrupt request
IDLE_CHECK_SLICE = 1.0

TRANSIENT_ERRNOS = frozenset({errno.ECONNRESET, errno.EPIPE})


# ---------------------------------------------------------------------------
# Connection state and metrics
# ---------------------------------------------------------------------------


class ConnectionState(str, Enum):
    """Lifecycle states of the watcher's connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSING = "closing"
    FAILED = "failed"


@dataclass
class ConnectionMetrics:
    """Aggregated counters for watcher health reporting."""

    total_connections: int = 0
    successful_connections: int = 0
    failed_connections: int = 0
    average_connection_time: float = 0.0
    idle_renewals: int = 0
    fetch_cycles: int = 0
    failed_fetch_cycles: int = 0
    events_emitted: int = 0
    reconnects: Dict[str, int] = field(default_factory=dict)

    def record_attempt(self, success: bool, elapsed: float) -> None:
        self.total_connections += 1
        if success:
            self.successful_connections += 1
            self.average_connection_time += (
                elapsed - self.average_connection_time
            ) / max(1, self.successful_connections)
        else:
            self.failed_connections += 1

    def record_reconnect(self, reason: str) -> None:
        self.reconnects[reason] = self.reconnects.get(reason, 0) + 1

    def record_idle_renewal(self) -> None:
        self.idle_renewals += 1

    def record_fetch(self, emitted: int, *, success: bool = True) -> None:
        self.fetch_cycles += 1
        if success:
            self.events_emitted += emitted
        else:
            self.failed_fetch_cycles += 1


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def is_transient_error(exc: BaseException) -> bool:
    """Return True for connection errors that a reconnect is expected to fix."""
    if isinstance(exc, TransientConnectionError):
        return True
    if isinstance(exc, MailboxConnectionError):
        return False
    if isinstance(exc, LoginError):
        return False
    if isinstance(exc, (ConnectionResetError, BrokenPipeError)):
        return True
    if isinstance(exc, IMAPAbortError):
        return True
    return isinstance(exc, OSError) and exc.errno in TRANSIENT_ERRNOS


def is_connection_failure(exc: BaseException) -> bool:
    """Return True for errors raised by the IMAP client or its socket."""
    return isinstance(exc, (MailboxConnectionError, IMAPError, OSError))


def classify_connection_error(exc: BaseException) -> MailboxConnectionError:
    """Wrap a low-level exception into the watcher's connection error types."""
    if isinstance(exc, MailboxConnectionError):
        return exc
    details = {"error_type": type(exc).__name__}
    if is_transient_error(exc):
        error: MailboxConnectionError = TransientConnectionError(str(exc), details=details)
    else:
        error = FatalConnectionError(str(exc) or type(exc).__name__, details=details)
    error.__cause__ = exc
    return error


def has_new_mail(responses: Iterable[Any]) -> bool:
    """Check untagged responses (``(3, b'EXISTS')``) for new-mail notifications."""
    for response in responses or ():
        if not isinstance(response, (tuple, list)):
            continue
        for item in response:
            if isinstance(item, bytes) and item.upper() == b"EXISTS":
                return True
            if isinstance(item, str) and item.upper() == "EXISTS":
                return True
    return False


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class ImapSession:
    """One logged-in IMAP connection with the watched mailbox selected."""

    def __init__(
        self,
        credentials: ImapCredentials,
        *,
        allow_unauthorized_certs: bool = False,
        timeout: float = DEFAULT_CONNECTION_TIMEOUT,
        audit_logger: Optional[AuditLogger] = None,
        metrics: Optional[ConnectionMetrics] = None,
        job_id: str = "imap_session",
    ):
        self.credentials = credentials
        self.allow_unauthorized_certs = allow_unauthorized_certs
        self.timeout = timeout
        self.audit_logger = audit_logger
        self.metrics = metrics or ConnectionMetrics()
        self.job_id = job_id

        self.client: Optional[IMAPClient] = None
        self.state = ConnectionState.DISCONNECTED
        self.mailbox: Optional[str] = None
        self.uidvalidity: Optional[int] = None
        self.last_activity: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.client is not None and self.state == ConnectionState.OPEN

    def connect(self) -> IMAPClient:
        """Open the connection and log in.

        Raises:
            MailboxConnectionError: Classified connection or login failure
        """
        self.state = ConnectionState.CONNECTING
        self._log_event("connect", "starting")
        start = time.perf_counter()
        client = None
        try:
            client = IMAPClient(
                host=self.credentials.host,
                port=self.credentials.port,
                ssl=self.credentials.tls_required,
                ssl_context=self._create_ssl_context() if self.credentials.tls_required else None,
                timeout=self.timeout,
                use_uid=True,
            )
            client.login(
                self.credentials.username, self.credentials.secret.get_secret_value()
            )
        except Exception as exc:
            self.metrics.record_attempt(False, time.perf_counter() - start)
            self.state = ConnectionState.FAILED
            self._log_event(
                "connect", "failed", metadata={"error_type": type(exc).__name__}
            )
            if client is not None:
                _shutdown_quietly(client)
            raise classify_connection_error(exc) from exc

        self.metrics.record_attempt(True, time.perf_counter() - start)
        self.client = client
        self.last_activity = datetime.now(timezone.utc)
        self._log_event("connect", "success")
        logger.info(
            f"Connected to {self.credentials.host}",
            extra={"host": self.credentials.host, "port": self.credentials.port},
        )
        return client

    def select(self, mailbox: str) -> Dict[bytes, Any]:
        """Select the watched mailbox and remember its UIDVALIDITY."""
        client = self.require_client()
        try:
            info = client.select_folder(mailbox)
        except Exception as exc:
            self.state = ConnectionState.FAILED
            raise classify_connection_error(exc) from exc
        self.mailbox = mailbox
        uidvalidity = info.get(b"UIDVALIDITY")
        self.uidvalidity = int(uidvalidity) if uidvalidity is not None else None
        self.state = ConnectionState.OPEN
        logger.debug(
            f"Selected mailbox {mailbox}",
            extra={
                "mailbox": mailbox,
                "exists": info.get(b"EXISTS"),
                "uidvalidity": self.uidvalidity,
            },
        )
        return info

    def open(self, mailbox: str) -> IMAPClient:
        """Connect, log in and select ``mailbox``."""
        client = self.connect()
        try:
            self.select(mailbox)
        except MailboxConnectionError:
            self.close()
            self.state = ConnectionState.FAILED
            raise
        return client

    def close(self) -> None:
        """Log out and drop the client; safe to call repeatedly."""
        if self.client is None:
            self.state = ConnectionState.DISCONNECTED
            return
        self.state = ConnectionState.CLOSING
        client, self.client = self.client, None
        try:
            client.logout()
        except (IMAPError, OSError) as exc:
            logger.debug("Error during logout", exc_info=exc)
            _shutdown_quietly(client)
        finally:
            self.state = ConnectionState.DISCONNECTED
            self._log_event("disconnect", "success")

    def supports_idle(self) -> bool:
        return bool(self.require_client().has_capability("IDLE"))

    def wait_for_changes(
        self, timeout: float, interrupt: Optional[threading.Event] = None
    ) -> bool:
        """Run one IDLE round; return True if the server reported new mail.

        The round ends after ``timeout`` seconds, on new mail, or soon after
        ``interrupt`` is set.
        """
        client = self.require_client()
        deadline = time.monotonic() + timeout
        responses: List[Any] = []
        client.idle()
        while interrupt is None or not interrupt.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            responses.extend(client.idle_check(timeout=min(IDLE_CHECK_SLICE, remaining)))
            if has_new_mail(responses):
                break
        _, done_responses = client.idle_done()
        self.metrics.record_idle_renewal()
        self.last_activity = datetime.now(timezone.utc)
        return has_new_mail(responses) or has_new_mail(done_responses or [])

    def poll(self) -> bool:
        """Send NOOP; return True if the server reported new mail."""
        _, responses = self.require_client().noop()
        self.last_activity = datetime.now(timezone.utc)
        return has_new_mail(responses)

    def record_reconnect(self, status: str, reason: str) -> None:
        """Audit one step of a reconnect and track it in the session state."""
        if status == "starting":
            self.state = ConnectionState.RECONNECTING
        self._log_event("reconnect", status, metadata={"reason": reason})

    def mark_failed(self) -> None:
        self.state = ConnectionState.FAILED

    def require_client(self) -> IMAPClient:
        if self.client is None:
            raise TransientConnectionError("IMAP session is not connected")
        return self.client

    def _create_ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        context.load_verify_locations(certifi.where())
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        if self.allow_unauthorized_certs:
            logger.warning(
                "TLS certificate verification disabled",
                extra={"host": self.credentials.host},
            )
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        else:
            context.check_hostname = True
            context.verify_mode = ssl.CERT_REQUIRED
        return context

    def _log_event(
        self, action: str, status: str, metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        if not self.audit_logger:
            return
        event = AuditEvent(
            job_id=self.job_id,
            source="imap_connection_manager",
            action=action,
            status=status,
            timestamp=datetime.now(timezone.utc),
            metadata={
                "host": self.credentials.host,
                "port": self.credentials.port,
                "tls": self.credentials.tls_required,
                **(metadata or {}),
            },
        )
        try:
            self.audit_logger.record(event)
        except OSError as exc:
            logger.warning(f"Failed to record audit event: {exc}")


def _shutdown_quietly(client: IMAPClient) -> None:
    try:
        client.shutdown()
    except (IMAPError, OSError) as exc:
        logger.debug("Error shutting down IMAP socket", exc_info=exc)


# ---------------------------------------------------------------------------
# Connectivity self-test
# ---------------------------------------------------------------------------


@dataclass
class ConnectionTestResult:
    """Outcome of a connectivity self-test."""

    status: str
    message: str
    mailboxes: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "OK"

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "message": self.message, "mailboxes": self.mailboxes}


def self_test(
    credentials: ImapCredentials,
    *,
    allow_unauthorized_certs: bool = False,
    timeout: float = DEFAULT_CONNECTION_TIMEOUT,
) -> ConnectionTestResult:
    """Log in and list mailboxes without touching any watcher state.

    Failures are reported in the result instead of being raised.
    """
    session = ImapSession(
        credentials,
        allow_unauthorized_certs=allow_unauthorized_certs,
        timeout=timeout,
        job_id="imap_self_test",
    )
    try:
        client = session.connect()
        folders = client.list_folders()
    except MailboxConnectionError as exc:
        return ConnectionTestResult(status="Error", message=exc.message)
    except (IMAPError, OSError) as exc:
        return ConnectionTestResult(status="Error", message=str(exc))
    finally:
        session.close()

    names = [_folder_name(entry) for entry in folders]
    return ConnectionTestResult(
        status="OK", message="Connection successful!", mailboxes=names
    )


def _folder_name(entry: Any) -> str:
    name = entry[2] if isinstance(entry, (tuple, list)) and len(entry) > 2 else entry
    if isinstance(name, bytes):
        return name.decode("utf-8", errors="replace")
    return str(name)


__all__ = [
    "ConnectionMetrics",
    "ConnectionState",
    "ConnectionTestResult",
    "ImapSession",
    "classify_connection_error",
    "has_new_mail",
    "is_connection_failure",
    "is_transient_error",
    "self_test",
]
