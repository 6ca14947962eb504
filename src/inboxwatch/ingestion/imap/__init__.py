"""IMAP mailbox watching: session handling, fetch cycles and event formatting."""

from .attachment_sink import (
    AttachmentHandle,
    AttachmentSink,
    LocalAttachmentSink,
    MemoryAttachmentSink,
)
from .config import (
    MailboxWatchConfig,
    OutputFormat,
    PostProcessAction,
    parse_search_criteria,
    to_imap_criteria,
)
from .connection_manager import (
    ConnectionMetrics,
    ConnectionState,
    ConnectionTestResult,
    ImapSession,
    classify_connection_error,
    is_transient_error,
    self_test,
)
from .credentials import CredentialProvider, ImapCredentials, KeyringCredentialStore
from .dedup import DeduplicationTracker
from .fetch_cycle import FetchCycle
from .formatter import MessageFormatter, NormalizedEvent, RawMessage
from .mime_parts import MimePart, flatten_bodystructure
from .sync_state import (
    MemoryStateSlot,
    SqliteStateStore,
    StateSlot,
    WatermarkState,
)
from .watcher import ErrorChannel, MailboxWatcher, watch_mailbox

__all__ = [
    "AttachmentHandle",
    "AttachmentSink",
    "LocalAttachmentSink",
    "MemoryAttachmentSink",
    "MailboxWatchConfig",
    "OutputFormat",
    "PostProcessAction",
    "parse_search_criteria",
    "to_imap_criteria",
    "ConnectionMetrics",
    "ConnectionState",
    "ConnectionTestResult",
    "ImapSession",
    "classify_connection_error",
    "is_transient_error",
    "self_test",
    "CredentialProvider",
    "ImapCredentials",
    "KeyringCredentialStore",
    "DeduplicationTracker",
    "FetchCycle",
    "MessageFormatter",
    "NormalizedEvent",
    "RawMessage",
    "MimePart",
    "flatten_bodystructure",
    "MemoryStateSlot",
    "SqliteStateStore",
    "StateSlot",
    "WatermarkState",
    "ErrorChannel",
    "MailboxWatcher",
    "watch_mailbox",
]
