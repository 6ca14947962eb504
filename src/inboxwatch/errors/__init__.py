"""Error taxonomy for the mailbox watcher.

Errors fall into four families: connection problems (split into transient
ones the watcher recovers from by reconnecting and fatal ones it surfaces),
configuration problems raised before anything connects, per-message parse
failures that abort a single fetch cycle, and storage failures (watcher
state or attachments).

Usage:
    from inboxwatch.errors import FatalConnectionError, handle_error

    try:
        await watcher.start()
    except FatalConnectionError as e:
        print(handle_error(e))
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from inboxwatch.errors.user_messages import (
    format_error_for_user,
    get_recovery_suggestion,
    get_user_message,
)


# =============================================================================
# Base Error
# =============================================================================


class WatcherError(Exception):
    """Root of the inboxwatch error hierarchy.

    Every error has a stable ``code`` used to look up user-facing text, a
    ``recoverable`` flag and a ``details`` map safe to log (never message
    content or secrets).
    """

    code: str = "WATCHER_ERROR"
    default_message: str = "An unexpected error occurred"
    recoverable: bool = True

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        user_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message or self.default_message)
        self.message = str(self.args[0])
        self.details: Dict[str, Any] = dict(details or {})
        self._user_message = user_message

    @property
    def user_message(self) -> str:
        return self._user_message or get_user_message(self)

    @property
    def recovery_suggestion(self) -> str:
        return get_recovery_suggestion(self)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready representation used by the CLI's ``--json`` output."""
        return {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Connection Errors
# =============================================================================


class MailboxConnectionError(WatcherError):
    """Base error for mail server connection issues."""

    code = "CONNECTION_ERROR"
    default_message = "Connection failed"


class TransientConnectionError(MailboxConnectionError):
    """Connection reset or broken pipe; recovered by reconnecting."""

    code = "TRANSIENT_CONNECTION_ERROR"
    default_message = "Connection was reset"
    recoverable = True


class FatalConnectionError(MailboxConnectionError):
    """Authentication failure, unreachable host or protocol rejection."""

    code = "FATAL_CONNECTION_ERROR"
    default_message = "Connection was rejected"
    recoverable = False


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(WatcherError):
    """Base error for configuration issues."""

    code = "CONFIGURATION_ERROR"
    default_message = "Configuration error"
    recoverable = False


class InvalidSearchCriteriaError(ConfigurationError):
    """Custom search criteria could not be parsed."""

    code = "INVALID_SEARCH_CRITERIA"
    default_message = "Custom email config is not valid JSON."


class MissingCredentialsError(ConfigurationError):
    """No credentials are stored under the requested name."""

    code = "MISSING_CREDENTIALS"
    default_message = "Credentials not found"


# =============================================================================
# Parse Errors
# =============================================================================


class ParseError(WatcherError):
    """Base error for message parsing failures."""

    code = "PARSE_ERROR"
    default_message = "Message could not be parsed"


class MessagePartMissingError(ParseError):
    """A required body section was not returned for a message."""

    code = "MESSAGE_PART_MISSING"
    default_message = "Email part could not be parsed."

    def __init__(self, uid: int, section: str, *, message: str | None = None) -> None:
        self.uid = uid
        self.section = section
        super().__init__(
            message or self.default_message,
            details={"uid": uid, "section": section or "FULL"},
        )


# =============================================================================
# Storage Errors
# =============================================================================


class StateStoreError(WatcherError):
    """Persisted watcher state could not be read or written."""

    code = "STATE_STORE_ERROR"
    default_message = "State store operation failed"


class AttachmentStoreError(WatcherError):
    """An extracted attachment could not be handed to the attachment sink."""

    code = "ATTACHMENT_STORE_ERROR"
    default_message = "Attachment could not be stored"


# =============================================================================
# Helpers
# =============================================================================


def handle_error(error: Exception) -> str:
    """Render any exception as a user-facing message with a recovery hint."""
    return format_error_for_user(error)


def is_recoverable(error: Exception) -> bool:
    """True only for watcher errors flagged as recoverable."""
    return isinstance(error, WatcherError) and error.recoverable


__all__ = [
    "WatcherError",
    "MailboxConnectionError",
    "TransientConnectionError",
    "FatalConnectionError",
    "ConfigurationError",
    "InvalidSearchCriteriaError",
    "MissingCredentialsError",
    "ParseError",
    "MessagePartMissingError",
    "StateStoreError",
    "AttachmentStoreError",
    "handle_error",
    "is_recoverable",
]
