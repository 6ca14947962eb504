"""Human-readable text for watcher error codes.

Host applications and the CLI show these strings instead of raw imaplib or
sqlite errors. Nothing here echoes message content or credentials.
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Error Message Catalog
# =============================================================================

ERROR_MESSAGES: dict[str, str] = {
    # Connection errors
    "CONNECTION_ERROR": "A connection issue occurred while talking to the mail server.",
    "TRANSIENT_CONNECTION_ERROR": "The mail server connection was reset.",
    "FATAL_CONNECTION_ERROR": "The mail server rejected the connection.",
    # Configuration errors
    "CONFIGURATION_ERROR": "There's a configuration issue.",
    "INVALID_SEARCH_CRITERIA": "The custom search rules are not valid JSON.",
    "MISSING_CREDENTIALS": "No stored credentials were found for this mailbox.",
    # Parse errors
    "PARSE_ERROR": "A message could not be parsed.",
    "MESSAGE_PART_MISSING": "Email part could not be parsed.",
    # Storage errors
    "STATE_STORE_ERROR": "The watcher state could not be read or written.",
    "ATTACHMENT_STORE_ERROR": "An attachment could not be saved.",
    # Generic
    "WATCHER_ERROR": "An unexpected error occurred. Please try again.",
    "UNKNOWN_ERROR": "Something went wrong. Please try again.",
}


# =============================================================================
# Recovery Suggestions
# =============================================================================

RECOVERY_SUGGESTIONS: dict[str, str] = {
    "CONNECTION_ERROR": "Check your network and the server host/port.",
    "TRANSIENT_CONNECTION_ERROR": "No action needed; the watcher reconnects automatically.",
    "FATAL_CONNECTION_ERROR": "Verify credentials with: inboxwatch test-connection",
    "CONFIGURATION_ERROR": "Review the watcher options and restart it.",
    "INVALID_SEARCH_CRITERIA": 'Use a JSON array such as ["UNSEEN"] or [["SINCE", "2024-01-01"]].',
    "MISSING_CREDENTIALS": "Store credentials with: inboxwatch credentials set <name>",
    "PARSE_ERROR": "The message may be malformed; the next check retries it.",
    "MESSAGE_PART_MISSING": "The server did not return the requested body section; the next check retries it.",
    "STATE_STORE_ERROR": "Check disk space and permissions of the state database.",
    "ATTACHMENT_STORE_ERROR": "Check free space and permissions of the attachment directory; the next check retries the message.",
    "WATCHER_ERROR": "If this persists, restart the watcher.",
    "UNKNOWN_ERROR": "Restart the watcher. Report if the issue continues.",
}


# =============================================================================
# Rendering
# =============================================================================

REDACTED_DETAIL_KEYS = frozenset({"password", "secret", "body"})


def _error_code(error: Any) -> str:
    if isinstance(error, str):
        return error
    return getattr(error, "code", None) or "UNKNOWN_ERROR"


def get_user_message(error: Any) -> str:
    """Catalog message for ``error`` (an exception or a bare code)."""
    return ERROR_MESSAGES.get(_error_code(error), ERROR_MESSAGES["UNKNOWN_ERROR"])


def get_recovery_suggestion(error: Any) -> str:
    return RECOVERY_SUGGESTIONS.get(_error_code(error), RECOVERY_SUGGESTIONS["UNKNOWN_ERROR"])


def format_error_for_user(error: Any) -> str:
    return f"{get_user_message(error)}\n\nSuggestion: {get_recovery_suggestion(error)}"


def format_error_for_cli(error: Any) -> str:
    """Multi-line CLI rendering; detail keys in ``REDACTED_DETAIL_KEYS`` are dropped."""
    lines = [
        f"Error [{getattr(error, 'code', 'ERROR')}]: {get_user_message(error)}",
        "",
        f"Suggestion: {get_recovery_suggestion(error)}",
    ]
    details = {
        key: value
        for key, value in (getattr(error, "details", None) or {}).items()
        if key not in REDACTED_DETAIL_KEYS
    }
    if details:
        lines += ["", "Details:"]
        lines.extend(f"  {key}: {value}" for key, value in details.items())
    return "\n".join(lines)


__all__ = [
    "ERROR_MESSAGES",
    "RECOVERY_SUGGESTIONS",
    "REDACTED_DETAIL_KEYS",
    "get_user_message",
    "get_recovery_suggestion",
    "format_error_for_user",
    "format_error_for_cli",
]
