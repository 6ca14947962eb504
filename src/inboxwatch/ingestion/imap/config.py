"""Configuration model for a mailbox watcher.

``MailboxWatchConfig`` is immutable for the lifetime of one watcher; a
changed configuration means stopping the watcher and starting a new one.
Custom search criteria are accepted as JSON text in the node-imap style
(``["UNSEEN", ["SINCE", "May 20, 2024"]]``) and translated into the flat
token list ``imapclient`` expects.
"""

from __future__ import annotations

import json
from datetime import date, datetime
from enum import Enum
from typing import Any, List, Optional, Union

from dateutil import parser as date_parser
from pydantic import BaseModel, ConfigDict, Field, field_validator

from inboxwatch.errors import InvalidSearchCriteriaError

Criterion = Union[str, List[Any]]

DEFAULT_MAILBOX = "INBOX"
DEFAULT_SEARCH_CRITERIA: List[Criterion] = ["UNSEEN"]
DEFAULT_ATTACHMENT_PREFIX = "attachment_"

DATE_CRITERIA = frozenset(
    {"SINCE", "BEFORE", "ON", "SENTSINCE", "SENTBEFORE", "SENTON"}
)


class PostProcessAction(str, Enum):
    """What to do with messages once their events were produced."""

    READ = "read"
    NOTHING = "nothing"


class OutputFormat(str, Enum):
    """Shape of the normalized event payload."""

    RAW = "raw"
    SIMPLE = "simple"
    RESOLVED = "resolved"


class MailboxWatchConfig(BaseModel):
    """Runtime configuration for one mailbox watcher."""

    model_config = ConfigDict(frozen=True)

    mailbox: str = Field(default=DEFAULT_MAILBOX, description="Watched mailbox name")
    post_process_action: PostProcessAction = Field(
        default=PostProcessAction.READ,
        description="Mark delivered messages as read, or leave them untouched",
    )
    format: OutputFormat = Field(
        default=OutputFormat.SIMPLE, description="Normalized event format"
    )
    download_attachments: bool = Field(
        default=False,
        description="Extract attachments in the simple format",
    )
    attachment_prefix: str = Field(
        default=DEFAULT_ATTACHMENT_PREFIX,
        description="Key prefix for attachment handles; an index starting at 0 is appended",
    )
    custom_search_criteria: Optional[str] = Field(
        default=None,
        description="JSON array of search criteria; defaults to [\"UNSEEN\"]",
    )
    allow_unauthorized_certs: bool = Field(
        default=False,
        description="Skip TLS certificate verification (insecure, explicit opt-in)",
    )
    force_reconnect_minutes: Optional[float] = Field(
        default=None,
        gt=0,
        description="Interval in minutes for proactive reconnects; None disables",
    )
    idle_timeout_seconds: float = Field(
        default=300,
        gt=0,
        le=1740,
        description="IDLE renewal interval, or NOOP poll interval without IDLE",
    )
    reset_on_uidvalidity_change: bool = Field(
        default=False,
        description="Reset the high-water-mark when the mailbox UIDVALIDITY changes",
    )

    @field_validator("mailbox")
    @classmethod
    def _validate_mailbox(cls, value: str) -> str:  # type: ignore[override]
        if not value.strip():
            raise ValueError("mailbox must not be empty")
        return value

    @property
    def force_reconnect_interval_seconds(self) -> Optional[float]:
        if self.force_reconnect_minutes is None:
            return None
        return self.force_reconnect_minutes * 60

    @property
    def marks_read(self) -> bool:
        return self.post_process_action == PostProcessAction.READ

    def search_criteria(self) -> List[Criterion]:
        """Parse the configured search criteria.

        Raises:
            InvalidSearchCriteriaError: If the custom criteria is not a JSON
                array of criteria
        """
        return parse_search_criteria(self.custom_search_criteria)


def parse_search_criteria(text: Optional[str]) -> List[Criterion]:
    """Parse node-imap style criteria from JSON text."""
    if text is None:
        return list(DEFAULT_SEARCH_CRITERIA)

    try:
        parsed = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise InvalidSearchCriteriaError(details={"criteria": text}) from exc

    if not isinstance(parsed, list):
        raise InvalidSearchCriteriaError(
            "Custom email config must be a JSON array.",
            details={"criteria": text},
        )
    for item in parsed:
        if isinstance(item, str) and item:
            continue
        if isinstance(item, list) and item and isinstance(item[0], str):
            continue
        raise InvalidSearchCriteriaError(
            f"Unsupported search criterion: {item!r}",
            details={"criteria": text},
        )
    return parsed


def to_imap_criteria(criteria: List[Criterion]) -> List[Any]:
    """Flatten criterion tuples into ``imapclient`` search tokens."""
    tokens: List[Any] = []
    for item in criteria:
        tokens.extend(_criterion_tokens(item))
    return tokens or ["ALL"]


def _criterion_tokens(item: Criterion) -> List[Any]:
    if isinstance(item, str):
        return _key_tokens(item)

    key, *args = item
    tokens = _key_tokens(key)
    name = tokens[-1]
    for arg in args:
        if name == "OR":
            operand = _criterion_tokens(arg)
            tokens.append(operand[0] if len(operand) == 1 else operand)
        elif name in DATE_CRITERIA:
            tokens.append(_coerce_date(arg))
        elif isinstance(arg, (int, float)) and not isinstance(arg, bool):
            tokens.append(int(arg))
        else:
            tokens.append(str(arg))
    return tokens


def _key_tokens(key: str) -> List[Any]:
    if key.startswith("!"):
        return ["NOT", key[1:].upper()]
    return [key.upper()]


def _coerce_date(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value
    try:
        return date_parser.parse(str(value)).date()
    except (ValueError, OverflowError) as exc:
        raise InvalidSearchCriteriaError(
            f"Invalid date in search criteria: {value!r}",
            details={"value": str(value)},
        ) from exc


__all__ = [
    "Criterion",
    "DEFAULT_SEARCH_CRITERIA",
    "MailboxWatchConfig",
    "OutputFormat",
    "PostProcessAction",
    "parse_search_criteria",
    "to_imap_criteria",
]
