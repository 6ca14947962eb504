"""Convert fetched IMAP messages into normalized events.

Three output shapes are supported:

- ``raw``: the TEXT section verbatim, no MIME decoding.
- ``simple``: headers split into top-level fields and a metadata map, the
  first ``text/plain`` and ``text/html`` parts located through BODYSTRUCTURE
  and fetched individually, attachments optional.
- ``resolved``: a full MIME decode of the whole message with every
  attachment handed to the attachment sink.

Attachment bytes never end up inside an event; only ``AttachmentHandle``
references keyed ``{prefix}{index}`` do.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from email import message_from_bytes
from email.message import Message
from email.parser import BytesHeaderParser
from email.policy import default as email_policy
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import html2text
from pydantic import BaseModel, ConfigDict, Field

from inboxwatch.errors import (
    AttachmentStoreError,
    ConfigurationError,
    MessagePartMissingError,
    WatcherError,
)

from .attachment_sink import AttachmentHandle, AttachmentSink
from .config import MailboxWatchConfig, OutputFormat
from .mime_parts import (
    MimePart,
    decode_text,
    decode_transfer_encoding,
    flatten_bodystructure,
)

logger = logging.getLogger(__name__)

# Headers promoted to the top level of an event; everything else is metadata
TOP_LEVEL_HEADERS = ("cc", "date", "from", "subject", "to")

HEADER_SECTION = "HEADER"
TEXT_SECTION = "TEXT"
FULL_SECTION = ""

# Fetches the still transfer-encoded bytes of one MIME part
PartLoader = Callable[[MimePart], Optional[bytes]]


@dataclass
class RawMessage:
    """A message as returned by one FETCH, before formatting."""

    uid: int
    sections: Dict[str, bytes] = field(default_factory=dict)
    structure: Any = None

    def section(self, name: str) -> bytes:
        payload = self.sections.get(name)
        if payload is None:
            raise MessagePartMissingError(self.uid, name)
        return payload


class NormalizedEvent(BaseModel):
    """Normalized representation of one new message."""

    model_config = ConfigDict(populate_by_name=True)

    uid: int = Field(..., ge=1, description="Message UID in the watched mailbox")
    format: OutputFormat

    subject: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    cc: Optional[str] = None
    date: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    attachments: Dict[str, AttachmentHandle] = Field(default_factory=dict)

    # raw
    raw: Optional[str] = None
    # simple
    text_plain: Optional[str] = None
    text_html: Optional[str] = None
    # resolved
    text: Optional[str] = None
    html: Optional[str] = None
    message_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MessageFormatter:
    """Build ``NormalizedEvent`` objects in the configured output format."""

    def __init__(
        self,
        config: MailboxWatchConfig,
        attachment_sink: Optional[AttachmentSink] = None,
    ):
        self.config = config
        self.attachment_sink = attachment_sink
        self.html_converter = html2text.HTML2Text()
        self.html_converter.ignore_links = False
        self.html_converter.ignore_images = True
        self.html_converter.body_width = 0

    @property
    def sections(self) -> Tuple[str, ...]:
        """Body sections the fetch cycle must request for this format."""
        if self.config.format == OutputFormat.RESOLVED:
            return (FULL_SECTION,)
        return (HEADER_SECTION, TEXT_SECTION)

    @property
    def requires_attachment_sink(self) -> bool:
        if self.config.format == OutputFormat.RESOLVED:
            return True
        return self.config.format == OutputFormat.SIMPLE and self.config.download_attachments

    def format(
        self, message: RawMessage, part_loader: Optional[PartLoader] = None
    ) -> NormalizedEvent:
        """Format a fetched message.

        Args:
            message: The fetched message
            part_loader: Fetches individual MIME parts (simple format only)

        Raises:
            MessagePartMissingError: If the section the format relies on was
                not returned by the server
        """
        if self.config.format == OutputFormat.RAW:
            return self._format_raw(message)
        if self.config.format == OutputFormat.SIMPLE:
            return self._format_simple(message, part_loader)
        return self._format_resolved(message)

    # ------------------------------------------------------------------
    # raw
    # ------------------------------------------------------------------

    def _format_raw(self, message: RawMessage) -> NormalizedEvent:
        payload = message.section(TEXT_SECTION)
        return NormalizedEvent(
            uid=message.uid,
            format=OutputFormat.RAW,
            raw=payload.decode("utf-8", errors="replace"),
        )

    # ------------------------------------------------------------------
    # simple
    # ------------------------------------------------------------------

    def _format_simple(
        self, message: RawMessage, part_loader: Optional[PartLoader]
    ) -> NormalizedEvent:
        header_bytes = message.section(HEADER_SECTION)
        headers = BytesHeaderParser(policy=email_policy).parsebytes(header_bytes)
        top_level, metadata = _split_headers(headers.items())

        parts = flatten_bodystructure(message.structure)
        event = NormalizedEvent(
            uid=message.uid,
            format=OutputFormat.SIMPLE,
            metadata=metadata,
            text_html=self._part_text(parts, "html", part_loader),
            text_plain=self._part_text(parts, "plain", part_loader),
            **top_level,
        )

        if self.config.download_attachments:
            event.attachments = self._load_attachments(parts, part_loader)
        return event

    def _part_text(
        self, parts: List[MimePart], subtype: str, part_loader: Optional[PartLoader]
    ) -> str:
        if part_loader is None:
            return ""
        for part in parts:
            if part.is_text and part.subtype == subtype and not part.is_attachment:
                data = part_loader(part)
                if data is None:
                    logger.debug(
                        "Text part missing from fetch response",
                        extra={"part_id": part.part_id},
                    )
                    return ""
                return decode_text(
                    decode_transfer_encoding(data, part.encoding), part.charset
                )
        return ""

    def _load_attachments(
        self, parts: List[MimePart], part_loader: Optional[PartLoader]
    ) -> Dict[str, AttachmentHandle]:
        if part_loader is None:
            return {}
        blobs = []
        for part in parts:
            if not part.is_attachment:
                continue
            data = part_loader(part)
            if data is None:
                continue
            blobs.append(
                (
                    decode_transfer_encoding(data, part.encoding),
                    part.filename,
                    part.content_type,
                )
            )
        return self._store_attachments(blobs)

    # ------------------------------------------------------------------
    # resolved
    # ------------------------------------------------------------------

    def _format_resolved(self, message: RawMessage) -> NormalizedEvent:
        full = message.section(FULL_SECTION)
        parsed = message_from_bytes(full, policy=email_policy)
        top_level, metadata = _split_headers(parsed.items())
        if "date" in top_level:
            top_level["date"] = _iso_date(top_level["date"])

        text = _body_text(parsed, "plain")
        html = _body_text(parsed, "html")
        if text is None and html:
            text = self.html_converter.handle(html).strip()

        message_id = parsed.get("message-id")
        return NormalizedEvent(
            uid=message.uid,
            format=OutputFormat.RESOLVED,
            metadata=metadata,
            text=text or "",
            html=html,
            message_id=str(message_id).strip() if message_id else None,
            attachments=self._store_attachments(_iter_attachments(parsed)),
            **top_level,
        )

    # ------------------------------------------------------------------

    def _store_attachments(
        self, blobs: Iterable[Tuple[bytes, Optional[str], str]]
    ) -> Dict[str, AttachmentHandle]:
        handles: Dict[str, AttachmentHandle] = {}
        for index, (content, filename, content_type) in enumerate(blobs):
            if self.attachment_sink is None:
                raise ConfigurationError(
                    "An attachment sink is required to extract attachments",
                    details={"format": self.config.format.value},
                )
            try:
                handle = self.attachment_sink.store(content, filename, content_type)
            except WatcherError:
                raise
            except Exception as exc:
                raise AttachmentStoreError(
                    f"Could not store attachment: {exc}",
                    details={"content_type": content_type, "error_type": type(exc).__name__},
                ) from exc
            handles[f"{self.config.attachment_prefix}{index}"] = handle
        return handles


def _split_headers(
    items: Iterable[Tuple[str, Any]]
) -> Tuple[Dict[str, str], Dict[str, str]]:
    top_level: Dict[str, str] = {}
    metadata: Dict[str, str] = {}
    for name, value in items:
        key = name.lower()
        target = top_level if key in TOP_LEVEL_HEADERS else metadata
        # first value wins for repeated headers
        if key in target:
            continue
        target[key] = str(value)
    if "from" in top_level:
        top_level["from_"] = top_level.pop("from")
    return top_level, metadata


def _iso_date(value: str) -> str:
    try:
        return parsedate_to_datetime(value).isoformat()
    except (TypeError, ValueError):
        return value


def _body_text(message: Message, subtype: str) -> Optional[str]:
    body = message.get_body(preferencelist=(subtype,))
    if body is None:
        return None
    try:
        return body.get_content()
    except (LookupError, UnicodeDecodeError):
        payload = body.get_payload(decode=True) or b""
        return decode_text(payload, None)


def _iter_attachments(message: Message) -> Iterable[Tuple[bytes, Optional[str], str]]:
    body_parts = {
        id(part)
        for part in (
            message.get_body(preferencelist=("plain",)),
            message.get_body(preferencelist=("html",)),
        )
        if part is not None
    }
    for part in message.walk():
        if part.is_multipart() or id(part) in body_parts:
            continue
        disposition = part.get_content_disposition()
        filename = part.get_filename()
        if (
            disposition != "attachment"
            and not filename
            and part.get_content_maintype() == "text"
        ):
            continue
        content = part.get_payload(decode=True)
        if content is None:
            continue
        yield content, filename, part.get_content_type()


__all__ = [
    "MessageFormatter",
    "NormalizedEvent",
    "PartLoader",
    "RawMessage",
    "TOP_LEVEL_HEADERS",
]
