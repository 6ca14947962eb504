"""Tests for normalized event formatting."""

from __future__ import annotations

import pytest

from inboxwatch.errors import (
    AttachmentStoreError,
    ConfigurationError,
    MessagePartMissingError,
)
from inboxwatch.ingestion.imap.attachment_sink import MemoryAttachmentSink
from inboxwatch.ingestion.imap.config import MailboxWatchConfig
from inboxwatch.ingestion.imap.formatter import MessageFormatter, RawMessage
from inboxwatch.ingestion.imap.mime_parts import flatten_bodystructure

from tests.ingestion.imap.conftest import _section, bodystructure_for, build_message


PDF_BYTES = b"%PDF-1.4 fake report"


def _fetched(uid: int, raw: bytes, *sections: str) -> RawMessage:
    return RawMessage(
        uid=uid,
        sections={name: _section(raw, name) for name in sections},
        structure=bodystructure_for(raw),
    )


def _loader(raw: bytes, calls=None):
    def load(part):
        if calls is not None:
            calls.append(part.part_id)
        return _section(raw, part.part_id)

    return load


@pytest.fixture
def rich_message() -> bytes:
    return build_message(
        subject="Quarterly report",
        body="Numbers attached.",
        html="<p>Numbers <b>attached</b>.</p>",
        attachments=[("report.pdf", PDF_BYTES, "application/pdf")],
        headers={"X-Priority": "1", "Cc": "team@example.com"},
    )


# ============================================================================
# raw
# ============================================================================


def test_raw_format_returns_text_section_verbatim():
    raw = build_message(body="Hello raw world")
    formatter = MessageFormatter(MailboxWatchConfig(format="raw"))

    event = formatter.format(_fetched(4, raw, "HEADER", "TEXT"))

    assert event.uid == 4
    assert event.raw == _section(raw, "TEXT").decode()
    assert event.subject is None
    assert event.to_payload() == {
        "uid": 4,
        "format": "raw",
        "metadata": {},
        "attachments": {},
        "raw": event.raw,
    }


def test_raw_format_requires_text_section():
    raw = build_message()
    formatter = MessageFormatter(MailboxWatchConfig(format="raw"))

    with pytest.raises(MessagePartMissingError) as exc_info:
        formatter.format(_fetched(4, raw, "HEADER"))

    assert exc_info.value.uid == 4
    assert exc_info.value.section == "TEXT"
    assert exc_info.value.message == "Email part could not be parsed."


# ============================================================================
# simple
# ============================================================================


def test_simple_format_splits_headers(rich_message):
    formatter = MessageFormatter(MailboxWatchConfig())

    event = formatter.format(_fetched(9, rich_message, "HEADER", "TEXT"), _loader(rich_message))

    assert event.subject == "Quarterly report"
    assert event.from_ == "sender@example.com"
    assert event.to == "recipient@example.com"
    assert event.cc == "team@example.com"
    assert event.date is not None
    assert event.metadata["x-priority"] == "1"
    assert "message-id" in event.metadata
    assert "subject" not in event.metadata
    assert event.to_payload()["from"] == "sender@example.com"


def test_simple_format_fetches_text_parts(rich_message):
    calls = []
    formatter = MessageFormatter(MailboxWatchConfig())

    event = formatter.format(
        _fetched(9, rich_message, "HEADER", "TEXT"), _loader(rich_message, calls)
    )

    assert event.text_plain.strip() == "Numbers attached."
    assert "<b>attached</b>" in event.text_html
    assert sorted(calls) == ["1.1", "1.2"]
    # attachments are not downloaded by default
    assert event.attachments == {}


def test_simple_format_missing_parts_become_empty_strings():
    raw = build_message(body="only plain")
    formatter = MessageFormatter(MailboxWatchConfig())

    event = formatter.format(_fetched(2, raw, "HEADER", "TEXT"), lambda part: None)

    assert event.text_plain == ""
    assert event.text_html == ""


def test_simple_format_decodes_quoted_printable_part():
    raw = (
        b"From: a@example.com\r\n"
        b"Subject: qp\r\n"
        b"Content-Type: text/plain; charset=utf-8\r\n"
        b"Content-Transfer-Encoding: quoted-printable\r\n"
        b"\r\n"
        b"caf=C3=A9 au lait\r\n"
    )
    formatter = MessageFormatter(MailboxWatchConfig())

    event = formatter.format(_fetched(3, raw, "HEADER", "TEXT"), _loader(raw))

    assert flatten_bodystructure(bodystructure_for(raw))[0].encoding == "quoted-printable"
    assert event.text_plain.strip() == "café au lait"


def test_simple_format_requires_header_section(rich_message):
    formatter = MessageFormatter(MailboxWatchConfig())

    with pytest.raises(MessagePartMissingError):
        formatter.format(_fetched(9, rich_message, "TEXT"), _loader(rich_message))


def test_simple_format_downloads_attachments(rich_message):
    sink = MemoryAttachmentSink()
    formatter = MessageFormatter(
        MailboxWatchConfig(download_attachments=True, attachment_prefix="file_"), sink
    )

    event = formatter.format(_fetched(9, rich_message, "HEADER", "TEXT"), _loader(rich_message))

    assert list(event.attachments) == ["file_0"]
    handle = event.attachments["file_0"]
    assert handle.filename == "report.pdf"
    assert handle.content_type == "application/pdf"
    assert handle.size_bytes == len(PDF_BYTES)
    assert sink.blobs[handle.handle_id] == PDF_BYTES


# ============================================================================
# resolved
# ============================================================================


def test_resolved_format_decodes_full_message(rich_message):
    sink = MemoryAttachmentSink()
    formatter = MessageFormatter(MailboxWatchConfig(format="resolved"), sink)

    event = formatter.format(_fetched(9, rich_message, ""))

    assert event.subject == "Quarterly report"
    assert event.date == "2024-01-01T12:00:00+00:00"
    assert event.text.strip() == "Numbers attached."
    assert "<b>attached</b>" in event.html
    assert event.message_id.endswith("@example.com>")
    assert list(event.attachments) == ["attachment_0"]
    assert sink.blobs[event.attachments["attachment_0"].handle_id] == PDF_BYTES
    assert all(PDF_BYTES.decode("latin-1") not in value for value in event.metadata.values())


def test_resolved_format_falls_back_to_html_text():
    html_only = (
        b"From: a@example.com\n"
        b"Subject: html only\n"
        b"Content-Type: text/html; charset=utf-8\n"
        b"\n"
        b"<h1>Hello</h1><p>World</p>\n"
    )
    formatter = MessageFormatter(MailboxWatchConfig(format="resolved"))

    event = formatter.format(_fetched(1, html_only, ""))

    assert "Hello" in event.text
    assert "World" in event.text
    assert "<h1>" not in event.text
    assert event.attachments == {}


def test_resolved_format_without_sink_refuses_to_drop_attachments(rich_message):
    formatter = MessageFormatter(MailboxWatchConfig(format="resolved"))

    assert formatter.requires_attachment_sink
    with pytest.raises(ConfigurationError):
        formatter.format(_fetched(9, rich_message, ""))


def test_sink_failure_is_wrapped(rich_message):
    class BrokenSink:
        def store(self, content, filename, content_type):
            raise OSError(28, "No space left on device")

    formatter = MessageFormatter(MailboxWatchConfig(format="resolved"), BrokenSink())

    with pytest.raises(AttachmentStoreError) as exc_info:
        formatter.format(_fetched(9, rich_message, ""))

    assert exc_info.value.details == {
        "content_type": "application/pdf",
        "error_type": "OSError",
    }
    assert isinstance(exc_info.value.__cause__, OSError)


def test_requires_attachment_sink_per_format():
    assert not MessageFormatter(MailboxWatchConfig(format="raw")).requires_attachment_sink
    assert not MessageFormatter(MailboxWatchConfig()).requires_attachment_sink
    assert MessageFormatter(
        MailboxWatchConfig(download_attachments=True)
    ).requires_attachment_sink


def test_sections_per_format():
    assert MessageFormatter(MailboxWatchConfig(format="resolved")).sections == ("",)
    assert MessageFormatter(MailboxWatchConfig()).sections == ("HEADER", "TEXT")
