"""MIME part tree helpers built on IMAP BODYSTRUCTURE responses.

``imapclient`` returns BODYSTRUCTURE as nested tuples (``BodyData``). A
multipart node carries its children either as a list in position 0 or as
leading tuples; a leaf node follows RFC 3501 field order:

    (type, subtype, params, id, description, encoding, size, ...)

``flatten_bodystructure`` walks that tree once and yields the leaf parts in
document order, each tagged with the section id used to fetch it
(``BODY.PEEK[1.2]``).
"""

from __future__ import annotations

import base64
import binascii
import logging
import quopri
from dataclasses import dataclass, field
from email.header import decode_header, make_header
from email.errors import HeaderParseError
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MimePart:
    """Leaf entry of a message's MIME tree."""

    part_id: str
    type: str
    subtype: str
    params: Dict[str, str] = field(default_factory=dict)
    content_id: Optional[str] = None
    description: Optional[str] = None
    encoding: str = "7bit"
    size: int = 0
    disposition: Optional[str] = None
    disposition_params: Dict[str, str] = field(default_factory=dict)

    @property
    def content_type(self) -> str:
        return f"{self.type}/{self.subtype}"

    @property
    def charset(self) -> Optional[str]:
        return self.params.get("charset")

    @property
    def filename(self) -> Optional[str]:
        raw = (
            self.disposition_params.get("filename")
            or self.disposition_params.get("filename*")
            or self.params.get("name")
        )
        if not raw:
            return None
        return decode_header_value(raw)

    @property
    def is_attachment(self) -> bool:
        return self.disposition == "attachment"

    @property
    def is_text(self) -> bool:
        return self.type == "text"


def flatten_bodystructure(structure: Any) -> List[MimePart]:
    """Return the leaf parts of a BODYSTRUCTURE in document order."""
    if not structure:
        return []
    parts: List[MimePart] = []
    if _is_multipart(structure):
        for index, child in enumerate(_children(structure), start=1):
            _walk(child, str(index), parts)
    else:
        _walk(structure, "1", parts)
    return parts


def _walk(node: Sequence[Any], part_id: str, parts: List[MimePart]) -> None:
    if _is_multipart(node):
        for index, child in enumerate(_children(node), start=1):
            _walk(child, f"{part_id}.{index}", parts)
        return
    parts.append(_leaf(node, part_id))


def _is_multipart(node: Sequence[Any]) -> bool:
    return bool(node) and isinstance(node[0], (list, tuple))


def _children(node: Sequence[Any]) -> List[Sequence[Any]]:
    # BodyData packs the children into a list; raw tuples inline them
    if isinstance(node[0], list):
        return list(node[0])
    children = []
    for item in node:
        if not isinstance(item, (list, tuple)):
            break
        children.append(item)
    return children


def _leaf(node: Sequence[Any], part_id: str) -> MimePart:
    type_ = _to_str(_get(node, 0), "text").lower()
    subtype = _to_str(_get(node, 1), "plain").lower()

    if type_ == "text":
        disposition_index = 9
    elif type_ == "message" and subtype == "rfc822":
        disposition_index = 11
    else:
        disposition_index = 8

    disposition = None
    disposition_params: Dict[str, str] = {}
    raw_disposition = _get(node, disposition_index)
    if isinstance(raw_disposition, (list, tuple)) and raw_disposition:
        disposition = _to_str(raw_disposition[0]).lower() or None
        disposition_params = _param_dict(_get(raw_disposition, 1))

    size = _get(node, 6)
    return MimePart(
        part_id=part_id,
        type=type_,
        subtype=subtype,
        params=_param_dict(_get(node, 2)),
        content_id=_to_str(_get(node, 3)) or None,
        description=_to_str(_get(node, 4)) or None,
        encoding=_to_str(_get(node, 5), "7bit").lower(),
        size=int(size) if isinstance(size, int) else 0,
        disposition=disposition,
        disposition_params=disposition_params,
    )


def _get(node: Sequence[Any], index: int) -> Any:
    return node[index] if len(node) > index else None


def _param_dict(params: Any) -> Dict[str, str]:
    if not isinstance(params, (list, tuple)):
        return {}
    values = list(params)
    return {
        _to_str(values[i]).lower(): _to_str(values[i + 1])
        for i in range(0, len(values) - 1, 2)
    }


def _to_str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


# ---------------------------------------------------------------------------
# Content decoding
# ---------------------------------------------------------------------------


def decode_header_value(value: str) -> str:
    """Decode an RFC 2047 encoded header value, leaving plain text intact."""
    try:
        return str(make_header(decode_header(value)))
    except (HeaderParseError, LookupError, UnicodeDecodeError):
        return value


def decode_transfer_encoding(data: bytes, encoding: str) -> bytes:
    """Undo a part's Content-Transfer-Encoding."""
    encoding = (encoding or "").lower()
    if encoding == "base64":
        try:
            return base64.b64decode(data)
        except (binascii.Error, ValueError):
            logger.warning("Malformed base64 part; keeping raw bytes")
            return data
    if encoding == "quoted-printable":
        return quopri.decodestring(data)
    return data


def decode_text(data: bytes, charset: Optional[str]) -> str:
    """Decode text part bytes with the declared charset, falling back to UTF-8."""
    if charset:
        try:
            return data.decode(charset, errors="replace")
        except LookupError:
            logger.debug("Unknown charset %s; decoding as utf-8", charset)
    return data.decode("utf-8", errors="replace")


__all__ = [
    "MimePart",
    "decode_header_value",
    "decode_text",
    "decode_transfer_encoding",
    "flatten_bodystructure",
]
