"""Binary attachment storage for normalized events.

Events never carry attachment bytes. The formatter hands each decoded
attachment to an ``AttachmentSink`` and embeds the returned
``AttachmentHandle`` instead. ``LocalAttachmentSink`` stores content on disk
under its SHA256 hash so identical attachments across messages share one file.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class AttachmentHandle(BaseModel):
    """Reference to stored attachment content."""

    handle_id: str = Field(..., description="Opaque identifier of the stored blob")
    filename: Optional[str] = Field(default=None, description="Original filename")
    content_type: str = Field(..., description="MIME type")
    size_bytes: int = Field(..., ge=0)
    content_hash: str = Field(..., description="SHA256 of the content")
    storage_path: Optional[Path] = Field(default=None)

    @staticmethod
    def compute_content_hash(content: bytes) -> str:
        return hashlib.sha256(content).hexdigest()


@runtime_checkable
class AttachmentSink(Protocol):
    """Destination for attachment content."""

    def store(
        self, content: bytes, filename: Optional[str], content_type: str
    ) -> AttachmentHandle:
        ...


class LocalAttachmentSink:
    """Store attachments in a local directory with hash-based deduplication."""

    def __init__(self, storage_dir: Path):
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    def store(
        self, content: bytes, filename: Optional[str], content_type: str
    ) -> AttachmentHandle:
        content_hash = AttachmentHandle.compute_content_hash(content)
        extension = Path(filename).suffix.lower() if filename else ""
        storage_path = self.storage_dir / f"{content_hash}{extension}"

        if not storage_path.exists():
            try:
                storage_path.write_bytes(content)
            except OSError as e:
                logger.error(
                    f"Failed to write attachment to storage: {e}",
                    extra={
                        "content_hash": content_hash[:16],
                        "storage_path": str(storage_path),
                    },
                )
                raise
            logger.debug(
                "Stored attachment content",
                extra={
                    "content_hash": content_hash[:16],
                    "size_bytes": len(content),
                    "extension": extension,
                },
            )
        else:
            logger.debug(
                "Attachment already exists (deduplicated)",
                extra={"content_hash": content_hash[:16]},
            )

        return AttachmentHandle(
            handle_id=str(uuid.uuid4()),
            filename=filename,
            content_type=content_type,
            size_bytes=len(content),
            content_hash=content_hash,
            storage_path=storage_path,
        )


class MemoryAttachmentSink:
    """Keep attachment content in memory, keyed by handle id."""

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}

    def store(
        self, content: bytes, filename: Optional[str], content_type: str
    ) -> AttachmentHandle:
        handle = AttachmentHandle(
            handle_id=str(uuid.uuid4()),
            filename=filename,
            content_type=content_type,
            size_bytes=len(content),
            content_hash=AttachmentHandle.compute_content_hash(content),
        )
        self.blobs[handle.handle_id] = content
        return handle


__all__ = [
    "AttachmentHandle",
    "AttachmentSink",
    "LocalAttachmentSink",
    "MemoryAttachmentSink",
]
