"""Tamper-evident audit log for watcher activity.

Watcher components record connection, reconnect and fetch-cycle outcomes
here. Payloads carry counts, identifiers and statuses only; message bodies,
addresses and secrets never reach the audit log.

Each line is a JSON object whose ``chain_hash`` covers the line's content and
the previous line's hash (``chain_prev``), so edits or deletions break the
chain. The current chain head lives in a small manifest next to the log and
survives rotation.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from hashlib import sha256
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

logger = logging.getLogger(__name__)

ROTATED_PREFIX = "audit-"


@dataclass(frozen=True)
class AuditEvent:
    """One audited watcher action."""

    job_id: str
    source: str
    action: str
    status: str
    timestamp: datetime
    attempt: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "job_id": self.job_id,
            "source": self.source,
            "action": self.action,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.attempt is not None:
            payload["attempt"] = self.attempt
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload


@dataclass
class AuditLogger:
    """Append-only JSONL audit log with a sha256 hash chain.

    Attributes:
        output_dir: Directory holding the active log, rotated logs and manifest
        filename: Name of the active log file
        max_bytes: Size at which the active log is rotated
        retention_days: Rotated logs older than this are deleted
        manifest_name: File tracking the chain head and rotated logs
    """

    output_dir: Path
    filename: str = "audit.log"
    max_bytes: int = 5 * 1024 * 1024
    retention_days: int = 30
    manifest_name: str = "audit_manifest.json"

    def __post_init__(self) -> None:
        self.output_dir = Path(self.output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self._path = self.output_dir / self.filename
        self._manifest_path = self.output_dir / self.manifest_name
        if not self._manifest_path.exists():
            self._write_manifest({"last_hash": None, "rotated": []})

    @property
    def path(self) -> Path:
        return self._path

    def record(self, event: AuditEvent) -> None:
        """Append ``event`` to the chain."""
        manifest = self._read_manifest()
        entry = event.to_payload()
        entry["chain_prev"] = manifest.get("last_hash")
        entry["chain_hash"] = chain_hash(entry)

        with self._path.open("a", encoding="utf-8") as fp:
            fp.write(json.dumps(entry, separators=(",", ":")) + "\n")
        manifest["last_hash"] = entry["chain_hash"]
        self._write_manifest(manifest)

        if self._path.stat().st_size >= self.max_bytes:
            self._rotate(manifest)
        self._prune()

    def verify(self, *, path: Optional[Path] = None) -> bool:
        """Return False if any line of the log was altered or removed."""
        expected_prev: Any = None
        for index, entry in enumerate(self.iter_events(path=path)):
            if index == 0:
                # a rotated-in file continues the chain of the one before it
                expected_prev = entry.get("chain_prev")
            if entry.get("chain_prev") != expected_prev:
                return False
            if entry.get("chain_hash") != chain_hash(entry):
                return False
            expected_prev = entry["chain_hash"]
        return True

    def iter_events(self, *, path: Optional[Path] = None) -> Iterator[Dict[str, Any]]:
        target = path or self._path
        if not target.exists():
            return
        with target.open("r", encoding="utf-8") as fp:
            for line_no, line in enumerate(fp, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(
                        "Skipping unreadable audit line",
                        extra={"path": str(target), "line": line_no},
                    )

    def _rotate(self, manifest: Dict[str, Any]) -> None:
        closed_at = datetime.now(timezone.utc)
        rotated = self.output_dir / f"{ROTATED_PREFIX}{closed_at:%Y%m%dT%H%M%S%f}.log"
        os.replace(self._path, rotated)
        manifest.setdefault("rotated", []).append(
            {
                "path": rotated.name,
                "closed_at": closed_at.isoformat(),
                "hash": manifest.get("last_hash"),
            }
        )
        self._write_manifest(manifest)
        logger.debug("Rotated audit log", extra={"rotated": rotated.name})

    def _prune(self) -> None:
        cutoff = time.time() - self.retention_days * 86400
        for candidate in self.output_dir.glob(f"{ROTATED_PREFIX}*.log"):
            if candidate.stat().st_mtime < cutoff:
                candidate.unlink(missing_ok=True)

    def _read_manifest(self) -> Dict[str, Any]:
        return json.loads(self._manifest_path.read_text(encoding="utf-8"))

    def _write_manifest(self, manifest: Dict[str, Any]) -> None:
        self._manifest_path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")


def chain_hash(entry: Dict[str, Any]) -> str:
    """Hash of an entry's canonical JSON, excluding its own ``chain_hash``."""
    body = {key: entry[key] for key in sorted(entry) if key != "chain_hash"}
    return sha256(json.dumps(body, separators=(",", ":")).encode("utf-8")).hexdigest()


__all__ = ["AuditEvent", "AuditLogger", "chain_hash"]
