"""One search-fetch-format-flag pass over the watched mailbox.

A cycle either completes as a whole or leaves no trace. Nothing is committed
until every candidate in the batch was formatted. The high-water-mark is then
persisted before any message is flagged ``\\Seen``: a failed save leaves the
mailbox untouched, and a failed flag request rolls the mark back. Either way
the next cycle retries the same UID range.

The cycle is synchronous; ``MailboxWatcher`` runs it in an executor while
holding the connection lock.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from imapclient import SEEN

from inboxwatch.privacy.audit import AuditEvent, AuditLogger

from .config import Criterion, MailboxWatchConfig, to_imap_criteria
from .dedup import DeduplicationTracker
from .formatter import MessageFormatter, NormalizedEvent, PartLoader, RawMessage
from .mime_parts import MimePart

logger = logging.getLogger(__name__)

STRUCTURE_ITEM = b"BODYSTRUCTURE"


class FetchCycle:
    """Runs fetch cycles against an open, selected ``IMAPClient``."""

    def __init__(
        self,
        config: MailboxWatchConfig,
        tracker: DeduplicationTracker,
        formatter: MessageFormatter,
        *,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self.config = config
        self.tracker = tracker
        self.formatter = formatter
        self.audit_logger = audit_logger

    def fetch_items(self) -> List[bytes]:
        """FETCH data items; ``BODY.PEEK`` keeps the server from setting \\Seen."""
        items = [f"BODY.PEEK[{name}]".encode() for name in self.formatter.sections]
        items.append(STRUCTURE_ITEM)
        return items

    def run(self, client: Any, criteria: Sequence[Criterion]) -> List[NormalizedEvent]:
        """Deliver the messages matching ``criteria`` that were not seen before.

        Args:
            client: Logged-in ``IMAPClient`` with the mailbox selected
            criteria: Parsed base search criteria

        Returns:
            Events in ascending UID order; empty when nothing is new

        Raises:
            MessagePartMissingError: If a message lacks the section the
                configured format needs. Nothing is flagged or committed.
        """
        start = time.time()
        baseline = self.tracker.high_water_mark
        effective = to_imap_criteria(self.tracker.extend_criteria(criteria))

        try:
            uids = client.search(effective)
            candidates = sorted(uid for uid in set(uids) if self.tracker.is_new(uid))
            if not candidates:
                logger.debug(
                    "No new messages",
                    extra={"mailbox": self.config.mailbox, "matched": len(uids)},
                )
                return []

            response = client.fetch(candidates, self.fetch_items())
            events: List[NormalizedEvent] = []
            for uid in candidates:
                data = response.get(uid)
                if data is None:
                    # expunged between SEARCH and FETCH
                    logger.debug("Message vanished before fetch", extra={"uid": uid})
                    continue
                message = self._raw_message(uid, data)
                events.append(
                    self.formatter.format(message, self._part_loader(client, uid))
                )

            delivered = [event.uid for event in events]
            self.tracker.commit(delivered)
            if delivered and self.config.marks_read:
                try:
                    client.add_flags(delivered, [SEEN])
                except Exception:
                    self.tracker.rollback(baseline)
                    raise
        except Exception as exc:
            logger.error(
                f"Fetch cycle failed for {self.config.mailbox}",
                exc_info=exc,
                extra={"mailbox": self.config.mailbox, "high_water_mark": baseline},
            )
            self._log_cycle_event("failed", {"error_type": type(exc).__name__})
            raise

        duration = time.time() - start
        logger.info(
            f"Fetched {len(events)} new messages from {self.config.mailbox}",
            extra={
                "mailbox": self.config.mailbox,
                "matched": len(uids),
                "delivered": len(events),
                "high_water_mark": self.tracker.high_water_mark,
                "duration_seconds": round(duration, 3),
            },
        )
        self._log_cycle_event(
            "succeeded",
            {
                "matched": len(uids),
                "delivered": len(events),
                "marked_read": bool(events) and self.config.marks_read,
                "duration_seconds": round(duration, 3),
            },
        )
        return events

    def _raw_message(self, uid: int, data: Dict[bytes, Any]) -> RawMessage:
        sections = {}
        for name in self.formatter.sections:
            payload = data.get(f"BODY[{name}]".encode())
            if payload is not None:
                sections[name] = payload
        return RawMessage(uid=uid, sections=sections, structure=data.get(STRUCTURE_ITEM))

    @staticmethod
    def _part_loader(client: Any, uid: int) -> PartLoader:
        def load(part: MimePart) -> Optional[bytes]:
            response = client.fetch([uid], [f"BODY.PEEK[{part.part_id}]"])
            return response.get(uid, {}).get(f"BODY[{part.part_id}]".encode())

        return load

    def _log_cycle_event(self, status: str, metadata: Dict[str, Any]) -> None:
        if not self.audit_logger:
            return
        event = AuditEvent(
            job_id=f"fetch_cycle_{self.tracker.slot.scope_key}_{int(time.time())}",
            source="imap_fetch_cycle",
            action="fetch_cycle",
            status=status,
            timestamp=datetime.now(timezone.utc),
            metadata={"mailbox": self.config.mailbox, **metadata},
        )
        try:
            self.audit_logger.record(event)
        except OSError as exc:
            logger.warning(f"Failed to record audit event: {exc}")


__all__ = ["FetchCycle"]
