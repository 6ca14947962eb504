"""High-water-mark based deduplication of delivered messages.

The server-side ``UID n:*`` constraint only narrows the search; it is not
authoritative (``n:*`` always matches the highest UID even when it is below
``n``), so every candidate is filtered again here before it is formatted.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from .config import Criterion
from .sync_state import StateSlot, WatermarkState

logger = logging.getLogger(__name__)


class DeduplicationTracker:
    """Tracks the highest delivered UID for one watcher instance.

    The mark only ever moves forward during a watcher's lifetime; the one
    exception is an opt-in reset after the mailbox UIDVALIDITY changed.
    """

    def __init__(self, slot: StateSlot):
        self.slot = slot
        self._high_water_mark: Optional[int] = None
        self._uidvalidity: Optional[int] = None

    @property
    def high_water_mark(self) -> Optional[int]:
        return self._high_water_mark

    @property
    def uidvalidity(self) -> Optional[int]:
        return self._uidvalidity

    def load(self) -> Optional[int]:
        """Read the persisted mark; called once at watcher start."""
        state = self.slot.load()
        if state is not None:
            self._high_water_mark = state.last_message_uid
            self._uidvalidity = state.uidvalidity
        logger.debug(
            "Loaded high-water-mark",
            extra={
                "scope_key": self.slot.scope_key,
                "high_water_mark": self._high_water_mark,
            },
        )
        return self._high_water_mark

    def extend_criteria(self, base: Iterable[Criterion]) -> List[Criterion]:
        """Return ``base`` plus a UID range starting at the mark."""
        criteria = list(base)
        if self._high_water_mark is not None:
            criteria.append(["UID", f"{self._high_water_mark}:*"])
        return criteria

    def is_new(self, uid: int) -> bool:
        return self._high_water_mark is None or uid > self._high_water_mark

    def observe(self, uid: int) -> bool:
        """Advance the mark to ``uid`` if it is new; return whether it moved."""
        if not self.is_new(uid):
            return False
        self._high_water_mark = uid
        return True

    def commit(self, uids: Iterable[int]) -> bool:
        """Persist the highest new UID of a completed batch.

        The in-memory mark only moves once the slot accepted the new value,
        so a failed save leaves the tracker exactly as it was.
        """
        candidate = max((uid for uid in uids if self.is_new(uid)), default=None)
        if candidate is None:
            return False
        self._persist(candidate)
        self._high_water_mark = candidate
        logger.debug(
            "Advanced high-water-mark",
            extra={
                "scope_key": self.slot.scope_key,
                "high_water_mark": self._high_water_mark,
            },
        )
        return True

    def rollback(self, high_water_mark: Optional[int]) -> None:
        """Restore the mark a cycle started from after its batch was abandoned."""
        if high_water_mark == self._high_water_mark:
            return
        self._persist(high_water_mark)
        logger.warning(
            "Rolled back high-water-mark",
            extra={
                "scope_key": self.slot.scope_key,
                "from_uid": self._high_water_mark,
                "to_uid": high_water_mark,
            },
        )
        self._high_water_mark = high_water_mark

    def check_epoch(self, uidvalidity: Optional[int], reset: bool = False) -> bool:
        """Compare the selected mailbox's UIDVALIDITY with the stored one.

        Returns True if the mark was reset.
        """
        if uidvalidity is None or uidvalidity == self._uidvalidity:
            return False

        previous = self._uidvalidity
        self._uidvalidity = uidvalidity
        if previous is None:
            self._persist(self._high_water_mark)
            return False

        if reset:
            logger.warning(
                "Mailbox UIDVALIDITY changed; resetting high-water-mark",
                extra={
                    "scope_key": self.slot.scope_key,
                    "old_uidvalidity": previous,
                    "new_uidvalidity": uidvalidity,
                    "high_water_mark": self._high_water_mark,
                },
            )
            self._persist(None)
            self._high_water_mark = None
            return True

        logger.warning(
            "Mailbox UIDVALIDITY changed; keeping high-water-mark, new messages "
            "with lower UIDs will be skipped",
            extra={
                "scope_key": self.slot.scope_key,
                "old_uidvalidity": previous,
                "new_uidvalidity": uidvalidity,
            },
        )
        self._persist(self._high_water_mark)
        return False

    def _persist(self, high_water_mark: Optional[int]) -> None:
        self.slot.save(
            WatermarkState(
                scope_key=self.slot.scope_key,
                last_message_uid=high_water_mark,
                uidvalidity=self._uidvalidity,
            )
        )


__all__ = ["DeduplicationTracker"]
