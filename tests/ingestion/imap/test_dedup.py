"""Tests for high-water-mark deduplication."""

from __future__ import annotations

import logging

import pytest

from inboxwatch.errors import StateStoreError
from inboxwatch.ingestion.imap.dedup import DeduplicationTracker
from inboxwatch.ingestion.imap.sync_state import MemoryStateSlot, WatermarkState


def _tracker(last_uid=None, uidvalidity=None) -> DeduplicationTracker:
    state = None
    if last_uid is not None or uidvalidity is not None:
        state = WatermarkState(
            scope_key="test", last_message_uid=last_uid, uidvalidity=uidvalidity
        )
    tracker = DeduplicationTracker(MemoryStateSlot("test", state))
    tracker.load()
    return tracker


def test_fresh_tracker_accepts_everything():
    tracker = _tracker()

    assert tracker.high_water_mark is None
    assert tracker.is_new(1)
    assert tracker.extend_criteria(["UNSEEN"]) == ["UNSEEN"]


def test_extend_criteria_adds_uid_range_without_mutating_base():
    tracker = _tracker(last_uid=7)
    base = ["UNSEEN"]

    assert tracker.extend_criteria(base) == ["UNSEEN", ["UID", "7:*"]]
    assert base == ["UNSEEN"]


def test_is_new_is_strictly_greater():
    tracker = _tracker(last_uid=7)

    assert not tracker.is_new(5)
    assert not tracker.is_new(7)
    assert tracker.is_new(8)


def test_observe_only_moves_forward():
    tracker = _tracker(last_uid=7)

    assert tracker.observe(9)
    assert not tracker.observe(8)
    assert tracker.high_water_mark == 9


def test_commit_persists_when_advanced():
    tracker = _tracker()

    assert tracker.commit([5, 7, 9])
    assert tracker.high_water_mark == 9
    assert tracker.slot.load().last_message_uid == 9
    assert tracker.slot.saves == 1


def test_commit_without_progress_does_not_write():
    tracker = _tracker(last_uid=9)

    assert not tracker.commit([])
    assert not tracker.commit([3, 9])
    assert tracker.slot.saves == 0


def test_first_epoch_is_recorded():
    tracker = _tracker(last_uid=4)

    assert tracker.check_epoch(12) is False
    assert tracker.uidvalidity == 12
    assert tracker.slot.load().uidvalidity == 12
    assert tracker.high_water_mark == 4


def test_unchanged_epoch_is_a_noop():
    tracker = _tracker(last_uid=4, uidvalidity=12)

    assert tracker.check_epoch(12) is False
    assert tracker.check_epoch(None) is False
    assert tracker.slot.saves == 0


def test_changed_epoch_resets_when_enabled(caplog: pytest.LogCaptureFixture):
    tracker = _tracker(last_uid=40, uidvalidity=1)

    with caplog.at_level(logging.WARNING):
        assert tracker.check_epoch(2, reset=True) is True

    assert tracker.high_water_mark is None
    assert tracker.slot.load().uidvalidity == 2
    assert tracker.slot.load().last_message_uid is None
    assert "resetting" in caplog.text


def test_changed_epoch_keeps_mark_by_default(caplog: pytest.LogCaptureFixture):
    tracker = _tracker(last_uid=40, uidvalidity=1)

    with caplog.at_level(logging.WARNING):
        assert tracker.check_epoch(2) is False

    assert tracker.high_water_mark == 40
    assert tracker.uidvalidity == 2
    assert "keeping high-water-mark" in caplog.text


class _RejectingSlot(MemoryStateSlot):
    def save(self, state: WatermarkState) -> None:
        raise StateStoreError("disk full")


def test_failed_save_leaves_mark_untouched():
    tracker = DeduplicationTracker(_RejectingSlot("test"))

    with pytest.raises(StateStoreError):
        tracker.commit([5, 7, 9])

    assert tracker.high_water_mark is None
    assert tracker.is_new(5)


def test_rollback_restores_and_persists_previous_mark():
    tracker = _tracker(last_uid=4)
    tracker.commit([9])

    tracker.rollback(4)

    assert tracker.high_water_mark == 4
    assert tracker.slot.load().last_message_uid == 4
