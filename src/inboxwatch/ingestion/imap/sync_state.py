"""Persisted watcher state.

The only state a watcher keeps across restarts is its high-water-mark: the
largest message UID already delivered, plus the mailbox UIDVALIDITY that mark
belongs to. A ``StateSlot`` is the key-value slot scoped to one watcher
instance; ``SqliteStateStore`` hands out slots backed by a single SQLite file
and ``MemoryStateSlot`` is the in-process equivalent.
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from inboxwatch.errors import StateStoreError


# ---------------------------------------------------------------------------
# State model
# ---------------------------------------------------------------------------


class WatermarkState(BaseModel):
    """High-water-mark for one watcher instance."""

    scope_key: str = Field(..., description="Watcher instance identifier")
    last_message_uid: Optional[int] = Field(
        default=None, ge=0, description="Highest UID already delivered"
    )
    uidvalidity: Optional[int] = Field(
        default=None, ge=0, description="Mailbox epoch the UID belongs to"
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Last write timestamp",
    )


@runtime_checkable
class StateSlot(Protocol):
    """Persistent slot holding one watcher's ``WatermarkState``."""

    scope_key: str

    def load(self) -> Optional[WatermarkState]:
        ...

    def save(self, state: WatermarkState) -> None:
        ...


class MemoryStateSlot:
    """In-memory slot; state is lost with the process."""

    def __init__(
        self, scope_key: str = "default", state: Optional[WatermarkState] = None
    ) -> None:
        self.scope_key = scope_key
        self.state = state
        self.saves = 0

    def load(self) -> Optional[WatermarkState]:
        return self.state

    def save(self, state: WatermarkState) -> None:
        self.state = state
        self.saves += 1


# ---------------------------------------------------------------------------
# SQLite persistence
# ---------------------------------------------------------------------------


SCHEMA = """
CREATE TABLE IF NOT EXISTS watcher_state (
    scope_key TEXT PRIMARY KEY,
    last_message_uid INTEGER,
    uidvalidity INTEGER,
    updated_at TEXT NOT NULL
);
"""


class SqliteStateStore:
    """SQLite-backed store for watcher high-water-marks."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # slots are written from executor threads
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(SCHEMA)
        except sqlite3.Error as exc:
            raise StateStoreError(
                f"Failed to open state store: {exc}",
                details={"path": str(self._path)},
            ) from exc

    def close(self) -> None:
        with self._lock:
            self._conn.commit()
            self._conn.close()

    def slot(self, scope_key: str) -> "SqliteStateSlot":
        return SqliteStateSlot(self, scope_key)

    def upsert(self, state: WatermarkState) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    INSERT INTO watcher_state(scope_key, last_message_uid, uidvalidity, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(scope_key) DO UPDATE SET
                        last_message_uid=excluded.last_message_uid,
                        uidvalidity=excluded.uidvalidity,
                        updated_at=excluded.updated_at
                    """,
                    (
                        state.scope_key,
                        state.last_message_uid,
                        state.uidvalidity,
                        state.updated_at.isoformat(),
                    ),
                )
        except sqlite3.Error as exc:
            raise StateStoreError(
                f"Failed to persist watcher state: {exc}",
                details={"scope_key": state.scope_key},
            ) from exc

    def fetch(self, scope_key: str) -> Optional[WatermarkState]:
        try:
            with self._lock:
                row = self._conn.execute(
                    """
                    SELECT scope_key, last_message_uid, uidvalidity, updated_at
                    FROM watcher_state WHERE scope_key = ?
                    """,
                    (scope_key,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise StateStoreError(
                f"Failed to read watcher state: {exc}",
                details={"scope_key": scope_key},
            ) from exc
        if not row:
            return None
        return _row_to_state(row)

    def remove(self, scope_key: str) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "DELETE FROM watcher_state WHERE scope_key = ?", (scope_key,)
            )
        return cur.rowcount > 0

    def iter_all(self) -> Iterator[WatermarkState]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT scope_key, last_message_uid, uidvalidity, updated_at
                FROM watcher_state ORDER BY scope_key
                """
            ).fetchall()
        for row in rows:
            yield _row_to_state(row)


class SqliteStateSlot:
    """A ``StateSlot`` view of one row in a ``SqliteStateStore``."""

    def __init__(self, store: SqliteStateStore, scope_key: str) -> None:
        self._store = store
        self.scope_key = scope_key

    def load(self) -> Optional[WatermarkState]:
        return self._store.fetch(self.scope_key)

    def save(self, state: WatermarkState) -> None:
        self._store.upsert(state)


def _row_to_state(row: tuple) -> WatermarkState:
    return WatermarkState(
        scope_key=row[0],
        last_message_uid=row[1],
        uidvalidity=row[2],
        updated_at=datetime.fromisoformat(row[3]),
    )


__all__ = [
    "MemoryStateSlot",
    "SqliteStateSlot",
    "SqliteStateStore",
    "StateSlot",
    "WatermarkState",
]
