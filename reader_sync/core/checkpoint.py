"""Single-row sync watermark."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone

from reader_sync.providers.content_types import format_timestamp

logger = logging.getLogger(__name__)


class CheckpointError(RuntimeError):
    """The stored checkpoint is missing or unreadable."""


class CheckpointStore:
    """Reads and writes `sync_state.last_sync_at`.

    There is no fallback on failure: a wrong watermark silently skips
    documents on the next incremental run, so every error propagates.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def load(self) -> datetime | None:
        """Return the last saved watermark, or None if no run has completed yet."""
        cur = self._conn.execute("SELECT last_sync_at FROM sync_state WHERE id = 1")
        row = cur.fetchone()
        if row is None:
            raise CheckpointError("sync_state row is missing; run DB.init() first")

        value = row[0]
        if value is None:
            return None
        try:
            ts = datetime.fromisoformat(value)
        except (TypeError, ValueError):
            raise CheckpointError(f"Malformed checkpoint value in sync_state: {value!r}") from None
        if ts.tzinfo is None:
            raise CheckpointError(f"Checkpoint value has no timezone: {value!r}")
        return ts.astimezone(timezone.utc)

    def save(self, ts: datetime) -> None:
        """Replace the watermark (last write wins)."""
        if ts.tzinfo is None:
            raise ValueError("Checkpoint timestamp must be timezone-aware")
        self._conn.execute(
            """
            INSERT INTO sync_state (id, last_sync_at) VALUES (1, ?)
            ON CONFLICT(id) DO UPDATE SET last_sync_at = excluded.last_sync_at
            """,
            (format_timestamp(ts),),
        )
        self._conn.commit()
