"""Sync run orchestration and run log persistence.

Provides:
- SyncJob and SyncRunStore for run bookkeeping
- run_sync() which pages through the list API and advances the checkpoint
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from reader_sync.core.storage import DocumentWriteError
from reader_sync.providers.content_types import format_timestamp

if TYPE_CHECKING:
    from reader_sync.core.checkpoint import CheckpointStore
    from reader_sync.core.storage import DB
    from reader_sync.providers.readwise import ReadwiseClient

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncStatus(str, Enum):
    """Status of a sync run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SyncJob:
    """Tracks one pass over the list API."""

    id: str
    status: SyncStatus
    full_sync: bool = False
    updated_after: datetime | None = None
    pages: int = 0
    items_synced: int = 0
    items_failed: int = 0
    items_remaining: int | None = None  # `count` of the last page fetched
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "status": self.status.value,
            "full_sync": self.full_sync,
            "updated_after": format_timestamp(self.updated_after) if self.updated_after else None,
            "pages": self.pages,
            "items_synced": self.items_synced,
            "items_failed": self.items_failed,
            "items_remaining": self.items_remaining,
            "started_at": format_timestamp(self.started_at),
            "finished_at": format_timestamp(self.finished_at) if self.finished_at else None,
            "error": self.error,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> SyncJob:
        """Create SyncJob from database row."""
        return cls(
            id=row["id"],
            status=SyncStatus(row["status"]),
            full_sync=bool(row["full_sync"]),
            updated_after=datetime.fromisoformat(row["updated_after"]) if row["updated_after"] else None,
            pages=row["pages"],
            items_synced=row["items_synced"],
            items_failed=row["items_failed"],
            items_remaining=row["items_remaining"],
            started_at=datetime.fromisoformat(row["started_at"]),
            finished_at=datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None,
            error=row["error"],
        )


class SyncRunStore:
    """Run log in the sync_runs table. Never consulted for the watermark."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def create(self, *, full_sync: bool, updated_after: datetime | None, started_at: datetime) -> SyncJob:
        """Create a new pending SyncJob and persist it."""
        job = SyncJob(
            id=str(uuid.uuid4()),
            status=SyncStatus.PENDING,
            full_sync=full_sync,
            updated_after=updated_after,
            started_at=started_at,
        )
        self.update(job)
        return job

    def update(self, job: SyncJob) -> None:
        """Save or update job in DB."""
        d = job.to_dict()
        self._conn.execute(
            """
            INSERT INTO sync_runs (
                id, status, full_sync, updated_after, pages, items_synced,
                items_failed, items_remaining, started_at, finished_at, error
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                pages = excluded.pages,
                items_synced = excluded.items_synced,
                items_failed = excluded.items_failed,
                items_remaining = excluded.items_remaining,
                finished_at = excluded.finished_at,
                error = excluded.error
            """,
            (
                d["id"],
                d["status"],
                int(job.full_sync),
                d["updated_after"],
                d["pages"],
                d["items_synced"],
                d["items_failed"],
                d["items_remaining"],
                d["started_at"],
                d["finished_at"],
                d["error"],
            ),
        )
        self._conn.commit()

    def get(self, job_id: str) -> SyncJob | None:
        """Get job by ID, or None if not found."""
        cur = self._conn.execute("SELECT * FROM sync_runs WHERE id = ?", (job_id,))
        row = cur.fetchone()
        return SyncJob.from_row(row) if row else None

    def list_recent(self, limit: int = 10) -> list[SyncJob]:
        """List recent runs, newest first."""
        cur = self._conn.execute(
            "SELECT * FROM sync_runs ORDER BY started_at DESC LIMIT ?",
            (limit,),
        )
        return [SyncJob.from_row(row) for row in cur.fetchall()]


def run_sync(
    client: ReadwiseClient,
    db: DB,
    checkpoints: CheckpointStore,
    *,
    full_sync: bool = False,
    runs: SyncRunStore | None = None,
    now: Callable[[], datetime] = utc_now,
) -> SyncJob:
    """Sync every document updated since the last checkpoint.

    The checkpoint is saved only after the final page, and it is the time
    captured before the first request. Any error escaping the page loop
    leaves the checkpoint where it was so the next run repeats the window.
    Individual documents that fail to save are logged and counted.
    """
    if full_sync:
        logger.info("Full sync requested, ignoring checkpoint.")
        updated_after = None
    else:
        updated_after = checkpoints.load()
        if updated_after:
            logger.info(f"Resuming from checkpoint: {format_timestamp(updated_after)}")
        else:
            logger.info("No checkpoint found, performing full sync.")

    # Captured before the first request so updates made during the run are
    # picked up by the next one.
    started_at = now()

    if runs is not None:
        job = runs.create(full_sync=full_sync, updated_after=updated_after, started_at=started_at)
    else:
        job = SyncJob(
            id=str(uuid.uuid4()),
            status=SyncStatus.PENDING,
            full_sync=full_sync,
            updated_after=updated_after,
            started_at=started_at,
        )
    job.status = SyncStatus.RUNNING

    cursor: str | None = None
    try:
        while True:
            logger.info("Requesting Readwise API...")
            # The updatedAfter filter rides along with the first request only
            page = client.fetch_page(cursor, updated_after if job.pages == 0 else None)
            job.pages += 1
            job.items_remaining = page.count

            logger.info(f"{page.count} total items remaining")
            logger.info(f"Saving {len(page.results)} items to database...")

            failures = 0
            for doc in page.results:
                try:
                    db.save_document(doc)
                except DocumentWriteError as e:
                    logger.error(str(e))
                    failures += 1
                else:
                    logger.debug(f"Synced: {doc.title}")
                    job.items_synced += 1

            if failures:
                logger.warning(f"{failures} document(s) failed to save on this page")
                job.items_failed += failures

            if runs is not None:
                runs.update(job)

            cursor = page.next_page_cursor
            if cursor is None:
                break

        checkpoints.save(started_at)
        logger.info(f"Checkpoint saved: {format_timestamp(started_at)}")
    except Exception as e:
        job.status = SyncStatus.FAILED
        job.error = str(e)
        job.finished_at = now()
        logger.error(f"Sync aborted after {job.pages} page(s), checkpoint not advanced: {e}")
        if runs is not None:
            runs.update(job)
        raise

    job.status = SyncStatus.COMPLETED
    job.finished_at = now()
    if runs is not None:
        runs.update(job)
    return job
