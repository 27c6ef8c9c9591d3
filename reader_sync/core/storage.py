from __future__ import annotations

import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from typing import Any

from reader_sync.core.settings import Settings
from reader_sync.providers.content_types import Category, Document, Location

logger = logging.getLogger(__name__)

# Columns overwritten when a document is fetched again. id, category,
# created_at, parent_id and readwise_url keep their first-seen values.
MUTABLE_COLUMNS = (
    "author",
    "content",
    "image_url",
    "location",
    "notes",
    "published_date",
    "reading_progress",
    "site_name",
    "source",
    "source_url",
    "summary",
    "tags",
    "title",
    "updated_at",
    "word_count",
)

ALL_COLUMNS = (
    "id",
    "author",
    "category",
    "content",
    "created_at",
    "image_url",
    "location",
    "notes",
    "parent_id",
    "published_date",
    "reading_progress",
    "readwise_url",
    "site_name",
    "source",
    "source_url",
    "summary",
    "tags",
    "title",
    "updated_at",
    "word_count",
)


def _sql_list(values: list[str]) -> str:
    return ", ".join(f"'{v}'" for v in values)


SCHEMA_SQL = f"""
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS reading (
  id TEXT PRIMARY KEY,
  author TEXT,
  category TEXT NOT NULL CHECK (category IN ({_sql_list([c.value for c in Category])})),
  content TEXT,
  created_at TEXT NOT NULL,
  image_url TEXT,
  location TEXT CHECK (location IS NULL OR location IN ({_sql_list([loc.value for loc in Location])})),
  notes TEXT,
  parent_id TEXT,
  published_date TEXT,
  reading_progress REAL CHECK (reading_progress >= 0.0 AND reading_progress <= 1.0),
  readwise_url TEXT,
  site_name TEXT,
  source TEXT,
  source_url TEXT,
  summary TEXT,
  tags TEXT,
  title TEXT NOT NULL,
  updated_at TEXT,
  word_count INTEGER NOT NULL DEFAULT 0
);

-- Highlights and notes share their parent's source_url, so this stays non-unique
CREATE INDEX IF NOT EXISTS idx_reading_source_url ON reading(source_url) WHERE source_url IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_reading_parent_id ON reading(parent_id) WHERE parent_id IS NOT NULL;

CREATE TABLE IF NOT EXISTS history (
  event_id INTEGER PRIMARY KEY AUTOINCREMENT,
  table_name TEXT NOT NULL DEFAULT 'reading',
  action TEXT NOT NULL CHECK (action IN ('I', 'D', 'U')),
  row_id TEXT,
  row_data TEXT,
  changed_fields TEXT,
  action_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_history_row_id ON history(row_id);

CREATE TABLE IF NOT EXISTS sync_state (
  id INTEGER PRIMARY KEY DEFAULT 1 CHECK (id = 1),
  last_sync_at TEXT
);

INSERT OR IGNORE INTO sync_state (id, last_sync_at) VALUES (1, NULL);

CREATE TABLE IF NOT EXISTS sync_runs (
  id TEXT PRIMARY KEY,
  status TEXT NOT NULL,
  full_sync INTEGER DEFAULT 0,
  updated_after TEXT,
  pages INTEGER DEFAULT 0,
  items_synced INTEGER DEFAULT 0,
  items_failed INTEGER DEFAULT 0,
  items_remaining INTEGER,
  started_at TEXT NOT NULL,
  finished_at TEXT,
  error TEXT
);
"""


def _json_row(alias: str) -> str:
    pairs = ", ".join(f"'{col}', {alias}.{col}" for col in ALL_COLUMNS)
    return f"json_object({pairs})"


def _changed_fields() -> str:
    selects = " UNION ALL ".join(
        f"SELECT '{col}' AS k, NEW.{col} AS v WHERE NEW.{col} IS NOT OLD.{col}"
        for col in ALL_COLUMNS
    )
    return f"(SELECT json_group_object(k, v) FROM ({selects}))"


def _any_changed() -> str:
    return " OR ".join(f"NEW.{col} IS NOT OLD.{col}" for col in ALL_COLUMNS)


HISTORY_TRIGGERS_SQL = f"""
CREATE TRIGGER IF NOT EXISTS reading_history_insert AFTER INSERT ON reading
BEGIN
  INSERT INTO history (action, row_id, row_data) VALUES ('I', NEW.id, {_json_row('NEW')});
END;

CREATE TRIGGER IF NOT EXISTS reading_history_update AFTER UPDATE ON reading
WHEN {_any_changed()}
BEGIN
  INSERT INTO history (action, row_id, row_data, changed_fields)
  VALUES ('U', OLD.id, {_json_row('OLD')}, {_changed_fields()});
END;

CREATE TRIGGER IF NOT EXISTS reading_history_delete AFTER DELETE ON reading
BEGIN
  INSERT INTO history (action, row_id, row_data) VALUES ('D', OLD.id, {_json_row('OLD')});
END;
"""


class DocumentWriteError(RuntimeError):
    """A single document could not be persisted."""

    def __init__(self, doc: Document, cause: Exception) -> None:
        super().__init__(
            f"Failed to save {doc.title!r} (id={doc.id!r}, source_url={doc.source_url!r}): {cause}"
        )
        self.doc_id = doc.id
        self.title = doc.title
        self.source_url = doc.source_url


def connect(db_path: str) -> sqlite3.Connection:
    """Open the sqlite3 database, creating its directory if needed."""
    if db_path != ":memory:":
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@dataclass
class DB:
    conn: sqlite3.Connection

    def init(self) -> None:
        self.conn.executescript(SCHEMA_SQL)
        self.conn.executescript(HISTORY_TRIGGERS_SQL)
        self.conn.commit()

    def save_document(self, doc: Document) -> None:
        """Insert a document or update its mutable columns.

        Saving the same payload twice leaves the row unchanged. On conflict
        only MUTABLE_COLUMNS are overwritten (last write wins).

        Raises:
            DocumentWriteError: The store rejected the row
        """
        row = doc.to_row()
        placeholders = ", ".join(f":{col}" for col in ALL_COLUMNS)
        updates = ",\n                ".join(f"{col} = excluded.{col}" for col in MUTABLE_COLUMNS)
        # Values sqlite3 cannot bind (lone surrogates, ints past 64 bits) raise
        # ValueError or OverflowError rather than sqlite3.Error
        try:
            self.conn.execute(
                f"""
                INSERT INTO reading ({', '.join(ALL_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT(id) DO UPDATE SET
                {updates}
                """,
                row,
            )
            self.conn.commit()
        except (sqlite3.Error, ValueError, OverflowError) as e:
            self.conn.rollback()
            raise DocumentWriteError(doc, e) from e

    def get_document(self, doc_id: str) -> dict[str, Any] | None:
        """Get a single stored document by ID."""
        cur = self.conn.execute(
            f"SELECT {', '.join(ALL_COLUMNS)} FROM reading WHERE id = ?",
            (doc_id,),
        )
        row = cur.fetchone()
        if not row:
            return None
        doc = dict(row)
        if doc["tags"] is not None:
            doc["tags"] = json.loads(doc["tags"])
        return doc

    def count_documents(self) -> int:
        cur = self.conn.execute("SELECT COUNT(*) FROM reading")
        return cur.fetchone()[0]

    def get_history(self, doc_id: str) -> list[dict[str, Any]]:
        """Change log for one document, oldest first."""
        cur = self.conn.execute(
            """
            SELECT event_id, action, row_id, row_data, changed_fields, action_at
            FROM history
            WHERE row_id = ?
            ORDER BY event_id
            """,
            (doc_id,),
        )
        return [
            {
                "event_id": r["event_id"],
                "action": r["action"],
                "row_id": r["row_id"],
                "row_data": json.loads(r["row_data"]) if r["row_data"] else None,
                "changed_fields": json.loads(r["changed_fields"]) if r["changed_fields"] else None,
                "action_at": r["action_at"],
            }
            for r in cur.fetchall()
        ]

    def get_stats(self) -> dict[str, Any]:
        cur = self.conn.execute("SELECT category, COUNT(*) FROM reading GROUP BY category")
        by_category = {r[0]: r[1] for r in cur.fetchall()}
        cur = self.conn.execute("SELECT COUNT(*) FROM history")
        history = cur.fetchone()[0]
        return {
            "documents": sum(by_category.values()),
            "by_category": by_category,
            "history": history,
        }


def init_db(settings: Settings) -> DB:
    """Connect to the configured database and bootstrap its schema."""
    logger.info("Connecting to database...")
    conn = connect(settings.db_path)
    db = DB(conn=conn)
    logger.info("Bootstrapping schema...")
    db.init()
    return db
