"""Tests for checkpoint.py"""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from reader_sync.core.checkpoint import CheckpointError, CheckpointStore
from reader_sync.core.storage import DB


@pytest.fixture
def db_conn():
    """In-memory SQLite connection with the full schema."""
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    DB(conn=conn).init()
    return conn


class TestCheckpointStore:
    def test_load_without_prior_run(self, db_conn):
        assert CheckpointStore(db_conn).load() is None

    def test_save_then_load(self, db_conn):
        store = CheckpointStore(db_conn)
        ts = datetime(2024, 2, 19, 8, 30, 0, 123456, tzinfo=timezone.utc)
        store.save(ts)
        assert store.load() == ts

    def test_last_write_wins(self, db_conn):
        store = CheckpointStore(db_conn)
        store.save(datetime(2024, 5, 1, tzinfo=timezone.utc))
        store.save(datetime(2024, 1, 1, tzinfo=timezone.utc))
        assert store.load() == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert db_conn.execute("SELECT COUNT(*) FROM sync_state").fetchone()[0] == 1

    def test_save_normalizes_to_utc(self, db_conn):
        store = CheckpointStore(db_conn)
        store.save(datetime(2024, 2, 19, 10, 30, tzinfo=timezone(timedelta(hours=2))))
        loaded = store.load()
        assert loaded == datetime(2024, 2, 19, 8, 30, tzinfo=timezone.utc)
        assert loaded.utcoffset() == timedelta(0)

    def test_save_rejects_naive(self, db_conn):
        with pytest.raises(ValueError):
            CheckpointStore(db_conn).save(datetime(2024, 1, 1))

    def test_persists_across_connections(self, tmp_path):
        path = str(tmp_path / "reader.db")
        conn = sqlite3.connect(path)
        DB(conn=conn).init()
        CheckpointStore(conn).save(datetime(2024, 1, 1, tzinfo=timezone.utc))
        conn.close()

        conn = sqlite3.connect(path)
        assert CheckpointStore(conn).load() == datetime(2024, 1, 1, tzinfo=timezone.utc)
        conn.close()

    def test_malformed_value_is_fatal(self, db_conn):
        db_conn.execute("UPDATE sync_state SET last_sync_at = 'yesterday' WHERE id = 1")
        with pytest.raises(CheckpointError):
            CheckpointStore(db_conn).load()

    def test_missing_row_is_fatal(self, db_conn):
        db_conn.execute("DELETE FROM sync_state")
        with pytest.raises(CheckpointError):
            CheckpointStore(db_conn).load()

    def test_unreachable_store_propagates(self):
        conn = sqlite3.connect(":memory:")
        with pytest.raises(sqlite3.OperationalError):
            CheckpointStore(conn).load()
