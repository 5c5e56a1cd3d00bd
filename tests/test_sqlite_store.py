"""Tests for the SQLite-backed store."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from demandsync.change_feed import ChangeFeed
from demandsync.sqlite_store import SCHEMA_VERSION, SqliteStore, get_database_path
from demandsync_sdk.exceptions import StoreConflictError, StoreDuplicateError, StoreNotFoundError


@pytest.fixture
def db(tmp_path):
    return SqliteStore(tmp_path / "store.db")


class TestSchema:
    def test_default_path_under_config_dir(self, demandsync_dir):
        assert get_database_path() == demandsync_dir / "store.db"

    def test_init_schema_idempotent(self, db):
        db.init_schema()
        with sqlite3.connect(db.db_path) as conn:
            version = conn.execute("SELECT value FROM schema_info WHERE key = 'version'").fetchone()[0]
        assert version == str(SCHEMA_VERSION)

    def test_wal_mode(self, db):
        with db.connection() as conn:
            mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode == "wal"


class TestRows:
    def test_insert_and_fetch(self, db):
        row = db.insert("demands", {"id": "DEM-001", "title": "a", "order": 0})
        assert db.fetch_all("demands") == [row]
        assert db.fetch_all("time_entries") == []

    def test_duplicate_insert(self, db):
        db.insert("time_entries", {"id": "DEM-001@t0", "duration": 5})
        with pytest.raises(StoreDuplicateError):
            db.insert("time_entries", {"id": "DEM-001@t0", "duration": 5})
        assert len(db.fetch_all("time_entries")) == 1

    def test_update_bumps_revision(self, db):
        first = db.insert("demands", {"id": "DEM-001", "title": "a"})
        second = db.update("demands", "DEM-001", {"title": "b"})
        assert second["revision"] > first["revision"]
        assert db.fetch_all("demands")[0]["title"] == "b"

    def test_conditional_update(self, db):
        db.insert("demands", {"id": "DEM-001", "timer_running": True, "timer_started_at": "t0"})

        db.update(
            "demands",
            "DEM-001",
            {"timer_running": False, "timer_started_at": None},
            expected={"timer_running": True, "timer_started_at": "t0"},
        )
        with pytest.raises(StoreConflictError):
            db.update("demands", "DEM-001", {"accumulated_seconds": 99}, expected={"timer_running": True})

        row = db.fetch_all("demands")[0]
        assert row["timer_running"] is False
        assert "accumulated_seconds" not in row

    def test_failed_write_leaves_no_change_log(self, db):
        db.insert("demands", {"id": "DEM-001", "timer_running": False})
        cursor, _ = db.changes_since(0)
        with pytest.raises(StoreConflictError):
            db.update("demands", "DEM-001", {"timer_running": True}, expected={"timer_running": True})
        assert db.changes_since(cursor) == (cursor, [])

    def test_delete(self, db):
        db.insert("demands", {"id": "DEM-001"})
        db.delete("demands", "DEM-001")
        assert db.fetch_all("demands") == []
        with pytest.raises(StoreNotFoundError):
            db.delete("demands", "DEM-001")


class TestChangeLog:
    def test_changes_since(self, db):
        db.insert("demands", {"id": "DEM-001", "title": "a"})
        db.update("demands", "DEM-001", {"title": "b"})
        db.delete("demands", "DEM-001")

        cursor, events = db.changes_since(0)

        assert [e.op for e in events] == ["insert", "update", "delete"]
        assert events[1].row["title"] == "b"
        assert events[1].row["revision"] == events[1].revision
        assert events[2].row is None
        assert cursor == events[-1].revision

    def test_two_stores_share_file(self, tmp_path):
        one = SqliteStore(tmp_path / "shared.db")
        two = SqliteStore(tmp_path / "shared.db")

        one.insert("demands", {"id": "DEM-001"})
        assert [r["id"] for r in two.fetch_all("demands")] == ["DEM-001"]

    def test_feed_over_sqlite(self, db):
        seen = []
        feed = ChangeFeed(db, ["demands"], lambda collection, events: seen.extend(events), cursor=0)

        db.insert("demands", {"id": "DEM-001"})
        db.insert("time_entries", {"id": "e1"})

        assert feed.poll_once() == 1
        assert [e.row_id for e in seen] == ["DEM-001"]

    def test_feed_started_after_history_sees_next_write(self, db):
        db.insert("demands", {"id": "DEM-001"})
        seen = []
        feed = ChangeFeed(db, ["demands"], lambda collection, events: seen.extend(events), interval=60)

        feed.start()
        try:
            db.insert("demands", {"id": "DEM-002"})
            assert feed.poll_once() == 1
        finally:
            feed.close()

        assert [e.row_id for e in seen] == ["DEM-002"]

    def test_latest_revision(self, db):
        assert db.latest_revision() == 0

        db.insert("demands", {"id": "DEM-001"})
        db.update("demands", "DEM-001", {"title": "b"})

        cursor, _ = db.changes_since(0)
        assert db.latest_revision() == cursor


class TestRetention:
    def test_recent_changes_are_kept(self, db):
        db.insert("demands", {"id": "DEM-001"})

        assert db.prune_changes(3600) == 0
        assert len(db.changes_since(0)[1]) == 1

    def test_prune_drops_old_entries(self, db):
        db.insert("demands", {"id": "DEM-001"})
        db.update("demands", "DEM-001", {"title": "b"})
        latest = db.latest_revision()

        later = datetime.now(timezone.utc) + timedelta(hours=2)
        assert db.prune_changes(3600, now=later) == 2

        with db.connection() as conn:
            assert conn.execute("SELECT COUNT(*) FROM changes").fetchone()[0] == 0
        assert db.latest_revision() == latest
        assert db.changes_since(latest) == (latest, [])

    def test_cursor_behind_pruned_log_gets_refetch(self, db):
        db.insert("demands", {"id": "DEM-001"})
        db.insert("time_entries", {"id": "e1"})
        db.prune_changes(3600, now=datetime.now(timezone.utc) + timedelta(hours=2))
        db.insert("demands", {"id": "DEM-002"})

        cursor, events = db.changes_since(0)

        assert [(e.collection, e.row) for e in events[:2]] == [("demands", None), ("time_entries", None)]
        assert events[2].row_id == "DEM-002"
        assert cursor == db.latest_revision()

    def test_retention_applied_on_open(self, tmp_path):
        path = tmp_path / "store.db"
        SqliteStore(path).insert("demands", {"id": "DEM-001"})
        with sqlite3.connect(path) as conn:
            conn.execute("UPDATE changes SET created_at = '2000-01-01 00:00:00'")

        reopened = SqliteStore(path, retention_seconds=3600)

        assert reopened.changes_since(reopened.latest_revision())[1] == []
        assert [r["id"] for r in reopened.fetch_all("demands")] == ["DEM-001"]
        with reopened.connection() as conn:
            assert conn.execute("SELECT COUNT(*) FROM changes").fetchone()[0] == 0


class TestPresenceRows:
    T0 = datetime(2025, 10, 10, 9, 0, 0, tzinfo=timezone.utc)

    def test_heartbeat_keeps_joined_at(self, db):
        db.presence_heartbeat("ana", self.T0, self.T0)
        db.presence_heartbeat("ana", self.T0 + timedelta(seconds=10), self.T0 + timedelta(seconds=10))

        [member] = db.presence_members(45, self.T0 + timedelta(seconds=20))

        assert member.identity == "ana"
        assert member.joined_at == self.T0
        assert member.last_seen == self.T0 + timedelta(seconds=10)

    def test_stale_rows_evicted(self, db):
        db.presence_heartbeat("ana", self.T0, self.T0)
        db.presence_heartbeat("bo", self.T0, self.T0 + timedelta(seconds=30))

        members = db.presence_members(45, self.T0 + timedelta(seconds=45))

        assert [m.identity for m in members] == ["bo"]
        with db.connection() as conn:
            assert [r[0] for r in conn.execute("SELECT identity FROM presence")] == ["bo"]

    def test_untrack(self, db):
        db.presence_heartbeat("ana", self.T0, self.T0)
        db.presence_untrack("ana")
        assert db.presence_members(45, self.T0) == []
