"""SQLite-backed record store.

Lets a small team share one database file (network drive, single host)
without running the HTTP server. Rows are stored as JSON bodies per
collection; every write appends to a ``changes`` log that subscribers poll
through ChangeFeed.
"""

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Generator, Iterable

from demandsync_sdk.exceptions import StoreConflictError, StoreDuplicateError, StoreNotFoundError

from .config import get_config_dir
from .errors import TransientNetworkError
from .models import PresenceMember, format_timestamp, parse_timestamp
from .store import ChangeCallback, ChangeEvent, RecordStore, SubscriptionHandle


# Schema version for migrations
SCHEMA_VERSION = 2

# changes.created_at format (CURRENT_TIMESTAMP, UTC)
_CHANGE_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_database_path() -> Path:
    """Get path to the SQLite database file."""
    return get_config_dir() / "store.db"


class SqliteStore(RecordStore):
    """RecordStore persisted in a SQLite file.

    Args:
        db_path: Database file (defaults to .demandsync/store.db)
        poll_interval: Change feed polling interval in seconds
        retention_seconds: Drop change log entries older than this on open
            (None keeps the whole log)
    """

    def __init__(
        self,
        db_path: Path | str | None = None,
        poll_interval: float = 2.0,
        retention_seconds: float | None = None,
    ):
        self.db_path = Path(db_path) if db_path else get_database_path()
        self.poll_interval = poll_interval
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_schema()
        if retention_seconds is not None:
            self.prune_changes(retention_seconds)

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with proper settings.

        Configures:
        - WAL mode for better concurrent read/write
        - Row factory for dict-like access

        Yields:
            SQLite connection with transaction management

        Raises:
            TransientNetworkError: The database is locked or unreachable
        """
        try:
            conn = sqlite3.connect(self.db_path, timeout=30.0)
        except sqlite3.OperationalError as e:
            raise TransientNetworkError(f"open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row

        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            raise TransientNetworkError(f"{self.db_path}: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Create tables if they don't exist. Safe to call multiple times."""
        with self.connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    collection TEXT NOT NULL,
                    id TEXT NOT NULL,
                    body TEXT NOT NULL,
                    revision INTEGER NOT NULL,
                    PRIMARY KEY (collection, id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS changes (
                    revision INTEGER PRIMARY KEY AUTOINCREMENT,
                    collection TEXT NOT NULL,
                    op TEXT NOT NULL,
                    row_id TEXT NOT NULL,
                    body TEXT,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_info (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS presence (
                    identity TEXT PRIMARY KEY,
                    joined_at TEXT NOT NULL,
                    last_seen TEXT NOT NULL
                )
            """)
            conn.execute(
                "INSERT OR REPLACE INTO schema_info (key, value) VALUES ('version', ?)",
                (str(SCHEMA_VERSION),),
            )

    def _log_change(
        self, conn: sqlite3.Connection, collection: str, op: str, row_id: str, body: dict | None
    ) -> int:
        cursor = conn.execute(
            "INSERT INTO changes (collection, op, row_id, body) VALUES (?, ?, ?, ?)",
            (collection, op, row_id, json.dumps(body) if body is not None else None),
        )
        return cursor.lastrowid

    def fetch_all(self, collection: str) -> list[dict[str, Any]]:
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT body, revision FROM records WHERE collection = ? ORDER BY rowid",
                (collection,),
            )
            return [{**json.loads(r["body"]), "revision": r["revision"]} for r in cursor.fetchall()]

    def insert(self, collection: str, row: dict[str, Any]) -> dict[str, Any]:
        row = dict(row)
        row_id = str(row.get("id") or uuid.uuid4().hex[:12])
        row["id"] = row_id
        row.pop("revision", None)
        with self.connection() as conn:
            exists = conn.execute(
                "SELECT 1 FROM records WHERE collection = ? AND id = ?", (collection, row_id)
            ).fetchone()
            if exists:
                raise StoreDuplicateError(f"{collection}/{row_id} already exists")
            revision = self._log_change(conn, collection, "insert", row_id, row)
            conn.execute(
                "INSERT INTO records (collection, id, body, revision) VALUES (?, ?, ?, ?)",
                (collection, row_id, json.dumps(row), revision),
            )
        return {**row, "revision": revision}

    def update(
        self,
        collection: str,
        row_id: str,
        patch: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        with self.connection() as conn:
            current = conn.execute(
                "SELECT body, revision FROM records WHERE collection = ? AND id = ?",
                (collection, row_id),
            ).fetchone()
            if current is None:
                raise StoreNotFoundError(f"{collection}/{row_id} not found")

            body = json.loads(current["body"])
            for key, value in (expected or {}).items():
                if body.get(key) != value:
                    raise StoreConflictError(
                        f"{collection}/{row_id}: {key} is {body.get(key)!r}, expected {value!r}"
                    )

            updated = {**body, **patch, "id": row_id}
            updated.pop("revision", None)
            revision = self._log_change(conn, collection, "update", row_id, updated)
            # A writer between the SELECT and this UPDATE turns it into a conflict
            cursor = conn.execute(
                "UPDATE records SET body = ?, revision = ? WHERE collection = ? AND id = ? AND revision = ?",
                (json.dumps(updated), revision, collection, row_id, current["revision"]),
            )
            if cursor.rowcount == 0:
                raise StoreConflictError(f"{collection}/{row_id} changed concurrently")
        return {**updated, "revision": revision}

    def delete(self, collection: str, row_id: str) -> None:
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM records WHERE collection = ? AND id = ?", (collection, row_id)
            )
            if cursor.rowcount == 0:
                raise StoreNotFoundError(f"{collection}/{row_id} not found")
            self._log_change(conn, collection, "delete", row_id, None)

    def changes_since(self, cursor: int) -> tuple[int, list[ChangeEvent]]:
        """Change log after ``cursor``.

        When entries after ``cursor`` have been pruned, one coarse event per
        collection (no row) comes first so subscribers refetch everything.
        """
        with self.connection() as conn:
            pruned_through = self._pruned_through(conn)
            rows = conn.execute(
                "SELECT revision, collection, op, row_id, body FROM changes WHERE revision > ? ORDER BY revision",
                (cursor,),
            ).fetchall()
            collections: list[str] = []
            if cursor < pruned_through:
                collections = [
                    r["collection"] for r in conn.execute(
                        "SELECT collection FROM records UNION SELECT collection FROM changes ORDER BY collection"
                    ).fetchall()
                ]

        events = [ChangeEvent(c, "update", "", pruned_through) for c in collections]
        for r in rows:
            body = json.loads(r["body"]) if r["body"] else None
            if body is not None:
                body["revision"] = r["revision"]
            events.append(ChangeEvent(r["collection"], r["op"], r["row_id"], r["revision"], body))
        new_cursor = max([cursor, *(e.revision for e in events)])
        return new_cursor, events

    def latest_revision(self) -> int:
        """Newest revision in the change log (0 when nothing was ever written)."""
        with self.connection() as conn:
            latest = conn.execute("SELECT MAX(revision) FROM changes").fetchone()[0]
            return max(latest or 0, self._pruned_through(conn))

    def prune_changes(self, retention_seconds: float, now: datetime | None = None) -> int:
        """Delete change log entries older than the retention window.

        Returns:
            Number of entries removed
        """
        cutoff = (now or self.server_now()) - timedelta(seconds=retention_seconds)
        cutoff_text = cutoff.astimezone(timezone.utc).strftime(_CHANGE_TIME_FORMAT)
        with self.connection() as conn:
            through = conn.execute(
                "SELECT MAX(revision) FROM changes WHERE created_at < ?", (cutoff_text,)
            ).fetchone()[0]
            if through is None:
                return 0
            removed = conn.execute("DELETE FROM changes WHERE revision <= ?", (through,)).rowcount
            conn.execute(
                "INSERT OR REPLACE INTO schema_info (key, value) VALUES ('pruned_through', ?)",
                (str(max(through, self._pruned_through(conn))),),
            )
        return removed

    def _pruned_through(self, conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT value FROM schema_info WHERE key = 'pruned_through'").fetchone()
        return int(row["value"]) if row else 0

    # -- presence -----------------------------------------------------------

    def presence_heartbeat(self, identity: str, joined_at: datetime, now: datetime) -> None:
        """Insert or refresh a member row; an existing row keeps its joined_at."""
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO presence (identity, joined_at, last_seen) VALUES (?, ?, ?)
                ON CONFLICT(identity) DO UPDATE SET last_seen = excluded.last_seen
                """,
                (identity, format_timestamp(joined_at), format_timestamp(now)),
            )

    def presence_untrack(self, identity: str) -> None:
        with self.connection() as conn:
            conn.execute("DELETE FROM presence WHERE identity = ?", (identity,))

    def presence_members(self, timeout_seconds: float, now: datetime) -> list[PresenceMember]:
        """Live members, evicting rows whose last heartbeat is older than the timeout."""
        timeout = timedelta(seconds=timeout_seconds)
        with self.connection() as conn:
            rows = conn.execute("SELECT identity, joined_at, last_seen FROM presence").fetchall()
            members, expired = [], []
            for r in rows:
                last_seen = parse_timestamp(r["last_seen"])
                if last_seen is None or last_seen + timeout <= now:
                    expired.append(r["identity"])
                    continue
                members.append(
                    PresenceMember(r["identity"], joined_at=parse_timestamp(r["joined_at"]) or last_seen, last_seen=last_seen)
                )
            conn.executemany("DELETE FROM presence WHERE identity = ?", [(i,) for i in expired])
        return sorted(members, key=lambda m: m.identity)

    def subscribe_to_changes(
        self, collections: Iterable[str], callback: ChangeCallback
    ) -> SubscriptionHandle:
        from .change_feed import ChangeFeed

        feed = ChangeFeed(self, collections, callback, interval=self.poll_interval)
        feed.start()
        return SubscriptionHandle(feed.close)

    def server_now(self) -> datetime:
        return datetime.now(timezone.utc)
