"""Remote record store contract and adapters.

The core only needs five operations from a store (fetch_all, insert, update,
delete, subscribe_to_changes) plus a clock. Change notifications are
at-least-once and unordered across collections; an event may carry the
changed row or nothing at all.

Adapters:
    MemoryStore - in-process store with a change hub (tests, single process demos)
    HttpStore   - wraps demandsync_sdk.StoreClient
    SqliteStore - file-backed store, see sqlite_store.py
"""

import copy
import logging
import random
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from demandsync_sdk import StoreClient
from demandsync_sdk.exceptions import (
    StoreAPIError,
    StoreConflictError,
    StoreDuplicateError,
    StoreNotFoundError,
    StoreUnavailableError,
)

from .errors import TransientNetworkError
from .models import parse_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    """One row-level change. ``row`` is None for coarse notifications and deletes."""

    collection: str
    op: str  # insert | update | delete
    row_id: str
    revision: int
    row: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeEvent":
        return cls(
            collection=data["collection"],
            op=data.get("op", "update"),
            row_id=str(data["id"]),
            revision=int(data.get("revision") or 0),
            row=data.get("row"),
        )


ChangeCallback = Callable[[str, list[ChangeEvent]], None]


class SubscriptionHandle:
    """Returned by subscribe_to_changes; close() stops delivery."""

    def __init__(self, on_close: Callable[[], None]):
        self._on_close = on_close
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._on_close()


class RecordStore:
    """Interface every store adapter implements."""

    def fetch_all(self, collection: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    def insert(self, collection: str, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def update(
        self,
        collection: str,
        row_id: str,
        patch: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def delete(self, collection: str, row_id: str) -> None:
        raise NotImplementedError

    def subscribe_to_changes(
        self, collections: Iterable[str], callback: ChangeCallback
    ) -> SubscriptionHandle:
        raise NotImplementedError

    def server_now(self) -> datetime:
        return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------


class _Subscription:
    def __init__(self, collections: set[str], callback: ChangeCallback):
        self.collections = collections
        self.callback = callback
        self.pending: list[ChangeEvent] = []


class MemoryStore(RecordStore):
    """Thread-safe in-process store with revisions and a change hub.

    Args:
        clock: Returns the store's notion of "now" (aware datetime)
        auto_deliver: Deliver notifications synchronously after each write.
            When False, events queue per subscriber until deliver_pending().
        payloads: Attach the changed row to each event. When False every
            event is coarse and subscribers must refetch.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] | None = None,
        auto_deliver: bool = True,
        payloads: bool = True,
    ):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.auto_deliver = auto_deliver
        self.payloads = payloads
        self._lock = threading.RLock()
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._revision = 0
        self._log: list[ChangeEvent] = []
        self._subscriptions: list[_Subscription] = []
        self._failures: list[tuple[str, str | None]] = []

    # -- failure injection --------------------------------------------------

    def fail_next(self, op: str, collection: str | None = None) -> None:
        """Make the next matching operation raise TransientNetworkError.

        Args:
            op: fetch_all, insert, update or delete
            collection: Only fail for this collection (None matches any)
        """
        with self._lock:
            self._failures.append((op, collection))

    def _maybe_fail(self, op: str, collection: str) -> None:
        for i, (fail_op, fail_collection) in enumerate(self._failures):
            if fail_op == op and fail_collection in (None, collection):
                del self._failures[i]
                raise TransientNetworkError(f"{op} {collection}: simulated network failure")

    # -- contract -----------------------------------------------------------

    def fetch_all(self, collection: str) -> list[dict[str, Any]]:
        with self._lock:
            self._maybe_fail("fetch_all", collection)
            rows = self._tables.get(collection, {})
            return [copy.deepcopy(r) for r in rows.values()]

    def insert(self, collection: str, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._maybe_fail("insert", collection)
            table = self._tables.setdefault(collection, {})
            row = copy.deepcopy(row)
            row_id = str(row.get("id") or uuid.uuid4().hex[:12])
            if row_id in table:
                raise StoreDuplicateError(f"{collection}/{row_id} already exists")
            row["id"] = row_id
            row["revision"] = self._bump()
            table[row_id] = row
            event = self._record("insert", collection, row)
        self._dispatch()
        logger.debug("insert %s/%s rev=%s", collection, row_id, event.revision)
        return copy.deepcopy(row)

    def update(
        self,
        collection: str,
        row_id: str,
        patch: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            self._maybe_fail("update", collection)
            table = self._tables.get(collection, {})
            current = table.get(row_id)
            if current is None:
                raise StoreNotFoundError(f"{collection}/{row_id} not found")
            if expected:
                for key, value in expected.items():
                    if current.get(key) != value:
                        raise StoreConflictError(
                            f"{collection}/{row_id}: {key} is {current.get(key)!r}, expected {value!r}"
                        )
            updated = {**current, **copy.deepcopy(patch), "id": row_id}
            updated["revision"] = self._bump()
            table[row_id] = updated
            self._record("update", collection, updated)
        self._dispatch()
        return copy.deepcopy(updated)

    def delete(self, collection: str, row_id: str) -> None:
        with self._lock:
            self._maybe_fail("delete", collection)
            table = self._tables.get(collection, {})
            if row_id not in table:
                raise StoreNotFoundError(f"{collection}/{row_id} not found")
            del table[row_id]
            event = ChangeEvent(collection, "delete", row_id, self._bump())
            self._enqueue(event)
        self._dispatch()

    def subscribe_to_changes(
        self, collections: Iterable[str], callback: ChangeCallback
    ) -> SubscriptionHandle:
        sub = _Subscription(set(collections), callback)
        with self._lock:
            self._subscriptions.append(sub)

        def _remove() -> None:
            with self._lock:
                if sub in self._subscriptions:
                    self._subscriptions.remove(sub)

        return SubscriptionHandle(_remove)

    def server_now(self) -> datetime:
        return self._clock()

    def changes_since(self, cursor: int) -> tuple[int, list[ChangeEvent]]:
        """Change log after ``cursor`` (a revision number)."""
        with self._lock:
            events = [e for e in self._log if e.revision > cursor]
            return self._revision, events

    def latest_revision(self) -> int:
        with self._lock:
            return self._revision

    # -- delivery -----------------------------------------------------------

    def deliver_pending(
        self,
        shuffle: bool = False,
        duplicate: bool = False,
        rng: random.Random | None = None,
    ) -> int:
        """Release queued notifications to subscribers.

        Args:
            shuffle: Deliver in random order (no ordering guarantee)
            duplicate: Deliver every event twice (at-least-once)
            rng: Random source for shuffle

        Returns:
            Number of callback invocations made
        """
        rng = rng or random.Random()
        batches: list[tuple[_Subscription, list[ChangeEvent]]] = []
        with self._lock:
            for sub in self._subscriptions:
                events = list(sub.pending)
                sub.pending.clear()
                if duplicate:
                    events = events + events
                if shuffle:
                    rng.shuffle(events)
                batches.append((sub, events))

        calls = 0
        for sub, events in batches:
            for event in events:
                sub.callback(event.collection, [event])
                calls += 1
        return calls

    def _dispatch(self) -> None:
        if self.auto_deliver:
            self.deliver_pending()

    def _bump(self) -> int:
        self._revision += 1
        return self._revision

    def _record(self, op: str, collection: str, row: dict[str, Any]) -> ChangeEvent:
        payload = copy.deepcopy(row) if self.payloads else None
        event = ChangeEvent(collection, op, row["id"], row["revision"], payload)
        self._enqueue(event)
        return event

    def _enqueue(self, event: ChangeEvent) -> None:
        self._log.append(event)
        for sub in self._subscriptions:
            if event.collection in sub.collections:
                sub.pending.append(event)


# ---------------------------------------------------------------------------
# HttpStore
# ---------------------------------------------------------------------------


class HttpStore(RecordStore):
    """RecordStore over the HTTP SDK client.

    Transport failures become TransientNetworkError; conflict, duplicate and
    not-found errors pass through unchanged for the caller to interpret.
    """

    def __init__(self, client: StoreClient, poll_interval: float = 2.0):
        self.client = client
        self.poll_interval = poll_interval

    def _call(self, what: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except (StoreConflictError, StoreDuplicateError, StoreNotFoundError):
            raise
        except StoreUnavailableError as e:
            raise TransientNetworkError(f"{what}: {e}") from e
        except StoreAPIError as e:
            if e.status_code is not None and e.status_code >= 500:
                raise TransientNetworkError(f"{what}: {e}") from e
            raise

    def fetch_all(self, collection: str) -> list[dict[str, Any]]:
        return self._call(f"fetch {collection}", self.client.fetch_all, collection)

    def insert(self, collection: str, row: dict[str, Any]) -> dict[str, Any]:
        return self._call(f"insert {collection}", self.client.insert, collection, row)

    def update(
        self,
        collection: str,
        row_id: str,
        patch: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self._call(
            f"update {collection}/{row_id}", self.client.update, collection, row_id, patch, expected
        )

    def delete(self, collection: str, row_id: str) -> None:
        self._call(f"delete {collection}/{row_id}", self.client.delete, collection, row_id)

    def changes_since(self, cursor: int) -> tuple[int, list[ChangeEvent]]:
        new_cursor, raw = self._call("poll changes", self.client.changes_since, cursor)
        return new_cursor, [ChangeEvent.from_dict(c) for c in raw]

    def latest_revision(self) -> int:
        return self._call("latest revision", self.client.latest_revision)

    def subscribe_to_changes(
        self, collections: Iterable[str], callback: ChangeCallback
    ) -> SubscriptionHandle:
        from .change_feed import ChangeFeed

        feed = ChangeFeed(self, collections, callback, interval=self.poll_interval)
        feed.start()
        return SubscriptionHandle(feed.close)

    def server_now(self) -> datetime:
        raw = self._call("server time", self.client.server_now)
        parsed = parse_timestamp(raw)
        if parsed is None:
            raise TransientNetworkError(f"server time: unparseable {raw!r}")
        return parsed
