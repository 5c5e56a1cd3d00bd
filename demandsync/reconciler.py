"""Reconciler: keeps the local cache consistent with the shared store.

Two entry points feed it:
    - change notifications from the store (this or any other client)
    - local writes, which call refresh() as soon as the write returns

A notification that carries row payloads is applied row by row. Each row
carries a store revision, so a duplicated or out-of-order event whose
revision is not newer than what we hold is dropped. A coarse notification
(no payload), or any local write, triggers a full pull of every demand
collection instead. Either way the derived fields are rebuilt from the
complete row set and the cache is swapped in one step.

A failed pull leaves the previous snapshot in place and raises a toast.
There is no retry timer; the next notification or local write tries again.
"""

import logging
import queue
import threading
from typing import Any, Iterable

from demandsync_sdk.exceptions import StoreError

from .cache import LocalCache, build_snapshot
from .config import DEMAND_COLLECTIONS, DEMANDS, SUB_ACTIVITIES, TIME_ENTRIES
from .errors import DemandSyncError, StaleWriteLoss
from .models import AccountingEvent
from .notifications import Notifier
from .store import ChangeEvent, RecordStore, SubscriptionHandle

logger = logging.getLogger(__name__)


class Reconciler:
    """Pulls store state into the local cache.

    Args:
        store: Record store adapter
        cache: Local cache to swap snapshots into
        notifier: Where transient failures are reported
        incremental: Apply row payloads from notifications instead of refetching
    """

    def __init__(
        self,
        store: RecordStore,
        cache: LocalCache,
        notifier: Notifier | None = None,
        incremental: bool = True,
    ):
        self.store = store
        self.cache = cache
        self.notifier = notifier or Notifier()
        self.incremental = incremental
        self.collections: tuple[str, ...] = DEMAND_COLLECTIONS

        # Accounting events posted by the timer manager
        self.events: "queue.Queue[AccountingEvent]" = queue.Queue()

        self._lock = threading.RLock()
        self._tables: dict[str, dict[str, dict[str, Any]]] = {c: {} for c in self.collections}
        self._tombstones: dict[tuple[str, str], int] = {}
        self._confirmed: dict[tuple[str, str], int] = {}
        self._loaded = False
        self._version = 0
        self._subscription: SubscriptionHandle | None = None

        self.stale_writes: list[StaleWriteLoss] = []
        self.last_error: Exception | None = None

    # -- subscription -------------------------------------------------------

    def start(self) -> bool:
        """Subscribe to change notifications and do the initial pull."""
        if self._subscription is None:
            self._subscription = self.store.subscribe_to_changes(self.collections, self.on_change)
        return self.pull_all()

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    # -- entry points -------------------------------------------------------

    def on_change(self, collection: str, events: Iterable[ChangeEvent] | None = None) -> bool:
        """Handle a change notification for one collection.

        Returns:
            True if the cache now reflects the notification
        """
        if collection not in self.collections:
            return True

        batch = list(events or [])
        if self.incremental and self._loaded and batch and all(_has_payload(e) for e in batch):
            return self.apply_events(batch)
        return self.pull_all()

    def refresh(self) -> bool:
        """Full pull after a local write."""
        return self.pull_all()

    def record_write(self, collection: str, row: dict[str, Any] | None) -> None:
        """Remember the revision a local write produced.

        A later pull returning an older revision for the same row means our
        confirmed write was shadowed by stale data.
        """
        if not row or "revision" not in row:
            return
        with self._lock:
            self._confirmed[(collection, str(row["id"]))] = int(row["revision"])

    # -- accounting channel ---------------------------------------------------

    def submit(self, event: AccountingEvent) -> None:
        self.events.put(event)

    def process_pending(self) -> int:
        """Drain accounting events, then refresh once if there were any.

        Returns:
            Number of events consumed
        """
        drained = 0
        while True:
            try:
                event = self.events.get_nowait()
            except queue.Empty:
                break
            drained += 1
            logger.info(
                "Accounting %s: %s +%ss on %s (entry %s)",
                event.kind, event.demand_id, event.duration, event.date, event.entry_id,
            )
        if drained:
            self.refresh()
        return drained

    # -- full pull ----------------------------------------------------------

    def pull_all(self) -> bool:
        """Fetch every demand collection and replace the cache.

        Returns:
            False if any fetch failed (previous snapshot kept)
        """
        with self._lock:
            try:
                fetched = {c: self.store.fetch_all(c) for c in self.collections}
            except (DemandSyncError, StoreError) as e:
                self.last_error = e
                logger.warning("Sync failed, keeping snapshot v%s: %s", self._version, e)
                self.notifier.error(f"Sync failed: {e}")
                return False

            tables = {
                c: {str(row["id"]): row for row in rows} for c, rows in fetched.items()
            }
            self._retire_missing(tables)
            self._tables = tables
            self._check_stale_writes()
            self._loaded = True
            self.last_error = None
            self._publish()
            return True

    def _check_stale_writes(self) -> None:
        confirmed, self._confirmed = self._confirmed, {}
        for (collection, row_id), revision in confirmed.items():
            row = self._tables.get(collection, {}).get(row_id)
            if row is None or int(row.get("revision") or 0) >= revision:
                continue
            loss = StaleWriteLoss(
                f"{collection}/{row_id}: pulled revision {row.get('revision')} "
                f"is older than confirmed write {revision}",
                demand_id=row_id if collection == DEMANDS else row.get("demand_id"),
            )
            self.stale_writes.append(loss)
            logger.warning("%s", loss)

    def _retire_missing(self, tables: dict[str, dict[str, dict[str, Any]]]) -> None:
        """Tombstone rows a pull no longer returns; forget tombstones of rows that came back."""
        for collection, previous in self._tables.items():
            current = tables.get(collection, {})
            for row_id, row in previous.items():
                if row_id not in current:
                    key = (collection, row_id)
                    revision = int(row.get("revision") or 0)
                    self._tombstones[key] = max(self._tombstones.get(key, 0), revision)
        for collection, rows in tables.items():
            for row_id in rows:
                self._tombstones.pop((collection, row_id), None)

    # -- incremental --------------------------------------------------------

    def apply_events(self, events: Iterable[ChangeEvent]) -> bool:
        """Patch single rows from notification payloads, then rebuild the snapshot."""
        with self._lock:
            changed = False
            for event in events:
                changed |= self._apply_one(event)
            if changed:
                self._publish()
            return True

    def _apply_one(self, event: ChangeEvent) -> bool:
        key = (event.collection, event.row_id)
        table = self._tables.setdefault(event.collection, {})
        current = table.get(event.row_id)
        known = int(current.get("revision") or 0) if current else self._tombstones.get(key, 0)
        if event.revision <= known:
            logger.debug("Skipping stale %s %s/%s rev=%s (have %s)",
                         event.op, event.collection, event.row_id, event.revision, known)
            return False

        if event.op == "delete":
            table.pop(event.row_id, None)
            self._tombstones[key] = event.revision
        else:
            row = dict(event.row or {})
            row.setdefault("id", event.row_id)
            row["revision"] = event.revision
            table[event.row_id] = row
            self._tombstones.pop(key, None)
        return True

    # -- publish ------------------------------------------------------------

    def _publish(self) -> None:
        self._version += 1
        snapshot = build_snapshot(
            self._tables.get(DEMANDS, {}).values(),
            self._tables.get(SUB_ACTIVITIES, {}).values(),
            self._tables.get(TIME_ENTRIES, {}).values(),
            version=self._version,
        )
        self.cache.swap(snapshot)
        logger.debug("Published snapshot v%s (%s demands)", snapshot.version, len(snapshot))


def _has_payload(event: ChangeEvent) -> bool:
    return event.op == "delete" or event.row is not None
