"""Local cache of demand state.

The cache holds one immutable snapshot at a time. Only the reconciler swaps
it; every reader (views, timer, ordering) works on the snapshot it was
handed, so a reader can never observe a half-applied refresh.
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from .aggregator import aggregate_by_demand
from .models import DemandRecord, SubActivity, TimeEntry

logger = logging.getLogger(__name__)

SnapshotListener = Callable[["CacheSnapshot"], None]

_DIGITS = re.compile(r"\d+")


@dataclass(frozen=True)
class CacheSnapshot:
    """Immutable view of all demand state at one reconciliation.

    ``demands`` is in canonical order: ascending ``order``, ties broken by
    creation sequence (see canonical_order).
    """

    demands: tuple[DemandRecord, ...] = ()
    time_entries: tuple[TimeEntry, ...] = ()
    version: int = 0
    built_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def get(self, demand_id: str) -> DemandRecord | None:
        for record in self.demands:
            if record.id == demand_id:
                return record
        return None

    def __contains__(self, demand_id: object) -> bool:
        return any(record.id == demand_id for record in self.demands)

    def __len__(self) -> int:
        return len(self.demands)

    @property
    def ids(self) -> list[str]:
        return [record.id for record in self.demands]

    def entries_for(self, demand_id: str) -> list[TimeEntry]:
        return [e for e in self.time_entries if e.demand_id == demand_id]

    def running(self) -> list[DemandRecord]:
        return [record for record in self.demands if record.timer_running]

    def to_state(self) -> list[dict[str, Any]]:
        """Plain-data form of every record, for cross-client comparison."""
        return [record.to_dict() for record in self.demands]


def creation_key(demand_id: str) -> tuple[int, str]:
    """Sort key following creation sequence.

    Ids are handed out sequentially (DEM-001, DEM-002, ...), so the numeric
    part orders records by insertion on every client regardless of the
    order their change notifications arrived in.
    """
    match = _DIGITS.search(demand_id)
    return (int(match.group()) if match else 0, demand_id)


def canonical_order(records: Iterable[DemandRecord]) -> list[DemandRecord]:
    """Sort ascending by ``order``, ties broken by creation sequence."""
    return sorted(records, key=lambda r: (r.order, creation_key(r.id)))


def build_snapshot(
    demand_rows: Iterable[dict[str, Any]],
    sub_activity_rows: Iterable[dict[str, Any]],
    time_entry_rows: Iterable[dict[str, Any]],
    version: int = 0,
) -> CacheSnapshot:
    """Materialize records from raw rows and recompute every derived field.

    Daily logs are rebuilt from the complete entry set each time.
    """
    subs_by_demand: dict[str, list[SubActivity]] = {}
    for row in sub_activity_rows:
        subs_by_demand.setdefault(str(row.get("demand_id")), []).append(SubActivity.from_row(row))

    entries = tuple(sorted(
        (TimeEntry.from_row(row) for row in time_entry_rows),
        key=lambda e: (e.date, e.id),
    ))
    logs = aggregate_by_demand(entries)

    records = [
        DemandRecord.from_row(
            row,
            sub_activities=tuple(subs_by_demand.get(str(row["id"]), ())),
            daily_logs=logs.get(str(row["id"])),
        )
        for row in demand_rows
    ]
    return CacheSnapshot(
        demands=tuple(canonical_order(records)),
        time_entries=entries,
        version=version,
    )


class LocalCache:
    """Holds the current snapshot and notifies subscribers on every swap."""

    def __init__(self, snapshot: CacheSnapshot | None = None):
        self._lock = threading.Lock()
        self._snapshot = snapshot or CacheSnapshot()
        self._listeners: list[SnapshotListener] = []

    @property
    def snapshot(self) -> CacheSnapshot:
        with self._lock:
            return self._snapshot

    def swap(self, snapshot: CacheSnapshot) -> CacheSnapshot:
        """Atomically replace the snapshot, then notify subscribers.

        Returns:
            The previous snapshot
        """
        with self._lock:
            previous = self._snapshot
            self._snapshot = snapshot
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Cache listener %r failed", listener)
        return previous

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe
