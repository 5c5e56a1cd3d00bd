"""Demand workspace: the operations a client performs on shared demands.

Wires the local cache, reconciler, timer manager and order manager around
one store, and exposes the user-level operations (create, edit, delete,
sub-activities, tags, timers, reordering) plus the read-side views
(filtered list, kanban columns, weekly report, option lists).

Store failures never escape a user-level operation: they are logged,
surfaced as a toast, and the operation returns a falsy value. The cache
keeps its last good snapshot.
"""

import logging
import re
import uuid
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

from demandsync_sdk.exceptions import StoreDuplicateError, StoreError

from .aggregator import WeeklyReport, weekly_report
from .cache import CacheSnapshot, LocalCache, canonical_order
from .config import (
    ACTIVE_STATUSES,
    DEMAND_ID_PREFIX,
    DEMAND_ID_WIDTH,
    DEMANDS,
    KANBAN_COLUMNS,
    SUB_ACTIVITIES,
    TAG_CATEGORIES,
    TIME_ENTRIES,
    DemandStatus,
    TagCategory,
    ViewTab,
)
from .demand_logger import DemandLogger
from .errors import AccountingLossRisk, DemandSyncError, InvalidTransition, UnknownDemand
from .models import DEMAND_FIELDS, AccountingEvent, DemandRecord, SubActivity
from .notifications import Notifier
from .ordering import OrderManager, ReorderResult, next_order
from .reconciler import Reconciler
from .store import RecordStore
from .timer import TimerDisplay, TimerManager

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"\d+")

# Fields update_demand refuses; the timer manager owns them
_TIMER_FIELDS = ("timer_running", "timer_started_at")
_EDITABLE_FIELDS = tuple(f for f in DEMAND_FIELDS if f != "id" and f not in _TIMER_FIELDS)

_CREATE_ATTEMPTS = 3


def next_demand_id(existing_ids: Iterable[str]) -> str:
    """Next sequential id: highest numeric part in use plus one (DEM-001 when empty)."""
    highest = 0
    for demand_id in existing_ids:
        match = _DIGITS.search(demand_id)
        if match:
            highest = max(highest, int(match.group()))
    return f"{DEMAND_ID_PREFIX}{highest + 1:0{DEMAND_ID_WIDTH}d}"


def filter_demands(
    records: Iterable[DemandRecord],
    tab: ViewTab = "ALL",
    responsible: str | None = None,
    contract: str | None = None,
    search: str = "",
) -> list[DemandRecord]:
    """Records visible under the given tab and filters, in canonical order.

    The WEEK tab does not filter by status; the weekly view decides what to
    show from each demand's daily logs.
    """
    needle = search.strip().lower()
    visible = []
    for record in records:
        if tab == "ACTIVE" and record.status not in ACTIVE_STATUSES:
            continue
        if tab == "COMPLETED" and record.status != "COMPLETED":
            continue
        if responsible and record.responsible != responsible:
            continue
        if contract and record.contract != contract:
            continue
        if needle and needle not in record.title.lower() and needle not in record.id.lower():
            continue
        visible.append(record)
    return canonical_order(visible)


def kanban_columns(records: Iterable[DemandRecord]) -> dict[str, list[DemandRecord]]:
    """Group records into board columns, each in canonical order.

    Statuses without a column (CANCELLED) are left off the board.
    """
    columns: dict[str, list[DemandRecord]] = {status: [] for status in KANBAN_COLUMNS}
    for record in canonical_order(records):
        if record.status in columns:
            columns[record.status].append(record)
    return columns


def option_lists(records: Iterable[DemandRecord]) -> dict[str, list[str]]:
    """Distinct non-empty requester/responsible/contract values, sorted."""
    records = list(records)
    return {
        category: sorted({getattr(r, category) for r in records if getattr(r, category)})
        for category in TAG_CATEGORIES
    }


class DemandWorkspace:
    """One client's view of, and handle on, the shared demands.

    Args:
        store: Record store adapter
        identity: This client's identity (audit log actor)
        notifier: Toast sink; a private one is created when omitted
        timezone: Accounting timezone for attributing sessions to days
        record_zero_duration: Write time entries for 0-second sessions
        incremental: Apply change payloads without refetching
        logs_dir: Audit log directory override
        clock: Clock for the display tick
    """

    def __init__(
        self,
        store: RecordStore,
        identity: str | None = None,
        notifier: Notifier | None = None,
        timezone: str = "UTC",
        record_zero_duration: bool = False,
        incremental: bool = True,
        logs_dir: Path | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.identity = identity
        self.notifier = notifier or Notifier()
        self.logs_dir = logs_dir
        self.cache = LocalCache()
        self.reconciler = Reconciler(store, self.cache, self.notifier, incremental=incremental)
        self.timer = TimerManager(
            store,
            self.reconciler,
            timezone=timezone,
            record_zero_duration=record_zero_duration,
            actor=identity,
            logger_factory=self.audit_log,
        )
        self.ordering = OrderManager(
            store, self.reconciler, notifier=self.notifier, actor=identity, logger_factory=self.audit_log
        )
        self.display = TimerDisplay(self.cache, clock or _utc_now)

    def audit_log(self, demand_id: str) -> DemandLogger:
        return DemandLogger(demand_id, logs_dir=self.logs_dir, actor=self.identity)

    @property
    def snapshot(self) -> CacheSnapshot:
        return self.cache.snapshot

    def open(self) -> bool:
        """Subscribe to changes and load the initial snapshot."""
        return self.reconciler.start()

    def close(self) -> None:
        self.reconciler.stop()

    def refresh(self) -> bool:
        return self.reconciler.refresh()

    def _fail(self, what: str, error: Exception) -> None:
        logger.warning("%s failed: %s", what, error)
        self.notifier.error(f"{what} failed: {error}")

    def _require(self, demand_id: str) -> DemandRecord:
        record = self.snapshot.get(demand_id)
        if record is None:
            raise UnknownDemand(demand_id)
        return record

    # -- demands ------------------------------------------------------------

    def create_demand(
        self,
        title: str,
        sub_activities: Sequence[SubActivity | dict[str, Any]] = (),
        **fields: Any,
    ) -> str | None:
        """Create a demand with the next sequential id at the end of the order.

        Returns:
            The new id, or None if the write failed
        """
        unknown = set(fields) - set(_EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown demand fields: {', '.join(sorted(unknown))}")

        for _ in range(_CREATE_ATTEMPTS):
            snapshot = self.snapshot
            demand_id = next_demand_id(snapshot.ids)
            row = {
                "id": demand_id,
                "title": title,
                "status": "OPEN",
                "priority": "MEDIUM",
                "difficulty": "",
                "description": "",
                "order": next_order(snapshot),
                "accumulated_seconds": 0,
                **fields,
                "timer_running": False,
                "timer_started_at": None,
            }
            try:
                stored = self.store.insert(DEMANDS, row)
            except StoreDuplicateError:
                # Another client took this id first
                logger.info("Id %s already taken, refreshing", demand_id)
                self.reconciler.refresh()
                continue
            except (DemandSyncError, StoreError) as e:
                self._fail(f"Create {demand_id}", e)
                return None
            break
        else:
            self.notifier.error("Could not allocate a demand id; try again")
            return None

        self.reconciler.record_write(DEMANDS, stored)
        self.audit_log(demand_id).log_created(row["order"], row["status"])
        logger.info("Created %s: %s", demand_id, title)
        if sub_activities:
            try:
                self._replace_sub_activities(demand_id, sub_activities)
            except (DemandSyncError, StoreError) as e:
                # The demand exists; only part of its checklist may have been written
                self._fail(f"Sub-activities of {demand_id}", e)
                self.reconciler.refresh()
                return demand_id
        self.reconciler.refresh()
        self.notifier.notify(f"Demand {demand_id} created", "success")
        return demand_id

    def update_demand(self, demand_id: str, **fields: Any) -> bool:
        """Manual edit. A given ``accumulated_seconds`` overwrites the stored total."""
        unknown = set(fields) - set(_EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Fields not editable here: {', '.join(sorted(unknown))}")
        if not fields:
            return True

        try:
            record = self._require(demand_id)
            row = self.store.update(DEMANDS, demand_id, fields)
        except (DemandSyncError, StoreError) as e:
            self._fail(f"Update {demand_id}", e)
            return False

        self.reconciler.record_write(DEMANDS, row)
        if "status" in fields and fields["status"] != record.status:
            self.audit_log(demand_id).log_status_changed(record.status, fields["status"], reason="edit")
        self.reconciler.refresh()
        return True

    def delete_demand(self, demand_id: str) -> bool:
        """Delete a demand together with its sub-activities and time entries."""
        snapshot = self.snapshot
        try:
            record = self._require(demand_id)
            for sub in record.sub_activities:
                self.store.delete(SUB_ACTIVITIES, sub.id)
            for entry in snapshot.entries_for(demand_id):
                self.store.delete(TIME_ENTRIES, entry.id)
            self.store.delete(DEMANDS, demand_id)
        except (DemandSyncError, StoreError) as e:
            self._fail(f"Delete {demand_id}", e)
            self.reconciler.refresh()
            return False

        self.timer.unfocus(demand_id)
        self.audit_log(demand_id).log_deleted(accumulated=record.accumulated_seconds)
        logger.info("Deleted %s", demand_id)
        self.reconciler.refresh()
        self.notifier.notify(f"Demand {demand_id} removed", "success")
        return True

    # -- sub-activities -----------------------------------------------------

    def set_sub_activities(
        self,
        demand_id: str,
        sub_activities: Sequence[SubActivity | dict[str, Any]],
    ) -> bool:
        """Replace the checklist and derive status from it.

        All items completed moves the demand to COMPLETED; unchecking an item
        on a COMPLETED demand moves it back to IN_PROGRESS.
        """
        try:
            record = self._require(demand_id)
            subs = self._replace_sub_activities(demand_id, sub_activities, existing=record.sub_activities)
            new_status = _status_from_checklist(record.status, subs)
            if new_status != record.status:
                row = self.store.update(DEMANDS, demand_id, {"status": new_status})
                self.reconciler.record_write(DEMANDS, row)
                self.audit_log(demand_id).log_status_changed(record.status, new_status, reason="checklist")
        except (DemandSyncError, StoreError) as e:
            self._fail(f"Sub-activities of {demand_id}", e)
            self.reconciler.refresh()
            return False

        self.reconciler.refresh()
        return True

    def toggle_sub_activity(self, demand_id: str, sub_id: str) -> bool:
        record = self.snapshot.get(demand_id)
        if record is None:
            self._fail(f"Sub-activities of {demand_id}", UnknownDemand(demand_id))
            return False
        subs = [
            SubActivity(s.id, s.title, not s.completed if s.id == sub_id else s.completed, s.position)
            for s in record.sub_activities
        ]
        return self.set_sub_activities(demand_id, subs)

    def _replace_sub_activities(
        self,
        demand_id: str,
        items: Sequence[SubActivity | dict[str, Any]],
        existing: Iterable[SubActivity] = (),
    ) -> list[SubActivity]:
        """Write the checklist, then delete items no longer in it.

        Kept ids are updated in place and new ones inserted before anything
        is deleted, so a failed write never leaves the list shorter than
        either version.
        """
        current = {sub.id: sub for sub in existing}
        subs = []
        for position, item in enumerate(items):
            if isinstance(item, dict):
                item = SubActivity(
                    id=str(item.get("id") or ""),
                    title=item.get("title") or "",
                    completed=bool(item.get("completed", False)),
                )
            sub = SubActivity(
                id=item.id or f"{demand_id}-{uuid.uuid4().hex[:8]}",
                title=item.title,
                completed=item.completed,
                position=position,
            )
            if sub.id not in current:
                self.store.insert(SUB_ACTIVITIES, sub.to_row(demand_id))
            elif current[sub.id] != sub:
                row = sub.to_row(demand_id)
                del row["id"]
                self.store.update(SUB_ACTIVITIES, sub.id, row)
            subs.append(sub)

        kept = {sub.id for sub in subs}
        for sub_id in current:
            if sub_id not in kept:
                self.store.delete(SUB_ACTIVITIES, sub_id)
        return subs

    # -- tags ---------------------------------------------------------------

    def rename_tag(self, category: TagCategory, old: str, new: str) -> int:
        """Rename a label on every demand that is not COMPLETED.

        Returns:
            Number of demands updated
        """
        return self._retag(category, old, new or None)

    def delete_tag(self, category: TagCategory, name: str) -> int:
        """Clear a label from every demand that is not COMPLETED."""
        return self._retag(category, name, None)

    def _retag(self, category: TagCategory, old: str, new: str | None) -> int:
        if category not in TAG_CATEGORIES:
            raise ValueError(f"Unknown tag category: {category}")
        targets = [
            r for r in self.snapshot.demands
            if getattr(r, category) == old and r.status != "COMPLETED"
        ]
        updated = 0
        try:
            for record in targets:
                row = self.store.update(DEMANDS, record.id, {category: new})
                self.reconciler.record_write(DEMANDS, row)
                updated += 1
        except (DemandSyncError, StoreError) as e:
            self._fail(f"Tag {category} {old!r}", e)
        if updated:
            logger.info("Retagged %s %r -> %r on %s demands", category, old, new, updated)
        self.reconciler.refresh()
        return updated

    # -- timers -------------------------------------------------------------

    def start_timer(self, demand_id: str) -> bool:
        try:
            self.timer.start(demand_id)
        except InvalidTransition as e:
            self.notifier.notify(str(e), "alert")
            return False
        except (DemandSyncError, StoreError) as e:
            self._fail(f"Start timer on {demand_id}", e)
            return False
        return True

    def stop_timer(self, demand_id: str) -> AccountingEvent | None:
        return self._close_timer(demand_id, self.timer.stop)

    def finish_session(self, demand_id: str) -> AccountingEvent | None:
        return self._close_timer(demand_id, self.timer.finish)

    def toggle_timer(self, demand_id: str) -> bool:
        record = self.snapshot.get(demand_id)
        if record is not None and record.timer_running:
            return self.stop_timer(demand_id) is not None
        return self.start_timer(demand_id)

    def _close_timer(
        self,
        demand_id: str,
        close: Callable[[str], AccountingEvent | None],
    ) -> AccountingEvent | None:
        try:
            return close(demand_id)
        except InvalidTransition as e:
            self.notifier.notify(str(e), "alert")
        except AccountingLossRisk as e:
            logger.error("%s", e)
            self.notifier.error(f"Time not recorded for {demand_id}, timer still running: retry stop")
        except (DemandSyncError, StoreError) as e:
            self._fail(f"Stop timer on {demand_id}", e)
        return None

    def toggle_focus(self, demand_id: str) -> bool:
        try:
            return self.timer.toggle_focus(demand_id)
        except (DemandSyncError, StoreError) as e:
            self._fail(f"Focus {demand_id}", e)
            return demand_id in self.timer.focused_ids

    def focused(self) -> list[DemandRecord]:
        return self.timer.focused()

    # -- ordering -----------------------------------------------------------

    def reorder(
        self,
        visible: Sequence[DemandRecord],
        dragged_id: str,
        target_id: str | None,
    ) -> ReorderResult | None:
        try:
            return self.ordering.reorder(visible, dragged_id, target_id)
        except (DemandSyncError, StoreError) as e:
            self._fail(f"Reorder {dragged_id}", e)
            return None

    def move(
        self,
        demand_id: str,
        status: DemandStatus,
        target_id: str | None = None,
        visible: Sequence[DemandRecord] | None = None,
    ) -> bool:
        try:
            self.ordering.move(demand_id, status, target_id=target_id, visible=visible)
        except (DemandSyncError, StoreError) as e:
            self._fail(f"Move {demand_id}", e)
            return False
        return True

    def move_up(self, visible: Sequence[DemandRecord], demand_id: str) -> ReorderResult | None:
        return self._shift(self.ordering.move_up, visible, demand_id)

    def move_down(self, visible: Sequence[DemandRecord], demand_id: str) -> ReorderResult | None:
        return self._shift(self.ordering.move_down, visible, demand_id)

    def _shift(self, shift: Callable, visible: Sequence[DemandRecord], demand_id: str) -> ReorderResult | None:
        try:
            return shift(visible, demand_id)
        except (DemandSyncError, StoreError) as e:
            self._fail(f"Reorder {demand_id}", e)
            return None

    # -- views --------------------------------------------------------------

    def visible(
        self,
        tab: ViewTab = "ALL",
        responsible: str | None = None,
        contract: str | None = None,
        search: str = "",
    ) -> list[DemandRecord]:
        return filter_demands(self.snapshot.demands, tab, responsible, contract, search)

    def columns(self, records: Iterable[DemandRecord] | None = None) -> dict[str, list[DemandRecord]]:
        return kanban_columns(self.snapshot.demands if records is None else records)

    def options(self) -> dict[str, list[str]]:
        return option_lists(self.snapshot.demands)

    def weekly_report(self, day: date | None = None, records: Iterable[DemandRecord] | None = None) -> WeeklyReport:
        day = day or date.fromisoformat(self.timer.today(_utc_now()))
        return weekly_report(self.snapshot.demands if records is None else records, day)


def _status_from_checklist(status: DemandStatus, subs: Sequence[SubActivity]) -> DemandStatus:
    if not subs:
        return status
    if all(s.completed for s in subs):
        return "COMPLETED"
    if status == "COMPLETED":
        return "IN_PROGRESS"
    return status


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
