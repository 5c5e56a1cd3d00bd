"""Timer lifecycle: start, stop and finish work sessions on demands.

Each demand is either STOPPED or RUNNING. Nothing is counted while a timer
runs; elapsed time is computed once, at stop, as the difference between the
store clock and the stored start timestamp, in whole seconds, clamped at 0.

Closing a session is done in two writes that are both safe to repeat:

1. Insert a TimeEntry whose id is the session token ``<demand>@<started_at>``.
   A second stop of the same session (a retry, or another client racing us)
   hits a duplicate id instead of recording the session twice.
2. Clear the running flag and add the elapsed seconds, as a conditional
   update that only applies while ``timer_started_at`` still holds the value
   we read. Whoever loses that race adds nothing.

If the insert fails the timer is left running, so no time is lost; the
caller gets AccountingLossRisk and can stop again later.

Display of a running timer is separate: TimerDisplay reads the cache on a
1-second tick and never writes anything.
"""

import logging
import threading
from collections import defaultdict
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable
from zoneinfo import ZoneInfo

from demandsync_sdk.exceptions import StoreConflictError, StoreDuplicateError, StoreError

from .cache import LocalCache, canonical_order
from .config import DEMANDS, TIME_ENTRIES
from .demand_logger import DemandLogger
from .errors import AccountingLossRisk, DemandSyncError, InvalidTransition, UnknownDemand
from .models import AccountingEvent, DemandRecord, format_timestamp
from .reconciler import Reconciler
from .store import RecordStore

logger = logging.getLogger(__name__)

# AccountingEvent.kind -> operation name used in errors
_OPERATIONS = {"stopped": "stop", "finished": "finish"}


def session_token(demand_id: str, started_at: str) -> str:
    """Idempotency key for one timer session; used as the TimeEntry id."""
    return f"{demand_id}@{started_at}"


def elapsed_seconds(started_at: datetime, now: datetime) -> int:
    """Whole seconds between two instants, never negative (clock skew)."""
    return max(0, int((now - started_at).total_seconds()))


def _zone(name: str) -> tzinfo:
    """Zone for ``name``; UTC does not need the tz database."""
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


class TimerManager:
    """Per-demand STOPPED/RUNNING state machine backed by the store.

    Args:
        store: Record store; its server_now() stamps starts and stops
        reconciler: Receives accounting events and refreshes the cache
        timezone: Zone deciding which calendar day a session is attributed to
        record_zero_duration: Write entries for sessions of 0 seconds
        actor: Identity recorded in the audit log
        logger_factory: Builds the per-demand audit logger
    """

    def __init__(
        self,
        store: RecordStore,
        reconciler: Reconciler,
        timezone: str = "UTC",
        record_zero_duration: bool = False,
        actor: str | None = None,
        logger_factory: Callable[[str], DemandLogger] | None = None,
    ):
        self.store = store
        self.reconciler = reconciler
        self.tz = _zone(timezone)
        self.record_zero_duration = record_zero_duration
        self.actor = actor
        self._logger_factory = logger_factory or (lambda demand_id: DemandLogger(demand_id, actor=actor))
        self._locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

        # Client-local focus working set (ordered, not persisted)
        self.focused_ids: list[str] = []

    @property
    def cache(self) -> LocalCache:
        return self.reconciler.cache

    def _lock_for(self, demand_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[demand_id]

    def _require(self, demand_id: str) -> DemandRecord:
        record = self.cache.snapshot.get(demand_id)
        if record is None:
            raise UnknownDemand(demand_id)
        return record

    def state(self, demand_id: str) -> str:
        return self._require(demand_id).timer_state

    def today(self, now: datetime) -> str:
        """Calendar day (YYYY-MM-DD) of ``now`` in the accounting timezone."""
        return now.astimezone(self.tz).date().isoformat()

    # -- transitions --------------------------------------------------------

    def start(self, demand_id: str) -> dict[str, Any]:
        """STOPPED -> RUNNING. An OPEN demand moves to IN_PROGRESS.

        Raises:
            InvalidTransition: The timer is already running (here or on another client)
        """
        with self._lock_for(demand_id):
            record = self._require(demand_id)
            if record.timer_running:
                raise InvalidTransition(demand_id, "start", "RUNNING")

            started = format_timestamp(self.store.server_now())
            patch: dict[str, Any] = {"timer_running": True, "timer_started_at": started}
            if record.status == "OPEN":
                patch["status"] = "IN_PROGRESS"

            try:
                row = self.store.update(DEMANDS, demand_id, patch, expected={"timer_running": False})
            except StoreConflictError:
                self.reconciler.refresh()
                raise InvalidTransition(demand_id, "start", "RUNNING")

            self.reconciler.record_write(DEMANDS, row)
            audit = self._logger_factory(demand_id)
            audit.log_timer_started(started)
            if "status" in patch:
                audit.log_status_changed(record.status, patch["status"], reason="timer")
            logger.info("Timer started on %s at %s", demand_id, started)

        self.reconciler.refresh()
        return row

    def stop(self, demand_id: str) -> AccountingEvent | None:
        """RUNNING -> STOPPED, crediting the elapsed session.

        Returns:
            The accounting event, or None if another stop already closed
            this session (nothing was credited by this call)

        Raises:
            InvalidTransition: The timer is not running in the current snapshot
            AccountingLossRisk: The time entry could not be written; the timer
                is still running
        """
        return self._close(demand_id, "stopped")

    def finish(self, demand_id: str) -> AccountingEvent | None:
        """Close a focus session: stop if running, then leave the focus set."""
        event = None
        if self._require(demand_id).timer_running:
            event = self._close(demand_id, "finished")
        self.unfocus(demand_id)
        return event

    def toggle(self, demand_id: str) -> AccountingEvent | dict[str, Any] | None:
        """Start a stopped timer or stop a running one."""
        if self._require(demand_id).timer_running:
            return self.stop(demand_id)
        return self.start(demand_id)

    def _close(self, demand_id: str, kind: str) -> AccountingEvent | None:
        with self._lock_for(demand_id):
            record = self._require(demand_id)
            if not record.timer_running or record.timer_started_at is None:
                raise InvalidTransition(demand_id, _OPERATIONS[kind], "STOPPED")

            token = record.session_token or format_timestamp(record.timer_started_at)
            now = self.store.server_now()
            elapsed = elapsed_seconds(record.timer_started_at, now)
            day = self.today(now)

            entry_id = None
            if elapsed > 0 or self.record_zero_duration:
                entry_id = session_token(demand_id, token)
                elapsed = self._insert_entry(demand_id, entry_id, elapsed, day)

            total = record.accumulated_seconds + elapsed
            try:
                row = self.store.update(
                    DEMANDS,
                    demand_id,
                    {"timer_running": False, "timer_started_at": None, "accumulated_seconds": total},
                    expected={"timer_running": True, "timer_started_at": token},
                )
            except StoreConflictError:
                logger.info("Session %s on %s was already closed elsewhere", token, demand_id)
                self.reconciler.refresh()
                return None

            self.reconciler.record_write(DEMANDS, row)
            event = AccountingEvent(kind=kind, demand_id=demand_id, entry_id=entry_id, duration=elapsed, date=day)
            self._logger_factory(demand_id).log_timer_stopped(
                elapsed, day, total, finished=(kind == "finished")
            )
            logger.info("Timer %s on %s: +%ss (%s), total %ss", kind, demand_id, elapsed, day, total)

        self.reconciler.submit(event)
        self.reconciler.process_pending()
        return event

    def _insert_entry(self, demand_id: str, entry_id: str, elapsed: int, day: str) -> int:
        """Write the session's TimeEntry; returns the duration actually on record."""
        try:
            row = self.store.insert(
                TIME_ENTRIES,
                {"id": entry_id, "demand_id": demand_id, "duration": elapsed, "date": day},
            )
            self.reconciler.record_write(TIME_ENTRIES, row)
            return elapsed
        except StoreDuplicateError:
            # Session already recorded; credit what was recorded, not our own reading
            existing = self._find_entry(entry_id)
            recorded = int(existing["duration"]) if existing else elapsed
            logger.info("Entry %s already recorded (%ss)", entry_id, recorded)
            return recorded
        except (DemandSyncError, StoreError) as e:
            raise AccountingLossRisk(
                f"Could not record {elapsed}s for {demand_id}; timer left running: {e}",
                demand_id=demand_id,
                elapsed_seconds=elapsed,
            ) from e

    def _find_entry(self, entry_id: str) -> dict[str, Any] | None:
        try:
            rows = self.store.fetch_all(TIME_ENTRIES)
        except (DemandSyncError, StoreError):
            return None
        for row in rows:
            if str(row.get("id")) == entry_id:
                return row
        return None

    # -- focus working set --------------------------------------------------

    def focus(self, demand_id: str) -> None:
        """Add to the focus set; an OPEN demand moves to IN_PROGRESS."""
        record = self._require(demand_id)
        if demand_id not in self.focused_ids:
            self.focused_ids.append(demand_id)
        if record.status == "OPEN":
            row = self.store.update(DEMANDS, demand_id, {"status": "IN_PROGRESS"})
            self.reconciler.record_write(DEMANDS, row)
            self._logger_factory(demand_id).log_status_changed("OPEN", "IN_PROGRESS", reason="focus")
            self.reconciler.refresh()

    def unfocus(self, demand_id: str) -> None:
        if demand_id in self.focused_ids:
            self.focused_ids.remove(demand_id)

    def toggle_focus(self, demand_id: str) -> bool:
        """Returns True if the demand is focused afterwards."""
        if demand_id in self.focused_ids:
            self.unfocus(demand_id)
            return False
        self.focus(demand_id)
        return True

    def focused(self) -> list[DemandRecord]:
        """Focused demands plus every demand with a running timer, in canonical order."""
        focused = set(self.focused_ids)
        snapshot = self.cache.snapshot
        return canonical_order(r for r in snapshot.demands if r.id in focused or r.timer_running)


class TimerDisplay:
    """Display-only view of running timers, driven by an external tick.

    tick() reads the current snapshot and reports what each running timer
    should show. It never mutates the cache or the store.
    """

    def __init__(self, cache: LocalCache, clock: Callable[[], datetime]):
        self.cache = cache
        self.clock = clock
        self._listeners: list[Callable[[dict[str, int]], None]] = []

    @staticmethod
    def session_seconds(record: DemandRecord, now: datetime) -> int:
        """Seconds in the session in progress (0 when stopped)."""
        if not record.timer_running or record.timer_started_at is None:
            return 0
        return elapsed_seconds(record.timer_started_at, now)

    @classmethod
    def display_seconds(cls, record: DemandRecord, now: datetime) -> int:
        """Accumulated time plus the session in progress."""
        return record.accumulated_seconds + cls.session_seconds(record, now)

    def on_tick(self, listener: Callable[[dict[str, int]], None]) -> None:
        self._listeners.append(listener)

    def tick(self, now: datetime | None = None) -> dict[str, int]:
        """Compute session seconds for every running demand and notify listeners."""
        now = now or self.clock()
        readings = {
            record.id: self.session_seconds(record, now)
            for record in self.cache.snapshot.running()
        }
        for listener in self._listeners:
            listener(readings)
        return readings
