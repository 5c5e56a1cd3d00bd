"""demandsync dashboard: Textual TUI app.

Launch with: python -m demandsync.dashboard
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable

from textual import work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import Footer, Header

from ..config import get_identity, get_presence_config
from ..notifications import Notification
from ..presence import PresenceTracker
from ..workspace import DemandWorkspace
from .widgets import DemandTable, FocusPanel, RosterBar

logger = logging.getLogger("dashboard")

VIEW_TABS = ("ALL", "ACTIVE", "COMPLETED")

_SEVERITIES = {
    "info": "information",
    "success": "information",
    "alert": "warning",
    "error": "error",
}


class DemandSyncDashboard(App):
    """Shared demand list with live timers and the online roster.

    Store work runs in thread workers. Snapshot swaps and toasts arrive on
    arbitrary threads, so they only mark state; the 1-second tick on the UI
    thread renders whatever changed.
    """

    TITLE = "demandsync"
    SUB_TITLE = "Demands"

    BINDINGS = [
        Binding("q", "quit", "Quit", show=True),
        Binding("r", "refresh", "Refresh", show=True),
        Binding("s", "toggle_timer", "Start/Stop", show=True),
        Binding("f", "finish", "Finish", show=True),
        Binding("p", "toggle_focus", "Focus", show=True),
        Binding("v", "next_view", "View", show=True),
        Binding("left_square_bracket", "move_up", "Up", show=False),
        Binding("right_square_bracket", "move_down", "Down", show=False),
    ]

    def __init__(
        self,
        workspace: DemandWorkspace | None = None,
        presence: PresenceTracker | None = None,
        clock: Callable[[], datetime] | None = None,
        **kwargs: object,
    ) -> None:
        super().__init__(**kwargs)
        self.workspace = workspace
        self.presence = presence
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.view_tab = "ALL"
        self._dirty = True
        self._lock = threading.Lock()
        self._pending: list[Notification] = []

    def compose(self) -> ComposeResult:
        yield Header()
        with Vertical():
            yield RosterBar(id="roster")
            yield FocusPanel(id="focus")
            yield DemandTable(id="demands")
        yield Footer()

    def on_mount(self) -> None:
        if self.workspace is None:
            from ..sdk import build_workspace
            self.workspace = build_workspace()
        if self.presence is None:
            from ..sdk import get_presence_channel
            self.presence = PresenceTracker(get_presence_channel(), self.workspace.identity or get_identity())

        self.workspace.cache.subscribe(lambda _snapshot: self._mark_dirty())
        self.workspace.notifier.subscribe(self._queue_notification)
        self.presence.subscribe(lambda _members: self._mark_dirty())

        self._connect()
        self.set_interval(1, self._tick)
        self.set_interval(float(get_presence_config()["heartbeat_seconds"]), self._heartbeat)

    def on_unmount(self) -> None:
        if self.presence is not None:
            self.presence.disconnect()
        if self.workspace is not None:
            self.workspace.close()

    # -- background work ------------------------------------------------------

    @work(thread=True)
    def _connect(self) -> None:
        self.workspace.open()
        try:
            self.presence.connect()
        except Exception as exc:
            logger.exception("Presence connect failed")
            self.call_from_thread(self.notify, f"Presence unavailable: {exc}", severity="warning", timeout=4)
        self._mark_dirty()

    @work(thread=True)
    def _run(self, action: Callable[[], object]) -> None:
        try:
            action()
        except Exception as exc:
            logger.exception("Dashboard action failed")
            self.call_from_thread(self.notify, f"Action failed: {exc}", severity="error", timeout=4)
        self._mark_dirty()

    @work(thread=True)
    def _heartbeat(self) -> None:
        self.presence.heartbeat()

    # -- state from other threads -----------------------------------------------

    def _mark_dirty(self) -> None:
        with self._lock:
            self._dirty = True

    def _queue_notification(self, note: Notification) -> None:
        with self._lock:
            self._pending.append(note)

    # -- rendering (UI thread) --------------------------------------------------

    def _tick(self) -> None:
        with self._lock:
            pending, self._pending = self._pending, []
            dirty, self._dirty = self._dirty, False

        for note in pending:
            self.notify(note.message, severity=_SEVERITIES.get(note.severity, "information"), timeout=note.timeout)

        now = self._clock()
        table = self.query_one("#demands", DemandTable)
        if dirty:
            records = self.workspace.visible(tab=self.view_tab)
            table.update_rows(records, now, f" DEMANDS: {self.view_tab} ({len(records)}) ")
            self.query_one("#roster", RosterBar).show(self.presence.roster)
        else:
            table.tick(now)
        self.query_one("#focus", FocusPanel).show(self.workspace.focused(), now)

    # -- actions ------------------------------------------------------------

    def _selected(self) -> str | None:
        demand_id = self.query_one("#demands", DemandTable).selected_id
        if demand_id is None:
            self.notify("No demand selected", severity="warning", timeout=4)
        return demand_id

    def action_refresh(self) -> None:
        self._run(self.workspace.refresh)

    def action_toggle_timer(self) -> None:
        demand_id = self._selected()
        if demand_id:
            self._run(lambda: self.workspace.toggle_timer(demand_id))

    def action_finish(self) -> None:
        demand_id = self._selected()
        if demand_id:
            self._run(lambda: self.workspace.finish_session(demand_id))

    def action_toggle_focus(self) -> None:
        demand_id = self._selected()
        if demand_id:
            self._run(lambda: self.workspace.toggle_focus(demand_id))

    def action_next_view(self) -> None:
        self.view_tab = VIEW_TABS[(VIEW_TABS.index(self.view_tab) + 1) % len(VIEW_TABS)]
        self._mark_dirty()

    def action_move_up(self) -> None:
        self._move(self.workspace.move_up)

    def action_move_down(self) -> None:
        self._move(self.workspace.move_down)

    def _move(self, shift: Callable) -> None:
        demand_id = self._selected()
        if demand_id:
            visible = list(self.query_one("#demands", DemandTable).records)
            self._run(lambda: shift(visible, demand_id))
