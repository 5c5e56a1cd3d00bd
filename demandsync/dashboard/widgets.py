"""Widgets for the demand dashboard."""

from __future__ import annotations

from datetime import datetime

from rich.text import Text
from textual.app import ComposeResult
from textual.containers import Vertical
from textual.widget import Widget
from textual.widgets import DataTable, Label, Static

from ..aggregator import format_duration
from ..models import DemandRecord, PresenceMember
from ..timer import TimerDisplay

STATUS_STYLES = {
    "OPEN": "#90a4ae",
    "IN_PROGRESS": "bold #42a5f5",
    "COMPLETED": "#66bb6a",
    "BLOCKED": "bold #ef5350",
    "CANCELLED": "dim",
}


def status_text(status: str) -> Text:
    return Text(status.replace("_", " "), style=STATUS_STYLES.get(status, ""))


def time_text(record: DemandRecord, now: datetime) -> Text:
    seconds = TimerDisplay.display_seconds(record, now)
    style = "bold #ffa726" if record.timer_running else ""
    return Text(format_duration(seconds), style=style)


class DemandTable(Widget):
    """Demands of the current view, in canonical order."""

    DEFAULT_CSS = """
    DemandTable {
        height: 1fr;
    }
    """

    def __init__(self, **kwargs: object) -> None:
        super().__init__(**kwargs)
        self._records: list[DemandRecord] = []

    def compose(self) -> ComposeResult:
        with Vertical():
            yield Label(" DEMANDS ", classes="section-header", id="demands-header")
            yield DataTable(id="demand-table", cursor_type="row")

    def on_mount(self) -> None:
        table = self.query_one("#demand-table", DataTable)
        table.add_column("ID", key="id")
        table.add_column("Title", key="title")
        table.add_column("Status", key="status")
        table.add_column("Responsible", key="responsible")
        table.add_column("Progress", key="progress")
        table.add_column("Time", key="time")

    @property
    def records(self) -> list[DemandRecord]:
        return self._records

    @property
    def selected_id(self) -> str | None:
        try:
            row = self.query_one("#demand-table", DataTable).cursor_row
        except Exception:
            return None
        if 0 <= row < len(self._records):
            return self._records[row].id
        return None

    def update_rows(self, records: list[DemandRecord], now: datetime, header: str) -> None:
        try:
            table = self.query_one("#demand-table", DataTable)
            self.query_one("#demands-header", Label).update(header)
        except Exception:
            return

        selected = self.selected_id
        self._records = list(records)
        table.clear()
        for record in self._records:
            table.add_row(
                record.id,
                record.title[:48],
                status_text(record.status),
                record.responsible or "",
                f"{record.progress}%" if record.sub_activities else "",
                time_text(record, now),
                key=record.id,
            )
        ids = [r.id for r in self._records]
        if selected in ids:
            table.move_cursor(row=ids.index(selected))

    def tick(self, now: datetime) -> None:
        """Refresh the time column of running demands only."""
        try:
            table = self.query_one("#demand-table", DataTable)
        except Exception:
            return
        for record in self._records:
            if record.timer_running:
                table.update_cell(record.id, "time", time_text(record, now))


class FocusPanel(Static):
    """Focused demands and every running timer, with live session time."""

    DEFAULT_CSS = """
    FocusPanel {
        height: auto;
        max-height: 10;
        padding: 0 1;
        border: round #42a5f5;
    }
    """

    def show(self, records: list[DemandRecord], now: datetime) -> None:
        if not records:
            self.update(Text("No focused demands", style="dim"))
            return
        text = Text()
        for i, record in enumerate(records):
            if i:
                text.append("\n")
            if record.timer_running:
                text.append("▶ ", style="bold #66bb6a")
            else:
                text.append("  ")
            text.append(f"{record.id} ", style="bold")
            text.append(record.title[:40])
            text.append("  ")
            session = TimerDisplay.session_seconds(record, now)
            text.append(format_duration(session), style="bold #ffa726" if record.timer_running else "dim")
            text.append(f"  total {format_duration(TimerDisplay.display_seconds(record, now))}", style="dim")
        self.update(text)


class RosterBar(Static):
    """Online identities."""

    DEFAULT_CSS = """
    RosterBar {
        height: 1;
        padding: 0 1;
    }
    """

    def show(self, members: tuple[PresenceMember, ...] | list[PresenceMember]) -> None:
        names = ", ".join(m.identity for m in members) or "-"
        self.update(Text(f"Online ({len(members)}): {names}", style="#90a4ae"))
