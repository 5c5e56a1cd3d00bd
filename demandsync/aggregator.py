"""Daily time accounting derived from time entries.

Everything here is a pure function of its inputs. Daily logs are always
recomputed from the full entry set; nothing is patched incrementally, so
running an aggregation twice on the same entries gives the same result and
a partially applied update can never be counted twice.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable, Mapping

from .models import DemandRecord, TimeEntry


def aggregate(entries: Iterable[TimeEntry]) -> dict[str, int]:
    """Group time entries by calendar day and sum their durations.

    Args:
        entries: Time entries for a single demand

    Returns:
        Mapping of YYYY-MM-DD to total seconds, ordered by day
    """
    totals: dict[str, int] = defaultdict(int)
    for entry in entries:
        totals[entry.date] += entry.duration
    return dict(sorted(totals.items()))


def aggregate_by_demand(entries: Iterable[TimeEntry]) -> dict[str, dict[str, int]]:
    """Aggregate a mixed entry set into per-demand daily logs."""
    grouped: dict[str, list[TimeEntry]] = defaultdict(list)
    for entry in entries:
        grouped[entry.demand_id].append(entry)
    return {demand_id: aggregate(group) for demand_id, group in grouped.items()}


def week_dates(day: date) -> list[date]:
    """Monday to Friday of the week containing ``day``."""
    monday = day - timedelta(days=day.weekday())
    return [monday + timedelta(days=i) for i in range(5)]


@dataclass
class WeeklyReport:
    """Worked seconds per demand per weekday for one week."""

    days: list[date]
    rows: dict[str, dict[str, int]] = field(default_factory=dict)

    @property
    def day_totals(self) -> dict[str, int]:
        totals = {d.isoformat(): 0 for d in self.days}
        for per_day in self.rows.values():
            for day, seconds in per_day.items():
                totals[day] += seconds
        return totals

    @property
    def total(self) -> int:
        return sum(self.day_totals.values())


def weekly_report(records: Iterable[DemandRecord], day: date) -> WeeklyReport:
    """Build the Monday-Friday report for the week containing ``day``.

    Demands with no time logged during the week are left out.
    """
    days = week_dates(day)
    keys = [d.isoformat() for d in days]
    report = WeeklyReport(days=days)
    for record in records:
        per_day = {k: _seconds_on(record.daily_logs, k) for k in keys}
        if any(per_day.values()):
            report.rows[record.id] = per_day
    return report


def _seconds_on(daily_logs: Mapping[str, int], day: str) -> int:
    return int(daily_logs.get(day, 0))


def format_duration(total_seconds: int) -> str:
    """Format seconds as HH:MM:SS (hours may exceed 24)."""
    total_seconds = max(0, int(total_seconds))
    hours, rest = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
