"""Record types materialized from store rows.

Store rows are plain dicts with snake_case keys. Records are frozen so that
every snapshot handed out by the local cache is immutable.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping

from .config import DemandStatus

logger = logging.getLogger(__name__)

# Row fields owned by the store (derived fields are never written back)
DEMAND_FIELDS = (
    "id",
    "title",
    "status",
    "priority",
    "difficulty",
    "requester",
    "responsible",
    "contract",
    "start_date",
    "due_date",
    "description",
    "order",
    "accumulated_seconds",
    "timer_running",
    "timer_started_at",
)

_EMPTY_LOGS: Mapping[str, int] = MappingProxyType({})


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO timestamp (``Z`` suffix allowed) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable timestamp %r", value)
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(value: datetime | None) -> str | None:
    """Format a datetime as an ISO string, preserving None."""
    if value is None:
        return None
    return value.isoformat()


@dataclass(frozen=True)
class SubActivity:
    """A checklist item belonging to a demand."""

    id: str
    title: str
    completed: bool = False
    position: int = 0

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SubActivity":
        return cls(
            id=str(row["id"]),
            title=row.get("title") or "",
            completed=bool(row.get("completed", False)),
            position=int(row.get("position") or 0),
        )

    def to_row(self, demand_id: str) -> dict[str, Any]:
        return {
            "id": self.id,
            "demand_id": demand_id,
            "title": self.title,
            "completed": self.completed,
            "position": self.position,
        }


@dataclass(frozen=True)
class TimeEntry:
    """One closed timer session, attributed to the day it was closed.

    Append-only; the durable source of truth for a demand's daily logs.
    """

    id: str
    demand_id: str
    duration: int
    date: str  # YYYY-MM-DD

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "TimeEntry":
        return cls(
            id=str(row["id"]),
            demand_id=str(row["demand_id"]),
            duration=int(row.get("duration") or 0),
            date=str(row["date"]),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "demand_id": self.demand_id,
            "duration": self.duration,
            "date": self.date,
        }


@dataclass(frozen=True)
class DemandRecord:
    """A shared unit of tracked work.

    ``accumulated_seconds`` excludes the session in progress. ``daily_logs``
    is derived from time entries on every reconciliation and is not stored.
    """

    id: str
    title: str
    status: DemandStatus = "OPEN"
    priority: str = "MEDIUM"
    difficulty: str = ""
    requester: str | None = None
    responsible: str | None = None
    contract: str | None = None
    start_date: str | None = None
    due_date: str | None = None
    description: str = ""
    order: int = 0
    accumulated_seconds: int = 0
    timer_running: bool = False
    timer_started_at: datetime | None = None
    # Stored start timestamp exactly as the store holds it; identifies the session
    session_token: str | None = field(default=None, compare=False, repr=False)
    sub_activities: tuple[SubActivity, ...] = ()
    daily_logs: Mapping[str, int] = field(default_factory=lambda: _EMPTY_LOGS)
    revision: int = 0

    @property
    def timer_state(self) -> str:
        return "RUNNING" if self.timer_running else "STOPPED"

    @property
    def progress(self) -> int:
        """Percentage of completed sub-activities (0 when there are none)."""
        if not self.sub_activities:
            return 0
        done = sum(1 for s in self.sub_activities if s.completed)
        return round(done * 100 / len(self.sub_activities))

    @classmethod
    def from_row(
        cls,
        row: dict[str, Any],
        sub_activities: tuple[SubActivity, ...] = (),
        daily_logs: Mapping[str, int] | None = None,
    ) -> "DemandRecord":
        """Build a record from a store row plus its derived children.

        A row claiming ``timer_running`` without a start timestamp (or the
        reverse) is normalized to STOPPED so the running/started invariant
        always holds in the cache.
        """
        started_at = parse_timestamp(row.get("timer_started_at"))
        running = bool(row.get("timer_running", False))
        if running != (started_at is not None):
            logger.warning(
                "Demand %s has timer_running=%s with timer_started_at=%r; treating as stopped",
                row.get("id"), running, row.get("timer_started_at"),
            )
            running = False
            started_at = None

        return cls(
            id=str(row["id"]),
            title=row.get("title") or "",
            status=row.get("status") or "OPEN",
            priority=row.get("priority") or "MEDIUM",
            difficulty=row.get("difficulty") or "",
            requester=row.get("requester"),
            responsible=row.get("responsible"),
            contract=row.get("contract"),
            start_date=row.get("start_date"),
            due_date=row.get("due_date"),
            description=row.get("description") or "",
            order=int(row.get("order") or 0),
            accumulated_seconds=max(0, int(row.get("accumulated_seconds") or 0)),
            timer_running=running,
            timer_started_at=started_at,
            session_token=str(row["timer_started_at"]) if running else None,
            sub_activities=tuple(sorted(sub_activities, key=lambda s: s.position)),
            daily_logs=MappingProxyType(dict(daily_logs or {})),
            revision=int(row.get("revision") or 0),
        )

    def to_row(self) -> dict[str, Any]:
        """Convert to the row shape persisted by the store."""
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "priority": self.priority,
            "difficulty": self.difficulty,
            "requester": self.requester,
            "responsible": self.responsible,
            "contract": self.contract,
            "start_date": self.start_date,
            "due_date": self.due_date,
            "description": self.description,
            "order": self.order,
            "accumulated_seconds": self.accumulated_seconds,
            "timer_running": self.timer_running,
            "timer_started_at": self.session_token or format_timestamp(self.timer_started_at),
        }

    def to_dict(self) -> dict[str, Any]:
        """Full state including derived fields, for comparisons and display."""
        data = self.to_row()
        data["sub_activities"] = [
            {"id": s.id, "title": s.title, "completed": s.completed} for s in self.sub_activities
        ]
        data["daily_logs"] = dict(sorted(self.daily_logs.items()))
        return data


@dataclass(frozen=True)
class AccountingEvent:
    """Emitted by the timer manager whenever a session is closed."""

    kind: str  # stopped | finished
    demand_id: str
    entry_id: str | None
    duration: int
    date: str


@dataclass(frozen=True)
class PresenceMember:
    """An online identity. Ephemeral: it expires once heartbeats stop."""

    identity: str
    joined_at: datetime
    last_seen: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PresenceMember":
        joined = parse_timestamp(data.get("joined_at")) or datetime.now(timezone.utc)
        return cls(
            identity=str(data["identity"]),
            joined_at=joined,
            last_seen=parse_timestamp(data.get("last_seen")),
        )
