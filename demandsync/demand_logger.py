"""Per-demand audit log for lifecycle events.

Every demand gets an append-only log that survives deletion of the demand,
recording timer sessions, reorders and status changes made by this client.

Log format:
    [ISO-timestamp] EVENT field=value field=value ...

Example:
    [2025-10-10T09:00:00] CREATED by=ana order=4
    [2025-10-10T09:05:12] TIMER_STARTED by=ana started_at=2025-10-10T09:05:12+00:00
    [2025-10-10T09:07:17] TIMER_STOPPED by=ana elapsed=125 date=2025-10-10 total=3725
    [2025-10-10T09:30:01] REORDERED by=ana from=3 to=0
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class DemandLogger:
    """Append-only lifecycle log for one demand.

    Each demand gets its own log file at:
        .demandsync/logs/demands/DEM-001.log
    """

    def __init__(self, demand_id: str, logs_dir: Path | None = None, actor: str | None = None):
        """Initialize DemandLogger for a specific demand.

        Args:
            demand_id: Demand identifier (e.g. DEM-001)
            logs_dir: Override default logs directory (useful for testing)
            actor: Identity recorded as ``by=`` on every event
        """
        self.demand_id = demand_id
        self.actor = actor

        if logs_dir is None:
            from .config import get_demand_logs_dir
            logs_dir = get_demand_logs_dir()

        self.logs_dir = logs_dir
        self.log_path = self.logs_dir / f"{_safe_name(demand_id)}.log"

    def _write_event(self, event: str, **fields: Any) -> None:
        """Write an event to the demand log. Never raises.

        Args:
            event: Event type (CREATED, TIMER_STARTED, ...)
            **fields: Key-value pairs to log; None values are omitted
        """
        timestamp = datetime.now().isoformat(timespec="seconds")

        if self.actor:
            fields = {"by": self.actor, **fields}
        parts = [f"{k}={_clean(v)}" for k, v in fields.items() if v is not None]
        log_line = f"[{timestamp}] {event}"
        if parts:
            log_line += " " + " ".join(parts)
        log_line += "\n"

        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a") as f:
                f.write(log_line)
        except OSError as e:
            logger.warning("Could not write audit log for %s: %s", self.demand_id, e)

    def log_created(self, order: int, status: str, **extra: Any) -> None:
        self._write_event("CREATED", order=order, status=status, **extra)

    def log_deleted(self, **extra: Any) -> None:
        self._write_event("DELETED", **extra)

    def log_timer_started(self, started_at: str, **extra: Any) -> None:
        self._write_event("TIMER_STARTED", started_at=started_at, **extra)

    def log_timer_stopped(
        self,
        elapsed: int,
        date: str,
        total: int,
        finished: bool = False,
        **extra: Any,
    ) -> None:
        """Log the close of a timer session.

        Args:
            elapsed: Seconds credited for the session
            date: Calendar day the session was attributed to
            total: accumulated_seconds after the session
            finished: True when closed via finish (focus session end)
        """
        event = "SESSION_FINISHED" if finished else "TIMER_STOPPED"
        self._write_event(event, elapsed=elapsed, date=date, total=total, **extra)

    def log_reordered(self, from_order: int, to_order: int, **extra: Any) -> None:
        self._write_event("REORDERED", **{"from": from_order, "to": to_order}, **extra)

    def log_status_changed(self, from_status: str, to_status: str, **extra: Any) -> None:
        self._write_event("STATUS_CHANGED", **{"from": from_status, "to": to_status}, **extra)

    def get_events(self, event_type: str | None = None) -> list[dict[str, Any]]:
        """Parse and return log events.

        Args:
            event_type: Filter by event type (e.g., "TIMER_STOPPED"), or None for all

        Returns:
            List of event dicts with 'timestamp', 'event', and parsed fields
        """
        if not self.log_path.exists():
            return []

        events = []
        try:
            with open(self.log_path) as f:
                for line in f:
                    line = line.strip()
                    if not line.startswith("["):
                        continue
                    try:
                        end_bracket = line.index("]")
                    except ValueError:
                        continue

                    parts = line[end_bracket + 2:].split()
                    if not parts:
                        continue
                    event = parts[0]
                    if event_type and event != event_type:
                        continue

                    fields = {"timestamp": line[1:end_bracket], "event": event}
                    for pair in parts[1:]:
                        if "=" in pair:
                            key, value = pair.split("=", 1)
                            fields[key] = value
                    events.append(fields)
        except OSError:
            return []

        return events


def _clean(value: Any) -> str:
    # key=value pairs are whitespace separated
    return "_".join(str(value).split())


def _safe_name(demand_id: str) -> str:
    return "".join(c if c.isalnum() or c in "-_" else "_" for c in demand_id)


def get_demand_logger(demand_id: str, actor: str | None = None) -> DemandLogger:
    """Factory function to get a DemandLogger instance."""
    return DemandLogger(demand_id, actor=actor)
