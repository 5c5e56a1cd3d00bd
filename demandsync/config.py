"""Configuration loading and constants for demandsync."""

import os
import socket
from pathlib import Path
from typing import Any, Literal

import yaml


# ---------------------------------------------------------------------------
# Collections bound to demand state
# ---------------------------------------------------------------------------

DEMANDS = "demands"
SUB_ACTIVITIES = "sub_activities"
TIME_ENTRIES = "time_entries"

DEMAND_COLLECTIONS: tuple[str, ...] = (DEMANDS, SUB_ACTIVITIES, TIME_ENTRIES)


# ---------------------------------------------------------------------------
# Demand status
# ---------------------------------------------------------------------------

DemandStatus = Literal[
    "OPEN",
    "IN_PROGRESS",
    "COMPLETED",
    "BLOCKED",
    "CANCELLED",
]

STATUSES: tuple[DemandStatus, ...] = (
    "OPEN",
    "IN_PROGRESS",
    "COMPLETED",
    "BLOCKED",
    "CANCELLED",
)

# Board columns, left to right
KANBAN_COLUMNS: tuple[DemandStatus, ...] = ("OPEN", "IN_PROGRESS", "COMPLETED", "BLOCKED")

# Statuses shown under the "active" tab
ACTIVE_STATUSES: tuple[DemandStatus, ...] = ("OPEN", "IN_PROGRESS")

ViewTab = Literal["ALL", "ACTIVE", "COMPLETED", "WEEK"]

TagCategory = Literal["requester", "responsible", "contract"]
TAG_CATEGORIES: tuple[TagCategory, ...] = ("requester", "responsible", "contract")

DEMAND_ID_PREFIX = "DEM-"
DEMAND_ID_WIDTH = 3


# ---------------------------------------------------------------------------
# Defaults (overridable in .demandsync/config.yaml)
# ---------------------------------------------------------------------------

DEFAULT_SERVER_TIMEOUT = 30

DEFAULT_SYNC_CONFIG = {
    "poll_interval_seconds": 2.0,
    "incremental": True,
    # Change log entries older than this are pruned when the SQLite store opens
    "change_retention_hours": 168,
}

DEFAULT_PRESENCE_CONFIG = {
    "heartbeat_seconds": 15,
    "timeout_seconds": 45,
}

DEFAULT_ACCOUNTING_CONFIG = {
    "timezone": "UTC",
    "record_zero_duration": False,
}

DEFAULT_NOTIFICATION_CONFIG = {
    "toast_seconds": 4,
}


def get_config_dir() -> Path:
    """Get the .demandsync directory for the current project.

    Can be overridden via DEMANDSYNC_DIR environment variable (used by tests).
    """
    env_override = os.environ.get("DEMANDSYNC_DIR")
    if env_override:
        return Path(env_override)
    return Path.cwd() / ".demandsync"


def get_config_path() -> Path:
    """Get path to config.yaml."""
    return get_config_dir() / "config.yaml"


def get_logs_dir() -> Path:
    """Get the logs directory."""
    return get_config_dir() / "logs"


def get_demand_logs_dir() -> Path:
    """Get the directory holding one audit log per demand."""
    return get_logs_dir() / "demands"


def load_config() -> dict[str, Any]:
    """Load config.yaml, returning an empty dict when it does not exist."""
    config_path = get_config_path()
    if not config_path.exists():
        return {}

    with open(config_path) as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(f"{config_path} must contain a mapping, got {type(config).__name__}")
    return config


def _section(name: str, defaults: dict[str, Any]) -> dict[str, Any]:
    section = load_config().get(name) or {}
    return {**defaults, **section}


def get_server_config() -> dict[str, Any]:
    """Get server settings with environment overrides applied.

    Resolution order for url/api_key:
    1. DEMANDSYNC_SERVER_URL / DEMANDSYNC_API_KEY env vars
    2. .demandsync/config.yaml server.url / server.api_key
    """
    server = _section("server", {"url": None, "api_key": None, "timeout": DEFAULT_SERVER_TIMEOUT})
    env_url = os.environ.get("DEMANDSYNC_SERVER_URL")
    if env_url:
        server["url"] = env_url
    env_key = os.environ.get("DEMANDSYNC_API_KEY")
    if env_key:
        server["api_key"] = env_key
    return server


def get_identity() -> str:
    """Get the presence identity for this client.

    DEMANDSYNC_IDENTITY env var, then config ``identity``, then the hostname.
    """
    env_identity = os.environ.get("DEMANDSYNC_IDENTITY")
    if env_identity:
        return env_identity
    identity = load_config().get("identity")
    return str(identity) if identity else socket.gethostname()


def get_sync_config() -> dict[str, Any]:
    """Get change-feed settings (poll interval, incremental application, log retention)."""
    return _section("sync", DEFAULT_SYNC_CONFIG)


def get_presence_config() -> dict[str, Any]:
    """Get presence heartbeat/timeout settings."""
    return _section("presence", DEFAULT_PRESENCE_CONFIG)


def get_accounting_config() -> dict[str, Any]:
    """Get time accounting settings (timezone, zero-duration policy)."""
    return _section("accounting", DEFAULT_ACCOUNTING_CONFIG)


def get_notification_config() -> dict[str, Any]:
    """Get notification settings."""
    return _section("notifications", DEFAULT_NOTIFICATION_CONFIG)
