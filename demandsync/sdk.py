"""Store initialization and client identity.

This module provides the process-wide store adapter and presence channel,
built from .demandsync/config.yaml.
"""

from typing import Optional

from .config import (
    get_accounting_config,
    get_identity,
    get_notification_config,
    get_presence_config,
    get_server_config,
    get_sync_config,
)
from .notifications import Notifier
from .presence import HttpPresenceChannel, PresenceChannel, PresenceHub, SqlitePresenceChannel
from .store import HttpStore, RecordStore
from .workspace import DemandWorkspace

# Global store instance (lazy-initialized)
_store: Optional[RecordStore] = None
_client = None


def get_store() -> RecordStore:
    """Get or initialize the store adapter.

    The backend is chosen in this order:
    1. DEMANDSYNC_SERVER_URL env var or server.url in config.yaml -> HTTP store
    2. Otherwise a SQLite file at .demandsync/store.db

    Raises:
        RuntimeError: If the store could not be initialized
    """
    global _store, _client

    if _store is not None:
        return _store

    server = get_server_config()
    sync = get_sync_config()
    poll_interval = float(sync["poll_interval_seconds"])

    try:
        if server.get("url"):
            from demandsync_sdk import StoreClient

            _client = StoreClient(
                server_url=server["url"],
                api_key=server.get("api_key"),
                timeout=int(server.get("timeout") or 30),
            )
            _store = HttpStore(_client, poll_interval=poll_interval)
        else:
            from .sqlite_store import SqliteStore

            retention = sync.get("change_retention_hours")
            _store = SqliteStore(
                poll_interval=poll_interval,
                retention_seconds=float(retention) * 3600 if retention is not None else None,
            )
    except Exception as e:
        raise RuntimeError(f"Failed to initialize store: {e}")

    return _store


def get_presence_channel() -> PresenceChannel:
    """Presence over whichever backend get_store() chose.

    Heartbeats go to the HTTP server or to the presence table of the shared
    SQLite file, so every client of the same store sees the same roster. Any
    other store falls back to an in-process hub.
    """
    store = get_store()
    presence = get_presence_config()
    heartbeat = float(presence["heartbeat_seconds"])
    if _client is not None:
        return HttpPresenceChannel(_client, interval=heartbeat)

    from .sqlite_store import SqliteStore

    if isinstance(store, SqliteStore):
        return SqlitePresenceChannel(
            store, interval=heartbeat, timeout_seconds=float(presence["timeout_seconds"])
        )
    return PresenceHub(timeout_seconds=float(presence["timeout_seconds"])).channel()


def build_workspace(notifier: Optional[Notifier] = None) -> DemandWorkspace:
    """Create a workspace wired to the configured store."""
    accounting = get_accounting_config()
    if notifier is None:
        notifier = Notifier(toast_seconds=float(get_notification_config()["toast_seconds"]))
    return DemandWorkspace(
        get_store(),
        identity=get_identity(),
        notifier=notifier,
        timezone=str(accounting["timezone"]),
        record_zero_duration=bool(accounting["record_zero_duration"]),
        incremental=bool(get_sync_config()["incremental"]),
    )


def reset_store() -> None:
    """Forget the cached store (tests switch configs between cases)."""
    global _store, _client
    if _client is not None:
        _client.close()
    _store = None
    _client = None
