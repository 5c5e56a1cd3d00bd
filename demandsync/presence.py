"""Ephemeral online roster.

Each client announces its identity on a presence channel. Whenever the
membership changes, the channel delivers the complete current roster (never
a diff) and the tracker replaces its view wholesale.

Members must keep heartbeating. A member whose last heartbeat is older than
the timeout is evicted, so a client that vanished without untracking drops
off the roster eventually.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable

from demandsync_sdk import StoreClient
from demandsync_sdk.exceptions import StoreError

from .errors import DemandSyncError
from .models import PresenceMember, format_timestamp
from .sqlite_store import SqliteStore

logger = logging.getLogger(__name__)

SyncCallback = Callable[[list[PresenceMember]], None]


class PresenceChannel:
    """Contract a presence transport provides."""

    def track(self, identity: str) -> None:
        raise NotImplementedError

    def heartbeat(self, identity: str) -> None:
        raise NotImplementedError

    def untrack(self, identity: str) -> None:
        raise NotImplementedError

    def on_sync(self, callback: SyncCallback) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Drop the connection without untracking (ungraceful disconnect)."""


class PresenceHub:
    """In-process presence server shared by several channels.

    Args:
        timeout_seconds: Heartbeat age after which a member is evicted
        clock: Source of "now"
    """

    def __init__(self, timeout_seconds: float = 45, clock: Callable[[], datetime] | None = None):
        self.timeout = timedelta(seconds=timeout_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._members: dict[str, PresenceMember] = {}
        self._listeners: list[SyncCallback] = []

    def channel(self) -> "MemoryPresenceChannel":
        return MemoryPresenceChannel(self)

    @property
    def members(self) -> list[PresenceMember]:
        with self._lock:
            return sorted(self._members.values(), key=lambda m: m.identity)

    def join(self, identity: str) -> None:
        now = self._clock()
        with self._lock:
            existing = self._members.get(identity)
            joined = existing.joined_at if existing else now
            self._members[identity] = PresenceMember(identity, joined_at=joined, last_seen=now)
            changed = existing is None
        if changed:
            logger.info("Presence: %s joined", identity)
            self._broadcast()

    def heartbeat(self, identity: str) -> None:
        """Refresh last_seen; an evicted member that heartbeats again rejoins."""
        self.join(identity)

    def leave(self, identity: str) -> None:
        with self._lock:
            removed = self._members.pop(identity, None)
        if removed is not None:
            logger.info("Presence: %s left", identity)
            self._broadcast()

    def sweep(self, now: datetime | None = None) -> list[str]:
        """Evict members whose last heartbeat is older than the timeout.

        Returns:
            Identities evicted
        """
        now = now or self._clock()
        with self._lock:
            expired = [
                identity for identity, member in self._members.items()
                if (member.last_seen or member.joined_at) + self.timeout <= now
            ]
            for identity in expired:
                del self._members[identity]
        if expired:
            logger.info("Presence: evicted %s after timeout", ", ".join(expired))
            self._broadcast()
        return expired

    def subscribe(self, callback: SyncCallback) -> None:
        with self._lock:
            self._listeners.append(callback)
        callback(self.members)

    def unsubscribe(self, callback: SyncCallback) -> None:
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def _broadcast(self) -> None:
        roster = self.members
        with self._lock:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(list(roster))
            except Exception:
                logger.exception("Presence listener failed")


class MemoryPresenceChannel(PresenceChannel):
    """One client's connection to a PresenceHub."""

    def __init__(self, hub: PresenceHub):
        self.hub = hub
        self._callbacks: list[SyncCallback] = []

    def track(self, identity: str) -> None:
        self.hub.join(identity)

    def heartbeat(self, identity: str) -> None:
        self.hub.heartbeat(identity)

    def untrack(self, identity: str) -> None:
        self.hub.leave(identity)

    def on_sync(self, callback: SyncCallback) -> None:
        self._callbacks.append(callback)
        self.hub.subscribe(callback)

    def close(self) -> None:
        for callback in self._callbacks:
            self.hub.unsubscribe(callback)
        self._callbacks.clear()


class PollingPresenceChannel(PresenceChannel):
    """Presence against a shared roster that is polled.

    A background thread heartbeats every ``interval`` seconds and polls the
    roster; the sync callbacks fire only when the set of identities changed.
    The backing roster evicts members whose heartbeats stop. Subclasses
    supply the transport.
    """

    def __init__(self, interval: float = 15):
        self.interval = interval
        self._identity: str | None = None
        self._joined_at: datetime | None = None
        self._callbacks: list[SyncCallback] = []
        self._last_roster: tuple[str, ...] | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def _send_heartbeat(self, identity: str, joined_at: datetime) -> None:
        raise NotImplementedError

    def _send_untrack(self, identity: str) -> None:
        raise NotImplementedError

    def _fetch_members(self) -> list[PresenceMember]:
        raise NotImplementedError

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def track(self, identity: str) -> None:
        self._identity = identity
        self._joined_at = self._now()
        self.heartbeat(identity)
        self.poll_once()
        if self._thread is None:
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name="demandsync-presence", daemon=True)
            self._thread.start()

    def heartbeat(self, identity: str) -> None:
        try:
            self._send_heartbeat(identity, self._joined_at or self._now())
        except (DemandSyncError, StoreError) as e:
            logger.warning("Presence heartbeat failed for %s: %s", identity, e)

    def untrack(self, identity: str) -> None:
        self.close()
        self._identity = None
        try:
            self._send_untrack(identity)
        except (DemandSyncError, StoreError) as e:
            logger.warning("Presence untrack failed for %s: %s", identity, e)

    def on_sync(self, callback: SyncCallback) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def close(self) -> None:
        """Stop heartbeating and drop listeners; track() may be called again."""
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.interval + 1)
        self._thread = None
        self._callbacks.clear()
        self._last_roster = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            if self._identity:
                self.heartbeat(self._identity)
            self.poll_once()

    def poll_once(self) -> bool:
        """Fetch the roster and deliver it if membership changed.

        Returns:
            True if callbacks were invoked
        """
        try:
            members = sorted(self._fetch_members(), key=lambda m: m.identity)
        except (DemandSyncError, StoreError) as e:
            logger.warning("Presence poll failed: %s", e)
            return False

        roster = tuple(m.identity for m in members)
        if roster == self._last_roster:
            return False
        self._last_roster = roster
        for callback in list(self._callbacks):
            try:
                callback(list(members))
            except Exception:
                logger.exception("Presence listener failed")
        return True


class HttpPresenceChannel(PollingPresenceChannel):
    """Presence over the store's HTTP API; the server evicts stale members."""

    def __init__(self, client: StoreClient, interval: float = 15):
        super().__init__(interval=interval)
        self.client = client

    def _send_heartbeat(self, identity: str, joined_at: datetime) -> None:
        self.client.presence.heartbeat(identity, joined_at=format_timestamp(joined_at))

    def _send_untrack(self, identity: str) -> None:
        self.client.presence.untrack(identity)

    def _fetch_members(self) -> list[PresenceMember]:
        return [PresenceMember.from_dict(m) for m in self.client.presence.list()]


class SqlitePresenceChannel(PollingPresenceChannel):
    """Presence rows in a shared SQLite store.

    Every client sharing the database file heartbeats into its ``presence``
    table; reading the roster evicts rows older than ``timeout_seconds``.

    Args:
        store: Shared SQLite store
        interval: Heartbeat and poll cadence in seconds
        timeout_seconds: Heartbeat age after which a member is evicted
        clock: Source of "now" (defaults to the store clock)
    """

    def __init__(
        self,
        store: SqliteStore,
        interval: float = 15,
        timeout_seconds: float = 45,
        clock: Callable[[], datetime] | None = None,
    ):
        super().__init__(interval=interval)
        self.store = store
        self.timeout_seconds = timeout_seconds
        self._clock = clock or store.server_now

    def _now(self) -> datetime:
        return self._clock()

    def _send_heartbeat(self, identity: str, joined_at: datetime) -> None:
        self.store.presence_heartbeat(identity, joined_at, self._now())

    def _send_untrack(self, identity: str) -> None:
        self.store.presence_untrack(identity)

    def _fetch_members(self) -> list[PresenceMember]:
        return self.store.presence_members(self.timeout_seconds, self._now())


class PresenceTracker:
    """Local online-roster view for one identity.

    Args:
        channel: Presence transport
        identity: This client's presence key
    """

    def __init__(self, channel: PresenceChannel, identity: str):
        self.channel = channel
        self.identity = identity
        self._lock = threading.Lock()
        self._roster: tuple[PresenceMember, ...] = ()
        self._listeners: list[SyncCallback] = []
        self.connected = False

    @property
    def roster(self) -> tuple[PresenceMember, ...]:
        with self._lock:
            return self._roster

    @property
    def identities(self) -> list[str]:
        return [m.identity for m in self.roster]

    def connect(self) -> None:
        """Listen for roster syncs, then announce this identity."""
        if self.connected:
            return
        self.channel.on_sync(self._on_sync)
        self.channel.track(self.identity)
        self.connected = True

    def heartbeat(self) -> None:
        if self.connected:
            self.channel.heartbeat(self.identity)

    def disconnect(self) -> None:
        """Graceful disconnect: leave the roster and stop listening."""
        if not self.connected:
            return
        self.channel.untrack(self.identity)
        self.channel.close()
        self.connected = False
        with self._lock:
            self._roster = ()

    def subscribe(self, listener: SyncCallback) -> None:
        self._listeners.append(listener)

    def _on_sync(self, members: list[PresenceMember]) -> None:
        with self._lock:
            self._roster = tuple(members)
        logger.debug("Presence roster for %s: %s", self.identity, [m.identity for m in members])
        for listener in list(self._listeners):
            try:
                listener(list(members))
            except Exception:
                logger.exception("Roster listener failed")
