"""Polling change feed.

Turns any source exposing ``changes_since(cursor) -> (cursor, events)`` and
``latest_revision()`` into a subscription: a background thread polls on an
interval and hands each collection's batch of events to the callback. Poll
failures are logged and retried on the next tick; there is no backoff.
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)


class ChangeFeed:
    """Background poller delivering change events per collection.

    Args:
        source: Object with changes_since(cursor) -> (new_cursor, events)
            and latest_revision() -> cursor
        collections: Collections the callback cares about
        callback: Called as callback(collection, events)
        interval: Seconds between polls
        cursor: Starting cursor. When None, start() pins it to the source's
            latest revision before returning, so every write made after
            start() is dispatched.
    """

    def __init__(
        self,
        source: Any,
        collections: Iterable[str],
        callback: Callable[[str, list], None],
        interval: float = 2.0,
        cursor: int | None = None,
    ):
        self.source = source
        self.collections = set(collections)
        self.callback = callback
        self.interval = interval
        self.cursor = cursor
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._missed_baseline = False

    def start(self) -> None:
        if self._thread is not None:
            return
        if self.cursor is None and not self._baseline():
            self._missed_baseline = True
        self._thread = threading.Thread(target=self._run, name="demandsync-change-feed", daemon=True)
        self._thread.start()

    def close(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.interval + 1)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.poll_once()

    def _baseline(self) -> bool:
        try:
            self.cursor = self.source.latest_revision()
        except Exception as e:
            logger.warning("Change feed baseline failed (will retry next tick): %s", e)
            return False
        return True

    def poll_once(self) -> int:
        """Poll the source once and dispatch what changed.

        Returns:
            Number of events dispatched (a refetch request counts as one)
        """
        if self.cursor is None:
            if not self._baseline() or not self._missed_baseline:
                return 0
            # Writes between start() and now were not tracked; ask for a full refetch
            self._missed_baseline = False
            return self._dispatch({c: [] for c in sorted(self.collections)})

        try:
            new_cursor, events = self.source.changes_since(self.cursor)
        except Exception as e:
            logger.warning("Change poll failed (will retry next tick): %s", e)
            return 0

        self.cursor = new_cursor

        grouped: dict[str, list] = defaultdict(list)
        for event in events:
            if event.collection in self.collections:
                grouped[event.collection].append(event)

        return self._dispatch(grouped)

    def _dispatch(self, grouped: dict[str, list]) -> int:
        dispatched = 0
        for collection, batch in grouped.items():
            try:
                self.callback(collection, batch)
                dispatched += max(len(batch), 1)
            except Exception:
                logger.exception("Change callback failed for %s", collection)
        return dispatched
