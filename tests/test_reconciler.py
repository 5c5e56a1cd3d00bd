"""Tests for the reconciler and multi-client convergence."""

import random
from unittest.mock import MagicMock

import pytest

from demandsync.cache import LocalCache
from demandsync.config import DEMANDS, SUB_ACTIVITIES, TIME_ENTRIES
from demandsync.models import AccountingEvent
from demandsync.notifications import Notifier
from demandsync.reconciler import Reconciler
from demandsync.store import ChangeEvent, MemoryStore


def _demand(demand_id, order=0, **fields):
    return {
        "id": demand_id,
        "title": fields.pop("title", demand_id),
        "status": "OPEN",
        "order": order,
        "accumulated_seconds": 0,
        "timer_running": False,
        "timer_started_at": None,
        **fields,
    }


@pytest.fixture
def reconciler(store):
    rec = Reconciler(store, LocalCache(), Notifier())
    yield rec
    rec.stop()


class TestFullPull:
    """A full pull replaces the cache wholesale."""

    def test_initial_pull_materializes_rows(self, store, reconciler):
        store.insert(DEMANDS, _demand("DEM-001", order=1))
        store.insert(DEMANDS, _demand("DEM-002", order=0))
        store.insert(SUB_ACTIVITIES, {"id": "s1", "demand_id": "DEM-001", "title": "a", "completed": True})
        store.insert(TIME_ENTRIES, {"id": "e1", "demand_id": "DEM-001", "duration": 300, "date": "2025-10-10"})
        store.insert(TIME_ENTRIES, {"id": "e2", "demand_id": "DEM-001", "duration": 600, "date": "2025-10-10"})

        assert reconciler.start() is True

        snapshot = reconciler.cache.snapshot
        assert snapshot.ids == ["DEM-002", "DEM-001"]
        record = snapshot.get("DEM-001")
        assert dict(record.daily_logs) == {"2025-10-10": 900}
        assert [s.title for s in record.sub_activities] == ["a"]
        assert record.progress == 100

    def test_failed_pull_keeps_previous_snapshot(self, store, reconciler):
        store.insert(DEMANDS, _demand("DEM-001"))
        reconciler.start()
        before = reconciler.cache.snapshot

        store.fail_next("fetch_all", TIME_ENTRIES)
        assert reconciler.refresh() is False

        assert reconciler.cache.snapshot is before
        assert reconciler.last_error is not None
        toasts = reconciler.notifier.toasts
        assert len(toasts) == 1
        assert toasts[0].severity == "error"
        assert toasts[0].message.startswith("Sync failed")

    def test_next_trigger_recovers_after_failure(self, store, reconciler):
        reconciler.start()
        store.fail_next("fetch_all")
        assert reconciler.refresh() is False

        store.insert(DEMANDS, _demand("DEM-001"))
        assert reconciler.refresh() is True
        assert "DEM-001" in reconciler.cache.snapshot
        assert reconciler.last_error is None

    def test_stale_write_detected_after_pull(self, store, reconciler):
        store.insert(DEMANDS, _demand("DEM-001"))
        reconciler.start()

        reconciler.record_write(DEMANDS, {"id": "DEM-001", "revision": 999})
        reconciler.refresh()

        assert len(reconciler.stale_writes) == 1
        assert reconciler.stale_writes[0].demand_id == "DEM-001"

    def test_confirmed_write_is_not_stale(self, store, reconciler):
        reconciler.start()
        row = store.insert(DEMANDS, _demand("DEM-001"))
        reconciler.record_write(DEMANDS, row)
        reconciler.refresh()

        assert reconciler.stale_writes == []


class TestIncremental:
    """Row payloads are applied without refetching, guarded by revision."""

    def test_payload_event_applied_without_fetch(self, store, reconciler):
        reconciler.start()
        store.fetch_all = MagicMock(wraps=store.fetch_all)

        store.insert(DEMANDS, _demand("DEM-001", title="Created elsewhere"))

        store.fetch_all.assert_not_called()
        assert reconciler.cache.snapshot.get("DEM-001").title == "Created elsewhere"

    def test_stale_event_is_dropped(self, store, reconciler):
        row = store.insert(DEMANDS, _demand("DEM-001", title="v1"))
        reconciler.start()
        updated = store.update(DEMANDS, "DEM-001", {"title": "v2"})
        version = reconciler.cache.snapshot.version

        reconciler.apply_events([ChangeEvent(DEMANDS, "update", "DEM-001", row["revision"], row)])

        assert reconciler.cache.snapshot.get("DEM-001").title == "v2"
        assert reconciler.cache.snapshot.get("DEM-001").revision == updated["revision"]
        assert reconciler.cache.snapshot.version == version

    def test_late_update_after_delete_is_ignored(self, store, reconciler):
        row = store.insert(DEMANDS, _demand("DEM-001"))
        reconciler.start()
        store.delete(DEMANDS, "DEM-001")
        assert "DEM-001" not in reconciler.cache.snapshot

        reconciler.apply_events([ChangeEvent(DEMANDS, "update", "DEM-001", row["revision"], row)])

        assert "DEM-001" not in reconciler.cache.snapshot

    def test_coarse_notification_triggers_full_pull(self, clock):
        store = MemoryStore(clock=clock, payloads=False)
        reconciler = Reconciler(store, LocalCache(), Notifier())
        reconciler.start()
        store.fetch_all = MagicMock(wraps=store.fetch_all)

        store.insert(DEMANDS, _demand("DEM-001"))

        assert store.fetch_all.call_count == 3
        assert "DEM-001" in reconciler.cache.snapshot
        reconciler.stop()

    def test_incremental_disabled_always_pulls(self, store):
        reconciler = Reconciler(store, LocalCache(), Notifier(), incremental=False)
        reconciler.start()
        store.fetch_all = MagicMock(wraps=store.fetch_all)

        store.insert(DEMANDS, _demand("DEM-001"))

        assert store.fetch_all.called
        reconciler.stop()

    def test_unsubscribed_collection_ignored(self, reconciler):
        reconciler.start()
        assert reconciler.on_change("chat_messages", []) is True

    def test_daily_logs_recomputed_from_entries(self, store, reconciler):
        store.insert(DEMANDS, _demand("DEM-001"))
        reconciler.start()

        store.insert(TIME_ENTRIES, {"id": "e1", "demand_id": "DEM-001", "duration": 300, "date": "2025-10-10"})
        store.insert(TIME_ENTRIES, {"id": "e2", "demand_id": "DEM-001", "duration": 600, "date": "2025-10-10"})
        first = dict(reconciler.cache.snapshot.get("DEM-001").daily_logs)
        reconciler.refresh()
        second = dict(reconciler.cache.snapshot.get("DEM-001").daily_logs)

        assert first == second == {"2025-10-10": 900}


class TestAccountingChannel:
    def test_process_pending_drains_and_refreshes(self, store, reconciler):
        reconciler.start()
        version = reconciler.cache.snapshot.version
        reconciler.submit(AccountingEvent("stopped", "DEM-001", "DEM-001@x", 10, "2025-10-10"))
        reconciler.submit(AccountingEvent("finished", "DEM-002", "DEM-002@y", 20, "2025-10-10"))

        assert reconciler.process_pending() == 2
        assert reconciler.events.empty()
        assert reconciler.cache.snapshot.version == version + 1

    def test_nothing_pending(self, reconciler):
        reconciler.start()
        assert reconciler.process_pending() == 0


class TestConvergence:
    """After all notifications are processed every client holds the same state."""

    def test_clients_converge_under_shuffled_duplicated_delivery(self, clock, make_workspace):
        store = MemoryStore(clock=clock, auto_deliver=False)
        alice = make_workspace(store, identity="alice")
        bob = make_workspace(store, identity="bob")
        carol = make_workspace(store, identity="carol")

        a1 = alice.create_demand("Alpha", responsible="ana")
        b1 = bob.create_demand("Beta", contract="C-9")
        c1 = carol.create_demand("Gamma")
        assert len({a1, b1, c1}) == 3

        alice.timer.start(a1)
        clock.advance(125)
        alice.timer.stop(a1)
        bob.refresh()
        bob.set_sub_activities(b1, [{"title": "draft", "completed": True}, {"title": "send"}])
        carol.refresh()
        carol.reorder(carol.snapshot.demands, c1, a1)
        alice.update_demand(a1, title="Alpha (renamed)")
        bob.timer.start(b1)

        store.deliver_pending(shuffle=True, duplicate=True, rng=random.Random(7))

        fresh = make_workspace(store, identity="observer")
        expected = fresh.snapshot.to_state()
        assert alice.snapshot.to_state() == expected
        assert bob.snapshot.to_state() == expected
        assert carol.snapshot.to_state() == expected
        assert [r["id"] for r in expected][0] == c1

    def test_clients_converge_with_deletes(self, clock, make_workspace):
        store = MemoryStore(clock=clock, auto_deliver=False)
        alice = make_workspace(store, identity="alice")
        bob = make_workspace(store, identity="bob")

        first = alice.create_demand("Keep")
        second = alice.create_demand("Drop")
        store.deliver_pending()
        bob.update_demand(second, title="Edited before delete")
        alice.refresh()
        alice.delete_demand(second)

        store.deliver_pending(shuffle=True, duplicate=True, rng=random.Random(3))

        assert alice.snapshot.ids == [first]
        assert bob.snapshot.ids == [first]
        assert alice.snapshot.to_state() == bob.snapshot.to_state()
