"""Tests for the local cache and snapshot building."""

import dataclasses
from datetime import datetime, timezone

import pytest

from demandsync.cache import CacheSnapshot, LocalCache, build_snapshot, canonical_order, creation_key
from demandsync.models import DemandRecord


def _row(demand_id, order, **fields):
    return {"id": demand_id, "title": demand_id, "order": order, **fields}


class TestBuildSnapshot:
    """Snapshots are materialized from raw rows with derived fields recomputed."""

    def test_daily_logs_aggregated_per_demand(self):
        snapshot = build_snapshot(
            [_row("DEM-001", 0), _row("DEM-002", 1)],
            [],
            [
                {"id": "e1", "demand_id": "DEM-001", "duration": 300, "date": "2025-10-10"},
                {"id": "e2", "demand_id": "DEM-001", "duration": 600, "date": "2025-10-10"},
                {"id": "e3", "demand_id": "DEM-001", "duration": 60, "date": "2025-10-09"},
                {"id": "e4", "demand_id": "DEM-002", "duration": 5, "date": "2025-10-10"},
            ],
        )

        assert dict(snapshot.get("DEM-001").daily_logs) == {"2025-10-09": 60, "2025-10-10": 900}
        assert dict(snapshot.get("DEM-002").daily_logs) == {"2025-10-10": 5}
        assert [e.id for e in snapshot.entries_for("DEM-001")] == ["e3", "e1", "e2"]

    def test_sub_activities_sorted_by_position(self):
        snapshot = build_snapshot(
            [_row("DEM-001", 0)],
            [
                {"id": "b", "demand_id": "DEM-001", "title": "second", "position": 1},
                {"id": "a", "demand_id": "DEM-001", "title": "first", "position": 0, "completed": True},
            ],
            [],
        )

        record = snapshot.get("DEM-001")
        assert [s.title for s in record.sub_activities] == ["first", "second"]
        assert record.progress == 50

    def test_canonical_order_with_ties(self):
        snapshot = build_snapshot(
            [_row("DEM-010", 1), _row("DEM-002", 1), _row("DEM-003", 0)],
            [],
            [],
        )
        assert snapshot.ids == ["DEM-003", "DEM-002", "DEM-010"]

    def test_running_without_start_is_normalized(self):
        snapshot = build_snapshot(
            [_row("DEM-001", 0, timer_running=True, timer_started_at=None)],
            [],
            [],
        )
        record = snapshot.get("DEM-001")
        assert record.timer_running is False
        assert record.timer_state == "STOPPED"

    def test_start_timestamp_with_z_suffix(self):
        snapshot = build_snapshot(
            [_row("DEM-001", 0, timer_running=True, timer_started_at="2025-10-10T09:00:00Z")],
            [],
            [],
        )
        record = snapshot.get("DEM-001")
        assert record.timer_started_at == datetime(2025, 10, 10, 9, tzinfo=timezone.utc)
        assert record.session_token == "2025-10-10T09:00:00Z"
        assert record.to_row()["timer_started_at"] == "2025-10-10T09:00:00Z"

    def test_negative_accumulated_clamped(self):
        snapshot = build_snapshot([_row("DEM-001", 0, accumulated_seconds=-5)], [], [])
        assert snapshot.get("DEM-001").accumulated_seconds == 0


class TestSnapshot:
    def test_records_are_immutable(self):
        snapshot = build_snapshot([_row("DEM-001", 0)], [], [])
        record = snapshot.get("DEM-001")

        with pytest.raises(dataclasses.FrozenInstanceError):
            record.order = 5
        with pytest.raises(TypeError):
            record.daily_logs["2025-10-10"] = 1

    def test_default_daily_logs_are_read_only(self):
        daily_logs = {f.name: f for f in dataclasses.fields(DemandRecord)}["daily_logs"]
        assert daily_logs.default is dataclasses.MISSING

        record = DemandRecord(id="DEM-001", title="a")
        assert dict(record.daily_logs) == {}
        with pytest.raises(TypeError):
            record.daily_logs["2025-10-10"] = 1

    def test_lookup_helpers(self):
        snapshot = build_snapshot(
            [_row("DEM-001", 0), _row("DEM-002", 1, timer_running=True, timer_started_at="2025-10-10T09:00:00+00:00")],
            [],
            [],
        )
        assert "DEM-001" in snapshot
        assert "DEM-404" not in snapshot
        assert len(snapshot) == 2
        assert snapshot.get("DEM-404") is None
        assert [r.id for r in snapshot.running()] == ["DEM-002"]

    def test_creation_key(self):
        assert creation_key("DEM-002") < creation_key("DEM-010")
        assert creation_key("misc") == (0, "misc")

    def test_canonical_order_is_stable_across_input_order(self):
        records = [DemandRecord(id="DEM-002", title="b"), DemandRecord(id="DEM-001", title="a")]
        assert [r.id for r in canonical_order(records)] == ["DEM-001", "DEM-002"]
        assert [r.id for r in canonical_order(reversed(records))] == ["DEM-001", "DEM-002"]


class TestLocalCache:
    """Swaps are atomic and observed by subscribers."""

    def test_swap_returns_previous_and_notifies(self):
        cache = LocalCache()
        seen = []
        cache.subscribe(seen.append)
        first = cache.snapshot
        new = CacheSnapshot(version=1)

        assert cache.swap(new) is first
        assert cache.snapshot is new
        assert seen == [new]

    def test_unsubscribe(self):
        cache = LocalCache()
        seen = []
        unsubscribe = cache.subscribe(seen.append)
        unsubscribe()

        cache.swap(CacheSnapshot(version=1))
        assert seen == []

    def test_failing_listener_does_not_block_others(self):
        cache = LocalCache()
        seen = []

        def broken(_snapshot):
            raise RuntimeError("boom")

        cache.subscribe(broken)
        cache.subscribe(seen.append)
        new = CacheSnapshot(version=2)

        cache.swap(new)
        assert cache.snapshot is new
        assert seen == [new]
