"""Tests for manual ordering and reordering."""

import pytest

from demandsync.config import DEMANDS
from demandsync.errors import UnknownDemand
from demandsync.models import DemandRecord
from demandsync.ordering import find_order_ties, next_order, reorder_ids


@pytest.fixture
def abc(workspace):
    """Three demands A, B, C with orders 0, 1, 2."""
    return [workspace.create_demand(title) for title in ("A", "B", "C")]


def _orders(store):
    return {row["id"]: row["order"] for row in store.fetch_all(DEMANDS)}


class TestReorderIds:
    def test_drop_before_target(self):
        assert reorder_ids(["A", "B", "C"], "C", "A") == ["C", "A", "B"]

    def test_drop_before_later_target(self):
        assert reorder_ids(["A", "B", "C"], "A", "C") == ["B", "A", "C"]

    def test_drop_on_self(self):
        assert reorder_ids(["A", "B", "C"], "B", "B") == ["A", "B", "C"]

    def test_no_target_appends(self):
        assert reorder_ids(["A", "B", "C"], "A", None) == ["B", "C", "A"]

    def test_repeat_is_noop(self):
        once = reorder_ids(["A", "B", "C"], "C", "A")
        assert reorder_ids(once, "C", "A") == once


class TestOrderManager:
    """Reordering renumbers the visible subset sequentially from 0."""

    def test_move_last_before_first(self, workspace, store, abc):
        a, b, c = abc

        result = workspace.reorder(workspace.snapshot.demands, c, a)

        assert workspace.snapshot.ids == [c, a, b]
        assert _orders(store) == {c: 0, a: 1, b: 2}
        assert result.sequence == [c, a, b]
        assert result.drift is None

    def test_identical_reorder_twice_is_noop(self, workspace, store, abc):
        a, b, c = abc
        workspace.reorder(workspace.snapshot.demands, c, a)
        revisions = {row["id"]: row["revision"] for row in store.fetch_all(DEMANDS)}

        result = workspace.reorder(workspace.snapshot.demands, c, a)

        assert result.changed == {}
        assert workspace.snapshot.ids == [c, a, b]
        assert {row["id"]: row["revision"] for row in store.fetch_all(DEMANDS)} == revisions

    def test_only_changed_orders_written(self, workspace, abc):
        a, b, c = abc
        result = workspace.reorder(workspace.snapshot.demands, c, b)
        assert result.changed == {c: 1, b: 2}

    def test_reorder_is_audited(self, workspace, abc):
        a, b, c = abc
        workspace.reorder(workspace.snapshot.demands, c, a)

        events = workspace.audit_log(c).get_events("REORDERED")
        assert events[-1]["from"] == "2"
        assert events[-1]["to"] == "0"

    def test_filtered_view_leaves_ties(self, workspace, store, abc):
        a, b, c = abc
        workspace.update_demand(b, status="COMPLETED")
        visible = workspace.visible(tab="ACTIVE")
        assert [r.id for r in visible] == [a, c]

        result = workspace.reorder(visible, c, a)

        assert _orders(store) == {c: 0, a: 1, b: 1}
        assert result.drift is not None
        assert result.drift.ties == {1: [a, b]}
        assert workspace.ordering.drift == [result.drift]
        assert any(t.severity == "alert" for t in workspace.notifier.toasts)

    def test_find_order_ties(self):
        records = [
            DemandRecord(id="DEM-001", title="a", order=0),
            DemandRecord(id="DEM-002", title="b", order=1),
            DemandRecord(id="DEM-003", title="c", order=1),
        ]
        assert find_order_ties(records) == {1: ["DEM-002", "DEM-003"]}
        assert find_order_ties(records[:2]) == {}

    def test_next_order_is_collection_size(self, workspace, abc):
        assert next_order(workspace.snapshot) == 3

    def test_unknown_dragged_id(self, workspace, abc):
        with pytest.raises(UnknownDemand):
            workspace.ordering.reorder(workspace.snapshot.demands, "DEM-999", abc[0])


class TestMove:
    """Kanban drops change status, and order only with a target card."""

    def test_status_only_drop_keeps_order(self, workspace, store, abc):
        a, b, c = abc
        before = _orders(store)

        assert workspace.move(a, "BLOCKED") is True

        assert workspace.snapshot.get(a).status == "BLOCKED"
        assert _orders(store) == before

    def test_drop_on_card_reorders_destination_column(self, workspace, store, abc):
        a, b, c = abc
        workspace.move(b, "IN_PROGRESS")
        workspace.move(c, "IN_PROGRESS", target_id=b)

        column = workspace.columns()["IN_PROGRESS"]
        assert [r.id for r in column] == [c, b]
        assert workspace.snapshot.get(c).status == "IN_PROGRESS"

    def test_status_change_is_audited(self, workspace, abc):
        workspace.move(abc[0], "COMPLETED")
        events = workspace.audit_log(abc[0]).get_events("STATUS_CHANGED")
        assert events[-1]["to"] == "COMPLETED"


class TestShift:
    def test_move_up_and_down(self, workspace, abc):
        a, b, c = abc

        workspace.move_up(workspace.snapshot.demands, c)
        assert workspace.snapshot.ids == [a, c, b]

        workspace.move_down(workspace.snapshot.demands, a)
        assert workspace.snapshot.ids == [c, a, b]

    def test_move_up_at_top_is_noop(self, workspace, abc):
        result = workspace.move_up(workspace.snapshot.demands, abc[0])
        assert result.changed == {}
        assert workspace.snapshot.ids == abc

    def test_failed_write_surfaces_toast(self, workspace, store, abc):
        a, b, c = abc
        store.fail_next("update", DEMANDS)

        assert workspace.reorder(workspace.snapshot.demands, c, a) is None
        assert any(t.severity == "error" for t in workspace.notifier.toasts)
