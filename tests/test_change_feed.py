"""Tests for the polling change feed."""

from unittest.mock import MagicMock

from demandsync.change_feed import ChangeFeed
from demandsync.errors import TransientNetworkError
from demandsync.store import ChangeEvent


def _event(collection, row_id, revision):
    return ChangeEvent(collection, "update", row_id, revision)


class TestChangeFeed:
    def test_first_poll_sets_baseline(self):
        source = MagicMock()
        source.latest_revision.return_value = 5
        callback = MagicMock()

        feed = ChangeFeed(source, ["demands"], callback)

        assert feed.poll_once() == 0
        assert feed.cursor == 5
        source.changes_since.assert_not_called()
        callback.assert_not_called()

    def test_start_pins_cursor_before_returning(self):
        source = MagicMock()
        source.latest_revision.return_value = 4
        source.changes_since.return_value = (5, [_event("demands", "DEM-002", 5)])
        callback = MagicMock()
        feed = ChangeFeed(source, ["demands"], callback, interval=60)

        feed.start()
        try:
            assert feed.cursor == 4
            assert feed.poll_once() == 1
        finally:
            feed.close()

        source.changes_since.assert_called_once_with(4)
        assert callback.call_args.args[0] == "demands"

    def test_failed_start_baseline_requests_refetch(self):
        source = MagicMock()
        source.latest_revision.side_effect = [TransientNetworkError("down"), 9]
        callback = MagicMock()
        feed = ChangeFeed(source, ["demands", "time_entries"], callback, interval=60)

        feed.start()
        try:
            assert feed.cursor is None
            assert feed.poll_once() == 2
        finally:
            feed.close()

        assert feed.cursor == 9
        assert [call.args for call in callback.call_args_list] == [("demands", []), ("time_entries", [])]

    def test_groups_by_collection(self):
        source = MagicMock()
        source.changes_since.return_value = (
            8,
            [
                _event("demands", "DEM-001", 6),
                _event("time_entries", "e1", 7),
                _event("demands", "DEM-002", 8),
                _event("presence", "ana", 8),
            ],
        )
        callback = MagicMock()
        feed = ChangeFeed(source, ["demands", "time_entries"], callback, cursor=5)

        assert feed.poll_once() == 3

        source.changes_since.assert_called_once_with(5)
        batches = {call.args[0]: [e.row_id for e in call.args[1]] for call in callback.call_args_list}
        assert batches == {"demands": ["DEM-001", "DEM-002"], "time_entries": ["e1"]}

    def test_poll_failure_keeps_cursor(self):
        source = MagicMock()
        source.changes_since.side_effect = TransientNetworkError("down")
        feed = ChangeFeed(source, ["demands"], MagicMock(), cursor=3)

        assert feed.poll_once() == 0
        assert feed.cursor == 3

    def test_callback_failure_does_not_stop_other_collections(self):
        source = MagicMock()
        source.changes_since.return_value = (2, [_event("demands", "DEM-001", 1), _event("time_entries", "e1", 2)])
        seen = []

        def callback(collection, events):
            if collection == "demands":
                raise RuntimeError("boom")
            seen.append(collection)

        feed = ChangeFeed(source, ["demands", "time_entries"], callback, cursor=0)

        assert feed.poll_once() == 1
        assert seen == ["time_entries"]
        assert feed.cursor == 2

    def test_start_and_close(self):
        source = MagicMock()
        source.latest_revision.return_value = 0
        source.changes_since.return_value = (0, [])
        feed = ChangeFeed(source, ["demands"], MagicMock(), interval=0.01)

        feed.start()
        feed.close()

        assert not feed._thread.is_alive()
