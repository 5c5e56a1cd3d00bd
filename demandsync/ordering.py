"""Manual ordering of demands.

Every demand carries an integer ``order``; every order-sensitive view sorts
ascending by it (ties broken by creation sequence, see cache.canonical_order).

A reorder works on the subset of demands the user can see: the dragged
demand is taken out, put back immediately before the drop target, and the
subset is renumbered 0..n-1. Demands outside the subset keep their values,
so a reorder inside a filtered view can leave duplicate order values in the
full collection. That is reported as OrderingDrift and left alone.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence

from .cache import CacheSnapshot, canonical_order
from .config import DEMANDS, DemandStatus
from .demand_logger import DemandLogger
from .errors import OrderingDrift, UnknownDemand
from .models import DemandRecord
from .notifications import Notifier
from .reconciler import Reconciler
from .store import RecordStore

logger = logging.getLogger(__name__)


def reorder_ids(ids: Sequence[str], dragged_id: str, target_id: str | None) -> list[str]:
    """Sequence after dropping ``dragged_id`` immediately before ``target_id``.

    A target of None (or one not in ``ids``) drops at the end. Dropping a
    demand on itself leaves the sequence unchanged.
    """
    if dragged_id not in ids or dragged_id == target_id:
        return list(ids)
    remaining = [i for i in ids if i != dragged_id]
    if target_id is None or target_id not in remaining:
        return remaining + [dragged_id]
    index = remaining.index(target_id)
    return remaining[:index] + [dragged_id] + remaining[index:]


def find_order_ties(records: Iterable[DemandRecord]) -> dict[int, list[str]]:
    """Order values held by more than one demand, with the ids holding them."""
    by_order: dict[int, list[str]] = {}
    for record in canonical_order(records):
        by_order.setdefault(record.order, []).append(record.id)
    return {order: ids for order, ids in by_order.items() if len(ids) > 1}


def next_order(snapshot: CacheSnapshot) -> int:
    """Order for a newly created demand: the current collection size."""
    return len(snapshot)


@dataclass
class ReorderResult:
    """Outcome of one reorder.

    Attributes:
        sequence: Visible ids in their new order
        changed: id -> new order, for the demands that were written
        drift: Ties left in the full collection afterwards, if any
    """

    sequence: list[str]
    changed: dict[str, int] = field(default_factory=dict)
    drift: OrderingDrift | None = None


class OrderManager:
    """Applies reorders and status moves to the store.

    Args:
        store: Record store adapter
        reconciler: Refreshed after every batch of writes
        notifier: Receives a warning when a reorder leaves ties behind
        actor: Identity recorded in the audit log
    """

    def __init__(
        self,
        store: RecordStore,
        reconciler: Reconciler,
        notifier: Notifier | None = None,
        actor: str | None = None,
        logger_factory: Callable[[str], DemandLogger] | None = None,
    ):
        self.store = store
        self.reconciler = reconciler
        self.notifier = notifier
        self._logger_factory = logger_factory or (lambda demand_id: DemandLogger(demand_id, actor=actor))
        self.drift: list[OrderingDrift] = []

    @property
    def snapshot(self) -> CacheSnapshot:
        return self.reconciler.cache.snapshot

    def reorder(
        self,
        visible: Sequence[DemandRecord],
        dragged_id: str,
        target_id: str | None,
    ) -> ReorderResult:
        """Drop ``dragged_id`` before ``target_id`` within the visible subset.

        Only demands whose order value actually changes are written.
        """
        ordered = canonical_order(visible)
        ids = [r.id for r in ordered]
        if dragged_id not in ids:
            raise UnknownDemand(dragged_id)

        sequence = reorder_ids(ids, dragged_id, target_id)
        return self._renumber(ordered, sequence)

    def move(
        self,
        demand_id: str,
        new_status: DemandStatus,
        target_id: str | None = None,
        visible: Sequence[DemandRecord] | None = None,
    ) -> ReorderResult | None:
        """Kanban drop: change status, and reorder when dropped on a card.

        Without a target only ``status`` is written and ``order`` is untouched.
        With a target the subset reordered is ``visible`` (defaults to the
        destination column of the current snapshot).
        """
        record = self.snapshot.get(demand_id)
        if record is None:
            raise UnknownDemand(demand_id)

        if record.status != new_status:
            row = self.store.update(DEMANDS, demand_id, {"status": new_status})
            self.reconciler.record_write(DEMANDS, row)
            self._logger_factory(demand_id).log_status_changed(record.status, new_status, reason="move")
            logger.info("Moved %s from %s to %s", demand_id, record.status, new_status)
            self.reconciler.refresh()

        if target_id is None:
            return None

        if visible is None:
            visible = [r for r in self.snapshot.demands if r.status == new_status]
        elif demand_id not in {r.id for r in visible}:
            visible = list(visible) + [self.snapshot.get(demand_id) or record]
        return self.reorder(visible, demand_id, target_id)

    def move_up(self, visible: Sequence[DemandRecord], demand_id: str) -> ReorderResult:
        """Swap with the previous visible demand (no-op at the top)."""
        return self._shift(visible, demand_id, -1)

    def move_down(self, visible: Sequence[DemandRecord], demand_id: str) -> ReorderResult:
        """Swap with the next visible demand (no-op at the bottom)."""
        return self._shift(visible, demand_id, 1)

    def _shift(self, visible: Sequence[DemandRecord], demand_id: str, step: int) -> ReorderResult:
        ordered = canonical_order(visible)
        ids = [r.id for r in ordered]
        if demand_id not in ids:
            raise UnknownDemand(demand_id)
        index = ids.index(demand_id)
        other = index + step
        if 0 <= other < len(ids):
            ids[index], ids[other] = ids[other], ids[index]
        return self._renumber(ordered, ids)

    def _renumber(self, ordered: list[DemandRecord], sequence: list[str]) -> ReorderResult:
        current = {r.id: r.order for r in ordered}
        result = ReorderResult(sequence=sequence)
        try:
            for position, demand_id in enumerate(sequence):
                if current[demand_id] == position:
                    continue
                row = self.store.update(DEMANDS, demand_id, {"order": position})
                self.reconciler.record_write(DEMANDS, row)
                self._logger_factory(demand_id).log_reordered(current[demand_id], position)
                result.changed[demand_id] = position
        finally:
            if result.changed:
                self.reconciler.refresh()

        if result.changed:
            logger.info("Renumbered %s of %s visible demands", len(result.changed), len(sequence))
        result.drift = self.check_drift()
        return result

    def check_drift(self) -> OrderingDrift | None:
        """Report duplicate order values in the full collection, if any."""
        ties = find_order_ties(self.snapshot.demands)
        if not ties:
            return None
        detail = ", ".join(f"{order}: {'/'.join(ids)}" for order, ids in sorted(ties.items()))
        drift = OrderingDrift(f"Duplicate order values after reorder ({detail})", ties)
        self.drift.append(drift)
        logger.warning("%s", drift)
        if self.notifier is not None:
            self.notifier.notify(str(drift), severity="alert")
        return drift
