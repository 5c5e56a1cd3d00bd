"""Error taxonomy for the synchronization and time-accounting core.

Store-layer failures never corrupt the local cache. They are caught at the
call site, logged, and surfaced as a transient notification; the next change
notification or local write attempts again.
"""


class DemandSyncError(Exception):
    """Base exception for all demandsync errors."""


class TransientNetworkError(DemandSyncError):
    """A read or write to the store failed. Retry is deferred to the next triggering event."""


class StaleWriteLoss(DemandSyncError):
    """A local change was overwritten by a later snapshot before it was confirmed."""

    def __init__(self, message: str, demand_id: str | None = None):
        super().__init__(message)
        self.demand_id = demand_id


class AccountingLossRisk(DemandSyncError):
    """Elapsed time was computed but could not be durably recorded."""

    def __init__(self, message: str, demand_id: str, elapsed_seconds: int):
        super().__init__(message)
        self.demand_id = demand_id
        self.elapsed_seconds = elapsed_seconds


class OrderingDrift(DemandSyncError):
    """Renumbering a filtered subset left duplicate order values in the full collection."""

    def __init__(self, message: str, ties: dict[int, list[str]]):
        super().__init__(message)
        self.ties = ties


class InvalidTransition(DemandSyncError):
    """A timer operation was requested from the wrong state."""

    def __init__(self, demand_id: str, operation: str, state: str):
        super().__init__(f"Cannot {operation} {demand_id}: timer is {state}")
        self.demand_id = demand_id
        self.operation = operation
        self.state = state


class UnknownDemand(DemandSyncError):
    """The demand id is not present in the current snapshot."""

    def __init__(self, demand_id: str):
        super().__init__(f"Demand {demand_id} not found")
        self.demand_id = demand_id
