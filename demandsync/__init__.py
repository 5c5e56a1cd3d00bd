"""Demand synchronization and time-accounting core.

Keeps every client's view of shared demand records consistent with the
store, runs per-demand work timers, turns closed sessions into per-day
time entries, and maintains the manual ordering used by list and board
views.

Example:
    >>> from demandsync.store import MemoryStore
    >>> from demandsync.workspace import DemandWorkspace
    >>> ws = DemandWorkspace(MemoryStore(), identity="ana")
    >>> ws.open()
    True
"""

__version__ = "0.1.0"
