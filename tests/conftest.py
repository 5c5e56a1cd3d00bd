"""Shared test fixtures for demandsync tests."""

from datetime import datetime, timedelta, timezone

import pytest

from demandsync.store import MemoryStore
from demandsync.workspace import DemandWorkspace

T0 = datetime(2025, 10, 10, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock; tests advance it instead of sleeping."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture(autouse=True)
def demandsync_dir(tmp_path, monkeypatch):
    """Point config, logs and the SQLite file at a temp directory."""
    config_dir = tmp_path / ".demandsync"
    monkeypatch.setenv("DEMANDSYNC_DIR", str(config_dir))
    for var in ("DEMANDSYNC_SERVER_URL", "DEMANDSYNC_API_KEY", "DEMANDSYNC_IDENTITY"):
        monkeypatch.delenv(var, raising=False)
    yield config_dir

    from demandsync import sdk
    sdk.reset_store()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def make_workspace(tmp_path, clock):
    """Factory for workspaces (one per simulated client) on a shared store."""
    opened = []

    def _make(store, identity="ana", **kwargs):
        ws = DemandWorkspace(
            store,
            identity=identity,
            logs_dir=tmp_path / "logs" / identity,
            clock=clock,
            **kwargs,
        )
        ws.open()
        opened.append(ws)
        return ws

    yield _make
    for ws in opened:
        ws.close()


@pytest.fixture
def workspace(store, make_workspace):
    return make_workspace(store)
