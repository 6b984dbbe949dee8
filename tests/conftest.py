# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from itodo_sync.core.clock import ManualClock
from itodo_sync.core.network import NetworkMonitor
from itodo_sync.core.session import SessionState
from itodo_sync.core.state import AppState
from itodo_sync.storage.database import SyncDatabase
from itodo_sync.storage.local_store import LocalStore
from itodo_sync.storage.queue_store import OperationQueue
from itodo_sync.sync.engine import SyncEngine

from .fakes import FakeRemote


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """Minimal settings object compatible with SyncEngine.from_settings and the CLI."""
    return SimpleNamespace(
        app_name="itodo-sync-test",
        log_level="DEBUG",
        data_dir=tmp_path,
        db_path=tmp_path / "itodo.sqlite3",
        remote_url="http://remote.test",
        remote_api_key="anon",
        remote_timeout_seconds=5.0,
        remote_call_timeout_seconds=5.0,
        max_retries=3,
        drain_item_delay_seconds=0.0,
        # Long enough that a follow-up drain never fires inside a test.
        retry_backoff_seconds=3600.0,
        remote_configured=False,
        start_online=True,
        network_probe_interval_seconds=30.0,
        user_id=None,
        access_token=None,
    )


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(start_ms=1_700_000_000_000)


@pytest.fixture()
def db(tmp_path: Path) -> SyncDatabase:
    return SyncDatabase(tmp_path / "itodo.sqlite3")


@pytest.fixture()
def store(db: SyncDatabase, clock: ManualClock) -> LocalStore:
    return LocalStore(db, clock)


@pytest.fixture()
def queue(db: SyncDatabase, clock: ManualClock) -> OperationQueue:
    return OperationQueue(db, clock)


@pytest.fixture()
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture()
def session() -> SessionState:
    return SessionState()


@pytest.fixture()
def network() -> NetworkMonitor:
    return NetworkMonitor(online=True)


@pytest.fixture()
def engine(
    db: SyncDatabase,
    remote: FakeRemote,
    session: SessionState,
    network: NetworkMonitor,
    clock: ManualClock,
) -> SyncEngine:
    """SyncEngine wired to real SQLite and the in-memory FakeRemote."""
    return SyncEngine(
        db,
        remote,
        session=session,
        network=network,
        clock=clock,
        call_timeout_seconds=5.0,
        retry_backoff_seconds=3600.0,
    )


@pytest.fixture()
def state(
    settings: SimpleNamespace,
    engine: SyncEngine,
    session: SessionState,
    network: NetworkMonitor,
    remote: FakeRemote,
) -> AppState:
    return AppState(
        settings=settings,
        engine=engine,
        session=session,
        network=network,
        remote=remote,
        remote_enabled=True,
    )
