"""Test configuration and fixtures."""

import pytest

from berth.concurrency import BackgroundTasks
from berth.config import Settings
from berth.sessions import SessionManager
from berth.storage import DurableStorageAdapter
from berth.sync import FileSyncEngine
from tests.fakes import FakeRuntime, FakeStore, RecordingClient


@pytest.fixture
def test_settings() -> Settings:
    """Get test settings with in-memory SQLite."""
    return Settings(
        storage={"backend": "sql", "database": {"url": "sqlite+aiosqlite:///:memory:"}},
        security={"jwt_secret": "test-secret"},
    )


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def storage(store: FakeStore) -> DurableStorageAdapter:
    return DurableStorageAdapter(store, max_concurrency=4, health_timeout=0.5)


@pytest.fixture
def tasks() -> BackgroundTasks:
    return BackgroundTasks()


@pytest.fixture
def sync(runtime: FakeRuntime, storage: DurableStorageAdapter, tasks: BackgroundTasks) -> FileSyncEngine:
    return FileSyncEngine(runtime, storage, tasks)


@pytest.fixture
def manager(runtime: FakeRuntime, sync: FileSyncEngine) -> SessionManager:
    return SessionManager(runtime, sync)


@pytest.fixture
def client() -> RecordingClient:
    return RecordingClient("conn-1")
