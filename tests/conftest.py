"""Pytest fixtures for tasksync tests.

This module provides fixtures for test configuration, the server
database, the local store and a sync client wired to fake timers.
"""

from __future__ import annotations

from pathlib import Path
from typing import Generator

import pytest

from tasksync.core.config import Config
from tasksync.core.database import Database
from tasksync.core.store import MemoryStore
from tasksync.core.sync_client import SyncClient
from tasksync.core.tasks import TaskList
from tests.helpers import FakeClock, FakeTimerFactory

TEST_SECRET_KEY = "test-secret-key-not-for-production"


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's environment out of the tests."""
    monkeypatch.delenv("TASKSYNC_CONFIG_DIR", raising=False)
    monkeypatch.setenv("TASKSYNC_SECRET_KEY", TEST_SECRET_KEY)


@pytest.fixture
def test_config_dir(tmp_path: Path) -> Path:
    """Create temporary config directory for tests.

    Args:
        tmp_path: pytest temporary directory fixture

    Returns:
        Path to temporary config directory.
    """
    config_dir = tmp_path / "tasksync_test"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def test_config(test_config_dir: Path) -> Config:
    """Create test configuration.

    Args:
        test_config_dir: Temporary config directory

    Returns:
        Config instance for testing.
    """
    return Config(config_dir=test_config_dir)


@pytest.fixture
def test_db(test_config_dir: Path) -> Generator[Database, None, None]:
    """Create a file-backed server database.

    Yields:
        Database instance, closed after the test.
    """
    db = Database(test_config_dir / "server.db")
    yield db
    db.close()


@pytest.fixture
def user_id(test_db: Database) -> str:
    """Create a user and return its ID."""
    test_db.create_user("user-1", "one@example.com", "hash", "One", 0)
    return "user-1"


@pytest.fixture
def clock() -> FakeClock:
    """Manually advanced clock."""
    return FakeClock(start=10_000)


@pytest.fixture
def timers() -> FakeTimerFactory:
    """Fake threading.Timer factory."""
    return FakeTimerFactory()


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def task_list(memory_store: MemoryStore, clock: FakeClock) -> TaskList:
    """Local task list on an in-memory store with a fake clock."""
    return TaskList(memory_store, clock=clock)


@pytest.fixture
def sync_client(
    test_config: Config,
    memory_store: MemoryStore,
    task_list: TaskList,
    timers: FakeTimerFactory,
) -> Generator[SyncClient, None, None]:
    """Sync client whose timers never fire on their own."""
    client = SyncClient(test_config, memory_store, task_list=task_list, timer_factory=timers)
    yield client
    client.close()
