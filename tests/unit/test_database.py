"""Unit tests for the server database layer.

Tests schema constraints, transactions, task rows with tombstones and
the side-channel tables.
"""

from __future__ import annotations

import sqlite3
import threading

import pytest

from tasksync.core.database import Database
from tasksync.core.models import Task


def _insert(db: Database, user_id: str, task_id: str, created_at: int = 100, **fields) -> None:
    db.insert_task(user_id, Task(id=task_id, text=fields.pop("text", "x"), **fields),
                   created_at=created_at, updated_at=created_at)


@pytest.mark.unit
class TestUsers:
    """Tests for user rows."""

    def test_create_and_get(self, test_db: Database) -> None:
        test_db.create_user("u1", "a@example.com", "hash", "Ann", 5)
        assert test_db.get_user("u1") == {"id": "u1", "email": "a@example.com", "name": "Ann"}
        assert test_db.get_user_by_email("a@example.com")["password_hash"] == "hash"

    def test_duplicate_email(self, test_db: Database) -> None:
        test_db.create_user("u1", "a@example.com", "hash", "", 5)
        with pytest.raises(sqlite3.IntegrityError):
            test_db.create_user("u2", "a@example.com", "hash", "", 5)

    def test_update_password(self, test_db: Database, user_id: str) -> None:
        assert test_db.update_user_password(user_id, "new-hash") is True
        assert test_db.get_user_by_email("one@example.com")["password_hash"] == "new-hash"

    def test_delete_user_cascades(self, test_db: Database, user_id: str) -> None:
        _insert(test_db, user_id, "t1")
        test_db.upsert_profile(user_id, {"name": "One"}, 5)
        test_db.replace_memories(user_id, {"work": [{"content": "c", "timestamp": 1}]}, 5)
        test_db.upsert_settings(user_id, {"theme": "dark"}, 5)
        test_db.add_sync_log(user_id, "dev", "sync", 5)

        test_db.delete_user(user_id)

        assert test_db.get_user(user_id) is None
        assert test_db.count_tasks(user_id, include_deleted=True) == 0
        assert test_db.get_profile(user_id) == {}
        assert test_db.get_memories(user_id) == {}
        assert test_db.get_settings(user_id) == {}
        assert test_db.get_sync_logs(user_id) == []


@pytest.mark.unit
class TestTasks:
    """Tests for task rows."""

    def test_insert_and_read(self, test_db: Database, user_id: str) -> None:
        _insert(test_db, user_id, "t1", text="Buy milk")
        task = test_db.get_task(user_id, "t1")
        assert task["text"] == "Buy milk"
        assert task["completed"] is False
        assert task["priority"] == "medium"
        assert task["createdAt"] == 100
        assert "deleted" not in task

    def test_composite_key_rejects_duplicate(self, test_db: Database, user_id: str) -> None:
        _insert(test_db, user_id, "t1")
        with pytest.raises(sqlite3.IntegrityError):
            _insert(test_db, user_id, "t1")

    def test_same_id_for_two_users(self, test_db: Database, user_id: str) -> None:
        test_db.create_user("user-2", "two@example.com", "hash", "", 0)
        _insert(test_db, user_id, "t1", text="mine")
        _insert(test_db, "user-2", "t1", text="theirs")
        assert test_db.get_task(user_id, "t1")["text"] == "mine"
        assert test_db.get_task("user-2", "t1")["text"] == "theirs"

    def test_unknown_user_rejected(self, test_db: Database) -> None:
        """Foreign keys are enforced."""
        with pytest.raises(sqlite3.IntegrityError):
            _insert(test_db, "nobody", "t1")

    def test_empty_text_rejected_by_schema(self, test_db: Database, user_id: str) -> None:
        with pytest.raises(sqlite3.IntegrityError):
            _insert(test_db, user_id, "t1", text="")

    def test_get_all_newest_first(self, test_db: Database, user_id: str) -> None:
        _insert(test_db, user_id, "old", created_at=1)
        _insert(test_db, user_id, "new", created_at=3)
        _insert(test_db, user_id, "mid", created_at=2)
        assert [t["id"] for t in test_db.get_all_tasks(user_id)] == ["new", "mid", "old"]

    def test_overwrite_keeps_created_at(self, test_db: Database, user_id: str) -> None:
        _insert(test_db, user_id, "t1")
        changed = Task(id="t1", text="changed", completed=True, created_at=999)
        assert test_db.overwrite_task(user_id, changed, updated_at=500) is True
        task = test_db.get_task(user_id, "t1")
        assert task["text"] == "changed"
        assert task["completed"] is True
        assert task["createdAt"] == 100
        assert task["updatedAt"] == 500

    def test_soft_delete(self, test_db: Database, user_id: str) -> None:
        _insert(test_db, user_id, "t1")
        assert test_db.soft_delete_task(user_id, "t1", 700) is True
        assert test_db.get_task(user_id, "t1") is None
        assert test_db.get_all_tasks(user_id) == []
        raw = test_db.get_task_raw(user_id, "t1")
        assert raw["deleted"] is True
        assert raw["updatedAt"] == 700

    def test_soft_delete_twice(self, test_db: Database, user_id: str) -> None:
        _insert(test_db, user_id, "t1")
        test_db.soft_delete_task(user_id, "t1", 700)
        assert test_db.soft_delete_task(user_id, "t1", 800) is False
        assert test_db.get_task_raw(user_id, "t1")["updatedAt"] == 700

    def test_overwrite_ignores_tombstone(self, test_db: Database, user_id: str) -> None:
        _insert(test_db, user_id, "t1")
        test_db.soft_delete_task(user_id, "t1", 700)
        assert test_db.overwrite_task(user_id, Task(id="t1", text="back"), 900) is False
        assert test_db.get_task_raw(user_id, "t1")["deleted"] is True

    def test_count_tasks(self, test_db: Database, user_id: str) -> None:
        _insert(test_db, user_id, "a")
        _insert(test_db, user_id, "b")
        test_db.soft_delete_task(user_id, "b", 5)
        assert test_db.count_tasks(user_id) == 1
        assert test_db.count_tasks(user_id, include_deleted=True) == 2


@pytest.mark.unit
class TestTransactions:
    """Tests for transaction()."""

    def test_commit(self, test_db: Database, user_id: str) -> None:
        with test_db.transaction():
            _insert(test_db, user_id, "t1")
        assert test_db.get_task(user_id, "t1") is not None

    def test_rollback_on_error(self, test_db: Database, user_id: str) -> None:
        with pytest.raises(RuntimeError):
            with test_db.transaction():
                _insert(test_db, user_id, "t1")
                raise RuntimeError("boom")
        assert test_db.get_task(user_id, "t1") is None
        assert not test_db.in_transaction

    def test_nested_joins_outer(self, test_db: Database, user_id: str) -> None:
        """An inner block's work is undone when the outer block fails."""
        with pytest.raises(RuntimeError):
            with test_db.transaction():
                with test_db.transaction():
                    _insert(test_db, user_id, "t1")
                raise RuntimeError("boom")
        assert test_db.get_task(user_id, "t1") is None

    def test_other_connection_does_not_see_uncommitted(
        self, test_db: Database, user_id: str
    ) -> None:
        seen = []
        with test_db.transaction():
            _insert(test_db, user_id, "t1")
            thread = threading.Thread(
                target=lambda: seen.append(test_db.get_task(user_id, "t1"))
            )
            thread.start()
            thread.join()
        assert seen == [None]
        assert test_db.get_task(user_id, "t1") is not None


@pytest.mark.unit
class TestSideChannels:
    """Tests for profile, memories, settings and sync logs."""

    def test_profile_overwrite(self, test_db: Database, user_id: str) -> None:
        test_db.upsert_profile(user_id, {"name": "A", "goals": "g"}, 1)
        test_db.upsert_profile(user_id, {"name": "B"}, 2)
        profile = test_db.get_profile(user_id)
        assert profile["name"] == "B"
        assert profile["goals"] is None
        assert profile["updatedAt"] == 2

    def test_memories_replaced_wholesale(self, test_db: Database, user_id: str) -> None:
        test_db.replace_memories(user_id, {"work": [{"content": "a", "timestamp": 1}]}, 10)
        count = test_db.replace_memories(
            user_id,
            {"health": [{"content": "b", "timestamp": None}, {"content": "c", "timestamp": 3}]},
            10,
        )
        assert count == 2
        assert test_db.get_memories(user_id) == {
            "health": [{"content": "b", "timestamp": 10}, {"content": "c", "timestamp": 3}]
        }

    def test_settings_roundtrip(self, test_db: Database, user_id: str) -> None:
        assert test_db.get_settings(user_id) == {}
        test_db.upsert_settings(user_id, {"theme": "dark", "volume": 3}, 1)
        test_db.upsert_settings(user_id, {"theme": "light"}, 2)
        assert test_db.get_settings(user_id) == {"theme": "light"}

    def test_sync_logs_newest_first(self, test_db: Database, user_id: str) -> None:
        test_db.add_sync_log(user_id, "dev-a", "sync", 1)
        test_db.add_sync_log(user_id, "dev-b", "full_sync", 2)
        assert test_db.get_sync_logs(user_id) == [
            {"deviceId": "dev-b", "action": "full_sync", "timestamp": 2},
            {"deviceId": "dev-a", "action": "sync", "timestamp": 1},
        ]


@pytest.mark.unit
class TestConnections:
    """Tests for per-thread connections."""

    def test_close_connection_reopens_lazily(self, test_db: Database, user_id: str) -> None:
        test_db.close_connection()
        assert test_db.get_user(user_id) is not None

    def test_in_memory_database(self) -> None:
        db = Database(":memory:")
        db.create_user("u", "u@example.com", "h", "", 0)
        db.close_connection()
        assert db.get_user("u") is not None
        db.close()
