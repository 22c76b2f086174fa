"""Database operations for the tasksync server.

This module provides all data access functionality using SQLite.
All methods return JSON-serializable types (dicts, lists, primitives)
so route handlers can return them directly.

Each thread gets its own connection. Methods run in autocommit mode
unless called inside ``with db.transaction():``, in which case they join
that transaction. Write transactions start with BEGIN IMMEDIATE so two
concurrent syncs for the same user serialize on the database lock.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from .models import Task

logger = logging.getLogger(__name__)

__all__ = ["Database"]

BUSY_TIMEOUT_SECONDS = 30

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    user_id TEXT NOT NULL REFERENCES users(id),
    id TEXT NOT NULL,
    text TEXT NOT NULL CHECK (length(text) > 0),
    notes TEXT NOT NULL DEFAULT '',
    completed INTEGER NOT NULL DEFAULT 0 CHECK (completed IN (0, 1)),
    priority TEXT NOT NULL DEFAULT 'medium'
        CHECK (priority IN ('low', 'medium', 'high')),
    category TEXT NOT NULL DEFAULT 'personal'
        CHECK (category IN ('work', 'personal', 'study', 'health', 'other')),
    due_date TEXT,
    recurring TEXT CHECK (recurring IS NULL OR recurring IN ('daily', 'weekly', 'monthly')),
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    deleted INTEGER NOT NULL DEFAULT 0 CHECK (deleted IN (0, 1)),
    PRIMARY KEY (user_id, id)
);

CREATE INDEX IF NOT EXISTS idx_tasks_user_live ON tasks (user_id, deleted, created_at);

CREATE TABLE IF NOT EXISTS user_profiles (
    user_id TEXT PRIMARY KEY REFERENCES users(id),
    name TEXT,
    occupation TEXT,
    background TEXT,
    goals TEXT,
    challenges TEXT,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS memories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES users(id),
    category TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    user_id TEXT PRIMARY KEY REFERENCES users(id),
    data TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES users(id),
    device_id TEXT NOT NULL,
    action TEXT NOT NULL,
    timestamp INTEGER NOT NULL
);
"""

TASK_COLUMNS = (
    "id, text, notes, completed, priority, category, due_date, recurring, "
    "created_at, updated_at, deleted"
)


def _task_row_to_dict(row: sqlite3.Row, include_deleted: bool = False) -> Dict[str, Any]:
    """Convert a tasks row to the camelCase wire format."""
    result = {
        "id": row["id"],
        "text": row["text"],
        "notes": row["notes"],
        "completed": bool(row["completed"]),
        "priority": row["priority"],
        "category": row["category"],
        "dueDate": row["due_date"],
        "recurring": row["recurring"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }
    if include_deleted:
        result["deleted"] = bool(row["deleted"])
    return result


class Database:
    """SQLite-backed store of record for users, tasks and side channels."""

    def __init__(self, db_path: Union[Path, str]) -> None:
        """Initialize database and create the schema if needed.

        Args:
            db_path: Path to the SQLite database file, or ':memory:' for an
                in-memory database (single thread only)
        """
        self.db_path = str(db_path) if isinstance(db_path, Path) else db_path
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self.connection.executescript(SCHEMA)
        logger.info(f"Opened database at {self.db_path}")

    @property
    def connection(self) -> sqlite3.Connection:
        """The calling thread's connection, opened on first use."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                self.db_path,
                timeout=BUSY_TIMEOUT_SECONDS,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            self._local.conn = conn
            self._local.depth = 0
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "depth", 0) > 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically.

        The block commits on normal exit and rolls back on any exception,
        which is re-raised. Nested use joins the outer transaction.
        """
        conn = self.connection
        if self.in_transaction:
            self._local.depth += 1
            try:
                yield conn
            finally:
                self._local.depth -= 1
            return

        conn.execute("BEGIN IMMEDIATE")
        self._local.depth = 1
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            logger.debug("Transaction rolled back")
            raise
        else:
            conn.execute("COMMIT")
        finally:
            self._local.depth = 0

    def close_connection(self) -> None:
        """Close the calling thread's connection, if it has one.

        Request threads call this on teardown so short-lived threads do
        not leak connections.
        """
        conn = getattr(self._local, "conn", None)
        # An in-memory database lives only as long as its connection
        if conn is None or self.in_transaction or self.db_path == ":memory:":
            return
        with self._connections_lock:
            if conn in self._connections:
                self._connections.remove(conn)
        conn.close()
        self._local.conn = None

    def close(self) -> None:
        """Close every connection opened by this instance."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()
        logger.info("Closed database connections")

    # ============================================================================
    # Users
    # ============================================================================

    def create_user(
        self, user_id: str, email: str, password_hash: str, name: str, created_at: int
    ) -> Dict[str, Any]:
        """Create a user. Raises sqlite3.IntegrityError on duplicate email."""
        self.connection.execute(
            "INSERT INTO users (id, email, password_hash, name, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (user_id, email, password_hash, name, created_at),
        )
        return {"id": user_id, "email": email, "name": name}

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Get public user fields by ID."""
        row = self.connection.execute(
            "SELECT id, email, name FROM users WHERE id = ?", (user_id,)
        ).fetchone()
        return dict(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """Get a user by email, including the password hash (for login)."""
        row = self.connection.execute(
            "SELECT id, email, name, password_hash FROM users WHERE email = ?", (email,)
        ).fetchone()
        return dict(row) if row else None

    def update_user_password(self, user_id: str, password_hash: str) -> bool:
        """Replace a user's password hash."""
        cursor = self.connection.execute(
            "UPDATE users SET password_hash = ? WHERE id = ?", (password_hash, user_id)
        )
        return cursor.rowcount > 0

    def delete_user(self, user_id: str) -> None:
        """Delete a user and everything they own."""
        with self.transaction() as conn:
            for table in ("tasks", "memories", "user_profiles", "settings", "sync_logs"):
                conn.execute(f"DELETE FROM {table} WHERE user_id = ?", (user_id,))
            conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        logger.info(f"Deleted user {user_id} and all their data")

    # ============================================================================
    # Tasks
    # ============================================================================

    def get_all_tasks(self, user_id: str) -> List[Dict[str, Any]]:
        """Get all non-deleted tasks of a user, newest first."""
        rows = self.connection.execute(
            f"SELECT {TASK_COLUMNS} FROM tasks WHERE user_id = ? AND deleted = 0 "
            "ORDER BY created_at DESC, id",
            (user_id,),
        ).fetchall()
        return [_task_row_to_dict(row) for row in rows]

    def get_task(self, user_id: str, task_id: str) -> Optional[Dict[str, Any]]:
        """Get a non-deleted task."""
        task = self.get_task_raw(user_id, task_id)
        if task is None or task["deleted"]:
            return None
        del task["deleted"]
        return task

    def get_task_raw(self, user_id: str, task_id: str) -> Optional[Dict[str, Any]]:
        """Get a task including tombstones (for sync)."""
        row = self.connection.execute(
            f"SELECT {TASK_COLUMNS} FROM tasks WHERE user_id = ? AND id = ?",
            (user_id, task_id),
        ).fetchone()
        return _task_row_to_dict(row, include_deleted=True) if row else None

    def insert_task(self, user_id: str, task: Task, created_at: int, updated_at: int) -> None:
        """Insert a new task row."""
        self.connection.execute(
            "INSERT INTO tasks (user_id, id, text, notes, completed, priority, category, "
            "due_date, recurring, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                user_id,
                task.id,
                task.text,
                task.notes,
                int(task.completed),
                task.priority.value,
                task.category.value,
                task.due_date.isoformat() if task.due_date else None,
                task.recurring.value if task.recurring else None,
                created_at,
                updated_at,
            ),
        )

    def overwrite_task(self, user_id: str, task: Task, updated_at: int) -> bool:
        """Overwrite every mutable field of a live task.

        created_at and the tombstone flag are never touched.
        """
        cursor = self.connection.execute(
            "UPDATE tasks SET text = ?, notes = ?, completed = ?, priority = ?, "
            "category = ?, due_date = ?, recurring = ?, updated_at = ? "
            "WHERE user_id = ? AND id = ? AND deleted = 0",
            (
                task.text,
                task.notes,
                int(task.completed),
                task.priority.value,
                task.category.value,
                task.due_date.isoformat() if task.due_date else None,
                task.recurring.value if task.recurring else None,
                updated_at,
                user_id,
                task.id,
            ),
        )
        return cursor.rowcount > 0

    def soft_delete_task(self, user_id: str, task_id: str, deleted_at: int) -> bool:
        """Tombstone a live task.

        Returns:
            True if a live task was tombstoned, False if it was already
            deleted or does not exist.
        """
        cursor = self.connection.execute(
            "UPDATE tasks SET deleted = 1, updated_at = ? "
            "WHERE user_id = ? AND id = ? AND deleted = 0",
            (deleted_at, user_id, task_id),
        )
        return cursor.rowcount > 0

    def count_tasks(self, user_id: str, include_deleted: bool = False) -> int:
        """Count a user's task rows."""
        query = "SELECT COUNT(*) FROM tasks WHERE user_id = ?"
        if not include_deleted:
            query += " AND deleted = 0"
        return self.connection.execute(query, (user_id,)).fetchone()[0]

    # ============================================================================
    # Profile, memories, settings
    # ============================================================================

    def get_profile(self, user_id: str) -> Dict[str, Any]:
        """Get a user's profile, or an empty dict if none was stored."""
        row = self.connection.execute(
            "SELECT name, occupation, background, goals, challenges, updated_at "
            "FROM user_profiles WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        if not row:
            return {}
        profile = dict(row)
        profile["updatedAt"] = profile.pop("updated_at")
        return profile

    def upsert_profile(self, user_id: str, profile: Dict[str, Any], updated_at: int) -> None:
        """Overwrite a user's profile."""
        self.connection.execute(
            "INSERT INTO user_profiles "
            "(user_id, name, occupation, background, goals, challenges, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (user_id) DO UPDATE SET name = excluded.name, "
            "occupation = excluded.occupation, background = excluded.background, "
            "goals = excluded.goals, challenges = excluded.challenges, "
            "updated_at = excluded.updated_at",
            (
                user_id,
                profile.get("name"),
                profile.get("occupation"),
                profile.get("background"),
                profile.get("goals"),
                profile.get("challenges"),
                updated_at,
            ),
        )

    def get_memories(self, user_id: str) -> Dict[str, List[Dict[str, Any]]]:
        """Get a user's memories grouped by category."""
        rows = self.connection.execute(
            "SELECT category, content, created_at FROM memories "
            "WHERE user_id = ? ORDER BY id",
            (user_id,),
        ).fetchall()
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for row in rows:
            grouped.setdefault(row["category"], []).append(
                {"content": row["content"], "timestamp": row["created_at"]}
            )
        return grouped

    def replace_memories(
        self, user_id: str, memories: Dict[str, List[Dict[str, Any]]], now: int
    ) -> int:
        """Replace a user's whole memory set.

        Returns:
            Number of memory rows inserted.
        """
        with self.transaction() as conn:
            conn.execute("DELETE FROM memories WHERE user_id = ?", (user_id,))
            inserted = 0
            for category, items in memories.items():
                for item in items:
                    conn.execute(
                        "INSERT INTO memories (user_id, category, content, created_at) "
                        "VALUES (?, ?, ?, ?)",
                        (user_id, category, item["content"], item.get("timestamp") or now),
                    )
                    inserted += 1
        return inserted

    def get_settings(self, user_id: str) -> Dict[str, Any]:
        """Get a user's settings blob, or an empty dict."""
        row = self.connection.execute(
            "SELECT data FROM settings WHERE user_id = ?", (user_id,)
        ).fetchone()
        return json.loads(row["data"]) if row else {}

    def upsert_settings(self, user_id: str, settings: Dict[str, Any], updated_at: int) -> None:
        """Overwrite a user's settings blob."""
        self.connection.execute(
            "INSERT INTO settings (user_id, data, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT (user_id) DO UPDATE SET data = excluded.data, "
            "updated_at = excluded.updated_at",
            (user_id, json.dumps(settings), updated_at),
        )

    # ============================================================================
    # Sync log
    # ============================================================================

    def add_sync_log(self, user_id: str, device_id: str, action: str, timestamp: int) -> None:
        """Record a sync event for auditing."""
        self.connection.execute(
            "INSERT INTO sync_logs (user_id, device_id, action, timestamp) VALUES (?, ?, ?, ?)",
            (user_id, device_id, action, timestamp),
        )

    def get_sync_logs(self, user_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Get a user's most recent sync events, newest first."""
        rows = self.connection.execute(
            "SELECT device_id, action, timestamp FROM sync_logs "
            "WHERE user_id = ? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        ).fetchall()
        return [
            {"deviceId": r["device_id"], "action": r["action"], "timestamp": r["timestamp"]}
            for r in rows
        ]
