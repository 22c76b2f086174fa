"""Local task list for the sync client.

TaskList owns the device's copy of the user's tasks. Every mutation
stamps ``updatedAt``, writes through to the key-value store and notifies
a change listener (normally the sync client's push scheduler).

Deleted tasks are removed immediately and their IDs are kept under
``pending_deletes`` until the server acknowledges the deletion.

CRITICAL: This module must do no network I/O.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from uuid6 import uuid7

from .models import MUTABLE_FIELDS, Category, Priority, Recurrence, Task
from .store import KeyValueStore
from .timestamp_utils import now_ms
from .validation import ValidationError, validate_task

logger = logging.getLogger(__name__)

__all__ = ["TaskList", "MergeStats", "merge_tasks"]

TASKS_KEY = "tasks"
PENDING_DELETES_KEY = "pending_deletes"

# Python attribute name -> wire key
_WIRE_NAMES = {"due_date": "dueDate"}


@dataclass
class MergeStats:
    """Outcome of merging a server task set into local state."""

    inserted: int = 0
    overwritten: int = 0
    kept: int = 0
    skipped: int = 0


def merge_tasks(
    local: List[Task], remote: Iterable[Task], skip_ids: Iterable[str] = ()
) -> Tuple[List[Task], MergeStats]:
    """Merge a server task set into a local one.

    A server task is inserted when unknown locally and overwrites the local
    copy only when its updatedAt is strictly newer. Local tasks missing
    from the server set are kept. IDs in skip_ids (local deletions not yet
    acknowledged) are ignored.

    Returns:
        Tuple of (merged task list, stats). Local order is preserved and
        inserted tasks are appended in server order.
    """
    skip = set(skip_ids)
    stats = MergeStats()
    merged = list(local)
    index = {task.id: i for i, task in enumerate(merged)}

    for server_task in remote:
        if server_task.id in skip:
            stats.skipped += 1
            continue
        position = index.get(server_task.id)
        if position is None:
            index[server_task.id] = len(merged)
            merged.append(server_task)
            stats.inserted += 1
        elif server_task.version > merged[position].version:
            merged[position] = server_task
            stats.overwritten += 1
        else:
            stats.kept += 1

    return merged, stats


def _to_wire_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, date):
        return value.isoformat()
    return value


class TaskList:
    """Thread-safe local task set backed by a KeyValueStore.

    Attributes:
        store: Backing key-value store
        lock: Re-entrant lock guarding all local task state
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], int] = now_ms,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        """Load the task list from the store.

        Args:
            store: Backing key-value store
            clock: Source of epoch milliseconds for updatedAt stamps
            on_change: Called with no arguments after every local mutation
        """
        self.store = store
        self.clock = clock
        self.on_change = on_change
        self.lock = threading.RLock()
        self._tasks: List[Task] = self._load()

    def _load(self) -> List[Task]:
        tasks = []
        for i, data in enumerate(self.store.get(TASKS_KEY, [])):
            try:
                tasks.append(validate_task(data, f"tasks[{i}]"))
            except ValidationError as e:
                logger.warning(f"Dropping invalid stored task: {e}")
        return tasks

    def _save(self) -> None:
        self.store.set(TASKS_KEY, [task.to_dict() for task in self._tasks])

    def _stamp(self, previous: Optional[int] = None) -> int:
        now = self.clock()
        if previous is not None and now <= previous:
            return previous + 1
        return now

    def _index_of(self, task_id: str) -> int:
        for i, task in enumerate(self._tasks):
            if task.id == task_id:
                return i
        raise KeyError(task_id)

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    # ===== Reads =====

    def all(self) -> List[Task]:
        """Get a snapshot of all local tasks."""
        with self.lock:
            return list(self._tasks)

    def get(self, task_id: str) -> Optional[Task]:
        """Get a task by ID, or None."""
        with self.lock:
            for task in self._tasks:
                if task.id == task_id:
                    return task
            return None

    def __len__(self) -> int:
        with self.lock:
            return len(self._tasks)

    def pending_deletes(self) -> List[str]:
        """IDs deleted locally whose deletion the server has not confirmed."""
        with self.lock:
            return list(self.store.get(PENDING_DELETES_KEY, []))

    # ===== Mutations =====

    def add(
        self,
        text: str,
        notes: str = "",
        priority: Priority = Priority.MEDIUM,
        category: Category = Category.PERSONAL,
        due_date: Optional[date] = None,
        recurring: Optional[Recurrence] = None,
    ) -> Task:
        """Create a task with a fresh ID and createdAt = updatedAt = now."""
        now = self.clock()
        task = validate_task({
            "id": uuid7().hex,
            "text": text,
            "notes": notes,
            "priority": _to_wire_value(priority),
            "category": _to_wire_value(category),
            "dueDate": _to_wire_value(due_date),
            "recurring": _to_wire_value(recurring),
            "createdAt": now,
            "updatedAt": now,
        })
        with self.lock:
            self._tasks.append(task)
            self._save()
        logger.debug(f"Added task {task.id}")
        self._changed()
        return task

    def update(self, task_id: str, **fields: Any) -> Task:
        """Change mutable fields of a task.

        Args:
            task_id: ID of the task to change
            **fields: Any of text, notes, completed, priority, category,
                due_date, recurring

        Raises:
            KeyError: if the task does not exist
            ValidationError: if a field name or value is invalid
        """
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValidationError(sorted(unknown)[0], "is not an editable task field")

        with self.lock:
            position = self._index_of(task_id)
            current = self._tasks[position]
            data = current.to_dict()
            for name, value in fields.items():
                data[_WIRE_NAMES.get(name, name)] = _to_wire_value(value)
            data["updatedAt"] = self._stamp(current.updated_at)
            task = validate_task(data)
            self._tasks[position] = task
            self._save()
        logger.debug(f"Updated task {task_id}: {sorted(fields)}")
        self._changed()
        return task

    def toggle(self, task_id: str) -> Tuple[Task, Optional[Task]]:
        """Flip a task's completed flag.

        Completing a recurring task also creates its successor: a new
        uncompleted task due one interval after the original due date
        (or after today when it had none).

        Returns:
            Tuple of (toggled task, successor or None)
        """
        with self.lock:
            position = self._index_of(task_id)
            current = self._tasks[position]
            toggled = dataclasses.replace(
                current,
                completed=not current.completed,
                updated_at=self._stamp(current.updated_at),
            )
            self._tasks[position] = toggled

            successor = None
            if toggled.completed and toggled.recurring is not None:
                base = toggled.due_date or date.fromtimestamp(self.clock() / 1000)
                now = self.clock()
                successor = dataclasses.replace(
                    toggled,
                    id=uuid7().hex,
                    completed=False,
                    due_date=toggled.recurring.next_due(base),
                    created_at=now,
                    updated_at=now,
                )
                self._tasks.append(successor)
                logger.info(
                    f"Created {toggled.recurring.value} successor {successor.id} "
                    f"due {successor.due_date}"
                )
            self._save()
        self._changed()
        return toggled, successor

    def delete(self, task_id: str) -> bool:
        """Remove a task locally and queue its deletion for the server.

        Returns:
            True if the task existed
        """
        with self.lock:
            try:
                position = self._index_of(task_id)
            except KeyError:
                return False
            del self._tasks[position]
            self._save()
            pending = self.store.get(PENDING_DELETES_KEY, [])
            if task_id not in pending:
                pending.append(task_id)
                self.store.set(PENDING_DELETES_KEY, pending)
        logger.debug(f"Deleted task {task_id} locally")
        self._changed()
        return True

    def resolve_delete(self, task_id: str) -> None:
        """Forget a pending deletion once the server has handled it."""
        with self.lock:
            pending = self.store.get(PENDING_DELETES_KEY, [])
            if task_id in pending:
                pending.remove(task_id)
                self.store.set(PENDING_DELETES_KEY, pending)

    # ===== Reconciliation (no change notification) =====

    def merge(self, remote: Iterable[Task]) -> MergeStats:
        """Merge a server task set into local state (never removes tasks)."""
        with self.lock:
            skip: Set[str] = set(self.store.get(PENDING_DELETES_KEY, []))
            self._tasks, stats = merge_tasks(self._tasks, remote, skip)
            self._save()
        return stats

    def replace_all(self, tasks: Iterable[Task]) -> int:
        """Replace the whole local task set, minus pending deletions.

        Returns:
            Number of tasks kept
        """
        with self.lock:
            skip = set(self.store.get(PENDING_DELETES_KEY, []))
            self._tasks = [task for task in tasks if task.id not in skip]
            self._save()
            return len(self._tasks)

    def to_wire(self) -> List[Dict[str, Any]]:
        """Serialize all local tasks for a sync request."""
        with self.lock:
            return [task.to_dict() for task in self._tasks]
