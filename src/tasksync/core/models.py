"""Data models for tasksync.

This module defines the Task entity that is synchronized between devices
and the enumerations constraining its fields.

Task IDs are strings (UUID7 hex for tasks created by this client).
Timestamps are epoch milliseconds.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Dict, Optional

from .timestamp_utils import add_days, add_months, format_day


class Priority(Enum):
    """Task priority levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Category(Enum):
    """Task categories."""

    WORK = "work"
    PERSONAL = "personal"
    STUDY = "study"
    HEALTH = "health"
    OTHER = "other"


class Recurrence(Enum):
    """Recurrence rule for generating a successor task on completion."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    def next_due(self, due: date) -> date:
        """Get the due date of the successor task."""
        if self is Recurrence.DAILY:
            return add_days(due, 1)
        if self is Recurrence.WEEKLY:
            return add_days(due, 7)
        return add_months(due, 1)


DEFAULT_PRIORITY = Priority.MEDIUM
DEFAULT_CATEGORY = Category.PERSONAL

# Fields a client may change on an existing task
MUTABLE_FIELDS = frozenset(
    ["text", "notes", "completed", "priority", "category", "due_date", "recurring"]
)


@dataclass(frozen=True)
class Task:
    """A single task, the unit of synchronization.

    Attributes:
        id: Stable identifier, unique within a user's task set
        text: Short non-empty description
        notes: Free text (empty string when absent)
        completed: Whether the task is done
        priority: Priority level
        category: Category
        due_date: Calendar day the task is due (None if undated)
        recurring: Recurrence rule (None for one-off tasks)
        created_at: Creation instant, immutable after creation
        updated_at: Instant of last mutation, the sole arbiter of merge precedence
    """

    id: str
    text: str
    notes: str = ""
    completed: bool = False
    priority: Priority = DEFAULT_PRIORITY
    category: Category = DEFAULT_CATEGORY
    due_date: Optional[date] = None
    recurring: Optional[Recurrence] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @property
    def version(self) -> int:
        """Timestamp used for last-writer-wins comparison (0 if never stamped)."""
        return self.updated_at or 0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the camelCase wire format."""
        return {
            "id": self.id,
            "text": self.text,
            "notes": self.notes,
            "completed": self.completed,
            "priority": self.priority.value,
            "category": self.category.value,
            "dueDate": format_day(self.due_date),
            "recurring": self.recurring.value if self.recurring else None,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
