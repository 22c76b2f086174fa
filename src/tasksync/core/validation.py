"""Input validation for tasksync.

This module provides validation functions for everything that crosses a
trust boundary: request bodies on the server and persisted client state.
All validators raise ValidationError with descriptive messages.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

from .models import (
    DEFAULT_CATEGORY,
    DEFAULT_PRIORITY,
    Category,
    Priority,
    Recurrence,
    Task,
)
from .timestamp_utils import parse_day


class ValidationError(ValueError):
    """Validation error with field and message attributes."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"

    def __repr__(self) -> str:
        return f"ValidationError(field='{self.field}', message='{self.message}')"


__all__ = [
    "ValidationError",
    "validate_task_id",
    "validate_task_text",
    "validate_task",
    "validate_tasks",
    "validate_device_id",
    "validate_email",
    "validate_password",
    "validate_profile",
    "validate_memories",
    "validate_settings",
]

# Limits
MAX_TASK_ID_LENGTH = 128
MAX_TASK_TEXT_LENGTH = 500
MAX_TASK_NOTES_LENGTH = 10_000
MAX_DEVICE_ID_LENGTH = 128
MAX_EMAIL_LENGTH = 254
MIN_PASSWORD_LENGTH = 6
MAX_MEMORY_CONTENT_LENGTH = 10_000
# Largest value an SQLite INTEGER column holds
MAX_MILLIS = 2**63 - 1
PROFILE_FIELDS = ("name", "occupation", "background", "goals", "challenges")

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+$")

E = TypeVar("E", bound=Enum)


def _type_name(value: Any) -> str:
    return type(value).__name__


def _validate_enum(
    value: Any, enum_cls: Type[E], field_name: str, default: Optional[E]
) -> Optional[E]:
    if value is None or value == "":
        return default
    if not isinstance(value, str):
        raise ValidationError(field_name, f"must be a string, got {_type_name(value)}")
    try:
        return enum_cls(value.strip().lower())
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(field_name, f"must be one of: {allowed}") from None


def _validate_millis(value: Any, field_name: str) -> Optional[int]:
    """Validate an optional epoch-milliseconds value."""
    if value is None:
        return None
    # bool is a subclass of int
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(field_name, f"must be an integer, got {_type_name(value)}")
    if isinstance(value, float) and not value.is_integer():
        raise ValidationError(field_name, "must be whole milliseconds")
    if value < 0:
        raise ValidationError(field_name, "cannot be negative")
    if value > MAX_MILLIS:
        raise ValidationError(field_name, f"cannot exceed {MAX_MILLIS}")
    return int(value)


def validate_task_id(task_id: Any, field_name: str = "id") -> str:
    """Validate a task ID and normalize it to a string.

    Integer IDs (sent by older clients) are converted to their decimal form.
    """
    if isinstance(task_id, bool) or task_id is None:
        raise ValidationError(field_name, "is required")
    if isinstance(task_id, int):
        return str(task_id)
    if not isinstance(task_id, str):
        raise ValidationError(field_name, f"must be a string, got {_type_name(task_id)}")
    stripped = task_id.strip()
    if not stripped:
        raise ValidationError(field_name, "cannot be empty")
    if len(stripped) > MAX_TASK_ID_LENGTH:
        raise ValidationError(
            field_name, f"cannot exceed {MAX_TASK_ID_LENGTH} characters (got {len(stripped)})"
        )
    return stripped


def validate_task_text(text: Any, field_name: str = "text") -> str:
    """Validate task text and return it stripped."""
    if text is None:
        raise ValidationError(field_name, "is required")
    if not isinstance(text, str):
        raise ValidationError(field_name, f"must be a string, got {_type_name(text)}")
    stripped = text.strip()
    if not stripped:
        raise ValidationError(field_name, "cannot be empty or whitespace only")
    if len(stripped) > MAX_TASK_TEXT_LENGTH:
        raise ValidationError(
            field_name, f"cannot exceed {MAX_TASK_TEXT_LENGTH} characters (got {len(stripped)})"
        )
    return stripped


def validate_task(data: Any, field_name: str = "task") -> Task:
    """Validate a wire-format task and build a Task.

    Missing optional fields take their defaults. Unknown keys (including a
    client-supplied ``deleted`` flag) are ignored.

    Args:
        data: Decoded JSON object in camelCase wire format
        field_name: Prefix used in error messages, e.g. ``tasks[3]``

    Returns:
        Normalized Task
    """
    if not isinstance(data, dict):
        raise ValidationError(field_name, f"must be an object, got {_type_name(data)}")

    notes = data.get("notes")
    if notes is None:
        notes = ""
    elif not isinstance(notes, str):
        raise ValidationError(f"{field_name}.notes", f"must be a string, got {_type_name(notes)}")
    elif len(notes) > MAX_TASK_NOTES_LENGTH:
        raise ValidationError(
            f"{field_name}.notes", f"cannot exceed {MAX_TASK_NOTES_LENGTH} characters"
        )

    completed = data.get("completed", False)
    if completed is None:
        completed = False
    elif completed in (0, 1) and not isinstance(completed, float):
        completed = bool(completed)
    else:
        raise ValidationError(
            f"{field_name}.completed", f"must be a boolean, got {_type_name(completed)}"
        )

    due_raw = data.get("dueDate")
    due_date = None
    if due_raw not in (None, ""):
        if not isinstance(due_raw, str):
            raise ValidationError(
                f"{field_name}.dueDate", f"must be a string, got {_type_name(due_raw)}"
            )
        try:
            due_date = parse_day(due_raw)
        except ValueError:
            raise ValidationError(
                f"{field_name}.dueDate", f"invalid date '{due_raw}' (expected YYYY-MM-DD)"
            ) from None

    return Task(
        id=validate_task_id(data.get("id"), f"{field_name}.id"),
        text=validate_task_text(data.get("text"), f"{field_name}.text"),
        notes=notes,
        completed=completed,
        priority=_validate_enum(
            data.get("priority"), Priority, f"{field_name}.priority", DEFAULT_PRIORITY
        ),
        category=_validate_enum(
            data.get("category"), Category, f"{field_name}.category", DEFAULT_CATEGORY
        ),
        due_date=due_date,
        recurring=_validate_enum(
            data.get("recurring"), Recurrence, f"{field_name}.recurring", None
        ),
        created_at=_validate_millis(data.get("createdAt"), f"{field_name}.createdAt"),
        updated_at=_validate_millis(data.get("updatedAt"), f"{field_name}.updatedAt"),
    )


def validate_tasks(tasks: Any, field_name: str = "tasks") -> List[Task]:
    """Validate a list of wire-format tasks.

    The whole list is rejected if any item is invalid.
    """
    if tasks is None:
        return []
    if not isinstance(tasks, list):
        raise ValidationError(field_name, f"must be a list, got {_type_name(tasks)}")
    return [validate_task(t, f"{field_name}[{i}]") for i, t in enumerate(tasks)]


def validate_device_id(device_id: Any) -> str:
    """Validate a device identifier. Missing IDs are logged as 'unknown'."""
    if device_id is None or device_id == "":
        return "unknown"
    if not isinstance(device_id, str):
        raise ValidationError("deviceId", f"must be a string, got {_type_name(device_id)}")
    if len(device_id) > MAX_DEVICE_ID_LENGTH:
        raise ValidationError(
            "deviceId", f"cannot exceed {MAX_DEVICE_ID_LENGTH} characters"
        )
    return device_id


def validate_email(email: Any) -> str:
    """Validate an email address and return it normalized to lower case."""
    if email is None or email == "":
        raise ValidationError("email", "is required")
    if not isinstance(email, str):
        raise ValidationError("email", f"must be a string, got {_type_name(email)}")
    normalized = email.strip().lower()
    if len(normalized) > MAX_EMAIL_LENGTH or not EMAIL_PATTERN.match(normalized):
        raise ValidationError("email", f"invalid email address '{email}'")
    return normalized


def validate_password(
    password: Any, field_name: str = "password", min_length: int = 1
) -> str:
    """Validate a password (never stripped or logged)."""
    if password is None or password == "":
        raise ValidationError(field_name, "is required")
    if not isinstance(password, str):
        raise ValidationError(field_name, f"must be a string, got {_type_name(password)}")
    if len(password) < min_length:
        raise ValidationError(field_name, f"must be at least {min_length} characters")
    return password


def validate_profile(profile: Any) -> Dict[str, Optional[str]]:
    """Validate a profile object. Unknown keys are dropped."""
    if not isinstance(profile, dict):
        raise ValidationError("profile", f"must be an object, got {_type_name(profile)}")
    result: Dict[str, Optional[str]] = {}
    for key in PROFILE_FIELDS:
        value = profile.get(key)
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"profile.{key}", f"must be a string, got {_type_name(value)}")
        result[key] = value
    return result


def validate_memories(memories: Any) -> Dict[str, List[Dict[str, Any]]]:
    """Validate a memory mapping of category -> [{content, timestamp}]."""
    if not isinstance(memories, dict):
        raise ValidationError("memories", f"must be an object, got {_type_name(memories)}")
    result: Dict[str, List[Dict[str, Any]]] = {}
    for category, items in memories.items():
        if not isinstance(items, list):
            raise ValidationError(
                f"memories.{category}", f"must be a list, got {_type_name(items)}"
            )
        entries = []
        for i, item in enumerate(items):
            field_name = f"memories.{category}[{i}]"
            if not isinstance(item, dict):
                raise ValidationError(field_name, f"must be an object, got {_type_name(item)}")
            content = item.get("content")
            if not isinstance(content, str) or not content:
                raise ValidationError(f"{field_name}.content", "must be a non-empty string")
            if len(content) > MAX_MEMORY_CONTENT_LENGTH:
                raise ValidationError(
                    f"{field_name}.content",
                    f"cannot exceed {MAX_MEMORY_CONTENT_LENGTH} characters",
                )
            entries.append({
                "content": content,
                "timestamp": _validate_millis(item.get("timestamp"), f"{field_name}.timestamp"),
            })
        result[category] = entries
    return result


def validate_settings(settings: Any) -> Dict[str, Any]:
    """Validate a settings blob (any JSON object)."""
    if not isinstance(settings, dict):
        raise ValidationError("settings", f"must be an object, got {_type_name(settings)}")
    return settings
