"""Sync server for tasksync.

The server is the store of record for every user's tasks. Clients send
their complete local task set; the server merges it task by task and
answers with the authoritative set.

Merge rule (whole-record last-writer-wins):
1. Unknown ID: insert, createdAt from the client (or now), updatedAt = now
2. Tombstoned ID: discard, a deleted task is never resurrected
3. Known ID: overwrite only if the client's updatedAt is strictly greater
   than the stored one, then stamp updatedAt = now
4. Otherwise discard

The stored updatedAt is always the server clock; the client's value is
only compared. A whole batch runs in one transaction.

CRITICAL: No task state is cached between requests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from flask import Blueprint, g, jsonify

from .api import api_endpoint, get_json_body
from .auth import Authenticator
from .database import Database
from .models import Task
from .timestamp_utils import now_ms
from .validation import (
    validate_device_id,
    validate_memories,
    validate_profile,
    validate_settings,
    validate_task_id,
    validate_tasks,
)

logger = logging.getLogger(__name__)

__all__ = [
    "MergeCounts",
    "merge_incoming_tasks",
    "sync_tasks",
    "full_sync",
    "delete_task",
    "create_sync_blueprint",
]


@dataclass
class MergeCounts:
    """How a batch of incoming tasks was applied."""

    created: int = 0
    updated: int = 0
    discarded: int = 0
    tasks: List[Dict[str, Any]] = field(default_factory=list)


def merge_incoming_tasks(
    db: Database, user_id: str, tasks: List[Task], now: int
) -> MergeCounts:
    """Apply incoming tasks against the stored rows.

    Must be called inside ``db.transaction()``.
    """
    counts = MergeCounts()
    for task in tasks:
        stored = db.get_task_raw(user_id, task.id)
        if stored is None:
            db.insert_task(user_id, task, created_at=task.created_at or now, updated_at=now)
            counts.created += 1
        elif stored["deleted"]:
            logger.debug(f"Discarding write to deleted task {task.id}")
            counts.discarded += 1
        elif task.version > stored["updatedAt"]:
            db.overwrite_task(user_id, task, updated_at=now)
            counts.updated += 1
        else:
            counts.discarded += 1
    return counts


def sync_tasks(
    db: Database, user_id: str, tasks: List[Task], device_id: str, now: int
) -> MergeCounts:
    """Merge a client's task set and return the authoritative set.

    The whole batch commits or rolls back as one unit.

    Args:
        db: Database instance
        user_id: Authenticated user
        tasks: Validated incoming tasks
        device_id: Sending device (audit only)
        now: Server time stamped on accepted writes

    Returns:
        MergeCounts with ``tasks`` holding every non-deleted task
    """
    with db.transaction():
        counts = merge_incoming_tasks(db, user_id, tasks, now)
        counts.tasks = db.get_all_tasks(user_id)
        db.add_sync_log(user_id, device_id, "sync", now)

    logger.info(
        f"Sync for user {user_id} from device {device_id}: {len(tasks)} received, "
        f"{counts.created} created, {counts.updated} updated, {counts.discarded} discarded"
    )
    return counts


def full_sync(
    db: Database,
    user_id: str,
    tasks: List[Task],
    device_id: str,
    now: int,
    profile: Optional[Dict[str, Any]] = None,
    memories: Optional[Dict[str, List[Dict[str, Any]]]] = None,
    settings: Optional[Dict[str, Any]] = None,
) -> Tuple[MergeCounts, Dict[str, Any]]:
    """Merge tasks and overwrite the side channels in one transaction.

    Profile, memories and settings are written unconditionally when given.

    Returns:
        Tuple of (task merge counts, server data with tasks, profile,
        memories and settings)
    """
    with db.transaction():
        counts = merge_incoming_tasks(db, user_id, tasks, now)
        if profile is not None:
            db.upsert_profile(user_id, profile, now)
        if memories is not None:
            db.replace_memories(user_id, memories, now)
        if settings is not None:
            db.upsert_settings(user_id, settings, now)
        db.add_sync_log(user_id, device_id, "full_sync", now)

        counts.tasks = db.get_all_tasks(user_id)
        data = {
            "tasks": counts.tasks,
            "profile": db.get_profile(user_id),
            "memories": db.get_memories(user_id),
            "settings": db.get_settings(user_id),
        }

    logger.info(
        f"Full sync for user {user_id} from device {device_id}: "
        f"{counts.created} created, {counts.updated} updated, {counts.discarded} discarded"
    )
    return counts, data


def delete_task(db: Database, user_id: str, task_id: str, now: int) -> bool:
    """Tombstone a task.

    An ID the user never synced is left alone and still reports success to
    the caller, so a device deleting a task it never pushed is not retried.

    Returns:
        True if the task was live, False if it was already deleted or unknown
    """
    with db.transaction():
        if db.soft_delete_task(user_id, task_id, now):
            logger.info(f"Deleted task {task_id} for user {user_id}")
            return True
    return False


def create_sync_blueprint(
    db: Database,
    authenticator: Authenticator,
    clock: Callable[[], int] = now_ms,
) -> Blueprint:
    """Create Flask blueprint for task and side-channel sync endpoints.

    Args:
        db: Database instance
        authenticator: Bearer token checker
        clock: Source of server time in epoch milliseconds

    Returns:
        Flask Blueprint with sync routes
    """
    sync_bp = Blueprint("sync", __name__, url_prefix="/api")
    auth_required = authenticator.required

    @sync_bp.route("/tasks", methods=["GET"])
    @api_endpoint
    @auth_required
    def get_tasks() -> Tuple[Any, int]:
        """Get all non-deleted tasks, newest first."""
        return jsonify({"success": True, "tasks": db.get_all_tasks(g.user_id)}), 200

    @sync_bp.route("/tasks/sync", methods=["POST"])
    @api_endpoint
    @auth_required
    def post_sync() -> Tuple[Any, int]:
        """Merge the client's tasks.

        Request body:
            {"tasks": [...], "deviceId": "..."}

        Response:
            {"success": true, "tasks": [...], "updated": 1, "created": 0,
             "syncTime": 1700000000000}
        """
        data = get_json_body()
        tasks = validate_tasks(data.get("tasks"))
        device_id = validate_device_id(data.get("deviceId"))

        now = clock()
        counts = sync_tasks(db, g.user_id, tasks, device_id, now)
        return jsonify({
            "success": True,
            "tasks": counts.tasks,
            "updated": counts.updated,
            "created": counts.created,
            "syncTime": now,
        }), 200

    @sync_bp.route("/tasks/<task_id>", methods=["DELETE"])
    @api_endpoint
    @auth_required
    def delete(task_id: str) -> Tuple[Any, int]:
        """Soft-delete a task. Unknown and already-deleted IDs also succeed."""
        task_id = validate_task_id(task_id)
        delete_task(db, g.user_id, task_id, clock())
        return jsonify({"success": True}), 200

    @sync_bp.route("/sync/full", methods=["POST"])
    @api_endpoint
    @auth_required
    def post_full_sync() -> Tuple[Any, int]:
        """Merge tasks and replace profile, memories and settings.

        Request body:
            {"tasks": [...], "profile": {...}, "memories": {...},
             "settings": {...}, "deviceId": "..."}
        """
        data = get_json_body()
        tasks = validate_tasks(data.get("tasks"))
        device_id = validate_device_id(data.get("deviceId"))
        profile = data.get("profile")
        memories = data.get("memories")
        settings = data.get("settings")

        now = clock()
        counts, server_data = full_sync(
            db,
            g.user_id,
            tasks,
            device_id,
            now,
            profile=validate_profile(profile) if profile is not None else None,
            memories=validate_memories(memories) if memories is not None else None,
            settings=validate_settings(settings) if settings is not None else None,
        )
        return jsonify({
            "success": True,
            "data": server_data,
            "updated": counts.updated,
            "created": counts.created,
            "syncTime": now,
        }), 200

    @sync_bp.route("/profile", methods=["GET"])
    @api_endpoint
    @auth_required
    def get_profile() -> Tuple[Any, int]:
        return jsonify({"success": True, "profile": db.get_profile(g.user_id)}), 200

    @sync_bp.route("/profile", methods=["POST"])
    @api_endpoint
    @auth_required
    def post_profile() -> Tuple[Any, int]:
        """Overwrite the profile. Body is the profile object itself."""
        profile = validate_profile(get_json_body())
        db.upsert_profile(g.user_id, profile, clock())
        return jsonify({"success": True}), 200

    @sync_bp.route("/memories", methods=["GET"])
    @api_endpoint
    @auth_required
    def get_memories() -> Tuple[Any, int]:
        return jsonify({"success": True, "memories": db.get_memories(g.user_id)}), 200

    @sync_bp.route("/memories/sync", methods=["POST"])
    @api_endpoint
    @auth_required
    def post_memories() -> Tuple[Any, int]:
        """Replace the whole memory set.

        Request body:
            {"memories": {"category": [{"content": "...", "timestamp": 0}]}}
        """
        memories = validate_memories(get_json_body().get("memories"))
        count = db.replace_memories(g.user_id, memories, clock())
        logger.info(f"Replaced memories for user {g.user_id}: {count} entries")
        return jsonify({"success": True}), 200

    @sync_bp.route("/settings", methods=["GET"])
    @api_endpoint
    @auth_required
    def get_settings() -> Tuple[Any, int]:
        return jsonify({"success": True, "settings": db.get_settings(g.user_id)}), 200

    @sync_bp.route("/settings", methods=["POST"])
    @api_endpoint
    @auth_required
    def post_settings() -> Tuple[Any, int]:
        """Overwrite the settings blob.

        Request body:
            {"settings": {...}}
        """
        settings = validate_settings(get_json_body().get("settings"))
        db.upsert_settings(g.user_id, settings, clock())
        return jsonify({"success": True}), 200

    return sync_bp
