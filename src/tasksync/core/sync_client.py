"""Sync client for tasksync.

This module provides the device side of synchronization:
- Session management (register, login, logout, 401 handling)
- Debounced push of the complete local task set after local edits
- Non-destructive merge of the server's authoritative set
- Destructive pull for explicit full refreshes
- Full sync of tasks plus profile, memories and settings
- Optional periodic auto-sync

Public operations never raise on network or server failures. They return
a SyncResult and leave local state untouched; the next push re-sends the
whole local task set, so nothing is lost by a failed attempt.
"""

from __future__ import annotations

import http.client
import json
import logging
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .config import Config
from .models import Task
from .store import KeyValueStore
from .tasks import TaskList
from .validation import ValidationError, validate_tasks

logger = logging.getLogger(__name__)

__all__ = [
    "SyncResult",
    "SyncError",
    "SessionExpired",
    "SyncSession",
    "PushScheduler",
    "SyncClient",
]

SESSION_KEY = "session"
LAST_SYNC_KEY = "last_sync_time"
PROFILE_KEY = "profile"
MEMORIES_KEY = "memories"
SETTINGS_KEY = "settings"


class SyncError(Exception):
    """A sync request failed (network, timeout or non-2xx response).

    Attributes:
        status: HTTP status code, or None if no response was received
    """

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class SessionExpired(SyncError):
    """The server rejected the session's credential (HTTP 401)."""


@dataclass
class SyncResult:
    """Result of a sync operation."""

    success: bool
    pushed: int = 0  # Tasks sent to the server
    created: int = 0  # Rows the server created
    updated: int = 0  # Rows the server overwrote
    received: int = 0  # Tasks in the server's response
    inserted: int = 0  # Server tasks new to this device
    overwritten: int = 0  # Local tasks replaced by newer server copies
    deletes_sent: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class SyncSession:
    """An authenticated session with one sync server.

    Created by login or register, destroyed by logout or a 401 response.
    """

    server_url: str
    token: str
    user: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"server_url": self.server_url, "token": self.token, "user": self.user}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["SyncSession"]:
        if not isinstance(data, dict) or not data.get("token") or not data.get("server_url"):
            return None
        return cls(server_url=data["server_url"], token=data["token"], user=data.get("user") or {})


class PushScheduler:
    """Debounce timer for pushes, as an explicit two-state machine.

    States:
        idle:              no push pending
        pending(deadline): a push fires at ``deadline`` unless rescheduled

    schedule() re-arms from either state, fire() moves pending -> idle and
    runs the callback, cancel() moves pending -> idle without running it.
    A callback that is already running is never interrupted.
    """

    IDLE = "idle"
    PENDING = "pending"

    def __init__(
        self,
        callback: Callable[[], Any],
        delay: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self.callback = callback
        self.delay = delay
        self.clock = clock
        self.timer_factory = timer_factory
        self.deadline: Optional[float] = None
        self._timer: Any = None
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        return self.IDLE if self.deadline is None else self.PENDING

    def schedule(self) -> float:
        """Arm (or re-arm) the timer.

        Returns:
            The new deadline
        """
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            generation = self._generation
            self.deadline = self.clock() + self.delay
            self._timer = self.timer_factory(self.delay, self._on_timer, args=(generation,))
            self._timer.daemon = True
            self._timer.start()
            return self.deadline

    def _to_idle(self, generation: Optional[int] = None) -> bool:
        """Move pending -> idle.

        With a generation, only a timer from the current schedule() may make
        the move; a timer cancelled too late must not fire a newer schedule.
        """
        with self._lock:
            if self.deadline is None:
                return False
            if generation is not None and generation != self._generation:
                return False
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self.deadline = None
            self._generation += 1
            return True

    def _on_timer(self, generation: int) -> None:
        if self._to_idle(generation):
            self.callback()

    def fire(self) -> bool:
        """Run the pending push now.

        Returns:
            True if a push was pending and ran, False if idle
        """
        if not self._to_idle():
            return False
        self.callback()
        return True

    def cancel(self) -> bool:
        """Drop the pending push.

        Returns:
            True if a push was pending
        """
        return self._to_idle()


class SyncClient:
    """Client for syncing this device's tasks with the sync server.

    Attributes:
        config: Config instance
        store: Local key-value store
        tasks: Local task list; its mutations schedule pushes
        scheduler: Debounce timer for pushes
    """

    def __init__(
        self,
        config: Config,
        store: KeyValueStore,
        task_list: Optional[TaskList] = None,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        """Initialize sync client.

        Args:
            config: Config instance
            store: Local key-value store
            task_list: Local task list (default: one backed by store)
            timer_factory: threading.Timer-compatible factory for the
                debounce and auto-sync timers
        """
        self.config = config
        self.store = store
        self.device_id = config.get_device_id_hex()
        self.timeout = config.get_request_timeout()
        self.timer_factory = timer_factory

        self.tasks = task_list if task_list is not None else TaskList(store)
        self.tasks.on_change = self.schedule_push
        self.scheduler = PushScheduler(
            self.push,
            delay=config.get_push_debounce_seconds(),
            timer_factory=timer_factory,
        )

        self._session = SyncSession.from_dict(store.get(SESSION_KEY))
        self._auto_sync_timer: Any = None
        self._auto_sync_interval = 0.0
        self._auto_sync_lock = threading.Lock()

    # ===== Session =====

    @property
    def session(self) -> Optional[SyncSession]:
        return self._session

    @property
    def is_logged_in(self) -> bool:
        return self._session is not None

    def _start_session(self, response: Dict[str, Any]) -> SyncSession:
        token = response.get("token")
        if not isinstance(token, str) or not token:
            raise SyncError("Server response has no token")
        session = SyncSession(
            server_url=self.config.get_server_url(),
            token=token,
            user=response.get("user") or {},
        )
        self._session = session
        self.store.set(SESSION_KEY, session.to_dict())
        return session

    def _end_session(self) -> None:
        self._session = None
        self.store.delete(SESSION_KEY)
        self.scheduler.cancel()

    def _authenticate(self, action: str, path: str, data: Dict[str, Any]) -> SyncResult:
        try:
            response = self._make_request("POST", path, data, authenticated=False)
            session = self._start_session(response)
        except SyncError as e:
            return self._failure(action, e)
        logger.info(f"{action} succeeded for {session.user.get('email', 'unknown user')}")
        return SyncResult(success=True)

    def register(self, email: str, password: str, name: str = "") -> SyncResult:
        """Create an account and start a session."""
        return self._authenticate(
            "Register", "/api/auth/register",
            {"email": email, "password": password, "name": name},
        )

    def force_register(self, email: str, password: str, name: str = "") -> SyncResult:
        """Replace any account with this email and start a session."""
        return self._authenticate(
            "Force register", "/api/auth/force-register",
            {"email": email, "password": password, "name": name},
        )

    def login(self, email: str, password: str) -> SyncResult:
        """Exchange credentials for a session."""
        return self._authenticate(
            "Login", "/api/auth/login", {"email": email, "password": password}
        )

    def logout(self) -> None:
        """Destroy the session. Local tasks are kept."""
        self._end_session()
        logger.info("Logged out")

    def verify(self) -> SyncResult:
        """Check the stored session with the server (clears it on 401)."""
        if not self.is_logged_in:
            return SyncResult(success=False, errors=["Not logged in"])
        try:
            response = self._make_request("GET", "/api/auth/verify")
        except SyncError as e:
            return self._failure("Verify", e)
        self._session.user = response.get("user") or self._session.user
        self.store.set(SESSION_KEY, self._session.to_dict())
        return SyncResult(success=True)

    def change_password(self, current_password: str, new_password: str) -> SyncResult:
        """Change the account password."""
        if not self.is_logged_in:
            return SyncResult(success=False, errors=["Not logged in"])
        try:
            self._make_request(
                "POST",
                "/api/auth/change-password",
                {"currentPassword": current_password, "newPassword": new_password},
            )
        except SyncError as e:
            return self._failure("Change password", e)
        return SyncResult(success=True)

    # ===== Push / merge / pull =====

    def schedule_push(self) -> None:
        """Debounce a push after a local mutation (no-op when logged out)."""
        if self.is_logged_in:
            self.scheduler.schedule()

    def push(self) -> SyncResult:
        """Send the full local task set and merge the server's answer.

        Pending deletions are sent first. On any failure local state is
        left untouched.
        """
        if not self.is_logged_in:
            return SyncResult(success=False, errors=["Not logged in"])

        try:
            deletes_sent = self._flush_pending_deletes()
            payload = {"tasks": self.tasks.to_wire(), "deviceId": self.device_id}
            response = self._make_request("POST", "/api/tasks/sync", payload)
            server_tasks = self._parse_tasks(response.get("tasks"))
        except SyncError as e:
            return self._failure("Push", e)

        stats = self.tasks.merge(server_tasks)
        self._record_sync(response.get("syncTime"))

        result = SyncResult(
            success=True,
            pushed=len(payload["tasks"]),
            created=int(response.get("created") or 0),
            updated=int(response.get("updated") or 0),
            received=len(server_tasks),
            inserted=stats.inserted,
            overwritten=stats.overwritten,
            deletes_sent=deletes_sent,
        )
        logger.info(
            f"Push: {result.pushed} sent ({result.created} created, {result.updated} updated "
            f"on server), {result.inserted} new and {result.overwritten} refreshed locally"
        )
        return result

    def merge(self, server_tasks: List[Task]) -> SyncResult:
        """Merge a server task set into local state without removing anything."""
        stats = self.tasks.merge(server_tasks)
        return SyncResult(
            success=True,
            received=len(server_tasks),
            inserted=stats.inserted,
            overwritten=stats.overwritten,
        )

    def pull(self) -> SyncResult:
        """Replace the local task set with the server's.

        Local edits not yet pushed are lost; use after login or for an
        explicit refresh.
        """
        if not self.is_logged_in:
            return SyncResult(success=False, errors=["Not logged in"])

        try:
            deletes_sent = self._flush_pending_deletes()
            response = self._make_request("GET", "/api/tasks")
            server_tasks = self._parse_tasks(response.get("tasks"))
        except SyncError as e:
            return self._failure("Pull", e)

        kept = self.tasks.replace_all(server_tasks)
        logger.info(f"Pull: replaced local tasks with {kept} server tasks")
        return SyncResult(
            success=True, received=len(server_tasks), inserted=kept, deletes_sent=deletes_sent
        )

    def full_sync(self) -> SyncResult:
        """Sync tasks, profile, memories and settings in one request.

        Tasks merge like push(). The server's profile and memories replace
        the local ones; server settings are laid over local settings.
        """
        if not self.is_logged_in:
            return SyncResult(success=False, errors=["Not logged in"])

        try:
            deletes_sent = self._flush_pending_deletes()
            payload: Dict[str, Any] = {
                "tasks": self.tasks.to_wire(),
                "deviceId": self.device_id,
            }
            for key, store_key in (
                ("profile", PROFILE_KEY),
                ("memories", MEMORIES_KEY),
                ("settings", SETTINGS_KEY),
            ):
                value = self.store.get(store_key)
                if value is not None:
                    payload[key] = value
            response = self._make_request("POST", "/api/sync/full", payload)
            data = response.get("data")
            if not isinstance(data, dict):
                raise SyncError("Server response has no data")
            server_tasks = self._parse_tasks(data.get("tasks"))
        except SyncError as e:
            return self._failure("Full sync", e)

        stats = self.tasks.merge(server_tasks)
        if data.get("profile"):
            self.store.set(PROFILE_KEY, data["profile"])
        if isinstance(data.get("memories"), dict):
            self.store.set(MEMORIES_KEY, data["memories"])
        if isinstance(data.get("settings"), dict):
            settings = self.store.get(SETTINGS_KEY) or {}
            settings.update(data["settings"])
            self.store.set(SETTINGS_KEY, settings)
        self._record_sync(response.get("syncTime"))

        logger.info(
            f"Full sync: {len(payload['tasks'])} sent, {len(server_tasks)} received, "
            f"{stats.inserted} new and {stats.overwritten} refreshed locally"
        )
        return SyncResult(
            success=True,
            pushed=len(payload["tasks"]),
            created=int(response.get("created") or 0),
            updated=int(response.get("updated") or 0),
            received=len(server_tasks),
            inserted=stats.inserted,
            overwritten=stats.overwritten,
            deletes_sent=deletes_sent,
        )

    def delete_remote(self, task_id: str) -> SyncResult:
        """Send a deletion to the server.

        A 404 counts as success: the server never had the task.
        """
        if not self.is_logged_in:
            return SyncResult(success=False, errors=["Not logged in"])
        try:
            self._delete_remote(task_id)
        except SyncError as e:
            return self._failure("Delete", e)
        return SyncResult(success=True, deletes_sent=1)

    def _delete_remote(self, task_id: str) -> None:
        path = f"/api/tasks/{urllib.parse.quote(task_id, safe='')}"
        try:
            self._make_request("DELETE", path)
        except SyncError as e:
            if e.status != 404:
                raise
            logger.debug(f"Task {task_id} unknown to server, nothing to delete")
        self.tasks.resolve_delete(task_id)

    def _flush_pending_deletes(self) -> int:
        """Send every pending deletion.

        A server error on one deletion keeps it pending without failing
        the sync; network failures and 401 propagate.
        """
        sent = 0
        for task_id in self.tasks.pending_deletes():
            try:
                self._delete_remote(task_id)
                sent += 1
            except SyncError as e:
                if e.status is None or isinstance(e, SessionExpired):
                    raise
                logger.warning(f"Deletion of task {task_id} failed, will retry: {e}")
        return sent

    # ===== Auto-sync =====

    def start_auto_sync(self, interval: Optional[float] = None) -> bool:
        """Run full_sync() periodically while logged in.

        Args:
            interval: Seconds between runs (default: from config; 0 disables)

        Returns:
            True if the timer was started
        """
        if interval is None:
            interval = self.config.get_auto_sync_interval()
        if interval <= 0:
            return False
        with self._auto_sync_lock:
            if self._auto_sync_timer is not None:
                self._auto_sync_timer.cancel()
            self._auto_sync_interval = interval
            self._arm_auto_sync()
        logger.info(f"Auto-sync every {interval:g}s")
        return True

    def _arm_auto_sync(self) -> None:
        timer = self.timer_factory(self._auto_sync_interval, self._auto_sync_tick)
        timer.daemon = True
        timer.start()
        self._auto_sync_timer = timer

    def _auto_sync_tick(self) -> None:
        if self.is_logged_in:
            self.full_sync()
        with self._auto_sync_lock:
            if self._auto_sync_timer is not None:
                self._arm_auto_sync()

    def stop_auto_sync(self) -> None:
        with self._auto_sync_lock:
            if self._auto_sync_timer is not None:
                self._auto_sync_timer.cancel()
                self._auto_sync_timer = None

    def close(self) -> None:
        """Stop all timers. A pending push is dropped."""
        self.stop_auto_sync()
        self.scheduler.cancel()

    # ===== Status =====

    def status(self) -> Dict[str, Any]:
        """Get a summary of the sync state."""
        session = self._session
        return {
            "logged_in": session is not None,
            "server_url": session.server_url if session else self.config.get_server_url(),
            "user": session.user if session else None,
            "device_id": self.device_id,
            "last_sync_time": self.store.get(LAST_SYNC_KEY),
            "task_count": len(self.tasks),
            "pending_deletes": len(self.tasks.pending_deletes()),
            "push_pending": self.scheduler.state == PushScheduler.PENDING,
        }

    # ===== Internals =====

    def _record_sync(self, sync_time: Any) -> None:
        if isinstance(sync_time, int) and not isinstance(sync_time, bool):
            self.store.set(LAST_SYNC_KEY, sync_time)

    def _parse_tasks(self, tasks: Any) -> List[Task]:
        try:
            return validate_tasks(tasks if tasks is not None else [])
        except ValidationError as e:
            raise SyncError(f"Invalid task in server response: {e}") from None

    def _failure(self, action: str, error: SyncError) -> SyncResult:
        if isinstance(error, SessionExpired):
            logger.warning(f"{action} failed: session expired, logging out")
            self._end_session()
        else:
            logger.warning(f"{action} failed: {error}")
        return SyncResult(success=False, errors=[str(error)])

    def _make_request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> Dict[str, Any]:
        """Make an HTTP request to the sync server.

        Args:
            method: HTTP method
            path: Path below the server URL, e.g. /api/tasks
            data: JSON body to send
            authenticated: Send the session's bearer token

        Returns:
            Decoded JSON response object

        Raises:
            SessionExpired: on 401 (or no session for an authenticated call)
            SyncError: on any other failure
        """
        headers = {"Accept": "application/json"}
        if authenticated:
            session = self._session
            if session is None:
                raise SessionExpired("Not logged in", status=401)
            base_url = session.server_url
            headers["Authorization"] = f"Bearer {session.token}"
        else:
            base_url = self.config.get_server_url()
        url = f"{base_url}{path}"

        body = None
        if data is not None:
            body = json.dumps(data).encode("utf-8")
            headers["Content-Type"] = "application/json"

        request = urllib.request.Request(url, data=body, method=method, headers=headers)
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                raw = response.read()
        except urllib.error.HTTPError as e:
            error_msg = self._error_message(e)
            logger.debug(f"{method} {url} returned {e.code}: {error_msg}")
            if e.code == 401:
                raise SessionExpired(error_msg, status=401) from None
            raise SyncError(f"Server error: {error_msg}", status=e.code) from None
        except urllib.error.URLError as e:
            raise SyncError(f"Connection failed to {url}: {e.reason}") from None
        except (OSError, http.client.HTTPException) as e:
            raise SyncError(f"Request to {url} failed: {e!r}") from None

        # UnicodeDecodeError is a ValueError
        try:
            payload = json.loads(raw.decode("utf-8")) if raw else {}
        except ValueError:
            raise SyncError(f"Invalid JSON from {url}") from None
        if not isinstance(payload, dict):
            raise SyncError(f"Unexpected response from {url}")
        return payload

    @staticmethod
    def _error_message(error: urllib.error.HTTPError) -> str:
        try:
            data = json.loads(error.read().decode("utf-8"))
        except (OSError, ValueError):
            data = None
        if isinstance(data, dict) and data.get("error"):
            return str(data["error"])
        return f"HTTP {error.code}: {error.reason}"
