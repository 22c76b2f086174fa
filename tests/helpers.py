"""Test helper functions for tasksync tests.

Deterministic clocks and timers, wire-format task builders and auth
helpers shared by the unit, web and sync test suites.
"""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple


class FakeClock:
    """Manually advanced clock returning epoch milliseconds."""

    def __init__(self, start: int = 1_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def set(self, value: int) -> None:
        self.now = value

    def advance(self, ms: int = 1) -> int:
        self.now += ms
        return self.now


class FakeTimer:
    """threading.Timer stand-in that only runs when told to."""

    def __init__(
        self,
        interval: float,
        function: Callable[..., Any],
        args: Optional[Tuple[Any, ...]] = None,
        kwargs: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def expire(self) -> None:
        """Run the timer's function as if its interval had elapsed."""
        if not self.cancelled:
            self.function(*self.args, **self.kwargs)


class FakeTimerFactory:
    """Records every FakeTimer it creates."""

    def __init__(self) -> None:
        self.timers: List[FakeTimer] = []

    def __call__(self, *args: Any, **kwargs: Any) -> FakeTimer:
        timer = FakeTimer(*args, **kwargs)
        self.timers.append(timer)
        return timer

    @property
    def last(self) -> FakeTimer:
        return self.timers[-1]

    def active(self) -> List[FakeTimer]:
        return [t for t in self.timers if t.started and not t.cancelled]


def make_task(task_id: str = "t1", text: str = "Buy milk", **fields: Any) -> Dict[str, Any]:
    """Build a wire-format task dict."""
    task: Dict[str, Any] = {
        "id": task_id,
        "text": text,
        "notes": "",
        "completed": False,
        "priority": "medium",
        "category": "personal",
        "dueDate": None,
        "recurring": None,
        "createdAt": 1_000,
        "updatedAt": 1_000,
    }
    task.update(fields)
    return task


def auth_headers(token: str) -> Dict[str, str]:
    """Authorization header for a bearer token."""
    return {"Authorization": f"Bearer {token}"}


def tasks_by_id(tasks: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    return {t["id"]: t for t in tasks}


def register_user(
    client: Any, email: str = "one@example.com", password: str = "secret1", name: str = ""
) -> str:
    """Register through a Flask test client and return the bearer token."""
    response = client.post(
        "/api/auth/register", json={"email": email, "password": password, "name": name}
    )
    assert response.status_code == 200, response.get_json()
    return response.get_json()["token"]


REPO_ROOT = Path(__file__).parent.parent


def run_cli(config_dir: Path, *args: str) -> subprocess.CompletedProcess:
    """Run ``tasksync -d <config_dir> <args>`` in a subprocess."""
    env = os.environ.copy()
    env["PYTHONPATH"] = os.pathsep.join(
        filter(None, [str(REPO_ROOT / "src"), env.get("PYTHONPATH")])
    )
    return subprocess.run(
        [sys.executable, "-m", "tasksync.main", "-d", str(config_dir), *args],
        capture_output=True,
        text=True,
        env=env,
        cwd=str(REPO_ROOT),
        timeout=60,
    )
