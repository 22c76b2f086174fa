"""Pytest fixtures for sync integration tests.

This module provides fixtures for:
- Spawning a real sync server process
- Creating devices, each with its own config, local store and SyncClient
- Logging several devices in to one account
- Network failure simulation (stopping and restarting the server)
"""

from __future__ import annotations

import os
import socket
import subprocess
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generator, Iterator, List, Optional, Tuple

import pytest
import requests

from tasksync.core.config import Config
from tasksync.core.store import JsonFileStore
from tasksync.core.sync_client import SyncClient
from tasksync.core.tasks import TaskList
from tests.helpers import REPO_ROOT, FakeTimerFactory, auth_headers

ACCOUNT_EMAIL = "sync@example.com"
ACCOUNT_PASSWORD = "sync-password"


@dataclass
class SyncServer:
    """A sync server subprocess for testing."""

    config_dir: Path
    port: int
    process: Optional[subprocess.Popen] = None

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def is_running(self) -> bool:
        """Check if the sync server is responding."""
        try:
            resp = requests.get(f"{self.url}/api/health", timeout=1)
            return resp.status_code == 200
        except requests.exceptions.RequestException:
            return False

    def wait_until_ready(self, timeout: float = 10.0) -> bool:
        """Wait for server to become available."""
        start = time.time()
        while time.time() - start < timeout:
            if self.is_running():
                return True
            time.sleep(0.1)
        return False

    def start(self) -> subprocess.Popen:
        """Start the server process on this server's port."""
        env = os.environ.copy()
        env["PYTHONPATH"] = os.pathsep.join(
            filter(None, [str(REPO_ROOT / "src"), env.get("PYTHONPATH")])
        )

        cmd = [
            sys.executable,
            "-m", "tasksync.main",
            "-d", str(self.config_dir),
            "server",
            "--host", "127.0.0.1",
            "--port", str(self.port),
        ]

        # Request logs go to a file so a full pipe never blocks the server
        log_file = open(self.config_dir / "server.log", "ab")
        try:
            self.process = subprocess.Popen(
                cmd,
                env=env,
                stdout=subprocess.DEVNULL,
                stderr=log_file,
                cwd=str(REPO_ROOT),
            )
        finally:
            log_file.close()
        return self.process

    def stop(self) -> None:
        """Stop the sync server process."""
        if self.process:
            self.process.terminate()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()
            self.process = None

    def kill(self) -> None:
        """Forcefully kill the sync server (simulates crash)."""
        if self.process:
            self.process.kill()
            self.process.wait()
            self.process = None


@dataclass
class Device:
    """One client device: its own config directory, store and client."""

    name: str
    config: Config
    store: JsonFileStore
    timers: FakeTimerFactory
    client: SyncClient
    extra_clients: List[SyncClient] = field(default_factory=list)

    @property
    def tasks(self) -> TaskList:
        return self.client.tasks

    def reopen(self) -> SyncClient:
        """Open a second client on the same files, as a new process would."""
        client = SyncClient(self.config, JsonFileStore(self.config.get_local_store_file()),
                            timer_factory=FakeTimerFactory())
        self.extra_clients.append(client)
        return client

    def close(self) -> None:
        self.client.close()
        for client in self.extra_clients:
            client.close()


def find_free_port() -> int:
    """Find a free TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        return s.getsockname()[1]


def create_device(name: str, base_dir: Path, server_url: str) -> Device:
    """Create a device pointed at a server.

    Debounce timers are fake, so tests decide when a scheduled push runs.
    """
    config_dir = base_dir / name
    config_dir.mkdir(parents=True, exist_ok=True)
    config = Config(config_dir=config_dir)
    config.set_device_name(name)
    config.set_server_url(server_url)
    config.set("request_timeout_seconds", 5)

    store = JsonFileStore(config.get_local_store_file())
    timers = FakeTimerFactory()
    client = SyncClient(config, store, timer_factory=timers)
    return Device(name=name, config=config, store=store, timers=timers, client=client)


@pytest.fixture
def sync_server(tmp_path: Path) -> Generator[SyncServer, None, None]:
    """A running sync server with an empty database."""
    config_dir = tmp_path / "server"
    config_dir.mkdir()
    server = SyncServer(config_dir=config_dir, port=find_free_port())
    server.start()
    if not server.wait_until_ready():
        server.stop()
        pytest.fail("Failed to start sync server")
    yield server
    server.stop()


@pytest.fixture
def make_device(
    tmp_path: Path, sync_server: SyncServer
) -> Generator[Callable[[str], Device], None, None]:
    """Factory for devices pointed at the running server."""
    devices: List[Device] = []

    def factory(name: str) -> Device:
        device = create_device(name, tmp_path / "devices", sync_server.url)
        devices.append(device)
        return device

    yield factory
    for device in devices:
        device.close()


@pytest.fixture
def two_devices(make_device: Callable[[str], Device]) -> Tuple[Device, Device]:
    """Two devices logged in to the same account.

    Device A registers the account, device B logs in to it.
    """
    device_a = make_device("device-a")
    device_b = make_device("device-b")
    registered = device_a.client.register(ACCOUNT_EMAIL, ACCOUNT_PASSWORD, name="Sync")
    assert registered.success, registered.errors
    logged_in = device_b.client.login(ACCOUNT_EMAIL, ACCOUNT_PASSWORD)
    assert logged_in.success, logged_in.errors
    return device_a, device_b


@contextmanager
def server_down(server: SyncServer) -> Iterator[None]:
    """Stop the server for the duration of the block, then restart it."""
    server.stop()
    try:
        yield
    finally:
        server.start()
        server.wait_until_ready()


def server_tasks(server: SyncServer, device: Device) -> List[Dict[str, Any]]:
    """Fetch the server's live task set with a device's session."""
    resp = requests.get(
        f"{server.url}/api/tasks",
        headers=auth_headers(device.client.session.token),
        timeout=5,
    )
    resp.raise_for_status()
    return resp.json()["tasks"]
