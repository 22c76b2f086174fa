"""Pytest fixtures for web API tests.

Provides a Flask test client backed by a file database and a manually
advanced server clock.
"""

from __future__ import annotations

import pytest
from pathlib import Path
from typing import Dict, Generator

from flask import Flask
from flask.testing import FlaskClient

from tasksync.core.database import Database
from tasksync.web import create_app
from tests.helpers import FakeClock, auth_headers, register_user


@pytest.fixture
def server_clock() -> FakeClock:
    """Server time source, advanced by tests to order writes."""
    return FakeClock(start=100_000)


@pytest.fixture
def web_app(test_config_dir: Path, server_clock: FakeClock) -> Generator[Flask, None, None]:
    """Create Flask app for testing.

    Args:
        test_config_dir: Temporary config directory holding the database
        server_clock: Server time source

    Yields:
        Flask application instance
    """
    app = create_app(config_dir=test_config_dir, clock=server_clock)
    app.config["TESTING"] = True
    yield app
    app.extensions["tasksync.db"].close()


@pytest.fixture
def client(web_app: Flask) -> FlaskClient:
    """Create Flask test client.

    Args:
        web_app: Flask application

    Returns:
        Flask test client for making requests
    """
    return web_app.test_client()


@pytest.fixture
def server_db(web_app: Flask) -> Database:
    return web_app.extensions["tasksync.db"]


@pytest.fixture
def headers(client: FlaskClient) -> Dict[str, str]:
    """Authorization headers for a freshly registered user."""
    return auth_headers(register_user(client))
