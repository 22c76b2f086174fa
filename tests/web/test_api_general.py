"""Web API tests for general functionality.

Tests health check, error handling, and CORS.
"""

from __future__ import annotations

import json
from typing import Dict

import pytest
from flask.testing import FlaskClient

from tasksync.core.database import Database


@pytest.mark.web
class TestHealthCheck:
    """Test health check endpoint."""

    def test_health_check(self, client: FlaskClient) -> None:
        """Test /api/health endpoint."""
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.content_type == "application/json"

        data = json.loads(response.data)
        assert data["status"] == "ok"
        assert "time" in data

    def test_health_needs_no_auth(self, client: FlaskClient) -> None:
        assert client.get("/api/health", headers={"Authorization": "Bearer junk"}).status_code == 200


@pytest.mark.web
class TestErrorHandling:
    """Test API error handling."""

    def test_nonexistent_endpoint_returns_404(self, client: FlaskClient) -> None:
        """Test that non-existent endpoints return 404."""
        response = client.get("/api/nonexistent")

        assert response.status_code == 404
        data = json.loads(response.data)
        assert "error" in data

    def test_invalid_route_returns_404(self, client: FlaskClient) -> None:
        """Test invalid route returns 404."""
        response = client.get("/invalid/path")

        assert response.status_code == 404

    def test_wrong_method_returns_405(self, client: FlaskClient) -> None:
        response = client.put("/api/tasks/sync", json={})

        assert response.status_code == 405
        assert json.loads(response.data) == {"error": "Method not allowed"}

    def test_unexpected_error_returns_500(
        self, client: FlaskClient, headers: Dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Unexpected exceptions become JSON 500 responses."""
        def broken(self: Database, user_id: str) -> None:
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(Database, "get_all_tasks", broken)
        response = client.get("/api/tasks", headers=headers)

        assert response.status_code == 500
        assert json.loads(response.data)["error"] == "disk on fire"


@pytest.mark.web
class TestCORS:
    """Test CORS headers."""

    def test_cors_headers_present(self, client: FlaskClient) -> None:
        """Test that CORS headers are present."""
        response = client.get("/api/health")

        # Flask-CORS should add Access-Control-Allow-Origin header
        assert "Access-Control-Allow-Origin" in response.headers

    def test_options_request_supported(self, client: FlaskClient) -> None:
        """Test that OPTIONS requests are supported for CORS."""
        response = client.options("/api/tasks/sync")

        # Should return successful response for preflight request
        assert response.status_code in [200, 204]
