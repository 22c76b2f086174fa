#!/usr/bin/env python3
"""Sync server HTTP API for tasksync.

This module assembles the Flask application: account endpoints, task sync
endpoints and the side channels (profile, memories, settings).

Endpoints:
    POST   /api/auth/register         Create an account
    POST   /api/auth/force-register   Replace an account
    POST   /api/auth/login            Get a bearer token
    GET    /api/auth/verify           Check a bearer token
    POST   /api/auth/change-password  Change password
    GET    /api/tasks                 List non-deleted tasks
    POST   /api/tasks/sync            Merge a client's tasks
    DELETE /api/tasks/<id>            Soft-delete a task
    POST   /api/sync/full             Merge tasks and side channels
    GET    /api/profile               Get profile
    POST   /api/profile               Overwrite profile
    GET    /api/memories              Get memories
    POST   /api/memories/sync         Replace memories
    GET    /api/settings              Get settings
    POST   /api/settings              Overwrite settings
    GET    /api/health                Health check (no auth)

All endpoints return JSON. Every endpoint except auth and health requires
an ``Authorization: Bearer <token>`` header.
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from flask import Flask, Response, jsonify
from flask_cors import CORS

from tasksync.core.auth import Authenticator, create_auth_blueprint
from tasksync.core.config import Config
from tasksync.core.database import Database
from tasksync.core.sync import create_sync_blueprint
from tasksync.core.timestamp_utils import now_ms

logger = logging.getLogger(__name__)


def create_app(
    config_dir: Optional[Path] = None,
    db: Optional[Database] = None,
    clock: Optional[Callable[[], int]] = None,
) -> Flask:
    """Create and configure Flask application.

    Args:
        config_dir: Custom configuration directory (default: None)
        db: Database to serve (default: open the configured database file)
        clock: Server time source in epoch milliseconds (default: wall clock)

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)
    app.config["JSON_SORT_KEYS"] = False
    CORS(app)  # Enable CORS for all routes

    config = Config(config_dir=config_dir)
    if db is None:
        db_path = config.get_database_file()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        db = Database(db_path)
    clock = clock or now_ms

    authenticator = Authenticator(
        db, config.get_secret_key(), ttl_days=config.get_token_ttl_days()
    )
    app.register_blueprint(create_auth_blueprint(db, authenticator, clock))
    app.register_blueprint(create_sync_blueprint(db, authenticator, clock))
    app.extensions["tasksync.db"] = db
    app.extensions["tasksync.authenticator"] = authenticator

    logger.info(f"Sync server initialized with database: {db.db_path}")

    @app.teardown_appcontext
    def release_connection(error: Optional[BaseException]) -> None:
        db.close_connection()

    # Error handlers
    @app.errorhandler(404)
    def not_found(error: Any) -> tuple[Response, int]:
        """Handle 404 errors."""
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(error: Any) -> tuple[Response, int]:
        """Handle 405 errors."""
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def internal_error(error: Any) -> tuple[Response, int]:
        """Handle 500 errors."""
        logger.error(f"Internal error: {error}")
        return jsonify({"error": "Internal server error"}), 500

    @app.route("/api/health", methods=["GET"])
    def health_check() -> tuple[Response, int]:
        """Health check endpoint.

        Returns:
            JSON response indicating service health
        """
        return jsonify({
            "status": "ok",
            "time": datetime.now(tz=timezone.utc).isoformat(),
        }), 200

    return app


def add_server_subparser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add server subparser and its arguments.

    Args:
        subparsers: Parent subparsers object to add server parser to
    """
    server_parser = subparsers.add_parser(
        "server",
        help="Start the sync server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    server_parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)"
    )

    server_parser.add_argument(
        "--port",
        type=int,
        default=5000,
        help="Port to bind to (default: 5000)"
    )

    server_parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode"
    )


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run sync server with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have host, port, debug attributes)

    Returns:
        Exit code (0 for success)
    """
    logger.info("Starting tasksync sync server")
    if config_dir:
        logger.info(f"Using custom config directory: {config_dir}")

    app = create_app(config_dir=config_dir)

    app.run(
        host=args.host,
        port=args.port,
        debug=args.debug,
        threaded=True,
    )

    return 0
