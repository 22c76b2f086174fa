#!/usr/bin/env python3
"""tasksync application entry point.

This module provides a unified entry point for both sides:
- server: the sync server (HTTP API)
- cli: local task management and sync client

Usage:
    tasksync server [--port 8080]            # Start the sync server
    tasksync cli list-tasks                  # List local tasks
    tasksync cli sync login me@example.com   # Log in to the sync server
    tasksync -d /tmp/conf cli sync push      # Use a custom config directory
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, NoReturn, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def create_parser() -> argparse.ArgumentParser:
    """Create the top-level argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="tasksync",
        description="tasksync - Task list with multi-device synchronization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  tasksync server --port 8080                 Start the sync server on port 8080
  tasksync cli add-task "Buy milk" --due 2024-06-01
  tasksync cli --format json list-tasks       List tasks as JSON
  tasksync cli sync register me@example.com --server-url http://host:5000
  tasksync cli sync full                      Sync tasks, profile and settings
""",
    )

    parser.add_argument(
        "-d", "--config-dir",
        type=Path,
        default=None,
        help="Custom configuration directory (default: $TASKSYNC_CONFIG_DIR or ~/.config/tasksync/)"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="interface", help="Interface to use")

    from tasksync.web import add_server_subparser
    add_server_subparser(subparsers)

    from tasksync.cli import add_cli_subparser
    add_cli_subparser(subparsers)

    return parser


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """Main entry point for tasksync.

    Parses arguments and dispatches to the appropriate interface.
    """
    load_dotenv()

    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
    )

    if args.interface == "server":
        from tasksync.web import run as run_server
        exit_code = run_server(args.config_dir, args)
    elif args.interface == "cli":
        from tasksync.cli import run as run_cli
        exit_code = run_cli(args.config_dir, args)
    else:
        parser.print_help()
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
