#!/usr/bin/env python3
"""Command-line interface for tasksync.

This module provides CLI commands for managing the local task list and
syncing it with a tasksync server.

Commands:
    list-tasks              List local tasks
    add-task <text>         Create a task
    edit-task <id>          Change fields of a task
    toggle-task <id>        Mark a task done / not done
    delete-task <id>        Delete a task
    sync status             Show session and sync state
    sync register <email>   Create an account on the server
    sync login <email>      Log in to the server
    sync logout             Forget the session
    sync push               Send local tasks and merge the server's set
    sync pull               Replace local tasks with the server's set
    sync full               Sync tasks, profile, memories and settings

Task IDs may be abbreviated to any unique prefix.
"""

from __future__ import annotations

import argparse
import getpass
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from tasksync.core.config import Config
from tasksync.core.models import Category, Priority, Recurrence, Task
from tasksync.core.store import JsonFileStore
from tasksync.core.sync_client import SyncClient, SyncResult
from tasksync.core.timestamp_utils import format_timestamp, parse_day
from tasksync.core.validation import ValidationError


def format_task(task: Task, format_type: str = "text") -> str:
    """Format a single task for display.

    Args:
        task: Task to format
        format_type: Output format (text, json)

    Returns:
        Formatted task string
    """
    if format_type == "json":
        return json.dumps(task.to_dict(), indent=2, ensure_ascii=False)

    check = "x" if task.completed else " "
    line = f"[{check}] {task.id[:8]}  {task.text}"
    details = [task.category.value]
    if task.priority is not Priority.MEDIUM:
        details.append(f"priority {task.priority.value}")
    if task.due_date:
        details.append(f"due {task.due_date.isoformat()}")
    if task.recurring:
        details.append(task.recurring.value)
    return f"{line}  ({', '.join(details)})"


def format_result(result: SyncResult, action: str, format_type: str) -> str:
    """Format a SyncResult for display."""
    if format_type == "json":
        return json.dumps({
            "success": result.success,
            "pushed": result.pushed,
            "created": result.created,
            "updated": result.updated,
            "received": result.received,
            "inserted": result.inserted,
            "overwritten": result.overwritten,
            "deletes_sent": result.deletes_sent,
            "errors": result.errors,
        }, indent=2)

    if not result.success:
        return f"{action} failed:\n" + "\n".join(f"  - {e}" for e in result.errors)
    return (
        f"{action} completed:\n"
        f"  Sent: {result.pushed} tasks ({result.created} created, {result.updated} updated)\n"
        f"  Received: {result.received} tasks ({result.inserted} new, "
        f"{result.overwritten} refreshed)"
    )


def resolve_task(client: SyncClient, task_id: str) -> Task:
    """Find a task by full ID or unique prefix.

    Raises:
        ValidationError: if no task or more than one task matches
    """
    task = client.tasks.get(task_id)
    if task:
        return task
    matches = [t for t in client.tasks.all() if t.id.startswith(task_id)]
    if not matches:
        raise ValidationError("task_id", f"no task matches '{task_id}'")
    if len(matches) > 1:
        raise ValidationError("task_id", f"'{task_id}' matches {len(matches)} tasks")
    return matches[0]


def _read_password(args: argparse.Namespace) -> str:
    if getattr(args, "password", None):
        return args.password
    return getpass.getpass("Password: ")


def _field_updates(args: argparse.Namespace) -> Dict[str, Any]:
    updates: Dict[str, Any] = {}
    if args.text is not None:
        updates["text"] = args.text
    if args.notes is not None:
        updates["notes"] = args.notes
    if args.priority is not None:
        updates["priority"] = Priority(args.priority)
    if args.category is not None:
        updates["category"] = Category(args.category)
    if args.clear_due:
        updates["due_date"] = None
    elif args.due is not None:
        updates["due_date"] = _parse_due(args.due)
    if args.clear_recurring:
        updates["recurring"] = None
    elif args.recurring is not None:
        updates["recurring"] = Recurrence(args.recurring)
    return updates


def _parse_due(value: str) -> Any:
    try:
        return parse_day(value)
    except ValueError:
        raise ValidationError("due", f"invalid date '{value}' (expected YYYY-MM-DD)") from None


def cmd_list_tasks(client: SyncClient, args: argparse.Namespace) -> int:
    """List local tasks.

    Args:
        client: Sync client holding the local task list
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    tasks = client.tasks.all()
    if args.status == "pending":
        tasks = [t for t in tasks if not t.completed]
    elif args.status == "completed":
        tasks = [t for t in tasks if t.completed]

    if args.format == "json":
        print(json.dumps([t.to_dict() for t in tasks], indent=2, ensure_ascii=False))
        return 0

    if not tasks:
        print("No tasks found.")
        return 0
    for task in tasks:
        print(format_task(task))
    return 0


def cmd_add_task(client: SyncClient, args: argparse.Namespace) -> int:
    """Create a task."""
    task = client.tasks.add(
        args.text,
        notes=args.notes or "",
        priority=Priority(args.priority),
        category=Category(args.category),
        due_date=_parse_due(args.due) if args.due else None,
        recurring=Recurrence(args.recurring) if args.recurring else None,
    )
    if args.format == "json":
        print(format_task(task, "json"))
    else:
        print(f"Created task {task.id}")
    return 0


def cmd_edit_task(client: SyncClient, args: argparse.Namespace) -> int:
    """Change fields of a task."""
    task = resolve_task(client, args.task_id)
    updates = _field_updates(args)
    if not updates:
        print("Error: Nothing to change. See 'edit-task --help'.", file=sys.stderr)
        return 1

    task = client.tasks.update(task.id, **updates)
    if args.format == "json":
        print(format_task(task, "json"))
    else:
        print(f"Updated task {task.id}")
    return 0


def cmd_toggle_task(client: SyncClient, args: argparse.Namespace) -> int:
    """Flip a task's completed flag."""
    task = resolve_task(client, args.task_id)
    toggled, successor = client.tasks.toggle(task.id)

    if args.format == "json":
        print(json.dumps({
            "task": toggled.to_dict(),
            "successor": successor.to_dict() if successor else None,
        }, indent=2, ensure_ascii=False))
    else:
        state = "completed" if toggled.completed else "not completed"
        print(f"Task {toggled.id} marked {state}")
        if successor:
            print(f"Next {successor.recurring.value} task {successor.id} "
                  f"due {successor.due_date.isoformat()}")
    return 0


def cmd_delete_task(client: SyncClient, args: argparse.Namespace) -> int:
    """Delete a task locally; the deletion is sent on the next sync."""
    task = resolve_task(client, args.task_id)
    client.tasks.delete(task.id)
    if args.format == "json":
        print(json.dumps({"id": task.id, "deleted": True}))
    else:
        print(f"Deleted task {task.id}")
    return 0


def cmd_sync_status(client: SyncClient, config: Config, args: argparse.Namespace) -> int:
    """Show session and sync state.

    Args:
        client: Sync client
        config: Config instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    status = client.status()
    status["device_name"] = config.get_device_name()

    if args.format == "json":
        print(json.dumps(status, indent=2))
        return 0

    print(f"Device ID: {status['device_id']}")
    print(f"Device Name: {status['device_name']}")
    print(f"Server: {status['server_url']}")
    if status["logged_in"]:
        user = status["user"] or {}
        print(f"Logged in as: {user.get('email', 'unknown')}")
    else:
        print("Logged in as: (not logged in)")
    last_sync = status["last_sync_time"]
    print(f"Last sync: {format_timestamp(last_sync) if last_sync else 'never'}")
    print(f"Local tasks: {status['task_count']}")
    if status["pending_deletes"]:
        print(f"Pending deletions: {status['pending_deletes']}")
    return 0


def cmd_sync_register(client: SyncClient, config: Config, args: argparse.Namespace) -> int:
    """Create an account and log in."""
    if args.server_url:
        config.set_server_url(args.server_url)
    password = _read_password(args)
    if args.force:
        result = client.force_register(args.email, password, args.name or "")
    else:
        result = client.register(args.email, password, args.name or "")
    return _report_auth(result, f"Registered {args.email}", args)


def cmd_sync_login(client: SyncClient, config: Config, args: argparse.Namespace) -> int:
    """Log in to the sync server."""
    if args.server_url:
        config.set_server_url(args.server_url)
    result = client.login(args.email, _read_password(args))
    return _report_auth(result, f"Logged in as {args.email}", args)


def _report_auth(result: SyncResult, message: str, args: argparse.Namespace) -> int:
    if args.format == "json":
        print(json.dumps({"success": result.success, "errors": result.errors}))
    elif result.success:
        print(message)
    else:
        for error in result.errors:
            print(f"Error: {error}", file=sys.stderr)
    return 0 if result.success else 1


def cmd_sync_logout(client: SyncClient, args: argparse.Namespace) -> int:
    """Forget the session. Local tasks are kept."""
    client.logout()
    if args.format == "json":
        print(json.dumps({"success": True}))
    else:
        print("Logged out")
    return 0


def cmd_sync_run(client: SyncClient, args: argparse.Namespace) -> int:
    """Run push, pull or full sync."""
    operations = {
        "push": ("Push", client.push),
        "pull": ("Pull", client.pull),
        "full": ("Full sync", client.full_sync),
    }
    action, operation = operations[args.sync_command]
    result = operation()
    output = format_result(result, action, args.format)
    print(output, file=sys.stdout if result.success else sys.stderr)
    return 0 if result.success else 1


def _add_task_field_arguments(parser: argparse.ArgumentParser, editing: bool) -> None:
    parser.add_argument("--notes", type=str, default=None, help="Free-text notes")
    parser.add_argument(
        "--priority",
        choices=[p.value for p in Priority],
        default=None if editing else Priority.MEDIUM.value,
        help="Priority" + ("" if editing else " (default: medium)"),
    )
    parser.add_argument(
        "--category",
        choices=[c.value for c in Category],
        default=None if editing else Category.PERSONAL.value,
        help="Category" + ("" if editing else " (default: personal)"),
    )
    parser.add_argument("--due", type=str, default=None, help="Due date (YYYY-MM-DD)")
    parser.add_argument(
        "--recurring",
        choices=[r.value for r in Recurrence],
        default=None,
        help="Repeat the task when completed",
    )


def add_cli_subparser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add CLI subparser and its nested subcommands.

    Args:
        subparsers: Parent subparsers object to add CLI parser to
    """
    cli_parser = subparsers.add_parser(
        "cli",
        help="Command-line interface",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    cli_parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)"
    )

    cli_parser.add_argument(
        "--no-push",
        action="store_true",
        help="Do not push local changes to the server after editing"
    )

    cli_subparsers = cli_parser.add_subparsers(dest="cli_command", help="CLI commands")

    list_parser = cli_subparsers.add_parser("list-tasks", help="List local tasks")
    list_parser.add_argument(
        "--status",
        choices=["all", "pending", "completed"],
        default="all",
        help="Filter by completion (default: all)"
    )

    add_parser = cli_subparsers.add_parser("add-task", help="Create a task")
    add_parser.add_argument("text", type=str, help="Task description")
    _add_task_field_arguments(add_parser, editing=False)

    edit_parser = cli_subparsers.add_parser("edit-task", help="Change fields of a task")
    edit_parser.add_argument("task_id", type=str, help="Task ID (or unique prefix)")
    edit_parser.add_argument("--text", type=str, default=None, help="New description")
    _add_task_field_arguments(edit_parser, editing=True)
    edit_parser.add_argument("--clear-due", action="store_true", help="Remove the due date")
    edit_parser.add_argument(
        "--clear-recurring", action="store_true", help="Stop the task from repeating"
    )

    toggle_parser = cli_subparsers.add_parser("toggle-task", help="Mark a task done / not done")
    toggle_parser.add_argument("task_id", type=str, help="Task ID (or unique prefix)")

    delete_parser = cli_subparsers.add_parser("delete-task", help="Delete a task")
    delete_parser.add_argument("task_id", type=str, help="Task ID (or unique prefix)")

    # sync command with subcommands
    sync_parser = cli_subparsers.add_parser(
        "sync",
        help="Sync operations (status, login, push, pull)"
    )
    sync_subparsers = sync_parser.add_subparsers(dest="sync_command", help="Sync commands")

    sync_subparsers.add_parser("status", help="Show session and sync state")

    for name, help_text in (
        ("register", "Create an account on the sync server"),
        ("login", "Log in to the sync server"),
    ):
        auth_parser = sync_subparsers.add_parser(name, help=help_text)
        auth_parser.add_argument("email", type=str, help="Account email")
        auth_parser.add_argument(
            "--password", type=str, default=None, help="Password (prompted if omitted)"
        )
        auth_parser.add_argument(
            "--server-url", type=str, default=None, help="Sync server URL to use and remember"
        )
        if name == "register":
            auth_parser.add_argument("--name", type=str, default=None, help="Display name")
            auth_parser.add_argument(
                "--force",
                action="store_true",
                help="Replace any existing account with this email (deletes its data)"
            )

    sync_subparsers.add_parser("logout", help="Forget the session")
    sync_subparsers.add_parser("push", help="Send local tasks and merge the server's set")
    sync_subparsers.add_parser("pull", help="Replace local tasks with the server's set")
    sync_subparsers.add_parser("full", help="Sync tasks, profile, memories and settings")


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run CLI with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have cli_command attribute)

    Returns:
        Exit code (0 for success, 1 for error)
    """
    if not hasattr(args, 'cli_command') or not args.cli_command:
        print("Error: No CLI command specified. Use --help for available commands.", file=sys.stderr)
        return 1

    config = Config(config_dir=config_dir)
    store = JsonFileStore(config.get_local_store_file())
    client = SyncClient(config, store)

    try:
        if args.cli_command == "list-tasks":
            return cmd_list_tasks(client, args)
        elif args.cli_command == "add-task":
            return cmd_add_task(client, args)
        elif args.cli_command == "edit-task":
            return cmd_edit_task(client, args)
        elif args.cli_command == "toggle-task":
            return cmd_toggle_task(client, args)
        elif args.cli_command == "delete-task":
            return cmd_delete_task(client, args)
        elif args.cli_command == "sync":
            sync_cmd = getattr(args, 'sync_command', None)
            if not sync_cmd:
                print("Error: No sync command specified. Use 'sync --help'.", file=sys.stderr)
                return 1
            if sync_cmd == "status":
                return cmd_sync_status(client, config, args)
            elif sync_cmd == "register":
                return cmd_sync_register(client, config, args)
            elif sync_cmd == "login":
                return cmd_sync_login(client, config, args)
            elif sync_cmd == "logout":
                return cmd_sync_logout(client, args)
            elif sync_cmd in ("push", "pull", "full"):
                return cmd_sync_run(client, args)
            else:
                print(f"Error: Unknown sync command '{sync_cmd}'", file=sys.stderr)
                return 1
        else:
            print(f"Error: Unknown command '{args.cli_command}'", file=sys.stderr)
            return 1
    except ValidationError as e:
        print(f"Error: Invalid {e.field} - {e.message}", file=sys.stderr)
        return 1
    finally:
        # The process exits right away, so a debounced push runs now or never
        if getattr(args, "no_push", False):
            client.scheduler.cancel()
        else:
            client.scheduler.fire()
        client.close()
