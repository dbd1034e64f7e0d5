#!/usr/bin/env python3
"""neonlocal - Local proxy connections to Neon database branches."""

from __future__ import annotations

import argparse
import os
import sys
from collections.abc import Callable
from typing import Any

from neonlocal.domains.proxy.domain.config import ConnectionType, Driver
from neonlocal.shared.core.errors import NeonLocalError, OperationInProgress, Unauthenticated
from neonlocal.shared.core.logging import configure_logging

EXIT_ERROR = 1
EXIT_UNAUTHENTICATED = 2
EXIT_IN_PROGRESS = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="neonlocal",
        description="Run the Neon Local proxy against a Neon branch",
    )
    parser.add_argument(
        "--settings",
        metavar="PATH",
        help="Path to settings JSON file (overrides ~/.neonlocal/settings.json)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log debug output to stderr.")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("status", help="Show the selection and proxy state")

    start_parser = subparsers.add_parser("start", help="Start the proxy")
    start_parser.add_argument("--driver", choices=[d.value for d in Driver], help="Driver to expose locally")
    start_parser.add_argument("--new", action="store_true", help="Create an ephemeral branch from the parent branch")
    start_parser.add_argument("--branch", help="Existing branch to connect to (default: selected branch)")
    start_parser.add_argument("--parent-branch", help="Parent branch for an ephemeral branch (implies --new)")

    subparsers.add_parser("stop", help="Stop and remove the proxy")

    reset_parser = subparsers.add_parser("reset", help="Reset the connected branch to its parent")
    reset_parser.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")

    subparsers.add_parser("orgs", help="List organizations")
    subparsers.add_parser("projects", help="List projects of the selected organization")
    subparsers.add_parser("branches", help="List branches of the selected project")

    select_org_parser = subparsers.add_parser("select-org", help="Select an organization ('' for personal)")
    select_org_parser.add_argument("org_id")
    select_project_parser = subparsers.add_parser("select-project", help="Select a project")
    select_project_parser.add_argument("project_id")
    select_branch_parser = subparsers.add_parser("select-branch", help="Select an existing branch")
    select_branch_parser.add_argument("branch_id")
    select_branch_parser.add_argument("--restart", action="store_true", help="Rebind a running proxy to this branch")
    select_branch_parser.add_argument("--driver", choices=[d.value for d in Driver], help="Driver to use; restarts a running proxy when it differs")
    select_parent_parser = subparsers.add_parser("select-parent-branch", help="Select the parent for new branches")
    select_parent_parser.add_argument("branch_id")

    type_parser = subparsers.add_parser("connection-type", help="Choose existing or new branch mode")
    type_parser.add_argument("connection_type", choices=[t.value for t in ConnectionType])

    driver_parser = subparsers.add_parser("driver", help="Change the driver (restarts a running proxy)")
    driver_parser.add_argument("driver", choices=[d.value for d in Driver])

    for name, help_text in (
        ("connection-string", "Print the local connection URL"),
        ("psql", "Open psql on the connected branch"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--database", "-d", help="Database (default: first on the branch)")
        sub.add_argument("--role", "-r", help="Role (default: first on the branch)")

    logs_parser = subparsers.add_parser("logs", help="Show proxy container logs")
    logs_parser.add_argument("--follow", "-f", action="store_true")

    watch_parser = subparsers.add_parser("watch", help="Follow proxy state until interrupted")
    watch_parser.add_argument("--interval", type=float, metavar="SECONDS", help="Poll interval")

    login_parser = subparsers.add_parser("login", help="Store a Neon API key")
    login_parser.add_argument("--api-key", help="API key (prompted when omitted)")
    subparsers.add_parser("logout", help="Stop the proxy and forget credentials")

    return parser


def _handlers() -> dict[str, Callable[..., int]]:
    from neonlocal.domains.connection.cli import commands

    return {
        "status": commands.cmd_status,
        "start": commands.cmd_start,
        "stop": commands.cmd_stop,
        "reset": commands.cmd_reset,
        "orgs": commands.cmd_orgs,
        "projects": commands.cmd_projects,
        "branches": commands.cmd_branches,
        "select-org": commands.cmd_select_org,
        "select-project": commands.cmd_select_project,
        "select-branch": commands.cmd_select_branch,
        "select-parent-branch": commands.cmd_select_parent_branch,
        "connection-type": commands.cmd_connection_type,
        "driver": commands.cmd_driver,
        "connection-string": commands.cmd_connection_string,
        "psql": commands.cmd_psql,
        "logs": commands.cmd_logs,
        "watch": commands.cmd_watch,
        "login": commands.cmd_login,
        "logout": commands.cmd_logout,
    }


def run_command(args: argparse.Namespace, services: Any) -> int:
    """Dispatch to a handler and map neonlocal errors to exit codes."""
    from neonlocal.domains.connection.cli.commands import err_console

    handler = _handlers()[args.command]
    try:
        return handler(args, services)
    except Unauthenticated as e:
        err_console.print(f"[red]Error:[/red] {e}")
        return EXIT_UNAUTHENTICATED
    except OperationInProgress as e:
        err_console.print(f"[yellow]Busy:[/yellow] {e}")
        return EXIT_IN_PROGRESS
    except NeonLocalError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        return EXIT_ERROR


def main(argv: list[str] | None = None) -> int:
    """Entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.settings:
        os.environ["NEONLOCAL_SETTINGS_PATH"] = str(args.settings)
    configure_logging(verbose=args.verbose)

    if args.command is None:
        parser.print_help()
        return EXIT_ERROR

    from neonlocal.domains.connection.app.services import build_app_services
    from neonlocal.domains.connection.app.view import ConsoleViewSink

    sink = ConsoleViewSink() if args.command == "watch" else None
    services = build_app_services(sink=sink)
    return run_command(args, services)


if __name__ == "__main__":
    sys.exit(main())
