"""CLI command handlers for neonlocal."""

from __future__ import annotations

import getpass
import logging
import sys
import threading
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from neonlocal.domains.connection.app.view import render_status
from neonlocal.domains.proxy.domain.config import PROXY_CONTAINER_NAME, ConnectionType, ContainerState
from neonlocal.domains.settings.app.credentials import (
    MemoryCredentialsService,
    get_credentials_service,
    is_keyring_usable,
    reset_credentials_service,
)
from neonlocal.domains.settings.store.settings import ALLOW_PLAINTEXT_CREDENTIALS_SETTING
from neonlocal.shared.core.errors import NeonLocalError, NotConnected

if TYPE_CHECKING:
    from neonlocal.domains.catalog.domain.models import Branch
    from neonlocal.domains.connection.app.services import AppServices

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)


def _refresh_quietly(services: AppServices) -> None:
    """Fill the catalog names for display; status works without them."""
    try:
        services.controller.refresh()
    except NeonLocalError as e:
        logger.debug("Catalog refresh failed: %s", e)


def cmd_status(args: Any, services: AppServices) -> int:
    """Show the selection and the state of the running proxy."""
    services.controller.reconcile()
    _refresh_quietly(services)
    console.print(render_status(services.controller.snapshot()))
    return 0


def cmd_start(args: Any, services: AppServices) -> int:
    """Start the proxy for the selected (or given) branch."""
    connection_type = None
    branch_id = getattr(args, "branch", None)
    if getattr(args, "new", False) or getattr(args, "parent_branch", None):
        connection_type = ConnectionType.NEW
        branch_id = getattr(args, "parent_branch", None) or branch_id
    elif branch_id:
        connection_type = ConnectionType.EXISTING

    controller = services.controller
    controller.reconcile()
    if controller.state.connected:
        console.print(
            f"Proxy is already connected to branch {controller.state.currently_connected_branch_id}. "
            "Stop it first or use `select-branch --restart`."
        )
        return 1

    with console.status("Starting Neon Local proxy..."):
        state = controller.start(
            driver=getattr(args, "driver", None),
            connection_type=connection_type,
            branch_id=branch_id,
        )
    if not state.connected:
        console.print("Proxy was stopped before it finished starting.")
        return 0
    _refresh_quietly(services)
    console.print(render_status(controller.snapshot()))
    return 0


def cmd_stop(args: Any, services: AppServices) -> int:
    services.controller.stop()
    console.print("Proxy stopped.")
    return 0


def cmd_reset(args: Any, services: AppServices) -> int:
    """Reset the connected branch to the state of its parent."""
    controller = services.controller
    controller.reconcile()

    def confirm(branch: Branch) -> bool:
        if getattr(args, "yes", False):
            return True
        if not sys.stdin.isatty():
            err_console.print("Refusing to reset without a terminal; pass --yes to confirm.")
            return False
        return Confirm.ask(
            f"Reset branch [bold]{branch.name}[/bold] to its parent? All changes on it will be lost.",
            default=False,
        )

    if controller.reset_from_parent(confirm):
        console.print("Branch reset to parent.")
        return 0
    console.print("Reset cancelled.")
    return 1


def _print_table(title: str, columns: tuple[str, ...], rows: list[tuple[str, ...]], marker: str = "") -> None:
    if not rows:
        console.print(f"No {title.lower()}.")
        return
    table = Table(title=title)
    table.add_column("")
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row("*" if marker and row[0] == marker else "", *row)
    console.print(table)


def cmd_orgs(args: Any, services: AppServices) -> int:
    orgs = services.catalog.list_orgs()
    selected = services.selection_store.load().org_id or "-"
    _print_table("Organizations", ("ID", "Name"), [(org.id or "-", org.name) for org in orgs], marker=selected)
    return 0


def cmd_projects(args: Any, services: AppServices) -> int:
    selection = services.selection_store.load()
    projects = services.catalog.list_projects(selection.org_id)
    _print_table("Projects", ("ID", "Name"), [(p.id, p.name) for p in projects], marker=selection.project_id)
    return 0


def cmd_branches(args: Any, services: AppServices) -> int:
    selection = services.selection_store.load()
    if not selection.project_id:
        err_console.print("No project selected. Run `neonlocal select-project ID` first.")
        return 1
    branches = services.catalog.list_branches(selection.project_id)
    _print_table(
        "Branches",
        ("ID", "Name", "Parent"),
        [(b.id, b.name, b.parent_id or "-") for b in branches],
        marker=selection.target_branch_id,
    )
    return 0


def cmd_select_org(args: Any, services: AppServices) -> int:
    projects = services.controller.select_org(args.org_id)
    console.print(f"Organization selected ({len(projects)} projects).")
    return 0


def cmd_select_project(args: Any, services: AppServices) -> int:
    branches = services.controller.select_project(args.project_id)
    console.print(f"Project selected ({len(branches)} branches).")
    return 0


def cmd_select_branch(args: Any, services: AppServices) -> int:
    controller = services.controller
    restart = getattr(args, "restart", False)
    driver = getattr(args, "driver", None)
    if restart or driver is not None:
        controller.reconcile()
    state = controller.select_branch(args.branch_id, driver=driver, restart=restart)
    if state.connected and state.currently_connected_branch_id == args.branch_id:
        console.print(f"Proxy connected to branch {args.branch_id}.")
    else:
        console.print(f"Branch {args.branch_id} selected.")
    return 0


def cmd_select_parent_branch(args: Any, services: AppServices) -> int:
    services.controller.select_parent_branch(args.branch_id)
    console.print(f"Parent branch {args.branch_id} selected.")
    return 0


def cmd_connection_type(args: Any, services: AppServices) -> int:
    services.controller.set_connection_type(args.connection_type)
    selection = services.selection_store.load()
    console.print(f"Connection type set to {selection.connection_type.value}.")
    return 0


def cmd_driver(args: Any, services: AppServices) -> int:
    controller = services.controller
    controller.reconcile()
    state = controller.change_driver(args.driver)
    if state.connected:
        console.print(f"Proxy restarted with the {state.driver.value} driver.")
    else:
        console.print(f"Driver set to {services.selection_store.load().driver.value}.")
    return 0


def cmd_connection_string(args: Any, services: AppServices) -> int:
    controller = services.controller
    controller.reconcile()
    url = controller.connection_string(database=getattr(args, "database", None), role=getattr(args, "role", None))
    # Plain print keeps the URL pipeable
    print(url)
    return 0


def cmd_psql(args: Any, services: AppServices) -> int:
    """Open psql against the connected branch's remote endpoint."""
    runner = services.process_runner
    if runner.which("psql") is None:
        err_console.print("psql was not found on PATH. Install the PostgreSQL client tools.")
        return 1
    controller = services.controller
    controller.reconcile()
    url = controller.remote_connection_string(
        database=getattr(args, "database", None),
        role=getattr(args, "role", None),
    )
    return runner.run(["psql", url])


def cmd_logs(args: Any, services: AppServices) -> int:
    if services.runtime.status(PROXY_CONTAINER_NAME) is ContainerState.ABSENT:
        raise NotConnected("The proxy container does not exist.")
    try:
        for line in services.runtime.tail_logs(PROXY_CONTAINER_NAME, follow=getattr(args, "follow", False)):
            print(line)
    except KeyboardInterrupt:
        return 0
    return 0


def cmd_watch(args: Any, services: AppServices, stop_event: threading.Event | None = None) -> int:
    """Reconcile, then keep polling and print state changes until interrupted."""
    controller = services.controller
    controller.reconcile()
    _refresh_quietly(services)
    console.print(render_status(controller.snapshot()))
    stop_event = stop_event or threading.Event()
    with services.build_poller(getattr(args, "interval", None)):
        try:
            while not stop_event.wait(1.0):
                pass
        except KeyboardInterrupt:
            pass
    return 0


def _maybe_prompt_plaintext_credentials(services: AppServices) -> bool:
    """Ensure the plaintext storage preference is set when keyring isn't usable.

    Returns True if plaintext storage is allowed; False otherwise.
    """
    if is_keyring_usable():
        return False

    settings_store = services.settings_store
    existing = settings_store.get(ALLOW_PLAINTEXT_CREDENTIALS_SETTING)
    if isinstance(existing, bool):
        return existing

    if not sys.stdin.isatty():
        return False

    allow = Confirm.ask("Keyring isn't available. Save the API key as plaintext in ~/.neonlocal/?", default=False)
    settings_store.set(ALLOW_PLAINTEXT_CREDENTIALS_SETTING, allow)
    return allow


def cmd_login(args: Any, services: AppServices) -> int:
    api_key = getattr(args, "api_key", None) or getpass.getpass("Neon API key: ")
    api_key = api_key.strip()
    if not api_key:
        err_console.print("No API key given.")
        return 1

    credentials = services.credentials
    if _maybe_prompt_plaintext_credentials(services):
        reset_credentials_service()
        credentials = get_credentials_service(services.settings_store)
    credentials.set_api_key(api_key)
    if isinstance(credentials, MemoryCredentialsService):
        err_console.print("Keyring isn't available; the API key is kept for this session only. Set NEON_API_KEY instead.")
        return 0
    console.print("API key saved.")
    return 0


def cmd_logout(args: Any, services: AppServices) -> int:
    services.controller.clear_auth()
    console.print("Signed out. The proxy is stopped and the selection cleared.")
    return 0
