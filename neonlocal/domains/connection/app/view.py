"""View sinks that receive controller snapshots."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table

from neonlocal.domains.connection.domain.state import ConnectionPhase

if TYPE_CHECKING:
    from neonlocal.domains.connection.domain.state import ViewSnapshot

PHASE_STYLES = {
    ConnectionPhase.DISCONNECTED: "dim",
    ConnectionPhase.STARTING: "yellow",
    ConnectionPhase.RESTARTING: "yellow",
    ConnectionPhase.CONNECTED: "green",
    ConnectionPhase.STOPPING: "yellow",
    ConnectionPhase.ERROR: "red",
}


class NullSink:
    """Drops every snapshot."""

    def publish(self, snapshot: ViewSnapshot) -> None:
        return None


class CallbackViewSink:
    """Forwards snapshots to a callable and keeps the latest one."""

    def __init__(self, callback: Callable[[ViewSnapshot], None] | None = None):
        self._callback = callback
        self._lock = threading.Lock()
        self.latest: ViewSnapshot | None = None

    def publish(self, snapshot: ViewSnapshot) -> None:
        with self._lock:
            self.latest = snapshot
        if self._callback is not None:
            self._callback(snapshot)


def render_status(snapshot: ViewSnapshot) -> Table:
    """Two-column summary of the selection and the running proxy."""
    state = snapshot.state
    selection = snapshot.selection
    style = PHASE_STYLES.get(state.phase, "")

    table = Table(show_header=False, box=None, pad_edge=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Status", f"[{style}]{state.phase.value}[/{style}]" if style else state.phase.value)
    table.add_row("Organization", snapshot.org_name or selection.org_id or "Personal account")
    table.add_row("Project", snapshot.project_name or selection.project_id or "-")
    table.add_row("Connection type", selection.connection_type.value)
    if state.connected:
        branch = snapshot.active_branch_name or state.currently_connected_branch_id
        table.add_row("Connected branch", branch)
        table.add_row("Driver", state.driver.value)
        table.add_row("Databases", ", ".join(db.name for db in state.databases) or "-")
        table.add_row("Roles", ", ".join(role.name for role in state.roles) or "-")
    else:
        table.add_row("Selected branch", snapshot.active_branch_name or snapshot.active_branch_id or "-")
        table.add_row("Driver", selection.driver.value)
    if state.last_error is not None:
        table.add_row("Last error", f"[red]{state.last_error}[/red]")
    return table


class ConsoleViewSink:
    """Prints a line per phase change and the full status on connect."""

    def __init__(self, console: Console | None = None):
        self._console = console or Console()
        self._last_phase: ConnectionPhase | None = None
        self._last_branch = ""

    def publish(self, snapshot: ViewSnapshot) -> None:
        state = snapshot.state
        if state.phase is self._last_phase and state.currently_connected_branch_id == self._last_branch:
            return
        self._last_phase = state.phase
        self._last_branch = state.currently_connected_branch_id
        if state.connected:
            self._console.print(render_status(snapshot))
            return
        style = PHASE_STYLES.get(state.phase, "")
        message = f"Proxy {state.phase.value}"
        if state.last_error is not None:
            message = f"{message}: {state.last_error}"
        self._console.print(message, style=style or None)
