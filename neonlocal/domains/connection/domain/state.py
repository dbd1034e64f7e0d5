"""Connection state owned by the lifecycle controller."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING

from neonlocal.domains.proxy.domain.config import ConnectionType, Driver

if TYPE_CHECKING:
    from neonlocal.domains.catalog.domain.models import Branch, Database, Organization, Project, Role
    from neonlocal.domains.selection.domain.selection import Selection
    from neonlocal.shared.core.errors import NeonLocalError


class ConnectionPhase(Enum):
    """Where the proxy is in its lifecycle."""

    DISCONNECTED = "disconnected"
    STARTING = "starting"
    RESTARTING = "restarting"
    CONNECTED = "connected"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass(frozen=True)
class ConnectionState:
    """Immutable snapshot of the proxy connection.

    ``currently_connected_branch_id`` is the branch the running proxy is
    bound to. In new-branch mode it is the ephemeral branch, not the parent
    the user selected.
    """

    phase: ConnectionPhase = ConnectionPhase.DISCONNECTED
    currently_connected_branch_id: str = ""
    connection_type: ConnectionType = ConnectionType.EXISTING
    driver: Driver = Driver.POSTGRES
    project_id: str = ""
    databases: tuple[Database, ...] = ()
    roles: tuple[Role, ...] = ()
    last_error: NeonLocalError | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.phase is ConnectionPhase.CONNECTED and not self.currently_connected_branch_id:
            raise ValueError("A connected state needs the connected branch id")

    @property
    def connected(self) -> bool:
        return self.phase is ConnectionPhase.CONNECTED

    @property
    def is_starting(self) -> bool:
        return self.phase in (ConnectionPhase.STARTING, ConnectionPhase.RESTARTING)

    @property
    def is_busy(self) -> bool:
        return self.phase in (ConnectionPhase.STARTING, ConnectionPhase.RESTARTING, ConnectionPhase.STOPPING)

    def disconnected(self, error: NeonLocalError | None = None) -> ConnectionState:
        """Same connection settings, nothing running, dependent lists dropped."""
        return replace(
            self,
            phase=ConnectionPhase.DISCONNECTED,
            currently_connected_branch_id="",
            databases=(),
            roles=(),
            last_error=error,
        )

    def failed(self, error: NeonLocalError) -> ConnectionState:
        """Like ``disconnected`` but in the ERROR phase."""
        return replace(self.disconnected(error), phase=ConnectionPhase.ERROR)


@dataclass(frozen=True)
class ViewSnapshot:
    """Everything a presentation surface needs, captured at one instant."""

    selection: Selection
    state: ConnectionState
    orgs: tuple[Organization, ...] = ()
    projects: tuple[Project, ...] = ()
    branches: tuple[Branch, ...] = ()

    def _branch_name(self, branch_id: str) -> str:
        for branch in self.branches:
            if branch.id == branch_id:
                return branch.name
        return ""

    @property
    def active_branch_id(self) -> str:
        """The running branch when connected, else the branch a start would use."""
        if self.state.connected:
            return self.state.currently_connected_branch_id
        return self.selection.target_branch_id

    @property
    def active_branch_name(self) -> str:
        return self._branch_name(self.active_branch_id)

    @property
    def project_name(self) -> str:
        for project in self.projects:
            if project.id == self.selection.project_id:
                return project.name
        return ""

    @property
    def org_name(self) -> str:
        for org in self.orgs:
            if org.id == self.selection.org_id:
                return org.name
        return ""
