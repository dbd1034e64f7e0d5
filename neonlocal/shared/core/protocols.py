"""Protocols for dependency injection in neonlocal services.

The connection controller only talks to its collaborators through these
interfaces, so tests can hand it in-memory fakes and the CLI can hand it
the Docker runtime, the Neon API client and the file-backed stores.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from neonlocal.domains.catalog.domain.models import (
        Branch,
        Database,
        Endpoint,
        Organization,
        Project,
        Role,
    )
    from neonlocal.domains.connection.domain.state import ViewSnapshot
    from neonlocal.domains.proxy.domain.config import ContainerState, ProxyConfig, ProxyEnvironment
    from neonlocal.domains.selection.domain.selection import Selection


@runtime_checkable
class ContainerRuntimeProtocol(Protocol):
    """Protocol for the container engine holding the proxy."""

    def status(self, name: str = ...) -> ContainerState:
        """Return RUNNING, STOPPED or ABSENT for the named container."""
        ...

    def inspect(self, name: str = ...) -> ProxyEnvironment | None:
        """Return the container's environment, or None if it does not exist."""
        ...

    def start(self, config: ProxyConfig) -> str:
        """Create and start the container.

        Raises:
            DaemonUnreachable, PortConflict, NameConflict, ImageUnavailable.
        """
        ...

    def stop(self, name: str = ...) -> None:
        ...

    def remove(self, name: str = ..., force: bool = False) -> None:
        ...

    def tail_logs(self, name: str = ..., follow: bool = True) -> Iterator[str]:
        ...

    def has_logged(self, marker: str, name: str = ...) -> bool:
        ...

    def port_in_use(self, port: int, exclude_name: str | None = ...) -> bool:
        ...


@runtime_checkable
class CatalogClientProtocol(Protocol):
    """Protocol for the remote catalog of orgs, projects and branches."""

    def list_orgs(self) -> list[Organization]:
        ...

    def list_projects(self, org_id: str | None = None) -> list[Project]:
        ...

    def list_branches(self, project_id: str) -> list[Branch]:
        ...

    def get_branch(self, project_id: str, branch_id: str) -> Branch:
        ...

    def list_databases(self, project_id: str, branch_id: str) -> list[Database]:
        ...

    def list_roles(self, project_id: str, branch_id: str) -> list[Role]:
        ...

    def get_branch_endpoint(self, project_id: str, branch_id: str) -> Endpoint:
        ...

    def get_role_password(self, project_id: str, branch_id: str, role: str) -> str:
        ...

    def reset_branch_to_parent(self, project_id: str, branch_id: str, parent_id: str) -> None:
        """Destructive; callers must not retry it."""
        ...


@runtime_checkable
class SelectionStoreProtocol(Protocol):
    """Protocol for selection persistence."""

    def load(self) -> Selection:
        ...

    def save(self, selection: Selection) -> None:
        ...

    def update(self, **fields: Any) -> Selection:
        ...

    def clear(self) -> Selection:
        ...


@runtime_checkable
class BranchBindingProtocol(Protocol):
    """Protocol for the proxy's branch hand-off file."""

    def mount_dir(self) -> str | None:
        """Host directory to bind-mount into the proxy, or None for no mount."""
        ...

    def read_branch_id(self, project_id: str | None = None) -> str | None:
        ...

    def wait_for_branch_id(self, project_id: str | None = None, timeout: float = ..., interval: float = ...) -> str:
        ...

    def clear(self) -> None:
        ...


@runtime_checkable
class ViewSinkProtocol(Protocol):
    """Protocol for presentation surfaces that receive state snapshots."""

    def publish(self, snapshot: ViewSnapshot) -> None:
        ...
