"""In-memory fakes for the controller's collaborators."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from datetime import datetime, timezone

from neonlocal.domains.catalog.domain.models import (
    Branch,
    Database,
    Endpoint,
    Organization,
    Project,
    Role,
)
from neonlocal.domains.connection.domain.state import ViewSnapshot
from neonlocal.domains.proxy.domain.config import (
    PROXY_CONTAINER_NAME,
    ContainerState,
    ProxyConfig,
    ProxyEnvironment,
)
from neonlocal.shared.core.errors import BranchBindingTimeout, CatalogError, NameConflict, NeonLocalError


class FakeRuntime:
    """Container runtime keeping containers in a dict."""

    def __init__(self) -> None:
        self.containers: dict[str, ProxyEnvironment] = {}
        self.logs: dict[str, list[str]] = {}
        self.calls: list[tuple[str, str]] = []
        self.started: list[ProxyConfig] = []
        self.start_errors: list[NeonLocalError] = []
        self.stop_error: NeonLocalError | None = None
        self.busy_ports: set[int] = set()
        self.on_start: Callable[[ProxyConfig], None] | None = None
        self.on_stop: Callable[[str], None] | None = None
        self.on_status: Callable[[str], None] | None = None
        self.started_at = datetime.now(timezone.utc)
        self._counter = 0

    def add_container(
        self,
        env: dict[str, str],
        state: ContainerState = ContainerState.RUNNING,
        name: str = PROXY_CONTAINER_NAME,
        started_at: datetime | None = None,
    ) -> ProxyEnvironment:
        self._counter += 1
        info = ProxyEnvironment.from_env(f"c{self._counter}", state, env, started_at or self.started_at)
        self.containers[name] = info
        return info

    def status(self, name: str = PROXY_CONTAINER_NAME) -> ContainerState:
        if self.on_status is not None:
            self.on_status(name)
        info = self.containers.get(name)
        return info.state if info is not None else ContainerState.ABSENT

    def inspect(self, name: str = PROXY_CONTAINER_NAME) -> ProxyEnvironment | None:
        return self.containers.get(name)

    def start(self, config: ProxyConfig) -> str:
        self.calls.append(("start", config.name))
        if self.start_errors:
            raise self.start_errors.pop(0)
        if config.name in self.containers:
            raise NameConflict(config.name)
        info = self.add_container(config.environment, name=config.name)
        self.started.append(config)
        if self.on_start is not None:
            self.on_start(config)
        return info.container_id

    def stop(self, name: str = PROXY_CONTAINER_NAME) -> None:
        self.calls.append(("stop", name))
        if self.on_stop is not None:
            self.on_stop(name)
        if self.stop_error is not None:
            raise self.stop_error
        info = self.containers.get(name)
        if info is not None:
            self.containers[name] = ProxyEnvironment(
                container_id=info.container_id,
                state=ContainerState.STOPPED,
                project_id=info.project_id,
                branch_id=info.branch_id,
                parent_branch_id=info.parent_branch_id,
                driver=info.driver,
                started_at=info.started_at,
                env=info.env,
            )

    def remove(self, name: str = PROXY_CONTAINER_NAME, force: bool = False) -> None:
        self.calls.append(("remove", name))
        self.containers.pop(name, None)

    def tail_logs(self, name: str = PROXY_CONTAINER_NAME, follow: bool = True) -> Iterator[str]:
        yield from self.logs.get(name, [])

    def has_logged(self, marker: str, name: str = PROXY_CONTAINER_NAME) -> bool:
        return any(marker in line for line in self.logs.get(name, []))

    def port_in_use(self, port: int, exclude_name: str | None = PROXY_CONTAINER_NAME) -> bool:
        return port in self.busy_ports

    def count(self, action: str) -> int:
        return sum(1 for call, _ in self.calls if call == action)


class FakeCatalog:
    """Catalog with fixed orgs, projects and branches."""

    def __init__(self) -> None:
        self.orgs = [Organization(id="", name="Personal account"), Organization(id="org-1", name="Acme")]
        self.projects = {"": [Project(id="proj-1", name="shop")], "org-1": [Project(id="proj-2", name="billing")]}
        self.branches = {
            "proj-1": [
                Branch(id="br-main", name="main", project_id="proj-1"),
                Branch(id="br-dev", name="dev", project_id="proj-1", parent_id="br-main"),
            ],
        }
        self.databases = [Database(name="neondb", owner_name="neondb_owner")]
        self.roles = [Role(name="neondb_owner")]
        self.passwords = {"neondb_owner": "s3cret"}
        self.resets: list[tuple[str, str, str]] = []
        self.resource_calls: list[tuple[str, str]] = []
        self.error: NeonLocalError | None = None

    def _check(self) -> None:
        if self.error is not None:
            raise self.error

    def list_orgs(self) -> list[Organization]:
        self._check()
        return list(self.orgs)

    def list_projects(self, org_id: str | None = None) -> list[Project]:
        self._check()
        return list(self.projects.get(org_id or "", []))

    def list_branches(self, project_id: str) -> list[Branch]:
        self._check()
        return list(self.branches.get(project_id, []))

    def get_branch(self, project_id: str, branch_id: str) -> Branch:
        self._check()
        for branch in self.branches.get(project_id, []):
            if branch.id == branch_id:
                return branch
        raise CatalogError(f"Branch {branch_id} not found", status_code=404)

    def list_databases(self, project_id: str, branch_id: str) -> list[Database]:
        self._check()
        self.resource_calls.append((project_id, branch_id))
        return list(self.databases)

    def list_roles(self, project_id: str, branch_id: str) -> list[Role]:
        self._check()
        return list(self.roles)

    def get_branch_endpoint(self, project_id: str, branch_id: str) -> Endpoint:
        self._check()
        return Endpoint(id="ep-1", host=f"ep-1.{branch_id}.neon.tech", type="read_write")

    def get_role_password(self, project_id: str, branch_id: str, role: str) -> str:
        self._check()
        return self.passwords[role]

    def reset_branch_to_parent(self, project_id: str, branch_id: str, parent_id: str) -> None:
        self._check()
        self.resets.append((project_id, branch_id, parent_id))


class FakeBinding:
    """Branch binding backed by a dict; ``pending`` is what the proxy will write."""

    def __init__(self) -> None:
        self.entries: dict[str, str] = {}
        self.cleared = 0
        self.timeout_error = False

    def mount_dir(self) -> str | None:
        return None

    def write(self, project_id: str, branch_id: str) -> None:
        self.entries[project_id] = branch_id

    def read_branch_id(self, project_id: str | None = None) -> str | None:
        if project_id and project_id in self.entries:
            return self.entries[project_id]
        if len(self.entries) == 1:
            return next(iter(self.entries.values()))
        return None

    def wait_for_branch_id(self, project_id: str | None = None, timeout: float = 30.0, interval: float = 0.5) -> str:
        branch_id = self.read_branch_id(project_id)
        if branch_id is None or self.timeout_error:
            raise BranchBindingTimeout(timeout)
        return branch_id

    def clear(self) -> None:
        self.cleared += 1
        self.entries.clear()


class RecordingSink:
    """View sink keeping every published snapshot."""

    def __init__(self) -> None:
        self.snapshots: list[ViewSnapshot] = []
        self._lock = threading.Lock()

    def publish(self, snapshot: ViewSnapshot) -> None:
        with self._lock:
            self.snapshots.append(snapshot)

    @property
    def phases(self) -> list[str]:
        return [s.state.phase.value for s in self.snapshots]
