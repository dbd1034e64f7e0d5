"""Proxy container configuration and the values it is built from."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

PROXY_CONTAINER_NAME = "neon_local_vscode"
PROXY_IMAGE = "neondatabase/neon_local:latest"
PROXY_GUEST_PORT = 5432
DEFAULT_HOST_PORT = 5432
# Where the proxy writes its .branches file inside the container
BRANCH_BINDING_MOUNT = "/tmp/.neon_local"


class Driver(str, Enum):
    """Wire protocol exposed by the proxy on the local port."""

    POSTGRES = "postgres"
    SERVERLESS = "serverless"

    @classmethod
    def parse(cls, value: str | Driver | None) -> Driver:
        """Anything but 'serverless' means postgres."""
        if isinstance(value, Driver):
            return value
        if value and str(value).strip().lower() == cls.SERVERLESS.value:
            return cls.SERVERLESS
        return cls.POSTGRES


class ConnectionType(str, Enum):
    """Whether the proxy binds to an existing branch or creates an ephemeral one."""

    EXISTING = "existing"
    NEW = "new"

    @classmethod
    def parse(cls, value: str | ConnectionType | None) -> ConnectionType:
        if isinstance(value, ConnectionType):
            return value
        if value and str(value).strip().lower() == cls.NEW.value:
            return cls.NEW
        return cls.EXISTING


class ContainerState(Enum):
    """Observed state of the named proxy container."""

    RUNNING = "running"
    STOPPED = "stopped"
    ABSENT = "absent"


@dataclass(frozen=True)
class ProxyConfig:
    """Everything needed to create the proxy container."""

    api_key: str
    project_id: str
    branch_id: str
    connection_type: ConnectionType
    driver: Driver = Driver.POSTGRES
    host_port: int = DEFAULT_HOST_PORT
    image: str = PROXY_IMAGE
    name: str = PROXY_CONTAINER_NAME
    auto_remove: bool = False
    delete_branch_on_stop: bool = True
    binding_dir: str | None = None

    def __post_init__(self) -> None:
        if not self.api_key:
            raise ValueError("API key is required to start the proxy")
        if not self.project_id:
            raise ValueError("Project ID is required to start the proxy")
        if not self.branch_id:
            raise ValueError("Branch ID is required to start the proxy")

    @property
    def environment(self) -> dict[str, str]:
        """Container environment; exactly one of BRANCH_ID / PARENT_BRANCH_ID."""
        env = {
            "DRIVER": self.driver.value,
            "NEON_API_KEY": self.api_key,
            "NEON_PROJECT_ID": self.project_id,
        }
        if self.connection_type is ConnectionType.EXISTING:
            env["BRANCH_ID"] = self.branch_id
        else:
            env["PARENT_BRANCH_ID"] = self.branch_id
            env["DELETE_BRANCH"] = "true" if self.delete_branch_on_stop else "false"
        return env

    @property
    def ports(self) -> dict[str, int]:
        return {f"{PROXY_GUEST_PORT}/tcp": self.host_port}

    @property
    def volumes(self) -> dict[str, dict[str, str]]:
        if not self.binding_dir:
            return {}
        return {self.binding_dir: {"bind": BRANCH_BINDING_MOUNT, "mode": "rw"}}


@dataclass(frozen=True)
class ProxyEnvironment:
    """What a running proxy container tells us about itself."""

    container_id: str
    state: ContainerState
    project_id: str = ""
    branch_id: str = ""
    parent_branch_id: str = ""
    driver: Driver = Driver.POSTGRES
    started_at: datetime | None = None
    env: dict[str, str] = field(default_factory=dict)

    @property
    def connection_type(self) -> ConnectionType:
        if self.branch_id:
            return ConnectionType.EXISTING
        if self.parent_branch_id:
            return ConnectionType.NEW
        return ConnectionType.EXISTING

    @classmethod
    def from_env(
        cls,
        container_id: str,
        state: ContainerState,
        env: dict[str, str],
        started_at: datetime | None = None,
    ) -> ProxyEnvironment:
        return cls(
            container_id=container_id,
            state=state,
            project_id=env.get("NEON_PROJECT_ID", ""),
            branch_id=env.get("BRANCH_ID", ""),
            parent_branch_id=env.get("PARENT_BRANCH_ID", ""),
            driver=Driver.parse(env.get("DRIVER")),
            started_at=started_at,
            env=dict(env),
        )
