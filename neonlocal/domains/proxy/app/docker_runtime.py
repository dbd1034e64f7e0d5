"""Docker-backed runtime for the proxy container.

Thin capability wrapper over the Docker SDK: create/start/stop/remove the
named proxy container, inspect it, read its logs and scan the host ports
published by running containers. Engine failures are translated into the
neonlocal error taxonomy so the controller never sees SDK exceptions.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import datetime, timezone
from typing import Any

import docker
import requests
from docker import errors as docker_errors

from neonlocal.domains.proxy.domain.config import (
    PROXY_CONTAINER_NAME,
    ContainerState,
    ProxyConfig,
    ProxyEnvironment,
)
from neonlocal.shared.core.errors import (
    ContainerError,
    DaemonUnreachable,
    ImageUnavailable,
    NameConflict,
    NeonLocalError,
    OperationTimeout,
    PortConflict,
)

logger = logging.getLogger(__name__)

_PORT_CONFLICT_MARKERS = ("port is already allocated", "address already in use", "ports are not available")
_NAME_CONFLICT_MARKERS = ("is already in use by container", "conflict. the container name")
_REMOVAL_IN_PROGRESS_MARKERS = ("removal of container", "already in progress", "is already being removed")


def _error_text(error: Exception) -> str:
    explanation = getattr(error, "explanation", None)
    if isinstance(explanation, bytes):
        explanation = explanation.decode("utf-8", "replace")
    return f"{explanation or ''} {error}".lower()


def _get_container_env_vars(container: Any) -> dict[str, str]:
    """Extract environment variables from a container."""
    env_list = container.attrs.get("Config", {}).get("Env") or []
    env_dict = {}
    for env in env_list:
        if "=" in env:
            key, value = env.split("=", 1)
            env_dict[key] = value
    return env_dict


def _get_published_host_ports(container: Any) -> set[int]:
    """Return every host port a container publishes."""
    ports = container.attrs.get("NetworkSettings", {}).get("Ports") or {}
    host_ports: set[int] = set()
    for bindings in ports.values():
        for binding in bindings or []:
            host_port = binding.get("HostPort")
            if host_port and str(host_port).isdigit():
                host_ports.add(int(host_port))
    return host_ports


def _parse_started_at(value: str | None) -> datetime | None:
    """Parse Docker's RFC 3339 timestamp (nanosecond precision, Z suffix)."""
    if not value or value.startswith("0001-01-01"):
        return None
    try:
        return datetime.strptime(value[:19], "%Y-%m-%dT%H:%M:%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _container_name(container: Any) -> str:
    name = container.name or ""
    return name[1:] if name.startswith("/") else name


class DockerRuntime:
    """Container runtime adapter over the Docker SDK."""

    def __init__(self, timeout: float = 30.0, client: Any | None = None):
        self._timeout = timeout
        self._client = client

    @property
    def client(self) -> Any:
        """Docker client (created lazily; raises DaemonUnreachable)."""
        if self._client is None:
            try:
                self._client = docker.from_env(timeout=int(self._timeout))
            except docker_errors.DockerException as e:
                raise DaemonUnreachable() from e
        return self._client

    def _translate(self, error: Exception, action: str) -> NeonLocalError:
        if isinstance(error, NeonLocalError):
            return error
        if isinstance(error, requests.exceptions.Timeout):
            return OperationTimeout(f"Docker did not answer in time while trying to {action}.")
        if isinstance(error, requests.exceptions.ConnectionError):
            return DaemonUnreachable()
        text = _error_text(error)
        if "connection refused" in text or "connection aborted" in text or "no such file or directory" in text:
            return DaemonUnreachable()
        return ContainerError(f"Failed to {action}: {getattr(error, 'explanation', None) or error}")

    def _get(self, name: str) -> Any | None:
        try:
            return self.client.containers.get(name)
        except docker_errors.NotFound:
            return None
        except (docker_errors.DockerException, requests.exceptions.RequestException) as e:
            raise self._translate(e, "inspect the proxy container") from e

    def status(self, name: str = PROXY_CONTAINER_NAME) -> ContainerState:
        """Return whether the named container is running, stopped or absent."""
        container = self._get(name)
        if container is None:
            return ContainerState.ABSENT
        state = container.attrs.get("State", {})
        if state.get("Running") or container.status == "running":
            return ContainerState.RUNNING
        return ContainerState.STOPPED

    def inspect(self, name: str = PROXY_CONTAINER_NAME) -> ProxyEnvironment | None:
        """Read the proxy's environment and start time, or None if absent."""
        container = self._get(name)
        if container is None:
            return None
        state = container.attrs.get("State", {})
        running = bool(state.get("Running")) or container.status == "running"
        return ProxyEnvironment.from_env(
            container_id=container.short_id,
            state=ContainerState.RUNNING if running else ContainerState.STOPPED,
            env=_get_container_env_vars(container),
            started_at=_parse_started_at(state.get("StartedAt")),
        )

    def ensure_image(self, image: str) -> None:
        """Pull the image if it is not available locally."""
        try:
            self.client.images.get(image)
            return
        except docker_errors.ImageNotFound:
            pass
        except (docker_errors.DockerException, requests.exceptions.RequestException) as e:
            raise self._translate(e, "inspect the proxy image") from e

        repository, _, tag = image.rpartition(":")
        if not repository or "/" in tag:
            repository, tag = image, "latest"
        logger.info("Pulling image %s:%s", repository, tag)
        try:
            self.client.images.pull(repository, tag=tag)
        except requests.exceptions.ConnectionError as e:
            raise DaemonUnreachable() from e
        except (docker_errors.DockerException, requests.exceptions.RequestException) as e:
            raise ImageUnavailable(image) from e

    def start(self, config: ProxyConfig) -> str:
        """Create and start the proxy container; returns its id.

        A container that was created but failed to start is removed again so
        no untracked container is left behind.
        """
        self.ensure_image(config.image)
        try:
            container = self.client.containers.create(
                config.image,
                name=config.name,
                environment=config.environment,
                ports=config.ports,
                volumes=config.volumes or None,
                auto_remove=config.auto_remove,
                detach=True,
            )
        except docker_errors.APIError as e:
            text = _error_text(e)
            if e.status_code == 409 or any(marker in text for marker in _NAME_CONFLICT_MARKERS):
                raise NameConflict(config.name) from e
            raise self._translate(e, "create the proxy container") from e
        except (docker_errors.DockerException, requests.exceptions.RequestException) as e:
            raise self._translate(e, "create the proxy container") from e

        try:
            container.start()
        except (docker_errors.DockerException, requests.exceptions.RequestException) as e:
            self._discard(container)
            text = _error_text(e)
            if any(marker in text for marker in _PORT_CONFLICT_MARKERS):
                raise PortConflict(config.host_port) from e
            raise self._translate(e, "start the proxy container") from e

        logger.info("Started proxy container %s (%s)", config.name, container.short_id)
        return str(container.id)

    def _discard(self, container: Any) -> None:
        try:
            container.remove(force=True)
        except (docker_errors.DockerException, requests.exceptions.RequestException) as e:
            logger.warning("Could not remove failed container %s: %s", container.short_id, e)

    def stop(self, name: str = PROXY_CONTAINER_NAME, timeout: int = 10) -> None:
        """Stop the container; a missing container counts as stopped."""
        container = self._get(name)
        if container is None:
            return
        try:
            container.stop(timeout=timeout)
        except docker_errors.NotFound:
            return
        except docker_errors.APIError as e:
            if any(marker in _error_text(e) for marker in _REMOVAL_IN_PROGRESS_MARKERS):
                return
            raise self._translate(e, "stop the proxy container") from e
        except (docker_errors.DockerException, requests.exceptions.RequestException) as e:
            raise self._translate(e, "stop the proxy container") from e

    def remove(self, name: str = PROXY_CONTAINER_NAME, force: bool = False) -> None:
        """Remove the container; missing or already-being-removed is success."""
        container = self._get(name)
        if container is None:
            return
        try:
            container.remove(force=force)
        except docker_errors.NotFound:
            return
        except docker_errors.APIError as e:
            if any(marker in _error_text(e) for marker in _REMOVAL_IN_PROGRESS_MARKERS):
                return
            raise self._translate(e, "remove the proxy container") from e
        except (docker_errors.DockerException, requests.exceptions.RequestException) as e:
            raise self._translate(e, "remove the proxy container") from e

    def tail_logs(self, name: str = PROXY_CONTAINER_NAME, follow: bool = True) -> Iterator[str]:
        """Yield decoded log lines; with follow=True the stream ends with the container."""
        container = self._get(name)
        if container is None:
            return
        try:
            stream = container.logs(stream=True, follow=follow)
            buffer = ""
            for chunk in stream:
                buffer += chunk.decode("utf-8", "replace") if isinstance(chunk, bytes) else str(chunk)
                while "\n" in buffer:
                    line, buffer = buffer.split("\n", 1)
                    yield line.rstrip("\r")
            if buffer:
                yield buffer
        except docker_errors.NotFound:
            return
        except (docker_errors.DockerException, requests.exceptions.RequestException) as e:
            raise self._translate(e, "read the proxy logs") from e

    def has_logged(self, marker: str, name: str = PROXY_CONTAINER_NAME) -> bool:
        """Check a snapshot of the container's logs for the readiness marker."""
        container = self._get(name)
        if container is None:
            return False
        try:
            output = container.logs(stream=False)
        except docker_errors.NotFound:
            return False
        except (docker_errors.DockerException, requests.exceptions.RequestException) as e:
            raise self._translate(e, "read the proxy logs") from e
        if isinstance(output, bytes):
            output = output.decode("utf-8", "replace")
        return marker in output

    def port_in_use(self, port: int, exclude_name: str | None = PROXY_CONTAINER_NAME) -> bool:
        """Check whether a running container of this engine publishes the host port."""
        try:
            containers = self.client.containers.list(filters={"status": "running"})
        except (docker_errors.DockerException, requests.exceptions.RequestException) as e:
            raise self._translate(e, "list running containers") from e
        for container in containers:
            if exclude_name and _container_name(container) == exclude_name:
                continue
            if port in _get_published_host_ports(container):
                logger.debug("Port %s is published by container %s", port, _container_name(container))
                return True
        return False
