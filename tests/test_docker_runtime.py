"""Tests for the Docker runtime adapter (Docker SDK mocked)."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests
from docker import errors as docker_errors

from neonlocal.domains.proxy.app.docker_runtime import DockerRuntime
from neonlocal.domains.proxy.domain.config import ConnectionType, ContainerState, Driver, ProxyConfig
from neonlocal.shared.core.errors import (
    ContainerError,
    DaemonUnreachable,
    ImageUnavailable,
    NameConflict,
    OperationTimeout,
    PortConflict,
)


def _container(name: str, running: bool = True, env: list[str] | None = None, ports: dict | None = None) -> MagicMock:
    container = MagicMock()
    container.name = name
    container.short_id = f"{name[:6]}-id"
    container.id = f"{name}-full-id"
    container.status = "running" if running else "exited"
    container.attrs = {
        "State": {"Running": running, "StartedAt": "2024-05-01T10:00:00.123456789Z"},
        "Config": {"Env": env or []},
        "NetworkSettings": {"Ports": ports or {}},
    }
    return container


def _config(**overrides) -> ProxyConfig:
    values = dict(
        api_key="napi_test",
        project_id="proj-1",
        branch_id="br_123",
        connection_type=ConnectionType.EXISTING,
        driver=Driver.POSTGRES,
    )
    values.update(overrides)
    return ProxyConfig(**values)


def _api_error(message: str, status_code: int = 500) -> docker_errors.APIError:
    response = MagicMock(status_code=status_code)
    return docker_errors.APIError(message, response=response, explanation=message)


class TestClient:
    def test_unreachable_daemon(self) -> None:
        with patch("neonlocal.domains.proxy.app.docker_runtime.docker.from_env") as from_env:
            from_env.side_effect = docker_errors.DockerException("Error while fetching server API version")
            runtime = DockerRuntime()

            with pytest.raises(DaemonUnreachable):
                runtime.status()

    def test_client_is_created_once(self) -> None:
        with patch("neonlocal.domains.proxy.app.docker_runtime.docker.from_env") as from_env:
            from_env.return_value.containers.get.side_effect = docker_errors.NotFound("gone")
            runtime = DockerRuntime(timeout=12)

            runtime.status()
            runtime.status()

            from_env.assert_called_once_with(timeout=12)


class TestStatusAndInspect:
    def test_absent(self) -> None:
        client = MagicMock()
        client.containers.get.side_effect = docker_errors.NotFound("No such container")

        runtime = DockerRuntime(client=client)

        assert runtime.status() is ContainerState.ABSENT
        assert runtime.inspect() is None

    def test_running_container_environment(self) -> None:
        client = MagicMock()
        client.containers.get.return_value = _container(
            "neon_local_vscode",
            env=["NEON_PROJECT_ID=proj-1", "BRANCH_ID=br_1", "DRIVER=serverless", "PATH=/usr/bin"],
        )

        info = DockerRuntime(client=client).inspect()

        assert info is not None
        assert info.state is ContainerState.RUNNING
        assert info.project_id == "proj-1"
        assert info.branch_id == "br_1"
        assert info.driver is Driver.SERVERLESS
        assert info.connection_type is ConnectionType.EXISTING
        assert info.started_at is not None
        assert info.started_at.year == 2024

    def test_stopped(self) -> None:
        client = MagicMock()
        client.containers.get.return_value = _container("neon_local_vscode", running=False)

        assert DockerRuntime(client=client).status() is ContainerState.STOPPED

    def test_timeout_is_retryable(self) -> None:
        client = MagicMock()
        client.containers.get.side_effect = requests.exceptions.ReadTimeout("timed out")

        with pytest.raises(OperationTimeout) as exc_info:
            DockerRuntime(client=client).status()
        assert exc_info.value.retryable


class TestStart:
    def test_creates_with_environment_ports_and_mount(self) -> None:
        client = MagicMock()
        container = _container("neon_local_vscode")
        client.containers.create.return_value = container

        container_id = DockerRuntime(client=client).start(_config(binding_dir="/home/me/.neonlocal/.neon_local"))

        assert container_id == "neon_local_vscode-full-id"
        _, kwargs = client.containers.create.call_args
        assert kwargs["name"] == "neon_local_vscode"
        assert kwargs["environment"] == {
            "DRIVER": "postgres",
            "NEON_API_KEY": "napi_test",
            "NEON_PROJECT_ID": "proj-1",
            "BRANCH_ID": "br_123",
        }
        assert kwargs["ports"] == {"5432/tcp": 5432}
        assert kwargs["volumes"] == {"/home/me/.neonlocal/.neon_local": {"bind": "/tmp/.neon_local", "mode": "rw"}}
        container.start.assert_called_once()

    def test_new_mode_uses_parent_branch(self) -> None:
        client = MagicMock()
        client.containers.create.return_value = _container("neon_local_vscode")

        DockerRuntime(client=client).start(_config(connection_type=ConnectionType.NEW, branch_id="br_main"))

        env = client.containers.create.call_args.kwargs["environment"]
        assert env["PARENT_BRANCH_ID"] == "br_main"
        assert env["DELETE_BRANCH"] == "true"
        assert "BRANCH_ID" not in env

    def test_name_conflict(self) -> None:
        client = MagicMock()
        client.containers.create.side_effect = _api_error(
            'Conflict. The container name "/neon_local_vscode" is already in use by container "abc"', 409
        )

        with pytest.raises(NameConflict):
            DockerRuntime(client=client).start(_config())

    def test_port_conflict_discards_container(self) -> None:
        client = MagicMock()
        container = _container("neon_local_vscode")
        container.start.side_effect = _api_error(
            "driver failed programming external connectivity: Bind for 0.0.0.0:5432 failed: port is already allocated"
        )
        client.containers.create.return_value = container

        with pytest.raises(PortConflict) as exc_info:
            DockerRuntime(client=client).start(_config(host_port=5432))

        assert exc_info.value.port == 5432
        container.remove.assert_called_once_with(force=True)

    def test_pulls_missing_image(self) -> None:
        client = MagicMock()
        client.images.get.side_effect = docker_errors.ImageNotFound("missing")
        client.containers.create.return_value = _container("neon_local_vscode")

        DockerRuntime(client=client).start(_config())

        client.images.pull.assert_called_once_with("neondatabase/neon_local", tag="latest")

    def test_failed_pull_is_image_unavailable(self) -> None:
        client = MagicMock()
        client.images.get.side_effect = docker_errors.ImageNotFound("missing")
        client.images.pull.side_effect = _api_error("pull access denied", 404)

        with pytest.raises(ImageUnavailable):
            DockerRuntime(client=client).start(_config())
        client.containers.create.assert_not_called()

    def test_other_create_failure(self) -> None:
        client = MagicMock()
        client.containers.create.side_effect = _api_error("invalid mount config", 400)

        with pytest.raises(ContainerError):
            DockerRuntime(client=client).start(_config())


class TestStopAndRemove:
    def test_missing_container_is_success(self) -> None:
        client = MagicMock()
        client.containers.get.side_effect = docker_errors.NotFound("No such container")
        runtime = DockerRuntime(client=client)

        runtime.stop()
        runtime.remove(force=True)

    def test_removal_in_progress_is_success(self) -> None:
        client = MagicMock()
        container = _container("neon_local_vscode")
        container.remove.side_effect = _api_error("removal of container neon_local_vscode is already in progress", 409)
        client.containers.get.return_value = container

        DockerRuntime(client=client).remove(force=True)

    def test_stop_race_with_removal(self) -> None:
        client = MagicMock()
        container = _container("neon_local_vscode")
        container.stop.side_effect = docker_errors.NotFound("No such container")
        client.containers.get.return_value = container

        DockerRuntime(client=client).stop()

    def test_stop_failure_is_translated(self) -> None:
        client = MagicMock()
        container = _container("neon_local_vscode")
        container.stop.side_effect = requests.exceptions.ConnectionError("refused")
        client.containers.get.return_value = container

        with pytest.raises(DaemonUnreachable):
            DockerRuntime(client=client).stop()


class TestLogs:
    def test_tail_logs_splits_chunks_into_lines(self) -> None:
        client = MagicMock()
        container = _container("neon_local_vscode")
        container.logs.return_value = iter([b"starting\nNeon Lo", b"cal is ready\r\n", b"tail"])
        client.containers.get.return_value = container

        lines = list(DockerRuntime(client=client).tail_logs(follow=True))

        assert lines == ["starting", "Neon Local is ready", "tail"]
        container.logs.assert_called_once_with(stream=True, follow=True)

    def test_has_logged(self) -> None:
        client = MagicMock()
        container = _container("neon_local_vscode")
        container.logs.return_value = b"boot\nNeon Local is ready\n"
        client.containers.get.return_value = container
        runtime = DockerRuntime(client=client)

        assert runtime.has_logged("Neon Local is ready")
        assert not runtime.has_logged("something else")


class TestPortInUse:
    def test_published_by_other_container(self) -> None:
        client = MagicMock()
        client.containers.list.return_value = [
            _container("postgres", ports={"5432/tcp": [{"HostIp": "0.0.0.0", "HostPort": "5432"}]}),
        ]

        runtime = DockerRuntime(client=client)

        assert runtime.port_in_use(5432)
        assert not runtime.port_in_use(5433)
        client.containers.list.assert_called_with(filters={"status": "running"})

    def test_own_container_is_excluded(self) -> None:
        client = MagicMock()
        client.containers.list.return_value = [
            _container("/neon_local_vscode", ports={"5432/tcp": [{"HostIp": "0.0.0.0", "HostPort": "5432"}]}),
        ]

        runtime = DockerRuntime(client=client)

        assert not runtime.port_in_use(5432)
        assert runtime.port_in_use(5432, exclude_name=None)

    def test_unpublished_ports_are_ignored(self) -> None:
        client = MagicMock()
        client.containers.list.return_value = [_container("redis", ports={"6379/tcp": None})]

        assert not DockerRuntime(client=client).port_in_use(6379)
