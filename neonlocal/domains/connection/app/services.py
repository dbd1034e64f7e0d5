"""Service container and builders for neonlocal."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from neonlocal.domains.catalog.app.client import NeonApiClient
from neonlocal.domains.connection.app.controller import ConnectionController
from neonlocal.domains.connection.app.poller import StatusPoller
from neonlocal.domains.proxy.app.branch_binding import BranchBindingFile
from neonlocal.domains.proxy.app.docker_runtime import DockerRuntime
from neonlocal.domains.selection.store.selection import SelectionStore
from neonlocal.domains.settings.app.credentials import CredentialsService, get_credentials_service
from neonlocal.domains.settings.store.settings import SettingsStore
from neonlocal.shared.core.processes import ProcessRunner, SubprocessRunner

if TYPE_CHECKING:
    from neonlocal.shared.core.errors import Unauthenticated
    from neonlocal.shared.core.protocols import (
        BranchBindingProtocol,
        CatalogClientProtocol,
        ContainerRuntimeProtocol,
        SelectionStoreProtocol,
        ViewSinkProtocol,
    )


@dataclass
class AppServices:
    """Everything a command needs, built once per process."""

    settings_store: SettingsStore
    credentials: CredentialsService
    runtime: ContainerRuntimeProtocol
    catalog: CatalogClientProtocol
    selection_store: SelectionStoreProtocol
    binding: BranchBindingProtocol
    controller: ConnectionController
    process_runner: ProcessRunner

    def build_poller(self, interval: float | None = None) -> StatusPoller:
        if interval is None:
            interval = self.settings_store.load_settings().poll_interval
        return StatusPoller(self.controller, interval=interval)


def build_app_services(
    *,
    settings_store: SettingsStore | None = None,
    credentials: CredentialsService | None = None,
    runtime: ContainerRuntimeProtocol | None = None,
    catalog: CatalogClientProtocol | None = None,
    selection_store: SelectionStoreProtocol | None = None,
    binding: BranchBindingProtocol | None = None,
    sink: ViewSinkProtocol | None = None,
    process_runner: ProcessRunner | None = None,
    on_unauthenticated: Callable[[Unauthenticated], None] | None = None,
) -> AppServices:
    """Build the default service container, filling in anything not given."""
    settings_store = settings_store or SettingsStore()
    settings = settings_store.load_settings()
    credentials = credentials or get_credentials_service(settings_store)
    runtime = runtime or DockerRuntime(timeout=settings.docker_timeout)
    catalog = catalog or NeonApiClient(
        api_key=credentials.get_api_key(),
        base_url=settings.api_base_url,
        timeout=settings.api_timeout,
    )
    selection_store = selection_store or SelectionStore()
    binding = binding or BranchBindingFile()

    controller = ConnectionController(
        runtime=runtime,
        catalog=catalog,
        selection_store=selection_store,
        binding=binding,
        credentials=credentials,
        settings=settings_store.load_settings,
        sink=sink,
        on_unauthenticated=on_unauthenticated,
    )
    return AppServices(
        settings_store=settings_store,
        credentials=credentials,
        runtime=runtime,
        catalog=catalog,
        selection_store=selection_store,
        binding=binding,
        controller=controller,
        process_runner=process_runner or SubprocessRunner(),
    )
