"""Connection lifecycle controller.

The controller is the only writer of the proxy's connection state. It
turns user requests (start, stop, rebind, reset, selection changes), ticks
of the background poller and activation-time reconciliation into container
and catalog calls, and publishes a consistent snapshot after each change.

Transitions are serialized by a non-blocking lock: a request that finds it
held is rejected with OperationInProgress rather than queued. A stop that
arrives while a start or rebind holds the lock is additionally remembered,
and the start runs the stop path as soon as its container call returns, so a
container is never left running untracked. Background ticks read Docker
outside the lock and only take it to apply what they observed.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, TypeVar
from urllib.parse import quote

from neonlocal.domains.catalog.domain.models import Branch, Database, Project, Role
from neonlocal.domains.connection.domain.state import ConnectionPhase, ConnectionState, ViewSnapshot
from neonlocal.domains.proxy.domain.config import (
    PROXY_CONTAINER_NAME,
    ConnectionType,
    ContainerState,
    Driver,
    ProxyConfig,
)
from neonlocal.domains.selection.domain.selection import Selection
from neonlocal.domains.settings.app.credentials import CredentialsService
from neonlocal.domains.settings.store.settings import ProxySettings
from neonlocal.shared.core.errors import (
    NameConflict,
    NeonLocalError,
    NoParentBranch,
    NotConnected,
    NotReady,
    OperationInProgress,
    PortConflict,
    SelectionIncomplete,
    Unauthenticated,
)
from neonlocal.shared.core.protocols import (
    BranchBindingProtocol,
    CatalogClientProtocol,
    ContainerRuntimeProtocol,
    SelectionStoreProtocol,
    ViewSinkProtocol,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConnectionController:
    """Owns the proxy connection state and drives every transition."""

    def __init__(
        self,
        runtime: ContainerRuntimeProtocol,
        catalog: CatalogClientProtocol,
        selection_store: SelectionStoreProtocol,
        binding: BranchBindingProtocol,
        credentials: CredentialsService,
        settings: ProxySettings | Callable[[], ProxySettings] | None = None,
        sink: ViewSinkProtocol | None = None,
        on_unauthenticated: Callable[[Unauthenticated], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._runtime = runtime
        self._catalog = catalog
        self._selection_store = selection_store
        self._binding = binding
        self._credentials = credentials
        if settings is None:
            settings = ProxySettings()
        self._settings: Callable[[], ProxySettings] = settings if callable(settings) else (lambda: settings)
        self._sink = sink
        self._on_unauthenticated = on_unauthenticated
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._state = ConnectionState(driver=self._selection_store.load().driver)
        self._state_lock = threading.RLock()
        self._transition_lock = threading.Lock()
        self._reset_lock = threading.Lock()
        self._stop_requested = threading.Event()

        self._last_observed: ContainerState | None = None
        self._ready_container: str | None = None
        self._orgs: tuple = ()
        self._projects: tuple[Project, ...] = ()
        self._branches: tuple[Branch, ...] = ()

    # ------------------------------------------------------------------
    # State and publishing

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def selection(self) -> Selection:
        return self._selection_store.load()

    def snapshot(self) -> ViewSnapshot:
        with self._state_lock:
            return ViewSnapshot(
                selection=self._selection_store.load(),
                state=self._state,
                orgs=self._orgs,
                projects=self._projects,
                branches=self._branches,
            )

    def _publish(self) -> None:
        if self._sink is None:
            return
        snapshot = self.snapshot()
        try:
            self._sink.publish(snapshot)
        except Exception:
            logger.warning("View sink failed to render a snapshot", exc_info=True)

    def _set_state(self, state: ConnectionState) -> ConnectionState:
        with self._state_lock:
            if state.phase is not self._state.phase:
                logger.debug("Connection phase %s -> %s", self._state.phase.value, state.phase.value)
            self._state = state
            self._publish()
        return state

    def _catalog_call(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return fn(*args)
        except Unauthenticated as e:
            self._notify_unauthenticated(e)
            raise

    def _notify_unauthenticated(self, error: Unauthenticated) -> None:
        if self._on_unauthenticated is not None:
            self._on_unauthenticated(error)

    def _fetch_branch_resources(self, project_id: str, branch_id: str) -> tuple[tuple[Database, ...], tuple[Role, ...]]:
        """Databases and roles of the connected branch; empty on catalog failure."""
        try:
            databases = tuple(self._catalog_call(self._catalog.list_databases, project_id, branch_id))
            roles = tuple(self._catalog_call(self._catalog.list_roles, project_id, branch_id))
        except NeonLocalError as e:
            logger.warning("Could not fetch databases and roles for %s: %s", branch_id, e)
            return (), ()
        return databases, roles

    # ------------------------------------------------------------------
    # Start / stop

    def start(
        self,
        driver: str | Driver | None = None,
        connection_type: str | ConnectionType | None = None,
        branch_id: str | None = None,
    ) -> ConnectionState:
        """Start the proxy for the selected project.

        ``branch_id`` is the branch to bind in existing mode and the parent
        to fork in new mode; it defaults to the persisted selection.

        Raises:
            SelectionIncomplete: No project, or no branch for the mode.
            OperationInProgress: Another transition holds the lock.
            NeonLocalError: Any container or catalog failure; the state is
                left in ERROR with the lock released.
        """
        selection = self._selection_store.load()
        connection_type = (
            ConnectionType.parse(connection_type) if connection_type is not None else selection.connection_type
        )
        driver = Driver.parse(driver) if driver is not None else selection.driver
        if connection_type is ConnectionType.EXISTING:
            target = branch_id or selection.branch_id
        else:
            target = branch_id or selection.parent_branch_id

        if not selection.project_id:
            raise SelectionIncomplete("No project selected.")
        if not target:
            if connection_type is ConnectionType.EXISTING:
                raise SelectionIncomplete("No branch selected.")
            raise SelectionIncomplete("No parent branch selected.")

        if not self._transition_lock.acquire(blocking=False):
            raise OperationInProgress()
        try:
            self._stop_requested.clear()
            return self._start_locked(selection, connection_type, driver, target, ConnectionPhase.STARTING)
        finally:
            self._transition_lock.release()

    def _start_locked(
        self,
        selection: Selection,
        connection_type: ConnectionType,
        driver: Driver,
        target: str,
        phase: ConnectionPhase,
    ) -> ConnectionState:
        settings = self._settings()
        self._ready_container = None
        self._set_state(
            ConnectionState(
                phase=phase,
                connection_type=connection_type,
                driver=driver,
                project_id=selection.project_id,
            )
        )
        started = selection.for_start(connection_type, target, driver)
        selection = self._selection_store.update(
            project_id=started.project_id,
            branch_id=started.branch_id,
            parent_branch_id=started.parent_branch_id,
            driver=started.driver,
            connection_type=started.connection_type,
        )

        if self._stop_requested.is_set():
            logger.info("Stop requested before the proxy started; not starting it")
            return self._stop_locked()

        start_attempted = False
        try:
            api_key = self._credentials.get_api_key()
            if not api_key:
                raise Unauthenticated()
            self._binding.clear()
            if self._runtime.port_in_use(settings.proxy_port, exclude_name=PROXY_CONTAINER_NAME):
                raise PortConflict(settings.proxy_port)

            config = ProxyConfig(
                api_key=api_key,
                project_id=selection.project_id,
                branch_id=target,
                connection_type=connection_type,
                driver=driver,
                host_port=settings.proxy_port,
                image=settings.image,
                delete_branch_on_stop=settings.delete_on_stop,
                binding_dir=self._binding.mount_dir(),
            )
            start_attempted = True
            self._start_container(config)
            self._last_observed = ContainerState.RUNNING

            if self._stop_requested.is_set():
                logger.info("Stop requested while starting; stopping the proxy")
                return self._stop_locked()

            if connection_type is ConnectionType.EXISTING:
                connected_branch = target
            else:
                connected_branch = self._binding.wait_for_branch_id(
                    selection.project_id,
                    timeout=settings.branch_binding_timeout,
                )

            databases, roles = self._fetch_branch_resources(selection.project_id, connected_branch)
            state = self._set_state(
                ConnectionState(
                    phase=ConnectionPhase.CONNECTED,
                    currently_connected_branch_id=connected_branch,
                    connection_type=connection_type,
                    driver=driver,
                    project_id=selection.project_id,
                    databases=databases,
                    roles=roles,
                )
            )
            logger.info("Proxy connected to branch %s (%s)", connected_branch, driver.value)
        except NeonLocalError as e:
            if isinstance(e, Unauthenticated):
                self._notify_unauthenticated(e)
            self._abort_start(start_attempted, e)
            raise
        except Exception:
            self._abort_start(start_attempted, None)
            raise

        if self._stop_requested.is_set():
            logger.info("Stop requested while starting; stopping the proxy")
            return self._stop_locked()
        return state

    def _start_container(self, config: ProxyConfig) -> str:
        """Start the container, clearing a stale one with the same name once."""
        try:
            return self._runtime.start(config)
        except NameConflict:
            logger.warning("Removing stale container %s and retrying", config.name)
            self._runtime.remove(config.name, force=True)
            return self._runtime.start(config)

    def _abort_start(self, start_attempted: bool, error: NeonLocalError | None) -> None:
        if start_attempted:
            try:
                self._runtime.remove(PROXY_CONTAINER_NAME, force=True)
            except NeonLocalError as cleanup_error:
                logger.warning("Could not remove proxy after failed start: %s", cleanup_error)
        self._binding.clear()
        self._last_observed = None
        self._stop_requested.clear()
        state = self.state
        if error is None:
            self._set_state(state.disconnected())
        else:
            self._set_state(state.failed(error))

    def stop(self) -> ConnectionState:
        """Stop and remove the proxy. The selection is kept for reconnecting.

        Raises:
            OperationInProgress: Another transition holds the lock. If that
                transition is a start, the proxy is stopped once it finishes.
        """
        if not self._transition_lock.acquire(blocking=False):
            if self.state.is_starting:
                self._stop_requested.set()
                raise OperationInProgress(
                    "The proxy is starting; it will be stopped as soon as the start finishes."
                )
            raise OperationInProgress()
        try:
            return self._stop_locked()
        finally:
            self._transition_lock.release()

    def _stop_locked(self, error: NeonLocalError | None = None) -> ConnectionState:
        self._set_state(replace(self.state, phase=ConnectionPhase.STOPPING))
        try:
            self._runtime.stop(PROXY_CONTAINER_NAME)
            self._runtime.remove(PROXY_CONTAINER_NAME, force=True)
        except NeonLocalError as e:
            self._set_state(self.state.failed(e))
            raise
        except Exception:
            self._set_state(self.state.disconnected())
            raise
        finally:
            self._binding.clear()
            self._stop_requested.clear()
            self._ready_container = None

        self._last_observed = ContainerState.ABSENT
        logger.info("Proxy stopped")
        return self._set_state(self.state.disconnected(error))

    # ------------------------------------------------------------------
    # Rebinding while connected

    def change_driver(self, driver: str | Driver) -> ConnectionState:
        """Switch the driver; a connected proxy is restarted with it."""
        driver = Driver.parse(driver)
        state = self.state
        if not state.connected or state.driver is driver:
            self._selection_store.update(driver=driver)
            if not state.connected:
                with self._state_lock:
                    self._state = replace(self._state, driver=driver)
            self._publish()
            return self.state

        selection = self._selection_store.load()
        if state.connection_type is ConnectionType.EXISTING:
            target = state.currently_connected_branch_id
        else:
            target = selection.parent_branch_id
        return self._rebind(
            replace(selection, project_id=state.project_id),
            state.connection_type,
            driver,
            target,
        )

    def _rebind(
        self,
        selection: Selection,
        connection_type: ConnectionType,
        driver: Driver,
        target: str,
    ) -> ConnectionState:
        """Stop then start under one RESTARTING phase."""
        if not target:
            raise SelectionIncomplete("No branch to restart the proxy with.")
        if not self._transition_lock.acquire(blocking=False):
            raise OperationInProgress()
        try:
            self._stop_requested.clear()
            self._set_state(
                replace(
                    self.state,
                    phase=ConnectionPhase.RESTARTING,
                    currently_connected_branch_id="",
                    databases=(),
                    roles=(),
                )
            )
            try:
                self._runtime.stop(PROXY_CONTAINER_NAME)
                self._runtime.remove(PROXY_CONTAINER_NAME, force=True)
            except NeonLocalError as e:
                self._binding.clear()
                self._last_observed = None
                self._set_state(self.state.failed(e))
                raise
            except Exception:
                self._binding.clear()
                self._last_observed = None
                self._set_state(self.state.disconnected())
                raise
            return self._start_locked(selection, connection_type, driver, target, ConnectionPhase.RESTARTING)
        finally:
            self._transition_lock.release()

    # ------------------------------------------------------------------
    # Selection changes

    def select_org(self, org_id: str) -> list[Project]:
        """Select an organization ('' is the personal account) and list its projects."""
        selection = self._apply_selection(lambda current: current.with_org(org_id))
        projects = tuple(self._catalog_call(self._catalog.list_projects, selection.org_id))
        with self._state_lock:
            self._projects = projects
            self._branches = ()
        self._publish()
        return list(projects)

    def select_project(self, project_id: str) -> list[Branch]:
        """Select a project and list its branches."""
        selection = self._apply_selection(lambda current: current.with_project(project_id))
        branches: tuple[Branch, ...] = ()
        if selection.project_id:
            branches = tuple(self._catalog_call(self._catalog.list_branches, selection.project_id))
        with self._state_lock:
            self._branches = branches
        self._publish()
        return list(branches)

    def select_branch(
        self,
        branch_id: str,
        driver: str | Driver | None = None,
        restart: bool = False,
    ) -> ConnectionState:
        """Select an existing branch, optionally together with a driver.

        A connected proxy is rebound to the branch when ``restart`` is set or
        when ``driver`` differs from the driver it is running with. Otherwise
        only the selection changes.
        """
        state = self.state
        new_driver = Driver.parse(driver) if driver is not None else None
        driver_changed = new_driver is not None and new_driver is not state.driver
        if state.connected and (restart or driver_changed):
            selection = self._selection_store.load().with_branch(branch_id)
            if new_driver is not None:
                selection = selection.with_driver(new_driver)
            return self._rebind(selection, ConnectionType.EXISTING, selection.driver, selection.branch_id)

        def change(current: Selection) -> Selection:
            selection = current.with_branch(branch_id)
            return selection.with_driver(new_driver) if new_driver is not None else selection

        self._apply_selection(change)
        self._publish()
        return self.state

    def select_parent_branch(self, parent_branch_id: str) -> ConnectionState:
        self._apply_selection(lambda current: current.with_parent_branch(parent_branch_id))
        self._publish()
        return self.state

    def set_connection_type(self, connection_type: str | ConnectionType) -> ConnectionState:
        self._apply_selection(lambda current: current.with_connection_type(connection_type))
        self._publish()
        return self.state

    def _apply_selection(self, change: Callable[[Selection], Selection]) -> Selection:
        """Persist only the fields ``change`` touched, in one store update."""
        current = self._selection_store.load()
        fields = change(current).changed_fields(current)
        if not fields:
            return current
        return self._selection_store.update(**fields)

    # ------------------------------------------------------------------
    # Reset to parent

    def reset_from_parent(self, confirm: Callable[[Branch], bool]) -> bool:
        """Restore the connected branch from its parent.

        Uses the running branch, which in new-branch mode is the ephemeral
        branch rather than the selected parent. The container keeps running.

        Returns:
            True if the branch was reset, False if ``confirm`` declined.

        Raises:
            NotConnected: The proxy is not connected.
            NoParentBranch: The branch has no parent; nothing is sent.
            OperationInProgress: Another reset is running.
        """
        state = self.state
        if not state.connected:
            raise NotConnected()
        branch_id = state.currently_connected_branch_id
        project_id = state.project_id

        if not self._reset_lock.acquire(blocking=False):
            raise OperationInProgress("A branch reset is already in progress.")
        try:
            branch = self._catalog_call(self._catalog.get_branch, project_id, branch_id)
            if not branch.parent_id:
                raise NoParentBranch(branch_id)
            if not confirm(branch):
                logger.info("Reset of branch %s cancelled", branch_id)
                return False
            self._catalog_call(self._catalog.reset_branch_to_parent, project_id, branch_id, branch.parent_id)
            logger.info("Branch %s reset to parent %s", branch_id, branch.parent_id)

            databases, roles = self._fetch_branch_resources(project_id, branch_id)
            with self._state_lock:
                current = self._state
                if current.connected and current.currently_connected_branch_id == branch_id:
                    self._set_state(replace(current, databases=databases, roles=roles))
            return True
        finally:
            self._reset_lock.release()

    # ------------------------------------------------------------------
    # Reconciliation and health

    def reconcile(self) -> ConnectionState:
        """Rebuild the state from the container actually running.

        The branch comes from the binding file, then from the container's
        own BRANCH_ID; the persisted selection is never trusted for it.
        """
        if not self._transition_lock.acquire(blocking=False):
            return self.state
        try:
            return self._reconcile_locked()
        finally:
            self._transition_lock.release()

    def _reconcile_locked(self) -> ConnectionState:
        info = self._runtime.inspect(PROXY_CONTAINER_NAME)
        if info is None or info.state is not ContainerState.RUNNING:
            self._last_observed = info.state if info is not None else ContainerState.ABSENT
            if self.state.connected:
                self._binding.clear()
                return self._set_state(self.state.disconnected())
            return self.state

        branch_id = self._binding.read_branch_id(info.project_id) or info.branch_id
        if not branch_id:
            logger.warning("Proxy container is running but has not reported its branch yet")
            self._last_observed = None
            return self.state

        self._last_observed = ContainerState.RUNNING
        current = self.state
        if current.connected and current.currently_connected_branch_id == branch_id:
            return current

        databases, roles = self._fetch_branch_resources(info.project_id, branch_id)
        logger.info("Reconciled running proxy on branch %s", branch_id)
        return self._set_state(
            ConnectionState(
                phase=ConnectionPhase.CONNECTED,
                currently_connected_branch_id=branch_id,
                connection_type=info.connection_type,
                driver=info.driver,
                project_id=info.project_id,
                databases=databases,
                roles=roles,
            )
        )

    def poll_status(self) -> ConnectionState:
        """One background tick: act only when the container's running status changed.

        Docker is read without the transition lock, so a user start or stop
        is never turned away by a routine tick. The lock is taken only to
        apply a detected change, and the change is dropped when another
        transition replaced the state in the meantime; the next tick
        observes again.
        """
        before = self.state
        if before.is_busy or self._transition_lock.locked():
            return before
        observed = self._runtime.status(PROXY_CONTAINER_NAME)
        if observed is not self._last_observed:
            self._apply_if_unchanged(before, lambda: self._apply_observed(observed))
        if observed is ContainerState.RUNNING and self.state.connected:
            self.check_health()
        return self.state

    def _apply_if_unchanged(
        self,
        before: ConnectionState,
        action: Callable[[], ConnectionState],
    ) -> ConnectionState:
        if not self._transition_lock.acquire(blocking=False):
            return self.state
        try:
            if self.state is not before:
                return self.state
            return action()
        finally:
            self._transition_lock.release()

    def _apply_observed(self, observed: ContainerState) -> ConnectionState:
        self._last_observed = observed
        if observed is ContainerState.RUNNING:
            if not self.state.connected:
                return self._reconcile_locked()
        elif self.state.connected:
            logger.info("Proxy container is no longer running")
            self._binding.clear()
            return self._set_state(self.state.disconnected())
        return self.state

    def check_health(self) -> ConnectionState:
        """Remove a proxy that never became ready within the grace window."""
        before = self.state
        if not before.connected or self._transition_lock.locked():
            return before
        if not self._past_ready_deadline():
            return before
        return self._apply_if_unchanged(before, lambda: self._stop_locked(error=NotReady()))

    def _past_ready_deadline(self) -> bool:
        info = self._runtime.inspect(PROXY_CONTAINER_NAME)
        if info is None or info.state is not ContainerState.RUNNING:
            return False
        if self._ready_container == info.container_id:
            return False

        settings = self._settings()
        if self._runtime.has_logged(settings.ready_marker, PROXY_CONTAINER_NAME):
            self._ready_container = info.container_id
            return False
        if info.started_at is None:
            return False
        age = (self._clock() - info.started_at).total_seconds()
        if age < settings.ready_grace_seconds:
            return False
        logger.warning("Proxy not ready after %.0fs; removing it", age)
        return True

    # ------------------------------------------------------------------
    # Catalog views and connection details

    def refresh(self) -> ViewSnapshot:
        """Re-read the catalog lists for the current selection and publish."""
        selection = self._selection_store.load()
        orgs = tuple(self._catalog_call(self._catalog.list_orgs))
        projects = tuple(self._catalog_call(self._catalog.list_projects, selection.org_id))
        branches: tuple[Branch, ...] = ()
        if selection.project_id:
            branches = tuple(self._catalog_call(self._catalog.list_branches, selection.project_id))
        with self._state_lock:
            self._orgs = orgs
            self._projects = projects
            self._branches = branches
        self._publish()
        return self.snapshot()

    def _connection_target(self, database: str | None, role: str | None) -> tuple[ConnectionState, str, str]:
        state = self.state
        if not state.connected:
            raise NotConnected()
        database = database or (state.databases[0].name if state.databases else "")
        role = role or (state.roles[0].name if state.roles else "")
        if not database:
            raise SelectionIncomplete("No database available on the connected branch.")
        if not role:
            raise SelectionIncomplete("No role available on the connected branch.")
        return state, database, role

    def connection_string(self, database: str | None = None, role: str | None = None) -> str:
        """Connection URL for the local proxy port."""
        state, database, role = self._connection_target(database, role)
        password = self._catalog_call(
            self._catalog.get_role_password, state.project_id, state.currently_connected_branch_id, role
        )
        port = self._settings().proxy_port
        return f"postgresql://{quote(role, safe='')}:{quote(password, safe='')}@localhost:{port}/{quote(database, safe='')}?sslmode=require"

    def remote_connection_string(self, database: str | None = None, role: str | None = None) -> str:
        """Connection URL for the branch's own compute endpoint."""
        state, database, role = self._connection_target(database, role)
        branch_id = state.currently_connected_branch_id
        endpoint = self._catalog_call(self._catalog.get_branch_endpoint, state.project_id, branch_id)
        password = self._catalog_call(self._catalog.get_role_password, state.project_id, branch_id, role)
        return f"postgresql://{quote(role, safe='')}:{quote(password, safe='')}@{endpoint.host}/{quote(database, safe='')}?sslmode=require"

    def clear_auth(self) -> ConnectionState:
        """Stop the proxy, forget the credentials and reset the selection."""
        if not self._transition_lock.acquire(blocking=False):
            raise OperationInProgress()
        try:
            if self._runtime.status(PROXY_CONTAINER_NAME) is not ContainerState.ABSENT or self.state.connected:
                self._stop_locked()
            self._credentials.clear()
            self._selection_store.clear()
            with self._state_lock:
                self._orgs = ()
                self._projects = ()
                self._branches = ()
            return self._set_state(ConnectionState())
        finally:
            self._transition_lock.release()
