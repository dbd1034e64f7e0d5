"""Error taxonomy for neonlocal.

Every failure the controller or its collaborators surface is a
NeonLocalError subclass carrying a stable ``code`` and a ``retryable``
flag, so callers can branch on the kind of failure instead of parsing
messages.
"""

from __future__ import annotations


class NeonLocalError(Exception):
    """Base class for all neonlocal errors."""

    code = "error"
    retryable = False

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message()
        super().__init__(self.message)

    def default_message(self) -> str:
        return "An unknown error occurred"


class Unauthenticated(NeonLocalError):
    """The Neon API rejected the credential, or none is configured."""

    code = "unauthenticated"

    def default_message(self) -> str:
        return "Authentication required. Run `neonlocal login` to sign in."


class DaemonUnreachable(NeonLocalError):
    """The container engine cannot be reached."""

    code = "daemon_unreachable"

    def default_message(self) -> str:
        return "Cannot connect to the Docker daemon. Make sure Docker is installed and running."


class PortConflict(NeonLocalError):
    """The host port for the proxy is already published by another container."""

    code = "port_conflict"

    def __init__(self, port: int, message: str | None = None):
        self.port = port
        super().__init__(message)

    def default_message(self) -> str:
        return (
            f"Port {self.port} is already in use by another container. "
            "Stop that container or change the proxy port in settings."
        )


class NameConflict(NeonLocalError):
    """A container with the proxy's fixed name already exists."""

    code = "name_conflict"
    retryable = True

    def __init__(self, name: str, message: str | None = None):
        self.name = name
        super().__init__(message)

    def default_message(self) -> str:
        return f"A container named '{self.name}' already exists."


class ImageUnavailable(NeonLocalError):
    """The proxy image is not present locally and could not be pulled."""

    code = "image_unavailable"

    def __init__(self, image: str, message: str | None = None):
        self.image = image
        super().__init__(message)

    def default_message(self) -> str:
        return f"Could not pull image '{self.image}'. Check your network connection and Docker login."


class NotReady(NeonLocalError):
    """The proxy container never reported readiness within the grace window."""

    code = "not_ready"

    def default_message(self) -> str:
        return "The proxy container did not become ready in time and was removed."


class NoParentBranch(NeonLocalError):
    """Reset-to-parent was requested for a branch without a parent."""

    code = "no_parent_branch"

    def __init__(self, branch_id: str, message: str | None = None):
        self.branch_id = branch_id
        super().__init__(message)

    def default_message(self) -> str:
        return f"Branch '{self.branch_id}' has no parent branch to reset from."


class OperationInProgress(NeonLocalError):
    """Another start/stop/rebind holds the transition lock."""

    code = "operation_in_progress"

    def default_message(self) -> str:
        return "Another proxy operation is in progress. Try again when it finishes."


class OperationTimeout(NeonLocalError):
    """A network or engine call exceeded its timeout."""

    code = "timeout"
    retryable = True

    def default_message(self) -> str:
        return "The operation timed out. Try again."


class BranchBindingTimeout(OperationTimeout):
    """The proxy never wrote the ephemeral branch id to the binding file."""

    code = "branch_binding_timeout"

    def __init__(self, timeout: float, message: str | None = None):
        self.timeout = timeout
        super().__init__(message)

    def default_message(self) -> str:
        return f"The proxy did not report its branch within {self.timeout:g}s."


class SelectionIncomplete(NeonLocalError):
    """A start was requested without the project/branch it needs."""

    code = "selection_incomplete"


class NotConnected(NeonLocalError):
    """An operation needs a connected proxy."""

    code = "not_connected"

    def default_message(self) -> str:
        return "No active proxy connection."


class CatalogError(NeonLocalError):
    """The Neon API answered with an HTTP error."""

    code = "catalog_error"

    def __init__(self, message: str | None = None, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class CatalogUnavailable(NeonLocalError):
    """The Neon API could not be reached."""

    code = "catalog_unavailable"
    retryable = True

    def default_message(self) -> str:
        return "Cannot connect to Neon API. Please check your internet connection."


class ContainerError(NeonLocalError):
    """Any other container engine failure."""

    code = "container_error"
