"""neonlocal - Local proxy connections to Neon database branches."""

from typing import TYPE_CHECKING, Any

__all__ = [
    "__version__",
    "main",
    "ConnectionController",
    "Selection",
]

__version__ = "0.1.0"

if TYPE_CHECKING:
    from neonlocal.domains.connection.app.controller import ConnectionController
    from neonlocal.domains.selection.domain.selection import Selection
    from .cli import main


def __getattr__(name: str) -> Any:
    """Lazy import for heavy modules to keep package import side-effect free."""
    if name == "main":
        from .cli import main

        return main
    if name == "ConnectionController":
        from neonlocal.domains.connection.app.controller import ConnectionController

        return ConnectionController
    if name == "Selection":
        from neonlocal.domains.selection.domain.selection import Selection

        return Selection
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
