"""Logging setup for the neonlocal CLI."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(verbose: bool = False, stream=None) -> None:
    """Configure the package logger once.

    Args:
        verbose: Emit DEBUG records when True, WARNING and above otherwise.
        stream: Stream for the handler (default: stderr).
    """
    logger = logging.getLogger("neonlocal")
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    if not any(getattr(h, "_neonlocal", False) for h in logger.handlers):
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._neonlocal = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    # docker and urllib3 are chatty at DEBUG
    for name in ("docker", "urllib3"):
        logging.getLogger(name).setLevel(logging.INFO if verbose else logging.WARNING)
