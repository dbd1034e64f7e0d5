"""Background status poller for the proxy container."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from neonlocal.shared.core.errors import NeonLocalError

if TYPE_CHECKING:
    from neonlocal.domains.connection.app.controller import ConnectionController

logger = logging.getLogger(__name__)


class StatusPoller:
    """Ticks ``controller.poll_status`` on a daemon thread.

    A failing tick is logged and the next one runs on schedule; the poller
    only stops when asked to.
    """

    def __init__(self, controller: ConnectionController, interval: float = 5.0):
        if interval <= 0:
            raise ValueError("Poll interval must be positive")
        self._controller = controller
        self._interval = interval
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stopped.clear()
        self._thread = threading.Thread(target=self._run, name="neonlocal-status-poller", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stopped.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def tick(self) -> None:
        try:
            self._controller.poll_status()
        except NeonLocalError as e:
            logger.warning("Status poll failed: %s", e)
        except Exception:
            logger.exception("Unexpected error while polling proxy status")

    def _run(self) -> None:
        while not self._stopped.wait(self._interval):
            self.tick()

    def __enter__(self) -> StatusPoller:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
