"""Reader for the .branches file the proxy writes after provisioning a branch.

In new-branch mode only the proxy knows which branch it created. It records
the id in ``.branches`` inside a host directory bind-mounted into the
container, shaped ``{<key>: {"branch_id": "..."}}``. The file is cleared
before every start and on every stop, so whatever is found there belongs
to the current session.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from neonlocal.shared.core.errors import BranchBindingTimeout
from neonlocal.shared.core.store import get_config_dir

logger = logging.getLogger(__name__)

BRANCHES_FILE_NAME = ".branches"
# Keys the proxy has been seen to use when no project key is present
FALLBACK_KEYS = ("default", "main", "None")


def default_binding_dir() -> Path:
    return get_config_dir() / ".neon_local"


class BranchBindingFile:
    """The host side of the proxy's .branches hand-off."""

    def __init__(self, directory: Path | None = None):
        self._directory = directory or default_binding_dir()

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def file_path(self) -> Path:
        return self._directory / BRANCHES_FILE_NAME

    def mount_dir(self) -> str:
        """Create the mount directory so Docker does not create it as root."""
        self._directory.mkdir(parents=True, exist_ok=True)
        return str(self._directory)

    def _read(self) -> dict | None:
        try:
            content = self.file_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Could not read %s: %s", self.file_path, e)
            return None
        if not content.strip():
            return None
        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            # The proxy may be mid-write
            logger.debug("Ignoring partial .branches content")
            return None
        return data if isinstance(data, dict) else None

    def read_branch_id(self, project_id: str | None = None) -> str | None:
        """Return the branch id recorded by the proxy, or None if not written yet.

        Lookup order: the project id, the fallback keys, then the only entry
        when the file holds exactly one.
        """
        data = self._read()
        if not data:
            return None

        def branch_of(key: str) -> str | None:
            entry = data.get(key)
            if isinstance(entry, dict):
                branch_id = entry.get("branch_id")
                if isinstance(branch_id, str) and branch_id:
                    return branch_id
            return None

        keys = ([project_id] if project_id else []) + list(FALLBACK_KEYS)
        for key in keys:
            branch_id = branch_of(key)
            if branch_id:
                return branch_id
        if len(data) == 1:
            return branch_of(next(iter(data)))
        return None

    def wait_for_branch_id(
        self,
        project_id: str | None = None,
        timeout: float = 30.0,
        interval: float = 0.5,
    ) -> str:
        """Poll the file until the proxy records its branch.

        Raises:
            BranchBindingTimeout: If nothing usable appears within ``timeout``.
        """
        retrying = Retrying(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(interval),
            retry=retry_if_result(lambda branch_id: branch_id is None),
        )
        try:
            branch_id = retrying(self.read_branch_id, project_id)
        except RetryError as e:
            raise BranchBindingTimeout(timeout) from e
        logger.debug("Proxy reported branch %s", branch_id)
        return branch_id

    def clear(self) -> None:
        """Delete the file; missing is fine."""
        try:
            self.file_path.unlink()
            logger.debug("Removed %s", self.file_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove %s: %s", self.file_path, e)
