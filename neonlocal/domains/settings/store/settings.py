"""Settings store for the proxy and API configuration."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

from neonlocal.domains.catalog.app.client import DEFAULT_API_BASE_URL
from neonlocal.domains.proxy.domain.config import DEFAULT_HOST_PORT, PROXY_IMAGE, Driver
from neonlocal.shared.core.store import JSONFileStore, get_config_dir

# Settings key controlling whether plaintext credential storage is allowed.
ALLOW_PLAINTEXT_CREDENTIALS_SETTING = "allow_plaintext_credentials"

# The proxy prints this once it accepts connections
DEFAULT_READY_MARKER = "Neon Local is ready"


def _resolve_settings_path() -> Path:
    override = os.environ.get("NEONLOCAL_SETTINGS_PATH", "").strip()
    if override:
        return Path(override).expanduser()
    return get_config_dir() / "settings.json"


@dataclass(frozen=True)
class ProxySettings:
    """Typed view of settings.json, read at operation time."""

    default_driver: Driver = Driver.POSTGRES
    delete_on_stop: bool = True
    callback_port: int | None = None
    proxy_port: int = DEFAULT_HOST_PORT
    image: str = PROXY_IMAGE
    api_base_url: str = DEFAULT_API_BASE_URL
    api_timeout: float = 10.0
    docker_timeout: float = 30.0
    poll_interval: float = 5.0
    ready_marker: str = DEFAULT_READY_MARKER
    ready_grace_seconds: float = 60.0
    branch_binding_timeout: float = 30.0
    allow_plaintext_credentials: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProxySettings:
        defaults = cls()
        values: dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in data or data[f.name] is None:
                continue
            raw = data[f.name]
            default = getattr(defaults, f.name)
            try:
                if f.name == "default_driver":
                    values[f.name] = Driver.parse(raw)
                elif f.name == "callback_port":
                    values[f.name] = int(raw)
                elif isinstance(default, bool):
                    values[f.name] = raw if isinstance(raw, bool) else str(raw).lower() in {"1", "true", "yes"}
                elif isinstance(default, int):
                    values[f.name] = int(raw)
                elif isinstance(default, float):
                    values[f.name] = float(raw)
                else:
                    values[f.name] = str(raw)
            except (TypeError, ValueError):
                continue
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["default_driver"] = self.default_driver.value
        return data


class SettingsStore(JSONFileStore):
    """Store for managing application settings.

    Settings are stored as a JSON object in ~/.neonlocal/settings.json
    """

    def __init__(self, file_path: Path | None = None) -> None:
        super().__init__(file_path or _resolve_settings_path())

    def load_all(self) -> dict[str, Any]:
        """Load all settings.

        Returns:
            Dictionary of settings, or empty dict if none exist.
        """
        data = self._read_json()
        return data if isinstance(data, dict) else {}

    def save_all(self, settings: dict[str, Any]) -> None:
        """Save all settings, replacing existing."""
        self._write_json(settings)

    def get(self, key: str, default: Any = None) -> Any:
        return self.load_all().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            settings = self.load_all()
            settings[key] = value
            self.save_all(settings)

    def delete(self, key: str) -> bool:
        """Delete a specific setting.

        Returns:
            True if key existed and was deleted, False otherwise.
        """
        with self._lock:
            settings = self.load_all()
            if key in settings:
                del settings[key]
                self.save_all(settings)
                return True
            return False

    def load_settings(self) -> ProxySettings:
        return ProxySettings.from_dict(self.load_all())
