"""Credentials service for the Neon API key and refresh token.

The default implementation uses the OS keyring (macOS Keychain, Windows
Credential Locker, Linux Secret Service). A plaintext file fallback is used
for environments without keyring support when the user has allowed it, and
an in-memory fallback otherwise. ``NEON_API_KEY`` in the environment always
wins over stored values.
"""

from __future__ import annotations

import logging
import os
import secrets
from abc import ABC, abstractmethod
from typing import Any

from neonlocal.domains.settings.store.settings import ALLOW_PLAINTEXT_CREDENTIALS_SETTING, SettingsStore
from neonlocal.shared.core.store import JSONFileStore, get_config_dir

logger = logging.getLogger(__name__)

# Service name used for keyring storage
KEYRING_SERVICE_NAME = "neonlocal"

API_KEY = "api_key"
REFRESH_TOKEN = "refresh_token"


def is_keyring_usable() -> bool:
    """Return True if a usable keyring backend appears to be available."""
    try:
        import keyring
    except ImportError:
        return False

    try:
        backend = keyring.get_keyring()
        module_name = getattr(backend, "__module__", "") or ""
        priority = getattr(backend, "priority", None)
        if "keyring.backends.fail" in module_name:
            return False
        if isinstance(priority, (int, float)) and priority <= 0:
            return False

        # Minimal probe: read-only call to surface obvious misconfiguration.
        keyring.get_password(KEYRING_SERVICE_NAME, f"probe:{secrets.token_hex(8)}")
        return True
    except Exception:
        return False


class CredentialsService(ABC):
    """Abstract base class for credential storage services."""

    @abstractmethod
    def get_secret(self, name: str) -> str | None:
        ...

    @abstractmethod
    def set_secret(self, name: str, value: str) -> None:
        ...

    @abstractmethod
    def delete_secret(self, name: str) -> None:
        ...

    def get_api_key(self) -> str | None:
        """API key from the environment, else from storage."""
        env_key = os.environ.get("NEON_API_KEY", "").strip()
        if env_key:
            return env_key
        return self.get_secret(API_KEY)

    def set_api_key(self, api_key: str) -> None:
        self.set_secret(API_KEY, api_key)

    def get_refresh_token(self) -> str | None:
        return self.get_secret(REFRESH_TOKEN)

    def set_refresh_token(self, token: str) -> None:
        self.set_secret(REFRESH_TOKEN, token)

    def clear(self) -> None:
        """Forget the API key and refresh token."""
        self.delete_secret(API_KEY)
        self.delete_secret(REFRESH_TOKEN)


class KeyringCredentialsService(CredentialsService):
    """Credentials service using the OS keyring.

    The keyring module is lazy-loaded to avoid import overhead when
    not needed.
    """

    def __init__(self) -> None:
        self._keyring: Any | None = None

    def _get_keyring(self) -> Any:
        if self._keyring is None:
            import keyring

            self._keyring = keyring
        return self._keyring

    def get_secret(self, name: str) -> str | None:
        try:
            value = self._get_keyring().get_password(KEYRING_SERVICE_NAME, name)
            return value if isinstance(value, str) else None
        except Exception as e:
            logger.warning("Keyring read failed: %s", e)
            return None

    def set_secret(self, name: str, value: str) -> None:
        self._get_keyring().set_password(KEYRING_SERVICE_NAME, name, value)

    def delete_secret(self, name: str) -> None:
        from keyring.errors import PasswordDeleteError

        try:
            self._get_keyring().delete_password(KEYRING_SERVICE_NAME, name)
        except PasswordDeleteError:
            pass


class MemoryCredentialsService(CredentialsService):
    """Credentials kept in memory only (tests, keyring-less sessions)."""

    def __init__(self, api_key: str | None = None) -> None:
        self._secrets: dict[str, str] = {}
        if api_key:
            self._secrets[API_KEY] = api_key

    def get_secret(self, name: str) -> str | None:
        return self._secrets.get(name)

    def set_secret(self, name: str, value: str) -> None:
        self._secrets[name] = value

    def delete_secret(self, name: str) -> None:
        self._secrets.pop(name, None)


class PlaintextFileCredentialsService(CredentialsService):
    """Credentials service storing secrets in a local file.

    WARNING: This stores secrets in plaintext on disk. The credentials file is
    created under the config dir with restrictive permissions (0700/0600).
    """

    def __init__(self) -> None:
        self._store = JSONFileStore(get_config_dir() / "credentials.json")

    def _read_all(self) -> dict[str, str]:
        data = self._store._read_json()
        return data if isinstance(data, dict) else {}

    def get_secret(self, name: str) -> str | None:
        value = self._read_all().get(name)
        return value if isinstance(value, str) else None

    def set_secret(self, name: str, value: str) -> None:
        data = self._read_all()
        data[name] = value
        self._store._write_json(data)

    def delete_secret(self, name: str) -> None:
        data = self._read_all()
        if data.pop(name, None) is not None:
            self._store._write_json(data)


_credentials_service: CredentialsService | None = None


def get_credentials_service(settings_store: SettingsStore | None = None) -> CredentialsService:
    """Get the global credentials service instance.

    Returns the keyring-based service by default. If keyring isn't usable,
    falls back to a plaintext file store if user consent is recorded in
    settings; otherwise falls back to an in-memory store (not persisted).
    """
    global _credentials_service
    if _credentials_service is None:
        if is_keyring_usable():
            _credentials_service = KeyringCredentialsService()
        else:
            settings = (settings_store or SettingsStore()).load_all()
            allow_plaintext = bool(settings.get(ALLOW_PLAINTEXT_CREDENTIALS_SETTING))
            _credentials_service = (
                PlaintextFileCredentialsService() if allow_plaintext else MemoryCredentialsService()
            )
    return _credentials_service


def set_credentials_service(service: CredentialsService | None) -> None:
    """Set the global credentials service instance (None resets it)."""
    global _credentials_service
    _credentials_service = service


def reset_credentials_service() -> None:
    """Reset the credentials service to default."""
    global _credentials_service
    _credentials_service = None
