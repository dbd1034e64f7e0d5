"""Tests for settings and the credentials service."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

from neonlocal.domains.proxy.domain.config import Driver
from neonlocal.domains.settings.app.credentials import (
    API_KEY,
    KEYRING_SERVICE_NAME,
    KeyringCredentialsService,
    MemoryCredentialsService,
    PlaintextFileCredentialsService,
    get_credentials_service,
    set_credentials_service,
)
from neonlocal.domains.settings.store.settings import ProxySettings, SettingsStore


class TestProxySettings:
    def test_defaults(self) -> None:
        settings = SettingsStore().load_settings()

        assert settings == ProxySettings()
        assert settings.proxy_port == 5432
        assert settings.ready_grace_seconds == 60.0

    def test_reads_and_coerces_values(self, tmp_path) -> None:
        path = tmp_path / "settings.json"
        path.write_text(
            json.dumps(
                {
                    "default_driver": "serverless",
                    "proxy_port": "6543",
                    "delete_on_stop": "false",
                    "poll_interval": 2,
                    "ready_marker": "ready!",
                    "unknown": 1,
                }
            )
        )

        settings = SettingsStore(path).load_settings()

        assert settings.default_driver is Driver.SERVERLESS
        assert settings.proxy_port == 6543
        assert settings.delete_on_stop is False
        assert settings.poll_interval == 2.0
        assert settings.ready_marker == "ready!"

    def test_bad_values_fall_back_to_defaults(self, tmp_path) -> None:
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"proxy_port": "not-a-port", "api_timeout": None}))

        settings = SettingsStore(path).load_settings()

        assert settings.proxy_port == 5432
        assert settings.api_timeout == 10.0

    def test_settings_path_env_override(self, tmp_path, monkeypatch) -> None:
        path = tmp_path / "custom.json"
        monkeypatch.setenv("NEONLOCAL_SETTINGS_PATH", str(path))

        store = SettingsStore()
        store.set("proxy_port", 7000)

        assert json.loads(path.read_text()) == {"proxy_port": 7000}
        assert store.delete("proxy_port")
        assert not store.delete("proxy_port")

    def test_round_trip_dict(self) -> None:
        settings = ProxySettings(default_driver=Driver.SERVERLESS, proxy_port=6000)

        assert ProxySettings.from_dict(settings.to_dict()) == settings


class TestCredentials:
    def test_env_key_takes_precedence(self, monkeypatch) -> None:
        service = MemoryCredentialsService(api_key="stored")
        monkeypatch.setenv("NEON_API_KEY", "from-env")

        assert service.get_api_key() == "from-env"

    def test_clear_removes_key_and_token(self) -> None:
        service = MemoryCredentialsService(api_key="k")
        service.set_refresh_token("r")

        service.clear()

        assert service.get_api_key() is None
        assert service.get_refresh_token() is None

    def test_plaintext_file(self) -> None:
        service = PlaintextFileCredentialsService()
        service.set_api_key("k1")

        assert PlaintextFileCredentialsService().get_api_key() == "k1"
        service.delete_secret(API_KEY)
        assert service.get_api_key() is None

    def test_keyring_service_uses_service_name(self) -> None:
        fake_keyring = MagicMock()
        fake_keyring.get_password.return_value = "k"
        service = KeyringCredentialsService()
        service._keyring = fake_keyring

        service.set_api_key("k")

        fake_keyring.set_password.assert_called_once_with(KEYRING_SERVICE_NAME, API_KEY, "k")
        assert service.get_api_key() == "k"

    def test_keyring_read_failure_returns_none(self) -> None:
        fake_keyring = MagicMock()
        fake_keyring.get_password.side_effect = RuntimeError("locked")
        service = KeyringCredentialsService()
        service._keyring = fake_keyring

        assert service.get_api_key() is None

    def test_fallback_without_keyring_or_consent(self) -> None:
        with patch("neonlocal.domains.settings.app.credentials.is_keyring_usable", return_value=False):
            assert isinstance(get_credentials_service(), MemoryCredentialsService)

    def test_plaintext_fallback_with_consent(self) -> None:
        SettingsStore().set("allow_plaintext_credentials", True)

        with patch("neonlocal.domains.settings.app.credentials.is_keyring_usable", return_value=False):
            assert isinstance(get_credentials_service(), PlaintextFileCredentialsService)

    def test_service_can_be_injected(self) -> None:
        service = MemoryCredentialsService(api_key="x")
        set_credentials_service(service)

        assert get_credentials_service() is service
