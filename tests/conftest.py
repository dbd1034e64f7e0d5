"""Pytest fixtures for neonlocal tests."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest

_TEST_CONFIG_DIR = Path(tempfile.mkdtemp(prefix="neonlocal-test-config-"))
os.environ.setdefault("NEONLOCAL_CONFIG_DIR", str(_TEST_CONFIG_DIR))


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Point every store at a per-test config dir and forget global credentials."""
    from neonlocal.domains.settings.app.credentials import reset_credentials_service

    monkeypatch.setenv("NEONLOCAL_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.delenv("NEONLOCAL_SETTINGS_PATH", raising=False)
    monkeypatch.delenv("NEON_API_KEY", raising=False)
    reset_credentials_service()
    yield
    reset_credentials_service()


@pytest.fixture
def runtime():
    from tests.mocks import FakeRuntime

    return FakeRuntime()


@pytest.fixture
def catalog():
    from tests.mocks import FakeCatalog

    return FakeCatalog()


@pytest.fixture
def binding():
    from tests.mocks import FakeBinding

    return FakeBinding()


@pytest.fixture
def sink():
    from tests.mocks import RecordingSink

    return RecordingSink()


@pytest.fixture
def selection_store():
    from neonlocal.domains.selection.domain.selection import Selection
    from neonlocal.domains.selection.store.selection import MemorySelectionStore

    return MemorySelectionStore(Selection(org_id="", project_id="proj-1", branch_id="br-main"))


@pytest.fixture
def settings():
    from neonlocal.domains.settings.store.settings import ProxySettings

    return ProxySettings(ready_grace_seconds=60.0, branch_binding_timeout=0.1)


@pytest.fixture
def controller(runtime, catalog, selection_store, binding, sink, settings):
    from neonlocal.domains.connection.app.controller import ConnectionController
    from neonlocal.domains.settings.app.credentials import MemoryCredentialsService

    return ConnectionController(
        runtime=runtime,
        catalog=catalog,
        selection_store=selection_store,
        binding=binding,
        credentials=MemoryCredentialsService(api_key="napi_test"),
        settings=settings,
        sink=sink,
    )
