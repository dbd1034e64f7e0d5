"""Tests for the .branches hand-off file."""

from __future__ import annotations

import json
import threading

import pytest

from neonlocal.domains.proxy.app.branch_binding import BranchBindingFile
from neonlocal.shared.core.errors import BranchBindingTimeout


@pytest.fixture
def binding(tmp_path) -> BranchBindingFile:
    return BranchBindingFile(tmp_path / ".neon_local")


def _write(binding: BranchBindingFile, data) -> None:
    binding.directory.mkdir(parents=True, exist_ok=True)
    binding.file_path.write_text(data if isinstance(data, str) else json.dumps(data))


class TestReadBranchId:
    def test_missing_file(self, binding) -> None:
        assert binding.read_branch_id("p1") is None

    def test_project_key_wins(self, binding) -> None:
        _write(binding, {"default": {"branch_id": "br-default"}, "p1": {"branch_id": "br-p1"}})

        assert binding.read_branch_id("p1") == "br-p1"

    def test_default_key(self, binding) -> None:
        _write(binding, {"default": {"branch_id": "br_ephemeral_9"}, "other": {"branch_id": "x"}})

        assert binding.read_branch_id("p1") == "br_ephemeral_9"

    def test_single_entry_fallback(self, binding) -> None:
        _write(binding, {"something": {"branch_id": "br-only"}})

        assert binding.read_branch_id("p1") == "br-only"

    def test_partial_write_is_ignored(self, binding) -> None:
        _write(binding, '{"default": {"bran')

        assert binding.read_branch_id() is None

    def test_empty_branch_id_is_ignored(self, binding) -> None:
        _write(binding, {"default": {"branch_id": ""}})

        assert binding.read_branch_id() is None


class TestWaitAndClear:
    def test_wait_returns_once_written(self, binding) -> None:
        timer = threading.Timer(0.1, _write, args=(binding, {"default": {"branch_id": "br-late"}}))
        timer.start()
        try:
            assert binding.wait_for_branch_id("p1", timeout=5.0, interval=0.05) == "br-late"
        finally:
            timer.cancel()

    def test_wait_gives_up(self, binding) -> None:
        with pytest.raises(BranchBindingTimeout) as exc_info:
            binding.wait_for_branch_id("p1", timeout=0.2, interval=0.05)
        assert exc_info.value.retryable

    def test_clear_removes_file(self, binding) -> None:
        _write(binding, {"default": {"branch_id": "b"}})

        binding.clear()
        binding.clear()

        assert not binding.file_path.exists()

    def test_mount_dir_creates_directory(self, binding) -> None:
        path = binding.mount_dir()

        assert binding.directory.is_dir()
        assert path == str(binding.directory)
