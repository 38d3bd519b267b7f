"""Shared test fixtures."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional
from unittest.mock import MagicMock

import pytest

from kdeploy.models import ImageDescriptor, PersistedDefaults, RemovalResult, VMSpec
from kdeploy.privilege import Executor

PUBKEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIHkdeployTestKeyMaterial user@host"


def completed(
    stdout: str = "", returncode: int = 0, stderr: str = "", args: Optional[List[str]] = None
) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(
        args=args or ["cmd"], returncode=returncode, stdout=stdout, stderr=stderr
    )


@pytest.fixture
def vm_spec(tmp_path) -> VMSpec:
    """Return a minimal VMSpec with sensible defaults."""
    return VMSpec(
        name="test-vm",
        disk_size="20G",
        ram_mib=2048,
        vcpus=2,
        ssh_public_keys=[PUBKEY],
        identity_file=tmp_path / "id_ed25519",
        primary_user="alice",
        password_hash="$2b$12$abcdefghijklmnopqrstuuFakeHashValueForTests0123456789",
        packages=["qemu-guest-agent"],
    )


@pytest.fixture
def noble_image(tmp_path) -> ImageDescriptor:
    path = tmp_path / "images" / "ubuntu-24.04-noble-cloudimg.img"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"raw-image")
    return ImageDescriptor(
        name=path.name,
        path=path,
        detected_format="raw",
        detected_os_variant="ubuntunoble",
    )


@pytest.fixture
def defaults(tmp_path) -> PersistedDefaults:
    return PersistedDefaults(
        image_path=tmp_path / "images",
        storage_path=tmp_path / "storage",
        disk_size="20G",
        ram_mib=2048,
        vcpus=2,
    )


@pytest.fixture
def ssh_dir(tmp_path) -> Path:
    """A fake ~/.ssh holding one ed25519 key pair."""
    path = tmp_path / "ssh"
    path.mkdir()
    (path / "id_ed25519.pub").write_text(PUBKEY + "\n")
    (path / "id_ed25519").write_text("PRIVATE\n")
    return path


@pytest.fixture
def fake_executor() -> MagicMock:
    """Executor double: every command succeeds, nothing is privileged."""
    executor = MagicMock(spec=Executor)
    executor.privileged = False
    executor.run.return_value = completed()
    executor.try_remove.return_value = RemovalResult.ABSENT
    return executor
