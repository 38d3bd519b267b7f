"""Data models for kdeploy."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional


class Secret:
    """Cleartext value that masks itself when printed or logged."""

    __slots__ = ("_value",)

    def __init__(self, value: str) -> None:
        self._value = value

    def reveal(self) -> str:
        return self._value

    def __bool__(self) -> bool:
        return bool(self._value)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Secret) and other._value == self._value

    def __hash__(self) -> int:
        return hash(self._value)

    def __repr__(self) -> str:
        return "Secret('********')"

    def __str__(self) -> str:
        return "********"


class RemovalResult(Enum):
    REMOVED = "removed"
    ABSENT = "absent"
    FAILED = "failed"


class DeployState(Enum):
    IDLE = "idle"
    CLEANING = "cleaning"
    CONFIGURING = "configuring"
    DISK_PROVISIONING = "disk-provisioning"
    LAUNCHING = "launching"
    NETWORK_WAIT = "network-wait"
    REGISTERING = "registering"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class ImageDescriptor:
    name: str
    path: Path
    detected_format: Optional[str]
    detected_os_variant: str


@dataclass
class PersistedDefaults:
    image_path: Path
    storage_path: Path
    disk_size: str
    ram_mib: int
    vcpus: int
    password_hash: Optional[str] = None


@dataclass
class VMSpec:
    name: str
    disk_size: str
    ram_mib: int
    vcpus: int
    ssh_public_keys: List[str]
    identity_file: Path
    primary_user: str
    password: Optional[Secret] = None
    # Pre-computed hash (persisted default); takes effect when no password is given.
    password_hash: Optional[str] = None
    packages: List[str] = field(default_factory=list)
    os_variant_override: Optional[str] = None
    network: str = "default"


@dataclass(frozen=True)
class InstanceArtifacts:
    overlay_disk_path: Path
    seed_image_path: Path

    @classmethod
    def for_instance(cls, name: str, storage_path: Path) -> "InstanceArtifacts":
        return cls(
            overlay_disk_path=storage_path / f"{name}.qcow2",
            seed_image_path=storage_path / f"{name}-seed.iso",
        )


@dataclass(frozen=True)
class NetworkLease:
    mac: Optional[str]
    ip: str
    discovered_via: str  # "agent" or "dhcp"


@dataclass(frozen=True)
class ConnectionRecord:
    instance_name: str
    ip: str
    primary_user: str
    identity_file: Path
    root_user: str = "root"
