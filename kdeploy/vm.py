"""VM lifecycle management for kdeploy."""

from __future__ import annotations

import shutil
import tempfile
from pathlib import Path
from typing import Callable, Optional

from kdeploy.cloudinit import build_seed_image, render_meta_data, render_user_data
from kdeploy.exceptions import ConfigurationError, ManagerError
from kdeploy.hypervisor import Hypervisor
from kdeploy.images import inspect_format
from kdeploy.models import (
    ConnectionRecord,
    DeployState,
    ImageDescriptor,
    InstanceArtifacts,
    NetworkLease,
    RemovalResult,
    VMSpec,
)
from kdeploy.network import NetworkBootstrap
from kdeploy.privilege import Executor
from kdeploy.registry import ConnectionRegistry
from kdeploy.utils import check_disk_space, hash_password, log, parse_size_to_bytes


class VMDeployer:
    """Replaces any instance with the same name and brings up a fresh one."""

    def __init__(
        self,
        spec: VMSpec,
        storage_path: Path,
        executor: Executor,
        registry: ConnectionRegistry,
        hypervisor: Optional[Hypervisor] = None,
        network: Optional[NetworkBootstrap] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
    ) -> None:
        self.spec = spec
        self.storage_path = storage_path
        self.executor = executor
        self.registry = registry
        self.hypervisor = hypervisor or Hypervisor(executor)
        self.network = network or NetworkBootstrap(self.hypervisor, network=spec.network)
        self.which = which
        self.artifacts = InstanceArtifacts.for_instance(spec.name, storage_path)
        self.state = DeployState.IDLE

    def _transition(self, state: DeployState) -> None:
        log("DEBUG", f"{self.spec.name}: {self.state.value} -> {state.value}")
        self.state = state

    def deploy(self, image: ImageDescriptor) -> NetworkLease:
        if image.detected_format is None:
            raise ConfigurationError(f"Base image {image.name} has not been inspected")
        launched = False
        try:
            check_disk_space(self.storage_path, parse_size_to_bytes(self.spec.disk_size))

            self._transition(DeployState.CLEANING)
            self.clean()

            self._transition(DeployState.CONFIGURING)
            self.configure()

            self._transition(DeployState.DISK_PROVISIONING)
            self.provision_disk(image)

            self._transition(DeployState.LAUNCHING)
            launched = True
            self.hypervisor.create_domain(self.spec, image, self.artifacts)

            self._transition(DeployState.NETWORK_WAIT)
            lease = self.network.discover(self.spec.name)

            self._transition(DeployState.REGISTERING)
            self.register(lease)

            self._transition(DeployState.READY)
            return lease
        except BaseException:
            failed_in = self.state
            self._transition(DeployState.FAILED)
            if not launched and failed_in in (DeployState.CONFIGURING, DeployState.DISK_PROVISIONING):
                self._discard_artifacts()
            raise

    def clean(self) -> None:
        name = self.spec.name
        log("INFO", f"Cleaning up previous resources for {name}...")
        for action, result in (
            ("destroy", self.hypervisor.try_destroy(name)),
            ("undefine", self.hypervisor.try_undefine(name)),
        ):
            if result is RemovalResult.FAILED:
                log("WARN", f"Could not {action} existing domain {name}; continuing")
        for path in (self.artifacts.overlay_disk_path, self.artifacts.seed_image_path):
            if self.executor.try_remove(path) is RemovalResult.FAILED:
                raise ManagerError(f"Stale artifact {path} could not be removed")

    def configure(self) -> None:
        log("INFO", "Creating cloud-init configuration...")
        if self.spec.password:
            password_hash: Optional[str] = hash_password(self.spec.password.reveal())
        else:
            password_hash = self.spec.password_hash
        if not password_hash:
            log("WARN", f"No guest password configured; password login for {self.spec.primary_user} is locked")
        user_data = render_user_data(self.spec, password_hash)
        meta_data = render_meta_data(self.spec.name)

        with tempfile.TemporaryDirectory(prefix="kdeploy-seed-") as tmpdir:
            scratch = Path(tmpdir) / self.artifacts.seed_image_path.name
            build_seed_image(user_data, meta_data, scratch, which=self.which)
            self.executor.install_file(scratch, self.artifacts.seed_image_path, 0o644)
        if self.executor.privileged:
            self.executor.chown(self.artifacts.seed_image_path)
        log("SUCCESS", f"Seed image ready: {self.artifacts.seed_image_path}")

    def provision_disk(self, image: ImageDescriptor) -> None:
        if not image.path.exists():
            raise ConfigurationError(f"Base image not found at: {image.path}")
        actual = inspect_format(image.path, self.executor)
        if actual != image.detected_format:
            raise ConfigurationError(
                f"Backing format mismatch for {image.path}: declared {image.detected_format}, "
                f"qemu-img reports {actual}. Refusing to create overlay."
            )
        overlay = self.artifacts.overlay_disk_path
        log("INFO", f"Creating overlay image {overlay} ({self.spec.disk_size}, backing {image.detected_format})")
        self.executor.run(
            [
                "qemu-img",
                "create",
                "-f",
                "qcow2",
                "-b",
                str(image.path),
                "-F",
                image.detected_format,
                str(overlay),
                self.spec.disk_size,
            ]
        )
        self.executor.run(["chmod", "660", str(overlay)])
        if self.executor.privileged:
            self.executor.chown(overlay)
        log("SUCCESS", f"Overlay image ready: {overlay}")

    def register(self, lease: NetworkLease) -> ConnectionRecord:
        record = ConnectionRecord(
            instance_name=self.spec.name,
            ip=lease.ip,
            primary_user=self.spec.primary_user,
            identity_file=self.spec.identity_file,
        )
        self.registry.write(record)
        return record

    def _discard_artifacts(self) -> None:
        for path in (self.artifacts.overlay_disk_path, self.artifacts.seed_image_path):
            try:
                self.executor.try_remove(path)
            except ManagerError as exc:
                log("WARN", f"Could not discard partial artifact {path}: {exc}")
