"""virsh / virt-install command surface for kdeploy."""

from __future__ import annotations

from typing import List, Optional

from kdeploy.constants import LIBVIRT_URI
from kdeploy.exceptions import ExternalToolError, ResourceConflictError
from kdeploy.models import ImageDescriptor, InstanceArtifacts, RemovalResult, VMSpec
from kdeploy.privilege import Executor
from kdeploy.utils import log

_CONFLICT_MARKERS = ("already in use", "already exists")
_MISSING_MARKERS = ("failed to get domain", "domain not found", "no domain with matching name")


class Hypervisor:
    """Thin wrapper over the libvirt CLI tools, routed through the run's executor."""

    def __init__(self, executor: Executor, uri: str = LIBVIRT_URI) -> None:
        self.executor = executor
        self.uri = uri

    def virsh(self, *args: str, check: bool = False):
        return self.executor.run(["virsh", "-c", self.uri, *args], check=check)

    def domain_state(self, name: str) -> Optional[str]:
        """Current state, or None when libvirt reports no such domain."""
        result = self.virsh("domstate", name)
        if result.returncode == 0:
            return (result.stdout or "").strip() or None
        stderr = (result.stderr or "").strip()
        if any(marker in stderr.lower() for marker in _MISSING_MARKERS):
            return None
        raise ExternalToolError(
            f"virsh domstate {name} failed (exit {result.returncode}): {stderr or 'no output'}",
            cmd=list(result.args),
            returncode=result.returncode,
            stderr=stderr,
        )

    def exists(self, name: str) -> bool:
        return self.domain_state(name) is not None

    def try_destroy(self, name: str) -> RemovalResult:
        try:
            state = self.domain_state(name)
        except ExternalToolError as exc:
            log("WARN", str(exc))
            return RemovalResult.FAILED
        if state is None or state == "shut off":
            return RemovalResult.ABSENT
        result = self.virsh("destroy", name)
        if result.returncode != 0:
            log("WARN", f"virsh destroy {name} failed: {(result.stderr or '').strip()}")
            return RemovalResult.FAILED
        log("INFO", f"Stopped domain {name}")
        return RemovalResult.REMOVED

    def try_undefine(self, name: str) -> RemovalResult:
        try:
            if not self.exists(name):
                return RemovalResult.ABSENT
        except ExternalToolError as exc:
            log("WARN", str(exc))
            return RemovalResult.FAILED
        result = self.virsh("undefine", name, "--nvram")
        if result.returncode != 0:
            log("WARN", f"virsh undefine {name} failed: {(result.stderr or '').strip()}")
            return RemovalResult.FAILED
        log("INFO", f"Undefined domain {name}")
        return RemovalResult.REMOVED

    def install_command(
        self, spec: VMSpec, image: ImageDescriptor, artifacts: InstanceArtifacts
    ) -> List[str]:
        return [
            "virt-install",
            "--connect",
            self.uri,
            "--name",
            spec.name,
            "--memory",
            str(spec.ram_mib),
            "--vcpus",
            str(spec.vcpus),
            "--disk",
            f"path={artifacts.overlay_disk_path},format=qcow2,bus=virtio",
            "--disk",
            f"path={artifacts.seed_image_path},device=cdrom",
            "--os-variant",
            image.detected_os_variant,
            "--network",
            f"network={spec.network}",
            "--graphics",
            "none",
            "--console",
            "pty,target_type=serial",
            "--import",
            "--noautoconsole",
        ]

    def create_domain(
        self, spec: VMSpec, image: ImageDescriptor, artifacts: InstanceArtifacts
    ) -> None:
        if self.exists(spec.name):
            raise ResourceConflictError(
                f"Domain {spec.name} still exists after cleanup; refusing to launch over it"
            )
        try:
            self.executor.run(self.install_command(spec, image, artifacts))
        except ExternalToolError as exc:
            if any(marker in exc.stderr.lower() for marker in _CONFLICT_MARKERS):
                raise ResourceConflictError(
                    f"Domain name {spec.name} is already in use: {exc.stderr}"
                ) from exc
            raise
        log("SUCCESS", f"Domain {spec.name} defined and started")

    def interface_list(self, name: str) -> str:
        result = self.virsh("domiflist", name)
        return (result.stdout or "") if result.returncode == 0 else ""

    def agent_addresses(self, name: str) -> str:
        result = self.virsh("domifaddr", name, "--source", "agent")
        return (result.stdout or "") if result.returncode == 0 else ""

    def dhcp_leases(self, network: str) -> str:
        result = self.virsh("net-dhcp-leases", network)
        return (result.stdout or "") if result.returncode == 0 else ""
