"""Cloud-init document rendering and seed image creation for kdeploy."""

from __future__ import annotations

import shutil
import tempfile
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from kdeploy.constants import SEED_BUILDERS
from kdeploy.exceptions import ConfigurationError, ExternalToolError
from kdeploy.models import VMSpec
from kdeploy.utils import log, run

# Packages that ship a service which must be enabled after installation.
SERVICE_PACKAGES = {
    "qemu-guest-agent": "qemu-guest-agent",
}


def _dump(document: Dict[str, object]) -> str:
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


def render_meta_data(name: str, now: Optional[float] = None) -> str:
    """Identity document; the timestamp makes every deployment a fresh instance."""
    stamp = int(time.time() if now is None else now)
    return _dump({"instance-id": f"{name}-{stamp}", "local-hostname": name})


def post_boot_commands(packages: Sequence[str]) -> List[List[str]]:
    commands = []
    for package in packages:
        service = SERVICE_PACKAGES.get(package)
        if service:
            commands.append(["systemctl", "enable", "--now", service])
    return commands


def render_user_data(spec: VMSpec, password_hash: Optional[str]) -> str:
    keys = list(spec.ssh_public_keys)
    primary: Dict[str, object] = {
        "name": spec.primary_user,
        "groups": ["wheel"],
        "sudo": "ALL=(ALL) NOPASSWD:ALL",
        "shell": "/bin/bash",
    }
    if password_hash:
        primary["lock_passwd"] = False
        primary["passwd"] = password_hash
    else:
        primary["lock_passwd"] = True
    primary["ssh_authorized_keys"] = keys

    document: Dict[str, object] = {
        "disable_root": False,
        "users": [
            {"name": "root", "ssh_authorized_keys": keys},
            primary,
        ],
        "ssh_pwauth": False,
        "preserve_hostname": False,
        "hostname": spec.name,
        "fqdn": f"{spec.name}.local",
    }
    # Empty sections are omitted, not emitted as empty lists.
    if spec.packages:
        document["package_update"] = True
        document["package_upgrade"] = True
        document["packages"] = list(spec.packages)
    commands = post_boot_commands(spec.packages)
    if commands:
        document["runcmd"] = commands
    # $UPTIME is expanded by cloud-init when the final stage completes.
    document["final_message"] = f"kdeploy: {spec.name} is ready after $UPTIME seconds"
    return "#cloud-config\n" + _dump(document)


def find_seed_builder(which: Callable[[str], Optional[str]] = shutil.which) -> List[str]:
    for builder in SEED_BUILDERS:
        if which(builder[0]):
            return list(builder)
    names = ", ".join(builder[0] for builder in SEED_BUILDERS)
    raise ConfigurationError(f"No seed image builder found; install one of: {names}")


def build_seed_image(
    user_data: str,
    meta_data: str,
    output: Path,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> Path:
    """Write both documents to a scratch directory and pack them into a cidata ISO."""
    builder = find_seed_builder(which)
    with tempfile.TemporaryDirectory(prefix="kdeploy-cloudinit-") as tmpdir:
        tmp = Path(tmpdir)
        (tmp / "user-data").write_text(user_data, encoding="utf-8")
        (tmp / "meta-data").write_text(meta_data, encoding="utf-8")
        cmd = builder + [
            "-output",
            str(output),
            "-volid",
            "cidata",
            "-joliet",
            "-rock",
            str(tmp / "user-data"),
            str(tmp / "meta-data"),
        ]
        result = run(cmd, check=False, capture_output=True)
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise ExternalToolError(
                f"{builder[0]} failed (exit {result.returncode}): {stderr or 'no output'}",
                cmd=cmd,
                returncode=result.returncode,
                stderr=stderr,
            )
    log("DEBUG", f"Seed image written to {output}")
    return output
