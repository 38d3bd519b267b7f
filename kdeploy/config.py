"""Persisted defaults and VM specification assembly for kdeploy."""

from __future__ import annotations

import getpass
import shutil
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from kdeploy.constants import (
    CONFIG_KEYS,
    DEFAULT_CONFIG_PATH,
    DEFAULT_CPUS,
    DEFAULT_IMAGE_PATH,
    DEFAULT_NETWORK,
    DEFAULT_PACKAGES,
    DEFAULT_RAM_MIB,
    DEFAULT_STORAGE_PATH,
    DEFAULT_VM_SIZE,
    REQUIRED_COMMANDS,
    SSH_DIR,
    SSH_KEY_CANDIDATES,
)
from kdeploy.exceptions import ConfigurationError
from kdeploy.models import PersistedDefaults, Secret, VMSpec
from kdeploy.utils import (
    atomic_write,
    get_env,
    hash_password,
    log,
    parse_int,
    validate_disk_size,
    validate_vm_name,
)


def parse_config_text(text: str) -> Dict[str, str]:
    """Parse ``KEY=value`` lines; blank lines and ``#`` comments are skipped."""
    values: Dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            raise ConfigurationError(f"Malformed configuration line {lineno}: '{raw}'")
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        values[key.strip()] = value
    return values


def builtin_defaults() -> PersistedDefaults:
    return PersistedDefaults(
        image_path=DEFAULT_IMAGE_PATH,
        storage_path=DEFAULT_STORAGE_PATH,
        disk_size=DEFAULT_VM_SIZE,
        ram_mib=DEFAULT_RAM_MIB,
        vcpus=DEFAULT_CPUS,
    )


class ConfigStore:
    """Reads and writes the persisted defaults file."""

    def __init__(self, path: Path = DEFAULT_CONFIG_PATH) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> PersistedDefaults:
        if not self.path.exists():
            raise ConfigurationError(f"Configuration file missing: {self.path}")
        values = parse_config_text(self.path.read_text(encoding="utf-8"))
        unknown = sorted(set(values) - set(CONFIG_KEYS))
        if unknown:
            log("WARN", f"Ignoring unknown keys in {self.path}: {', '.join(unknown)}")
        base = builtin_defaults()
        return PersistedDefaults(
            image_path=Path(values.get("IMAGE_PATH") or base.image_path).expanduser(),
            storage_path=Path(values.get("STORAGE_PATH") or base.storage_path).expanduser(),
            disk_size=validate_disk_size(values.get("DEFAULT_VM_SIZE") or base.disk_size),
            ram_mib=parse_int("DEFAULT_RAM", values.get("DEFAULT_RAM") or str(base.ram_mib), min_val=256),
            vcpus=parse_int("DEFAULT_CPUS", values.get("DEFAULT_CPUS") or str(base.vcpus)),
            password_hash=values.get("DEFAULT_PASSWORD") or None,
        )

    def render(self, defaults: PersistedDefaults) -> str:
        lines = [
            "# kdeploy defaults (DEFAULT_PASSWORD holds a bcrypt hash)",
            f"IMAGE_PATH={defaults.image_path}",
            f"STORAGE_PATH={defaults.storage_path}",
            f"DEFAULT_VM_SIZE={defaults.disk_size}",
            f"DEFAULT_RAM={defaults.ram_mib}",
            f"DEFAULT_CPUS={defaults.vcpus}",
            f"DEFAULT_PASSWORD={defaults.password_hash or ''}",
        ]
        return "\n".join(lines) + "\n"

    def save(self, defaults: PersistedDefaults) -> None:
        atomic_write(self.path, self.render(defaults), mode=0o600)
        log("SUCCESS", f"Configuration saved to {self.path}")


def _ask(prompt: Callable[[str], str], label: str, default: str) -> str:
    answer = prompt(f"{label} [{default}]: ").strip()
    return answer or default


def interactive_setup(
    store: ConfigStore,
    interactive: bool,
    current: Optional[PersistedDefaults] = None,
    prompt: Callable[[str], str] = input,
    secret_prompt: Callable[[str], str] = getpass.getpass,
) -> PersistedDefaults:
    """Collect defaults (prompting on a TTY) and overwrite the config file."""
    base = current or builtin_defaults()
    if interactive:
        log("INFO", f"Setting up kdeploy defaults ({store.path})")
        image_path = _ask(prompt, "Base image directory", str(base.image_path))
        storage_path = _ask(prompt, "VM storage directory", str(base.storage_path))
        disk_size = validate_disk_size(_ask(prompt, "Default disk size", base.disk_size))
        ram = parse_int("DEFAULT_RAM", _ask(prompt, "Default RAM (MiB)", str(base.ram_mib)), min_val=256)
        cpus = parse_int("DEFAULT_CPUS", _ask(prompt, "Default vCPUs", str(base.vcpus)))
        password_hash = base.password_hash
        first = secret_prompt("Default guest password (empty keeps current / locks password login): ")
        if first:
            if secret_prompt("Repeat password: ") != first:
                raise ConfigurationError("Passwords do not match")
            password_hash = hash_password(first)
        defaults = PersistedDefaults(
            image_path=Path(image_path).expanduser(),
            storage_path=Path(storage_path).expanduser(),
            disk_size=disk_size,
            ram_mib=ram,
            vcpus=cpus,
            password_hash=password_hash,
        )
    else:
        log("INFO", f"No TTY; writing default configuration to {store.path}")
        env_password = get_env("KDEPLOY_PASSWORD")
        defaults = PersistedDefaults(
            image_path=base.image_path,
            storage_path=base.storage_path,
            disk_size=base.disk_size,
            ram_mib=base.ram_mib,
            vcpus=base.vcpus,
            password_hash=hash_password(env_password) if env_password else base.password_hash,
        )
    store.save(defaults)
    return defaults


def find_ssh_public_key(explicit: Optional[Path] = None, ssh_dir: Path = SSH_DIR) -> Path:
    if explicit is not None:
        key = explicit.expanduser()
        if not key.is_file():
            raise ConfigurationError(f"SSH public key not found at {key}")
        return key
    for candidate in SSH_KEY_CANDIDATES:
        key = ssh_dir / candidate
        if key.is_file():
            return key
    raise ConfigurationError(
        f"No SSH public key found in {ssh_dir} (looked for {', '.join(SSH_KEY_CANDIDATES)})\n"
        "   Generate one with: ssh-keygen -t ed25519"
    )


def identity_for(public_key: Path) -> Path:
    """Private key path paired with ``public_key``."""
    if public_key.suffix == ".pub":
        return public_key.with_suffix("")
    return public_key


def read_public_keys(public_key: Path) -> List[str]:
    keys = [
        line.strip()
        for line in public_key.read_text(encoding="utf-8").splitlines()
        if line.strip() and not line.startswith("#")
    ]
    if not keys:
        raise ConfigurationError(f"SSH public key file is empty: {public_key}")
    return keys


def check_host_tools(
    which: Callable[[str], Optional[str]] = shutil.which,
    commands: Iterable[str] = REQUIRED_COMMANDS,
) -> None:
    missing = [cmd for cmd in commands if not which(cmd)]
    if missing:
        raise ConfigurationError(f"Required command not found: {', '.join(missing)}")


def build_vm_spec(
    name: str,
    defaults: PersistedDefaults,
    size: Optional[str] = None,
    ram: Optional[int] = None,
    cpus: Optional[int] = None,
    ssh_key: Optional[Path] = None,
    user: Optional[str] = None,
    packages: Optional[List[str]] = None,
    os_variant: Optional[str] = None,
    ssh_dir: Path = SSH_DIR,
) -> VMSpec:
    """Merge caller input over persisted defaults."""
    public_key = find_ssh_public_key(ssh_key, ssh_dir)
    env_password = get_env("KDEPLOY_PASSWORD")
    merged_packages = list(DEFAULT_PACKAGES)
    for package in packages or []:
        if package not in merged_packages:
            merged_packages.append(package)
    return VMSpec(
        name=validate_vm_name(name),
        disk_size=validate_disk_size(size or defaults.disk_size),
        ram_mib=parse_int("--ram", str(ram if ram is not None else defaults.ram_mib), min_val=256),
        vcpus=parse_int("--cpu", str(cpus if cpus is not None else defaults.vcpus)),
        ssh_public_keys=read_public_keys(public_key),
        identity_file=identity_for(public_key),
        primary_user=user or get_env("USER") or getpass.getuser(),
        password=Secret(env_password) if env_password else None,
        password_hash=defaults.password_hash,
        packages=merged_packages,
        os_variant_override=os_variant,
        network=DEFAULT_NETWORK,
    )


def config_path_from_env() -> Path:
    raw = get_env("KDEPLOY_CONFIG")
    return Path(raw).expanduser() if raw else DEFAULT_CONFIG_PATH
