"""Global constants and path configuration for kdeploy."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "kdeploy" / "config"
CATALOG_PATH = Path(__file__).resolve().parent / "catalog.yaml"

LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
DEFAULT_NETWORK = os.environ.get("KDEPLOY_NETWORK", "default")

DEFAULT_IMAGE_PATH = Path("/var/lib/libvirt/images")
DEFAULT_STORAGE_PATH = Path("/var/lib/libvirt/images")
DEFAULT_VM_SIZE = "20G"
DEFAULT_RAM_MIB = 2048
DEFAULT_CPUS = 2
DEFAULT_PACKAGES = ("qemu-guest-agent",)

# Keys of the persisted key=value configuration file.
CONFIG_KEYS = (
    "IMAGE_PATH",
    "STORAGE_PATH",
    "DEFAULT_VM_SIZE",
    "DEFAULT_RAM",
    "DEFAULT_CPUS",
    "DEFAULT_PASSWORD",
)

TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
VM_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,62}$")
MAC_ADDRESS_RE = re.compile(r"([0-9a-f]{2}(?::[0-9a-f]{2}){5})", re.IGNORECASE)

_SENSITIVE_FIELDS = {"password", "password_hash"}

# Paths under these prefixes are owned by the system and need escalation.
SYSTEM_PREFIXES = (
    Path("/var"),
    Path("/usr"),
    Path("/etc"),
    Path("/opt"),
    Path("/srv"),
    Path("/boot"),
)

# Ordered preference: (tool, admin groups that grant use of it).
ESCALATION_TOOLS = (
    ("sudo", frozenset({"sudo", "wheel", "admin"})),
    ("doas", frozenset({"wheel"})),
)

# Hypervisor-side owners tried in order when handing artifacts to libvirt.
HYPERVISOR_OWNERS = ("libvirt-qemu:kvm", "qemu:qemu", "nobody:kvm")

REQUIRED_COMMANDS = ("virsh", "qemu-img", "virt-install")
SEED_BUILDERS = (
    ("genisoimage",),
    ("mkisofs",),
    ("xorriso", "-as", "genisoimage"),
)

IMAGE_EXTENSIONS = {".qcow2", ".qcow", ".img", ".raw", ".vmdk", ".vdi", ".vhd", ".vhdx"}

# OS-variant inference table. Evaluated top to bottom against the lowercased
# filename; the first matching pattern wins. Version-specific rules come first,
# distro-only fallbacks after. Reordering entries changes which variant an
# existing image resolves to, so new rules are inserted, never shuffled.
OS_VARIANT_RULES = (
    (r"noble|ubuntu[-_.]?24\.04", "ubuntunoble"),
    (r"jammy|ubuntu[-_.]?22\.04", "ubuntujammy"),
    (r"focal|ubuntu[-_.]?20\.04", "ubuntufocal"),
    (r"trixie|debian[-_.]?13", "debian13"),
    (r"bookworm|debian[-_.]?12", "debian12"),
    (r"bullseye|debian[-_.]?11", "debian11"),
    (r"rocky[-_.]?(linux[-_.]?)?10", "rocky10"),
    (r"rocky[-_.]?(linux[-_.]?)?9", "rocky9"),
    (r"rocky[-_.]?(linux[-_.]?)?8", "rocky8"),
    (r"alma(linux)?[-_.]?9", "almalinux9"),
    (r"alma(linux)?[-_.]?8", "almalinux8"),
    (r"centos[-_.]?stream[-_.]?(genericcloud[-_.]?)?9", "centos-stream9"),
    (r"opensuse|leap", "opensuse-unknown"),
    (r"ubuntu", "ubuntu-lts-latest"),
    (r"debian", "debian-unknown"),
    (r"rocky", "rocky-unknown"),
    (r"alma", "almalinux-unknown"),
    (r"centos", "centos-stream9"),
    (r"fedora", "fedora-unknown"),
)
GENERIC_OS_VARIANT = "linux2022"

NETWORK_ATTEMPTS = 60
NETWORK_INTERVAL = 2.0

SSH_DIR = Path.home() / ".ssh"
SSH_REGISTRY_DIRNAME = "kdeploy.d"
SSH_KEY_CANDIDATES = ("id_ed25519.pub", "id_ecdsa.pub", "id_rsa.pub")
