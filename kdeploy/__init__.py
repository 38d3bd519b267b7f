"""kdeploy package."""

__all__ = [
    "cli",
    "cloudinit",
    "config",
    "constants",
    "exceptions",
    "hypervisor",
    "images",
    "models",
    "network",
    "privilege",
    "registry",
    "utils",
    "vm",
]
