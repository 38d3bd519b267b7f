"""Custom exceptions for kdeploy."""

from __future__ import annotations

from typing import List, Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigurationError(ManagerError):
    """Missing dependency, key material, directory or an unparseable selection."""


class NoImagesError(ConfigurationError):
    """The image directory holds no recognised base images."""


class ResourceConflictError(ManagerError):
    """A domain with the target name still exists when launching."""


class ExternalToolError(ManagerError):
    """An external utility exited non-zero."""

    def __init__(
        self,
        message: str,
        cmd: Optional[List[str]] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.cmd = cmd or []
        self.returncode = returncode
        self.stderr = stderr


class DiscoveryTimeoutError(ManagerError):
    """No IPv4 address was discovered within the attempt budget."""
