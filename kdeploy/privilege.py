"""Privilege resolution and the command executor for kdeploy.

Escalation is decided once per run by :func:`resolve_escalation` and the
resulting :class:`Executor` is handed to every component that touches the
filesystem or the hypervisor, so either all privileged operations escalate or
none do.
"""

from __future__ import annotations

import grp
import os
import pwd
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, FrozenSet, Iterable, List, Optional, Sequence

from kdeploy.constants import ESCALATION_TOOLS, HYPERVISOR_OWNERS, SYSTEM_PREFIXES
from kdeploy.exceptions import ConfigurationError, ExternalToolError
from kdeploy.models import RemovalResult
from kdeploy.utils import log, run

Which = Callable[[str], Optional[str]]


def requires_privilege(path: Path) -> bool:
    """Return True if ``path`` lies under a system-owned prefix."""
    resolved = Path(os.path.abspath(os.path.expanduser(str(path))))
    for prefix in SYSTEM_PREFIXES:
        if resolved == prefix or prefix in resolved.parents:
            return True
    return False


def current_groups() -> FrozenSet[str]:
    """Names of the groups the invoking user belongs to."""
    names = set()
    for gid in os.getgroups():
        try:
            names.add(grp.getgrgid(gid).gr_name)
        except KeyError:
            continue
    try:
        user = pwd.getpwuid(os.getuid()).pw_name
        names.update(g.gr_name for g in grp.getgrall() if user in g.gr_mem)
    except KeyError:
        pass
    return frozenset(names)


def select_escalation(groups: Iterable[str], which: Which = shutil.which) -> Optional[str]:
    """Pick an installed escalation tool, preferring one the user's groups grant."""
    member_of = set(groups)
    installed = [(tool, admin) for tool, admin in ESCALATION_TOOLS if which(tool)]
    for tool, admin in installed:
        if member_of & admin:
            return tool
    if installed:
        return installed[0][0]
    return None


@dataclass(frozen=True)
class Escalation:
    tool: Optional[str] = None

    @property
    def privileged(self) -> bool:
        return self.tool is not None

    def wrap(self, cmd: Sequence[str]) -> List[str]:
        if self.tool is None:
            return list(cmd)
        return [self.tool, *cmd]


def resolve_escalation(
    paths: Iterable[Path],
    groups: Optional[Iterable[str]] = None,
    which: Which = shutil.which,
    euid: Optional[int] = None,
) -> Escalation:
    """Decide once whether this run escalates, and with which tool."""
    paths = list(paths)
    if euid is None:
        euid = os.geteuid()
    needed = [p for p in paths if requires_privilege(p)]
    if not needed:
        log("DEBUG", "No system paths involved; running unprivileged")
        return Escalation()
    if euid == 0:
        log("DEBUG", "Running as root; no escalation needed")
        return Escalation()
    tool = select_escalation(current_groups() if groups is None else groups, which)
    if tool is None:
        listed = ", ".join(str(p) for p in needed)
        tools = ", ".join(t for t, _ in ESCALATION_TOOLS)
        raise ConfigurationError(
            f"{listed} requires elevated privileges but none of ({tools}) is installed. "
            "Install one of them or point --image-path/--storage-path at a user-owned directory."
        )
    log("INFO", f"System paths in use ({', '.join(str(p) for p in needed)}); escalating with {tool}")
    return Escalation(tool)


class Executor:
    """Runs every side-effecting external command with the resolved escalation."""

    def __init__(self, escalation: Optional[Escalation] = None) -> None:
        self.escalation = escalation or Escalation()

    @property
    def privileged(self) -> bool:
        return self.escalation.privileged

    def run(self, cmd: Sequence[str], check: bool = True) -> subprocess.CompletedProcess:
        full = self.escalation.wrap(cmd)
        try:
            result = run(full, check=False, capture_output=True)
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Required command not found: {full[0]}") from exc
        if check and result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise ExternalToolError(
                f"{cmd[0]} failed (exit {result.returncode}): {stderr or 'no output'}",
                cmd=full,
                returncode=result.returncode,
                stderr=stderr,
            )
        return result

    def try_remove(self, path: Path) -> RemovalResult:
        """Remove a file, reporting whether it was removed, absent or stuck."""
        if not os.path.lexists(path):
            return RemovalResult.ABSENT
        result = self.run(["rm", "-f", str(path)], check=False)
        if result.returncode != 0 or os.path.lexists(path):
            log("WARN", f"Could not remove {path}: {(result.stderr or '').strip()}")
            return RemovalResult.FAILED
        log("DEBUG", f"Removed {path}")
        return RemovalResult.REMOVED

    def install_file(self, src: Path, dst: Path, mode: int) -> None:
        """Copy ``src`` to ``dst`` with ``mode``, creating parent directories."""
        self.run(["install", "-D", "-m", f"{mode:o}", str(src), str(dst)])

    def chown(self, path: Path, owners: Sequence[str] = HYPERVISOR_OWNERS) -> Optional[str]:
        """Hand ``path`` to the first hypervisor owner that exists on this host."""
        for owner in owners:
            if self.run(["chown", owner, str(path)], check=False).returncode == 0:
                log("DEBUG", f"Owner of {path} set to {owner}")
                return owner
        log("WARN", f"Could not change owner of {path}; tried {', '.join(owners)}")
        return None
