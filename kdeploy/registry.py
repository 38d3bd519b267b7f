"""SSH client configuration records for deployed instances."""

from __future__ import annotations

import os
from pathlib import Path
from typing import List

from kdeploy.constants import SSH_DIR, SSH_REGISTRY_DIRNAME
from kdeploy.models import ConnectionRecord
from kdeploy.utils import atomic_write, ensure_directory, log


def render_record(record: ConnectionRecord) -> str:
    """Two Host blocks: ``<name>`` for the primary user and ``<name>-root``."""
    blocks = []
    for alias, user in (
        (record.instance_name, record.primary_user),
        (f"{record.instance_name}-root", record.root_user),
    ):
        # Host keys change on every redeploy while the address is reused.
        blocks.append(
            "\n".join(
                [
                    f"Host {alias}",
                    f"  HostName {record.ip}",
                    f"  User {user}",
                    f"  IdentityFile {record.identity_file}",
                    "  IdentitiesOnly yes",
                    "  StrictHostKeyChecking no",
                    "  UserKnownHostsFile /dev/null",
                    "  LogLevel ERROR",
                ]
            )
        )
    return f"# Managed by kdeploy ({record.instance_name})\n" + "\n\n".join(blocks) + "\n"


class ConnectionRegistry:
    """Per-instance files under ``~/.ssh/kdeploy.d`` included from ``~/.ssh/config``."""

    def __init__(self, ssh_dir: Path = SSH_DIR, dirname: str = SSH_REGISTRY_DIRNAME) -> None:
        self.ssh_dir = ssh_dir
        self.config_path = ssh_dir / "config"
        self.records_dir = ssh_dir / dirname
        self.include_line = f"Include {self._display(self.records_dir)}/*"

    @staticmethod
    def _display(path: Path) -> str:
        home = Path.home()
        try:
            return "~/" + str(path.relative_to(home))
        except ValueError:
            return str(path)

    def ensure_include(self) -> bool:
        """Prepend the Include directive once; returns True if the file changed."""
        ensure_directory(self.ssh_dir)
        os.chmod(self.ssh_dir, 0o700)
        content = self.config_path.read_text(encoding="utf-8") if self.config_path.exists() else ""
        if any(line.strip() == self.include_line for line in content.splitlines()):
            return False
        # Include must precede Host blocks or OpenSSH scopes it to the last one.
        new_content = self.include_line + "\n"
        if content:
            new_content += "\n" + content
        atomic_write(self.config_path, new_content, mode=0o600)
        log("INFO", f"Added '{self.include_line}' to {self.config_path}")
        return True

    def record_path(self, name: str) -> Path:
        return self.records_dir / name

    def write(self, record: ConnectionRecord) -> Path:
        self.ensure_include()
        ensure_directory(self.records_dir)
        path = self.record_path(record.instance_name)
        atomic_write(path, render_record(record), mode=0o600)
        log("SUCCESS", f"SSH shortcuts written to {path}")
        return path

    def records(self) -> List[str]:
        if not self.records_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.records_dir.iterdir()
            if entry.is_file() and not entry.name.startswith(".")
        )
