"""Utility functions for kdeploy."""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import Optional, Sequence
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from kdeploy.constants import _LOG_VERBOSE, DISK_SIZE_RE, VM_NAME_RE
from kdeploy.exceptions import ConfigurationError, ManagerError


_LEVEL_COLOURS = {
    "INFO": "\033[0;34m",
    "WARN": "\033[1;33m",
    "ERROR": "\033[0;31m",
    "SUCCESS": "\033[0;32m",
    "DEBUG": "\033[0;90m",
}


def log(level: str, message: str) -> None:
    """Print ``message`` to stdout behind a coloured ``[LEVEL]`` tag."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colour = _LEVEL_COLOURS.get(level)
    tag = f"{colour}[{level}]\033[0m" if colour else f"[{level}]"
    print(f"{tag} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int(name: str, raw: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigurationError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigurationError(f"{name} must be <= {max_val} (got {value})")
    return value


def validate_disk_size(raw: str) -> str:
    if not DISK_SIZE_RE.match(raw):
        raise ConfigurationError(
            f"Invalid disk size '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')"
        )
    return raw.upper()


def validate_vm_name(raw: str) -> str:
    if not VM_NAME_RE.match(raw):
        raise ConfigurationError(
            f"Invalid VM name '{raw}'. Use letters, digits, '.', '_' or '-' (max 63 characters)"
        )
    return raw


def parse_size_to_bytes(size: str) -> int:
    """Convert a qemu-img style size ('20G', '512M', '1024') to bytes."""
    units = {"K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}
    size = size.strip().upper()
    if size and size[-1] in units:
        return int(size[:-1]) * units[size[-1]]
    return int(size)


def get_available_disk_space(path: Path) -> int:
    """Free bytes on the filesystem holding ``path`` (nearest existing parent)."""
    probe = path
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    return shutil.disk_usage(probe).free


def check_disk_space(path: Path, required_bytes: int) -> bool:
    """Warn when free space is below the requested size; never blocks."""
    try:
        available = get_available_disk_space(path)
    except OSError as exc:
        log("WARN", f"Could not determine free space at {path}: {exc}")
        return False
    if available < required_bytes:
        log(
            "WARN",
            f"Only {available / (1024**3):.1f}G free at {path}; requested disk is "
            f"{required_bytes / (1024**3):.1f}G. The overlay grows on demand and may fill the filesystem.",
        )
        return False
    log("DEBUG", f"Disk space OK at {path}: {available / (1024**3):.1f}G free")
    return True


def has_controlling_tty() -> bool:
    """Return True if both stdin and stdout are attached to a TTY."""
    for stream in (sys.stdin, sys.stdout):
        try:
            if not stream.isatty():
                return False
        except (AttributeError, ValueError):
            return False
    return True


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def atomic_write(path: Path, content: str, mode: int = 0o600) -> None:
    """Write ``content`` to a temp file beside ``path`` and rename it into place."""
    ensure_directory(path.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _progress_line(done: int, total: Optional[int], started: float) -> str:
    mib = 1024 * 1024
    elapsed = time.monotonic() - started
    rate = (done / elapsed / mib) if elapsed > 0 else 0.0
    if not total:
        return f"\r  {done / mib:.1f} MiB ({rate:.1f} MiB/s)"
    width = 30
    filled = width * done // total
    return (
        f"\r  [{'#' * filled}{'.' * (width - filled)}] {100 * done / total:5.1f}% "
        f"{done / mib:.1f}/{total / mib:.1f} MiB ({rate:.1f} MiB/s)"
    )


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Stream ``url`` into ``destination`` via a sibling temp file, printing progress."""
    log("INFO", f"{label}: {url}")
    try:
        response = urlopen(Request(url, headers={"User-Agent": "kdeploy"}), timeout=60)
    except HTTPError as exc:
        raise ManagerError(f"Download of {url} failed with HTTP {exc.code} ({exc.reason})") from exc
    except URLError as exc:
        raise ManagerError(f"Could not reach {url}: {exc.reason}") from exc

    length = response.headers.get("Content-Length")
    total = int(length) if length and length.isdigit() else None
    fd, partial_name = tempfile.mkstemp(prefix=f".{destination.name}.", suffix=".part", dir=destination.parent)
    partial = Path(partial_name)
    started = time.monotonic()
    done = 0
    try:
        with os.fdopen(fd, "wb") as out, response:
            for chunk in iter(lambda: response.read(256 * 1024), b""):
                out.write(chunk)
                done += len(chunk)
                print(_progress_line(done, total, started), end="", flush=True)
        print(flush=True)
        if total is not None and done != total:
            raise ManagerError(f"Download of {url} truncated: got {done} of {total} bytes")
        os.replace(partial, destination)
    finally:
        partial.unlink(missing_ok=True)
    log("SUCCESS", f"Downloaded {done / (1024 * 1024):.1f} MiB in {time.monotonic() - started:.1f}s")


def run(cmd: Sequence[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run ``cmd`` as text I/O; the command line is logged at DEBUG first."""
    log("DEBUG", f"$ {shlex.join(cmd)}")
    return subprocess.run(list(cmd), check=check, text=True, **kwargs)
