"""CLI entry points for kdeploy."""

from __future__ import annotations

import argparse
import dataclasses
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from kdeploy.cloudinit import find_seed_builder
from kdeploy.config import (
    ConfigStore,
    build_vm_spec,
    check_host_tools,
    config_path_from_env,
    interactive_setup,
)
from kdeploy.constants import _SENSITIVE_FIELDS
from kdeploy.exceptions import ConfigurationError, ManagerError, NoImagesError
from kdeploy.images import (
    fetch_image,
    list_images,
    load_catalog,
    resolve_image,
    select_image,
)
from kdeploy.models import ImageDescriptor, NetworkLease, PersistedDefaults, VMSpec
from kdeploy.privilege import Executor, resolve_escalation
from kdeploy.registry import ConnectionRegistry
from kdeploy.utils import has_controlling_tty, log
from kdeploy.vm import VMDeployer


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kdeploy",
        description="Deploy a KVM virtual machine from a cloud image",
    )
    parser.add_argument("name", nargs="?", help="VM name (an existing VM with this name is replaced)")
    parser.add_argument("size", nargs="?", help="Disk size, e.g. 20G (default from config)")
    parser.add_argument("--ram", type=int, metavar="N", help="Memory in MiB")
    parser.add_argument("--cpu", type=int, metavar="N", help="Number of vCPUs")
    parser.add_argument("--image-path", type=Path, metavar="DIR", help="Directory holding base images")
    parser.add_argument("--storage-path", type=Path, metavar="DIR", help="Directory for VM disks")
    parser.add_argument("--image", metavar="NAME|INDEX", help="Base image to use (name or 1-based index)")
    parser.add_argument("--os-variant", metavar="ID", help="virt-install OS variant (skips filename inference)")
    parser.add_argument("--ssh-key", type=Path, metavar="PATH", help="SSH public key to authorize")
    parser.add_argument("--user", metavar="NAME", help="Primary guest user (default: current user)")
    parser.add_argument(
        "--package", action="append", default=[], metavar="PKG", help="Extra package to install (repeatable)"
    )
    parser.add_argument("--fetch", metavar="KEY|URL", help="Download a base image from the catalog or a URL")
    parser.add_argument("--list-images", action="store_true", help="List local base images and catalog keys")
    parser.add_argument("--reconfig", action="store_true", help="Re-run setup and overwrite saved defaults")
    parser.add_argument("--show-config", action="store_true", help="Show saved defaults and exit")
    return parser


def show_config(defaults: PersistedDefaults, path: Path) -> None:
    """Print the resolved defaults and exit."""
    print(f"  config: {path}")
    for field in dataclasses.fields(defaults):
        value = getattr(defaults, field.name)
        if field.name in _SENSITIVE_FIELDS:
            print(f"  {field.name}: {'********' if value else '(not set)'}")
        else:
            print(f"  {field.name}: {value}")


def list_available_images(image_path: Path, catalog_path: Optional[Path] = None) -> None:
    """Print local images followed by downloadable catalog entries."""
    try:
        images = list_images(image_path)
    except NoImagesError:
        log("WARN", f"No base images found in {image_path}")
        images = []
    except ConfigurationError as exc:
        log("WARN", str(exc))
        images = []
    for index, image in enumerate(images, start=1):
        print(f"  {index:>2}. {image.name}  (os-variant={image.detected_os_variant})")

    catalog = load_catalog(catalog_path)
    if not catalog:
        return
    print("  Downloadable with --fetch:")
    max_key = max(len(k) for k in catalog)
    for key in sorted(catalog):
        info = catalog[key]
        print(f"    {key:<{max_key}}  {info.get('name', key)}  (arch={info.get('arch', 'x86_64')})")


def choose_image(
    images: Sequence[ImageDescriptor],
    selection: Optional[str],
    interactive: bool,
    prompt: Callable[[str], str] = input,
) -> ImageDescriptor:
    if selection is None and len(images) > 1 and interactive:
        print("Available base images:")
        for index, image in enumerate(images, start=1):
            print(f"  {index:>2}. {image.name}")
        selection = prompt(f"Select image [1-{len(images)}]: ")
    return select_image(images, selection)


def discover_images(
    image_path: Path,
    interactive: bool,
    executor: Executor,
    prompt: Callable[[str], str] = input,
) -> List[ImageDescriptor]:
    """List base images; on a TTY an empty directory offers a download instead of aborting."""
    try:
        return list_images(image_path)
    except NoImagesError as exc:
        if not interactive:
            raise
        log("WARN", str(exc))
        source = prompt("Catalog key or URL to download (empty to abort): ").strip()
        if not source:
            raise
    fetch_image(source, image_path, executor)
    return list_images(image_path)


def print_startup_banner(spec: VMSpec, image: ImageDescriptor, lease: NetworkLease) -> None:
    """Print a visually distinct access-info banner after the VM is reachable."""
    lines = [
        f"  VM: {spec.name} ({image.name}, os-variant={image.detected_os_variant})",
        f"  Memory: {spec.ram_mib} MiB | CPUs: {spec.vcpus} | Disk: {spec.disk_size}",
        f"  IP: {lease.ip} (via {lease.discovered_via})",
        f"  SSH:  ssh {spec.name}        ({spec.primary_user}@{lease.ip})",
        f"  Root: ssh {spec.name}-root   (root@{lease.ip})",
    ]
    max_len = max(len(line) for line in lines)
    border_len = max_len + 2
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)


def load_defaults(store: ConfigStore, reconfig: bool, interactive: bool) -> PersistedDefaults:
    if reconfig:
        current = store.load() if store.exists() else None
        return interactive_setup(store, interactive, current=current)
    if not store.exists():
        log("INFO", "First run: no saved configuration found")
        return interactive_setup(store, interactive)
    return store.load()


def deploy(
    args: argparse.Namespace,
    defaults: PersistedDefaults,
    interactive: bool,
    executor: Executor,
) -> int:
    image_path = args.image_path or defaults.image_path
    storage_path = args.storage_path or defaults.storage_path

    check_host_tools()
    find_seed_builder()
    spec = build_vm_spec(
        args.name,
        defaults,
        size=args.size,
        ram=args.ram,
        cpus=args.cpu,
        ssh_key=args.ssh_key,
        user=args.user,
        packages=args.package,
        os_variant=args.os_variant,
    )
    log("INFO", f"VM: {spec.name} | Memory: {spec.ram_mib} MiB | CPUs: {spec.vcpus} | Disk: {spec.disk_size}")

    images = discover_images(image_path, interactive, executor)
    image = choose_image(images, args.image, interactive)

    resolved = resolve_image(image, executor, os_variant=spec.os_variant_override)

    deployer = VMDeployer(spec, storage_path, executor, ConnectionRegistry())
    lease = deployer.deploy(resolved)
    print_startup_banner(spec, resolved, lease)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    interactive = has_controlling_tty()
    store = ConfigStore(config_path_from_env())

    try:
        defaults = load_defaults(store, args.reconfig, interactive)

        if args.show_config:
            show_config(defaults, store.path)
            return 0

        image_path = args.image_path or defaults.image_path
        storage_path = args.storage_path or defaults.storage_path
        if args.list_images:
            list_available_images(image_path)
            return 0

        if not args.name and not args.fetch:
            if args.reconfig:
                return 0
            parser.print_usage()
            log("ERROR", "A VM name is required")
            return 1

        # One escalation decision covers fetching and deploying alike.
        executor = Executor(resolve_escalation([image_path, storage_path]))
        if args.fetch:
            fetch_image(args.fetch, image_path, executor)
            if not args.name:
                return 0

        return deploy(args, defaults, interactive, executor)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("ERROR", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
