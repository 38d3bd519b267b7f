"""Base image discovery, inspection and fetching for kdeploy."""

from __future__ import annotations

import json
import re
import tempfile
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Pattern, Sequence
from urllib.parse import urlparse

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from kdeploy.constants import CATALOG_PATH, GENERIC_OS_VARIANT, IMAGE_EXTENSIONS, OS_VARIANT_RULES
from kdeploy.exceptions import ConfigurationError, ExternalToolError, NoImagesError
from kdeploy.models import ImageDescriptor
from kdeploy.privilege import Executor
from kdeploy.utils import download_file, log


@dataclass(frozen=True)
class OsVariantRule:
    pattern: Pattern[str]
    variant: str

    def matches(self, name: str) -> bool:
        return self.pattern.search(name) is not None


OS_VARIANT_TABLE = tuple(OsVariantRule(re.compile(p), v) for p, v in OS_VARIANT_RULES)


def infer_os_variant(filename: str, rules: Sequence[OsVariantRule] = OS_VARIANT_TABLE) -> str:
    """Return the variant of the first rule matching the lowercased filename."""
    name = Path(filename).name.lower()
    for rule in rules:
        if rule.matches(name):
            return rule.variant
    return GENERIC_OS_VARIANT


def load_catalog(config_path: Optional[Path] = None) -> Dict[str, Dict[str, str]]:
    if config_path is None:
        config_path = CATALOG_PATH
    if not config_path.exists():
        raise ConfigurationError(f"Image catalog missing: {config_path}")
    data = yaml.safe_load(config_path.read_text()) or {}
    return data.get("distributions", {}) or {}


def fetch_hint(catalog: Optional[Dict[str, Dict[str, str]]] = None) -> str:
    keys = ", ".join(sorted(catalog)) if catalog else "<catalog key>"
    return f"Fetch one with: kdeploy --fetch <key|url>  (catalog keys: {keys})"


def list_images(directory: Path) -> List[ImageDescriptor]:
    """Regular files with disk-image extensions in ``directory``, sorted by name."""
    if not directory.exists():
        raise ConfigurationError(f"Image directory does not exist: {directory}")
    if not directory.is_dir():
        raise ConfigurationError(f"Image path is not a directory: {directory}")
    try:
        entries = list(directory.iterdir())
    except OSError as exc:
        raise ConfigurationError(f"Cannot read image directory {directory}: {exc.strerror or exc}") from exc

    images = [
        ImageDescriptor(
            name=entry.name,
            path=entry,
            detected_format=None,
            detected_os_variant=infer_os_variant(entry.name),
        )
        for entry in entries
        if entry.is_file() and entry.suffix.lower() in IMAGE_EXTENSIONS
    ]
    if not images:
        try:
            catalog = load_catalog()
        except ConfigurationError:
            catalog = None
        raise NoImagesError(f"No base images found in {directory}. {fetch_hint(catalog)}")
    return sorted(images, key=lambda image: image.name)


def inspect_format(path: Path, executor: Executor) -> str:
    """Ask qemu-img for the on-disk format of ``path``."""
    result = executor.run(["qemu-img", "info", "--output=json", str(path)])
    try:
        fmt = json.loads(result.stdout).get("format")
    except (json.JSONDecodeError, AttributeError) as exc:
        raise ExternalToolError(f"Unparseable qemu-img output for {path}", cmd=list(result.args)) from exc
    if not fmt:
        raise ExternalToolError(f"qemu-img did not report a format for {path}", cmd=list(result.args))
    return str(fmt)


def select_image(images: Sequence[ImageDescriptor], selection: Optional[str]) -> ImageDescriptor:
    """Pick an image by exact name or 1-based index."""
    if not images:
        raise NoImagesError("No base images to choose from")
    if selection is None or not selection.strip():
        if len(images) == 1:
            return images[0]
        listed = ", ".join(image.name for image in images)
        raise ConfigurationError(f"Several base images found; choose one with --image ({listed})")
    selection = selection.strip()
    for image in images:
        if image.name == selection:
            return image
    if selection.isdigit():
        index = int(selection)
        if 1 <= index <= len(images):
            return images[index - 1]
        raise ConfigurationError(f"Image index {index} out of range (1-{len(images)})")
    raise ConfigurationError(f"Unknown image selection '{selection}'")


def resolve_image(
    image: ImageDescriptor, executor: Executor, os_variant: Optional[str] = None
) -> ImageDescriptor:
    """Inspect the chosen image and apply an explicit OS-variant override."""
    fmt = inspect_format(image.path, executor)
    variant = os_variant or image.detected_os_variant
    if os_variant:
        log("INFO", f"OS variant override: {os_variant} (inferred: {image.detected_os_variant})")
    resolved = replace(image, detected_format=fmt, detected_os_variant=variant)
    log("INFO", f"Base image: {resolved.name} (format={fmt}, os-variant={variant})")
    return resolved


def fetch_image(
    source: str,
    directory: Path,
    executor: Executor,
    catalog_path: Optional[Path] = None,
) -> Path:
    """Download a catalog key or URL into ``directory`` and return the image path."""
    if source.startswith(("http://", "https://")):
        url = source
    else:
        catalog = load_catalog(catalog_path)
        if source not in catalog:
            available = "\n    ".join(sorted(catalog))
            raise ConfigurationError(
                f"Unknown catalog key '{source}'.\n"
                f"  Available images:\n"
                f"    {available}\n"
                f"  Or pass a download URL."
            )
        url = catalog[source]["url"]

    filename = Path(urlparse(url).path).name
    if Path(filename).suffix.lower() not in IMAGE_EXTENSIONS:
        raise ConfigurationError(
            f"Unsupported image file '{filename}'; expected one of {', '.join(sorted(IMAGE_EXTENSIONS))}"
        )
    destination = directory / filename
    if destination.exists() and destination.stat().st_size > 0:
        log("INFO", f"Image already present: {destination}")
        return destination

    with tempfile.TemporaryDirectory(prefix="kdeploy-fetch-") as tmpdir:
        scratch = Path(tmpdir) / filename
        download_file(url, scratch, label="Downloading base image")
        executor.install_file(scratch, destination, 0o644)
    log("SUCCESS", f"Base image saved to {destination}")
    return destination
