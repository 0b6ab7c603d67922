"""Medium descriptor parsing and target label derivation.

A compatible image ships ``mkusb/mediumdata``: shell-style ``key=value``
lines, ``#`` comments, lists written as ``(a b c)``. Only one format
version is accepted.
"""

from __future__ import annotations

import re
import shlex
import uuid
from pathlib import Path
from typing import Optional

from persistusb.domain import MediumDescriptor, TargetLabels
from persistusb.storage.exceptions import MediumDescriptorError, MediumVersionError


DESCRIPTOR_PATH = Path("mkusb") / "mediumdata"
MEDIUM_DATA_DIR = Path("mkusb")
SUPPORTED_VERSION = "v1"
VERSION_KEY = "MEDIUMDATA"
REQUIRED_KEYS = ("iso_label", "install_dir")
ENCRYPTED_BOOT_KEYS = ("persistence_entry", "persistence_syslinux")
LIST_KEYS = ("esp_files_settings", "persistence_files_settings")

FAT_LABEL_MAX = 11
_LABEL_STEM_MAX = 5


def parse_descriptor_text(text: str) -> dict[str, object]:
    """Parse descriptor text into a dict of strings and tuples of strings."""
    values: dict[str, object] = {}
    for number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, raw_value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            raise MediumDescriptorError(f"Malformed descriptor line {number}: {raw_line!r}")
        raw_value = raw_value.strip()
        try:
            if raw_value.startswith("(") and raw_value.endswith(")"):
                values[key] = tuple(shlex.split(raw_value[1:-1]))
            else:
                parts = shlex.split(raw_value)
                values[key] = parts[0] if parts else ""
        except ValueError as error:
            raise MediumDescriptorError(
                f"Malformed descriptor line {number}: {error}"
            ) from error
    return values


def descriptor_from_values(values: dict[str, object]) -> MediumDescriptor:
    version = values.get(VERSION_KEY)
    if not version:
        raise MediumDescriptorError(f"Descriptor has no {VERSION_KEY} version entry")
    if version != SUPPORTED_VERSION:
        raise MediumVersionError(str(version), SUPPORTED_VERSION)

    missing = [key for key in REQUIRED_KEYS if not values.get(key)]
    if missing:
        raise MediumDescriptorError(f"Descriptor is missing: {', '.join(missing)}")
    for key in LIST_KEYS:
        if key in values and not isinstance(values[key], tuple):
            values[key] = (values[key],) if values[key] else ()

    arch = str(values.get("arch") or "x86_64")
    return MediumDescriptor(
        version=str(version),
        iso_label=str(values["iso_label"]),
        install_dir=str(values["install_dir"]).strip("/"),
        arch=arch,
        rootfs_image=str(values.get("rootfs_image") or f"{arch}/airootfs.sfs"),
        esp_files=tuple(values.get("esp_files_settings", ())),
        persistence_files=tuple(values.get("persistence_files_settings", ())),
        persistence_entry=str(values.get("persistence_entry") or ""),
        persistence_syslinux=str(values.get("persistence_syslinux") or ""),
    )


def require_encrypted_boot_configs(medium: MediumDescriptor) -> None:
    """Raise unless the medium names both boot configs an encrypted run rewrites."""
    missing = [key for key in ENCRYPTED_BOOT_KEYS if not getattr(medium, key)]
    if missing:
        raise MediumDescriptorError(
            f"Descriptor is missing: {', '.join(missing)} (required for encryption)"
        )


def read_medium_descriptor(image_root: Path) -> MediumDescriptor:
    """Read and check the descriptor of a mounted image.

    Raises:
        MediumDescriptorError: Missing or malformed descriptor
        MediumVersionError: Unsupported descriptor version
    """
    path = image_root / DESCRIPTOR_PATH
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as error:
        raise MediumDescriptorError(
            f"No medium descriptor at {DESCRIPTOR_PATH}; not a compatible image"
        ) from error
    except OSError as error:
        raise MediumDescriptorError(f"Cannot read {path}: {error}") from error
    return descriptor_from_values(parse_descriptor_text(text))


def derive_target_labels(
    medium: MediumDescriptor, token: Optional[str] = None
) -> TargetLabels:
    """Derive per-device labels from the image label and a short token.

    The ESP label must fit FAT's 11 characters.
    """
    token = (token or uuid.uuid4().hex[:4]).upper()
    stem = re.sub(r"[^A-Z0-9]", "", medium.iso_label.split("_")[0].upper())[:_LABEL_STEM_MAX]
    stem = stem or "LIVE"
    return TargetLabels(
        image=f"{stem}_{token}",
        esp=f"{stem}E{token}"[:FAT_LABEL_MAX],
        persistence=f"{stem}P{token}",
    )
