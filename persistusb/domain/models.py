"""Domain model for live USB provisioning.

Every component receives these immutable values explicitly instead of
reading flags from module globals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


MIB = 1024 * 1024
GIB = 1024 * MIB


# ==============================================================================
# Drive Domain
# ==============================================================================


def _as_bool(value: Any) -> bool:
    """lsblk reports flags as JSON booleans or as "1"/"0" depending on version."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true")
    return bool(value)


MAPPER_TYPES = ("crypt", "lvm", "dm")


def _walk_children(device: dict[str, Any]):
    for child in device.get("children", []) or []:
        yield child
        yield from _walk_children(child)


def _node_path(device: dict[str, Any]) -> str:
    if device.get("type") in MAPPER_TYPES:
        return f"/dev/mapper/{device['name']}"
    return f"/dev/{device['name']}"


def _reported_mountpoints(device: dict[str, Any]) -> list[str]:
    # lsblk 2.37+ reports a "mountpoints" list alongside "mountpoint"
    values = device.get("mountpoints") or [device.get("mountpoint")]
    return [value for value in values if value]


@dataclass(frozen=True)
class Drive:
    """A block device as reported by lsblk."""

    name: str  # e.g., "sdb"
    size_bytes: int
    sector_size: int = 512  # logical sector size
    vendor: str | None = None
    model: str | None = None
    transport: str | None = None  # e.g., "usb"
    is_removable: bool = False
    partitions: tuple[str, ...] = ()  # child partition names, e.g. ("sdb1",)
    holders: tuple[str, ...] = ()  # stacked nodes, e.g. ("/dev/mapper/luks-x",)
    mountpoints: tuple[str, ...] = ()  # reported anywhere in the device tree

    @property
    def device_path(self) -> str:
        """Device node path (e.g., /dev/sdb)."""
        return f"/dev/{self.name}"

    def format_label(self) -> str:
        """Format a human-readable label for display.

        Returns: e.g., "sdb 8.0GB" or "sdb Kingston DataTraveler (8.0GB)"
        """
        size_str = f"{self.size_bytes / GIB:.1f}GB"
        parts = []
        if self.vendor:
            parts.append(self.vendor.strip())
        if self.model:
            parts.append(self.model.strip())
        if parts:
            return f"{self.name} {' '.join(parts)} ({size_str})"
        return f"{self.name} {size_str}"

    @classmethod
    def from_lsblk_dict(cls, device: dict[str, Any]) -> Drive:
        """Convert an lsblk JSON entry to a Drive.

        Raises:
            KeyError: If the name key is missing
            ValueError: If size cannot be converted to int
        """
        name = device["name"]
        size_bytes = int(device.get("size") or 0)
        sector_size = int(device.get("log-sec") or 512)

        vendor = device.get("vendor")
        if vendor:
            vendor = vendor.strip()
        model = device.get("model")
        if model:
            model = model.strip()

        is_removable = _as_bool(device.get("rm")) or _as_bool(device.get("hotplug"))
        partitions = tuple(
            child["name"]
            for child in device.get("children", []) or []
            if child.get("name") and child.get("type", "part") == "part"
        )
        descendants = list(_walk_children(device))
        holders = tuple(
            _node_path(child)
            for child in descendants
            if child.get("name") and child["name"] not in partitions
        )
        mountpoints = tuple(
            mountpoint for node in [device, *descendants] for mountpoint in _reported_mountpoints(node)
        )
        return cls(
            name=name,
            size_bytes=size_bytes,
            sector_size=sector_size,
            vendor=vendor or None,
            model=model or None,
            transport=device.get("tran"),
            is_removable=is_removable,
            partitions=partitions,
            holders=holders,
            mountpoints=mountpoints,
        )


# ==============================================================================
# Request Domain
# ==============================================================================


class PersistenceFilesystem(Enum):
    """Filesystem for the persistence partition."""

    EXT4 = "ext4"
    F2FS = "f2fs"


@dataclass(frozen=True)
class ProvisioningRequest:
    """Operator configuration for one provisioning run.

    Sizes are in MiB; ``None`` means "use the default".
    """

    image_path: Path
    device_path: str
    encrypt: bool = False
    journal: bool = True
    persistence_fs: PersistenceFilesystem = PersistenceFilesystem.EXT4
    raw_write: bool = False
    boot_size_mib: int | None = None
    persistence_size_mib: int | None = None

    @property
    def device_name(self) -> str:
        return Path(self.device_path).name


# ==============================================================================
# Medium Domain
# ==============================================================================


@dataclass(frozen=True)
class MediumDescriptor:
    """Layout metadata embedded in a source image.

    All file paths are relative: ``esp_files`` and the two persistence boot
    configs to the ESP root, ``persistence_files`` to the active
    persistence directory, ``rootfs_image`` to ``install_dir``.
    """

    version: str
    iso_label: str
    install_dir: str
    arch: str = "x86_64"
    rootfs_image: str = ""
    esp_files: tuple[str, ...] = ()
    persistence_files: tuple[str, ...] = ()
    persistence_entry: str = ""
    persistence_syslinux: str = ""

    @property
    def persistence_dir_name(self) -> str:
        """Name of the persistence skeleton shipped in the image."""
        return f"persistent_{self.iso_label}"


@dataclass(frozen=True)
class TargetLabels:
    """Filesystem labels written to the three partitions."""

    image: str
    esp: str
    persistence: str

    @property
    def persistence_dir_name(self) -> str:
        return f"persistent_{self.persistence}"

    @property
    def origin_dir_name(self) -> str:
        return f"{self.persistence_dir_name}_origin"


# ==============================================================================
# Geometry Domain
# ==============================================================================


class PartitionRole(Enum):
    """Fixed, positional partition roles."""

    LIVE = 1
    ESP = 2
    PERSISTENCE = 3


@dataclass(frozen=True)
class PartitionExtent:
    number: int
    role: PartitionRole
    start_sector: int
    sector_count: int
    size_bytes: int

    @property
    def end_sector(self) -> int:
        """Last sector of the partition (inclusive, as sgdisk expects)."""
        return self.start_sector + self.sector_count - 1

    @property
    def next_sector(self) -> int:
        return self.start_sector + self.sector_count


@dataclass(frozen=True)
class DeviceGeometry:
    """Precomputed partition layout; never mutated once computed."""

    sector_size: int
    start_sector: int
    partitions: tuple[PartitionExtent, ...] = field(default_factory=tuple)

    def extent(self, role: PartitionRole) -> PartitionExtent:
        for extent in self.partitions:
            if extent.role is role:
                return extent
        raise KeyError(role)


# ==============================================================================
# Encryption Domain
# ==============================================================================


class EncryptionState(Enum):
    """Lifecycle of the LUKS container on the persistence partition."""

    UNCONFIGURED = "unconfigured"
    FORMATTED = "formatted"
    OPEN = "open"
    CLOSED = "closed"
