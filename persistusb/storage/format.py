"""Filesystem creation for the three live USB partitions.

Supported Filesystems:
    ext4:   live partition (#1) and default persistence (#3), created with
            the ``encrypt`` feature so fscrypt can be used later
    vfat:   ESP (#2), FAT32
    f2fs:   optional persistence filesystem for flash media, with
            compression and fscrypt support enabled

Journal:
    When journaling is disabled the ext4 journal is removed after mkfs
    with tune2fs, on #1 and on the persistence device when it is ext4.

Locking:
    Every mkfs and tune2fs runs while this process holds an exclusive
    flock on the target node, so udev scans wait until the filesystem
    is complete.

Failures raise FormatError and are not retried.

Example:
    >>> from persistusb.storage.format import format_partitions
    >>> format_partitions(nodes, persistence_device, labels, request)
"""

from __future__ import annotations

from typing import Sequence

from persistusb.domain import (
    PartitionRole,
    PersistenceFilesystem,
    ProvisioningRequest,
    TargetLabels,
)
from persistusb.logging import LoggerFactory
from persistusb.storage.commands import run_command
from persistusb.storage.device_lock import exclusive_device_lock
from persistusb.storage.exceptions import FormatError


log = LoggerFactory.for_device()


def _validate_device_path(device_path: str) -> bool:
    """Validate that device path starts with /dev/."""
    return device_path.startswith("/dev/")


def _run_locked(device_path: str, command: Sequence[str]) -> None:
    if not _validate_device_path(device_path):
        raise FormatError(f"Refusing to format {device_path}: not a /dev node")
    with exclusive_device_lock(device_path, error=FormatError):
        run_command(command, error=FormatError)


def build_ext4_command(device_path: str, label: str, reserved_zero: bool) -> list[str]:
    command = ["mkfs.ext4", "-F", "-q", "-L", label, "-O", "encrypt"]
    if reserved_zero:
        command.extend(["-m", "0"])
    command.append(device_path)
    return command


def build_fat32_command(device_path: str, label: str) -> list[str]:
    return ["mkfs.fat", "-F", "32", "-n", label, device_path]


def build_f2fs_command(device_path: str, label: str) -> list[str]:
    return [
        "mkfs.f2fs",
        "-f",
        "-l",
        label,
        "-O",
        "encrypt,extra_attr,compression",
        device_path,
    ]


def remove_journal(device_path: str) -> None:
    log.debug(f"Removing ext4 journal from {device_path}")
    _run_locked(device_path, ["tune2fs", "-O", "^has_journal", device_path])


def format_live_partition(device_path: str, label: str, journal: bool = True) -> None:
    log.debug(f"Formatting {device_path} as ext4 ({label})")
    _run_locked(device_path, build_ext4_command(device_path, label, reserved_zero=True))
    if not journal:
        remove_journal(device_path)


def format_esp_partition(device_path: str, label: str) -> None:
    log.debug(f"Formatting {device_path} as FAT32 ({label})")
    _run_locked(device_path, build_fat32_command(device_path, label))


def format_persistence(
    device_path: str,
    label: str,
    filesystem: PersistenceFilesystem = PersistenceFilesystem.EXT4,
    journal: bool = True,
) -> None:
    """Format the persistence device, raw partition or LUKS mapping."""
    log.debug(f"Formatting {device_path} as {filesystem.value} ({label})")
    if filesystem is PersistenceFilesystem.F2FS:
        _run_locked(device_path, build_f2fs_command(device_path, label))
        return
    _run_locked(device_path, build_ext4_command(device_path, label, reserved_zero=False))
    if not journal:
        remove_journal(device_path)


def format_partitions(
    nodes: dict[PartitionRole, str],
    persistence_device: str,
    labels: TargetLabels,
    request: ProvisioningRequest,
) -> None:
    """Format all three partitions for a provisioning request.

    Args:
        nodes: Partition nodes from write_partition_table()
        persistence_device: Partition #3 node or the mapped LUKS device
        labels: Filesystem labels for this device
        request: Journal and filesystem choices
    """
    log.info("Formatting partitions...")
    format_live_partition(nodes[PartitionRole.LIVE], labels.image, journal=request.journal)
    format_esp_partition(nodes[PartitionRole.ESP], labels.esp)
    format_persistence(
        persistence_device,
        labels.persistence,
        filesystem=request.persistence_fs,
        journal=request.journal,
    )
