"""Block device discovery using lsblk, stat and the live mount table.

Everything here is read-only. The validator uses these helpers to decide
whether a path is a safe target before any command writes to it.

Device Detection:
    Uses lsblk with JSON output restricted to a single device node:
    - Device name, size in bytes and logical sector size
    - Vendor and model strings
    - Transport (usb, sata, nvme, ...)
    - Removable and hotplug flags
    - Child partitions

Mount Table:
    ``/proc/mounts`` is the source of truth for "is it mounted"; lsblk
    MOUNTPOINT data can lag behind udev.

Example:
    >>> from persistusb.storage.devices import get_drive
    >>> drive = get_drive("/dev/sdb")
    >>> print(drive.format_label())
    sdb SanDisk Ultra (14.9GB)
"""

from __future__ import annotations

import json
import os
import stat
from pathlib import Path
from typing import Iterable, Optional

from persistusb.domain import Drive
from persistusb.logging import LoggerFactory
from persistusb.storage.commands import run_command
from persistusb.storage.exceptions import DeviceValidationError, StageError


log = LoggerFactory.for_device()

LSBLK_COLUMNS = "NAME,TYPE,SIZE,LOG-SEC,MODEL,VENDOR,TRAN,RM,HOTPLUG,MOUNTPOINT,FSTYPE"
PROC_MOUNTS = "/proc/mounts"


def human_size(size_bytes: Optional[int]) -> str:
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def is_block_device(path: str | os.PathLike) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def partition_path(device_path: str, number: int) -> str:
    """Return the node for partition ``number`` (sdb -> sdb1, nvme0n1 -> nvme0n1p1)."""
    suffix = "p" if device_path[-1].isdigit() else ""
    return f"{device_path}{suffix}{number}"


def query_lsblk(device_path: str) -> dict:
    """Return the lsblk JSON entry for a single disk, children included."""
    result = run_command(
        ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS, device_path],
        error=StageError,
        check=False,
        log_output=False,
    )
    if not result.ok:
        raise DeviceValidationError(
            device_path, f"lsblk failed: {result.stderr.strip() or result.returncode}"
        )
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as error:
        raise DeviceValidationError(device_path, f"unreadable lsblk output: {error}") from error
    devices = data.get("blockdevices", [])
    if not devices:
        raise DeviceValidationError(device_path, "lsblk reported no device")
    return devices[0]


def get_drive(device_path: str) -> Drive:
    device = query_lsblk(device_path)
    if device.get("type") != "disk":
        raise DeviceValidationError(
            device_path, f"not a whole disk (type {device.get('type')!r})"
        )
    drive = Drive.from_lsblk_dict(device)
    log.debug(
        f"Found {drive.device_path}: size={drive.size_bytes} sector={drive.sector_size} "
        f"tran={drive.transport} removable={drive.is_removable} partitions={list(drive.partitions)}"
    )
    return drive


def read_mount_table(path: Optional[str] = None) -> list[tuple[str, str]]:
    """Return ``(source, mountpoint)`` pairs from the live mount table."""
    entries = []
    try:
        with open(path or PROC_MOUNTS, "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1:
                    entries.append((parts[0], _unescape_mount_field(parts[1])))
    except FileNotFoundError:
        return []
    return entries


def _unescape_mount_field(field: str) -> str:
    # /proc/mounts octal-escapes whitespace and backslashes
    return (
        field.replace("\\040", " ")
        .replace("\\011", "\t")
        .replace("\\012", "\n")
        .replace("\\134", "\\")
    )


def mounted_sources(device_paths: Iterable[str]) -> list[str]:
    """Return mountpoints whose source is one of ``device_paths``."""
    wanted = set()
    for device_path in device_paths:
        wanted.add(device_path)
        try:
            wanted.add(str(Path(device_path).resolve()))
        except OSError:
            pass
    return [mountpoint for source, mountpoint in read_mount_table() if source in wanted]


def active_mountpoints_under(root: str | os.PathLike) -> list[str]:
    """Return active mountpoints at or below ``root``, deepest first."""
    root_text = os.path.normpath(str(root))
    mountpoints = [
        mountpoint
        for _, mountpoint in read_mount_table()
        if mountpoint == root_text or mountpoint.startswith(root_text + os.sep)
    ]
    return sorted(set(mountpoints), key=lambda mp: mp.count(os.sep), reverse=True)


def is_mountpoint_active(mountpoint: str | os.PathLike) -> bool:
    target = os.path.normpath(str(mountpoint))
    return any(mp == target for _, mp in read_mount_table())
