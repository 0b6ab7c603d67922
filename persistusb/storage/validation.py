"""Safety validation run before any device mutation.

This module answers "may we write to this device with this image?":
- Sorts the two positional arguments into (image, device)
- Requires root privileges
- Requires a whole, removable, USB-attached block device
- Requires that neither the disk nor its partitions are mounted
- Requires a bootable image (ISO 9660 or MBR boot sector signature)
- Requires the host tools the requested pipeline will call

All validation functions raise specific exceptions from the exceptions
module rather than returning boolean values, and none of them writes
anything.

Example:
    from persistusb.storage.validation import validate_request

    try:
        drive = validate_request(request)
    except ValidationError as error:
        # Nothing has been touched yet
        ...
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Optional, Sequence

from persistusb.domain import Drive, PersistenceFilesystem, ProvisioningRequest
from persistusb.storage.devices import get_drive, is_block_device, mounted_sources
from persistusb.storage.exceptions import (
    DeviceBusyError,
    DeviceValidationError,
    ImageValidationError,
    MissingToolError,
    PrivilegeError,
    UsageError,
)


ISO9660_MAGIC = b"CD001"
ISO9660_MAGIC_OFFSET = 0x8001
MBR_SIGNATURE = b"\x55\xaa"
MBR_SIGNATURE_OFFSET = 510

RAW_WRITE_TOOLS = ("lsblk", "dd")
PIPELINE_TOOLS = (
    "lsblk",
    "wipefs",
    "sgdisk",
    "partprobe",
    "mkfs.ext4",
    "mkfs.fat",
    "mount",
    "umount",
    "cp",
    "syslinux",
    "dd",
)
NO_JOURNAL_TOOLS = ("tune2fs",)
F2FS_TOOLS = ("mkfs.f2fs",)
ENCRYPTION_TOOLS = ("cryptsetup", "arch-chroot")


def detect_image_format(image_path: Path) -> Optional[str]:
    """Return ``"iso9660"``, ``"mbr"`` or None for an unrecognized file.

    Hybrid ISO images carry both signatures; ISO 9660 wins.
    """
    try:
        with open(image_path, "rb") as handle:
            handle.seek(ISO9660_MAGIC_OFFSET)
            if handle.read(len(ISO9660_MAGIC)) == ISO9660_MAGIC:
                return "iso9660"
            handle.seek(MBR_SIGNATURE_OFFSET)
            if handle.read(len(MBR_SIGNATURE)) == MBR_SIGNATURE:
                return "mbr"
    except OSError:
        return None
    return None


def classify_arguments(arguments: Sequence[str]) -> tuple[Path, str]:
    """Sort the two positional arguments into ``(image_path, device_path)``.

    Either order is accepted: the argument that is a block device is the
    target. This is a compatibility shim for operators used to passing the
    device first; nothing else should depend on argument order.

    Raises:
        UsageError: Not exactly two arguments, or no single block device
    """
    if len(arguments) != 2:
        raise UsageError(
            f"Expected exactly two arguments <image> <device>, got {len(arguments)}"
        )
    first, second = arguments
    first_is_device = is_block_device(first)
    second_is_device = is_block_device(second)
    if first_is_device and second_is_device:
        raise UsageError(f"Both {first} and {second} are block devices")
    if second_is_device:
        return Path(first), second
    if first_is_device:
        return Path(second), first
    raise UsageError(f"Neither {first} nor {second} is a block device")


def validate_privileges() -> None:
    if os.geteuid() != 0:
        raise PrivilegeError()


def validate_block_device(device_path: str) -> None:
    if not os.path.exists(device_path):
        raise DeviceValidationError(device_path, "no such device")
    if not is_block_device(device_path):
        raise DeviceValidationError(device_path, "not a block device")


def validate_removable(drive: Drive) -> None:
    if not drive.is_removable:
        raise DeviceValidationError(drive.device_path, "device is not removable")


def validate_usb_transport(drive: Drive) -> None:
    if drive.transport != "usb":
        raise DeviceValidationError(
            drive.device_path, f"transport is {drive.transport or 'unknown'}, not usb"
        )


def validate_not_mounted(drive: Drive) -> None:
    """Validate that nothing in the device tree is mounted.

    Covers the disk, its partitions, and anything stacked on them (dm-crypt,
    LVM). lsblk mountpoints count as well as /proc/mounts sources, so swap
    and bind mounts are caught too.

    Raises:
        DeviceBusyError: With every active mountpoint found
    """
    nodes = [drive.device_path]
    nodes += [f"/dev/{name}" for name in drive.partitions]
    nodes += list(drive.holders)
    mountpoints = mounted_sources(nodes)
    mountpoints += [mp for mp in drive.mountpoints if mp not in mountpoints]
    if mountpoints:
        raise DeviceBusyError(drive.device_path, mountpoints)


def validate_image(image_path: Path) -> str:
    """Validate the source image and return its detected format."""
    if not image_path.exists():
        raise ImageValidationError(str(image_path), "file does not exist")
    if not image_path.is_file():
        raise ImageValidationError(str(image_path), "not a regular file")
    image_format = detect_image_format(image_path)
    if image_format is None:
        raise ImageValidationError(str(image_path), "not a bootable ISO or disk image")
    return image_format


def required_tools(request: ProvisioningRequest) -> tuple[str, ...]:
    if request.raw_write:
        return RAW_WRITE_TOOLS
    tools = list(PIPELINE_TOOLS)
    if not request.journal:
        tools.extend(NO_JOURNAL_TOOLS)
    if request.persistence_fs is PersistenceFilesystem.F2FS:
        tools.extend(F2FS_TOOLS)
    if request.encrypt:
        tools.extend(ENCRYPTION_TOOLS)
    return tuple(tools)


def validate_required_tools(request: ProvisioningRequest) -> None:
    missing = [tool for tool in required_tools(request) if shutil.which(tool) is None]
    if missing:
        raise MissingToolError(missing)


def validate_request(request: ProvisioningRequest) -> Drive:
    """Perform every check required before touching the device.

    Returns:
        The inspected target Drive

    Raises:
        Various ValidationError subclasses from the exceptions module
    """
    # 1. Root first, lsblk and the device node may be unreadable otherwise
    validate_privileges()

    # 2. Target is a whole, removable USB disk that nobody is using
    validate_block_device(request.device_path)
    drive = get_drive(request.device_path)
    validate_removable(drive)
    validate_usb_transport(drive)
    validate_not_mounted(drive)

    # 3. Image is readable and bootable
    validate_image(request.image_path)

    # 4. Host tools for the requested pipeline
    validate_required_tools(request)
    return drive
