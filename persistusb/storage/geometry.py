"""Partition layout arithmetic.

All sizes are settled here, before anything touches the device. Extents
are aligned to 1 MiB, which is a whole number of sectors for every
logical sector size Linux exposes, so each partition starts exactly where
the previous one ends.

Layout:
    [1 MiB offset][#1 live][#2 ESP][#3 persistence][1 MiB backup GPT reserve]
"""

from __future__ import annotations

import re
from typing import Optional

from persistusb.domain import (
    MIB,
    DeviceGeometry,
    PartitionExtent,
    PartitionRole,
)
from persistusb.storage.exceptions import (
    CapacityError,
    DeviceValidationError,
    SizeRequestError,
)


ALIGNMENT_BYTES = MIB
START_OFFSET_BYTES = MIB
TAIL_RESERVE_BYTES = MIB  # backup GPT header and entries
IMAGE_OVERHEAD_BYTES = 128 * MIB
MINIMUM_FREE_BYTES = 1024 * MIB
DEFAULT_BOOT_SIZE_MIB = 512

_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*[gG]?\s*$")


def _align_up(value: int, alignment: int = ALIGNMENT_BYTES) -> int:
    return -(-value // alignment) * alignment


def _align_down(value: int, alignment: int = ALIGNMENT_BYTES) -> int:
    return (value // alignment) * alignment


def _validate_size_request(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise SizeRequestError(name, value)
    return value


def parse_size_gib(text: str, name: str = "partition") -> int:
    """Parse a command-line size in GiB (``8``, ``8g`` or ``8G``) into MiB."""
    match = _SIZE_PATTERN.match(str(text))
    if not match:
        raise SizeRequestError(name, text)
    gib = int(match.group(1))
    if gib <= 0:
        raise SizeRequestError(name, text)
    return gib * 1024


def compute_geometry(
    device_bytes: int,
    image_bytes: int,
    sector_size: int,
    boot_size_mib: Optional[int] = None,
    persistence_size_mib: Optional[int] = None,
) -> DeviceGeometry:
    """Compute the three-partition layout for a device.

    Args:
        device_bytes: Device capacity in bytes
        image_bytes: Source image size in bytes
        sector_size: Logical sector size of the device
        boot_size_mib: ESP size, defaults to 512 MiB
        persistence_size_mib: Persistence size, defaults to all remaining space

    Returns:
        DeviceGeometry with extents for partitions 1, 2 and 3

    Raises:
        SizeRequestError: A requested size is not a positive integer
        CapacityError: The device cannot hold the image plus the requested layout
        DeviceValidationError: The sector size cannot be aligned to 1 MiB
    """
    if boot_size_mib is None:
        boot_size_mib = DEFAULT_BOOT_SIZE_MIB
    boot_size_mib = _validate_size_request("boot partition", boot_size_mib)
    if persistence_size_mib is not None:
        persistence_size_mib = _validate_size_request(
            "persistence partition", persistence_size_mib
        )
    if sector_size <= 0 or ALIGNMENT_BYTES % sector_size:
        raise DeviceValidationError(
            "device", f"unsupported logical sector size {sector_size}"
        )

    minimum = image_bytes + MINIMUM_FREE_BYTES
    if device_bytes <= minimum:
        raise CapacityError(device_bytes, minimum, "image plus 1024 MiB free space")

    live_bytes = _align_up(image_bytes + IMAGE_OVERHEAD_BYTES)
    boot_bytes = boot_size_mib * MIB
    fixed_bytes = START_OFFSET_BYTES + live_bytes + boot_bytes + TAIL_RESERVE_BYTES

    if persistence_size_mib is None:
        persistence_bytes = _align_down(device_bytes - fixed_bytes)
        if persistence_bytes <= 0:
            raise CapacityError(
                device_bytes, fixed_bytes + ALIGNMENT_BYTES, "no space left for persistence"
            )
    else:
        persistence_bytes = persistence_size_mib * MIB

    required = fixed_bytes + persistence_bytes
    if required > device_bytes:
        raise CapacityError(device_bytes, required, "requested partition sizes")

    start_sector = START_OFFSET_BYTES // sector_size
    extents = []
    next_sector = start_sector
    for role, size_bytes in (
        (PartitionRole.LIVE, live_bytes),
        (PartitionRole.ESP, boot_bytes),
        (PartitionRole.PERSISTENCE, persistence_bytes),
    ):
        extent = PartitionExtent(
            number=role.value,
            role=role,
            start_sector=next_sector,
            sector_count=size_bytes // sector_size,
            size_bytes=size_bytes,
        )
        extents.append(extent)
        next_sector = extent.next_sector

    return DeviceGeometry(
        sector_size=sector_size,
        start_sector=start_sector,
        partitions=tuple(extents),
    )
