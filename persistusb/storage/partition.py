"""GPT partition table creation for the three-partition live layout.

Partitioning:
    - Wipes filesystem signatures on every existing partition, then the disk
    - Creates a fresh GUID partition table with sgdisk
    - Appends partitions 1, 2 and 3 at the precomputed sectors

Partition Types:
    #1 live image    Linux filesystem data
    #2 ESP           Microsoft basic data (FAT32, readable by firmware and hosts)
    #3 persistence   Linux filesystem data

The kernel learns about partition changes asynchronously, so every write
is followed by a fixed settle delay and an explicit partprobe. There is no
recovery: a failure leaves the table in whatever state the last command
produced and aborts the session.
"""

from __future__ import annotations

import shutil
import time

from persistusb.domain import DeviceGeometry, Drive, PartitionRole
from persistusb.logging import LoggerFactory
from persistusb.storage.commands import run_command
from persistusb.storage.devices import partition_path
from persistusb.storage.exceptions import PartitionError


log = LoggerFactory.for_device()

LINUX_FILESYSTEM_GUID = "0FC63DAF-8483-4772-8E79-3D69D8477DE4"
MICROSOFT_BASIC_DATA_GUID = "EBD0A0A2-B9E5-4433-87C0-68B6B72699C7"

PARTITION_TYPES = {
    PartitionRole.LIVE: LINUX_FILESYSTEM_GUID,
    PartitionRole.ESP: MICROSOFT_BASIC_DATA_GUID,
    PartitionRole.PERSISTENCE: LINUX_FILESYSTEM_GUID,
}
PARTITION_NAMES = {
    PartitionRole.LIVE: "live",
    PartitionRole.ESP: "esp",
    PartitionRole.PERSISTENCE: "persistence",
}


def settle(device_path: str, delay_seconds: float) -> None:
    """Wait for the kernel to pick up a table change, then re-read it."""
    time.sleep(delay_seconds)
    run_command(["partprobe", device_path], error=PartitionError)
    if shutil.which("udevadm"):
        run_command(["udevadm", "settle", "--timeout=10"], check=False)


def wipe_signatures(drive: Drive, delay_seconds: float) -> None:
    """Erase filesystem and partition-table signatures from partitions and disk."""
    for name in drive.partitions:
        node = f"/dev/{name}"
        log.debug(f"Wiping signatures on {node}")
        run_command(["wipefs", "--all", "--force", node], error=PartitionError)
    log.debug(f"Wiping signatures on {drive.device_path}")
    run_command(["wipefs", "--all", "--force", drive.device_path], error=PartitionError)
    settle(drive.device_path, delay_seconds)


def create_gpt(device_path: str, delay_seconds: float) -> None:
    run_command(["sgdisk", "--clear", device_path], error=PartitionError)
    settle(device_path, delay_seconds)


def append_partitions(
    device_path: str, geometry: DeviceGeometry, delay_seconds: float
) -> None:
    for extent in geometry.partitions:
        number = extent.number
        log.debug(
            f"Creating partition {number} ({PARTITION_NAMES[extent.role]}) "
            f"sectors {extent.start_sector}-{extent.end_sector}"
        )
        run_command(
            [
                "sgdisk",
                f"--new={number}:{extent.start_sector}:{extent.end_sector}",
                f"--typecode={number}:{PARTITION_TYPES[extent.role]}",
                f"--change-name={number}:{PARTITION_NAMES[extent.role]}",
                device_path,
            ],
            error=PartitionError,
        )
        settle(device_path, delay_seconds)


def write_partition_table(
    drive: Drive, geometry: DeviceGeometry, delay_seconds: float = 2
) -> dict[PartitionRole, str]:
    """Replace the partition table of ``drive`` with the three-partition layout.

    Args:
        drive: Validated target drive
        geometry: Layout from compute_geometry()
        delay_seconds: Settle delay after each table mutation

    Returns:
        Mapping of partition role to its device node

    Raises:
        PartitionError: On the first failing command
    """
    if geometry.sector_size != drive.sector_size:
        raise PartitionError(
            f"Geometry sector size {geometry.sector_size} does not match "
            f"{drive.device_path} ({drive.sector_size})"
        )
    log.info(f"Partitioning {drive.device_path}...")
    wipe_signatures(drive, delay_seconds)
    create_gpt(drive.device_path, delay_seconds)
    append_partitions(drive.device_path, geometry, delay_seconds)
    return {
        extent.role: partition_path(drive.device_path, extent.number)
        for extent in geometry.partitions
    }
