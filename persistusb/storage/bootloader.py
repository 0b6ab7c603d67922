"""Legacy BIOS boot loader installation.

Runs after the working tree is released, because syslinux refuses to
install onto a mounted filesystem:

    1. syslinux writes ldlinux.sys into <install_dir>/boot/syslinux on the ESP
    2. gptmbr.bin is copied into the first 440 bytes of the disk
    3. the ESP gets the GPT "legacy BIOS bootable" attribute (bit 2)
"""

from __future__ import annotations

from persistusb.config.settings import DEFAULT_MBR_BIN_PATH
from persistusb.domain import Drive, MediumDescriptor, PartitionRole
from persistusb.logging import LoggerFactory
from persistusb.storage.commands import run_command
from persistusb.storage.exceptions import BootloaderError


log = LoggerFactory.for_device()

MBR_BOOT_CODE_BYTES = 440
LEGACY_BIOS_BOOTABLE_BIT = 2


def install_bootloader(
    drive: Drive,
    esp_partition: str,
    medium: MediumDescriptor,
    mbr_path: str = DEFAULT_MBR_BIN_PATH,
) -> None:
    """Make the device bootable on legacy BIOS machines.

    Raises:
        BootloaderError: On the first failing step
    """
    log.info("Installing boot loader...")
    syslinux_dir = f"{medium.install_dir}/boot/syslinux"
    run_command(
        ["syslinux", "--directory", syslinux_dir, "--install", esp_partition],
        error=BootloaderError,
    )
    run_command(
        [
            "dd",
            f"bs={MBR_BOOT_CODE_BYTES}",
            "count=1",
            "conv=notrunc",
            f"if={mbr_path}",
            f"of={drive.device_path}",
        ],
        error=BootloaderError,
    )
    run_command(
        [
            "sgdisk",
            f"--attributes={PartitionRole.ESP.value}:set:{LEGACY_BIOS_BOOTABLE_BIT}",
            drive.device_path,
        ],
        error=BootloaderError,
    )
