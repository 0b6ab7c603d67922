"""Raw image writing.

Copies the image byte-for-byte onto the whole device with dd. No
partitioning, formatting or persistence setup takes place; the device ends
up exactly as the image describes it.
"""

from __future__ import annotations

from pathlib import Path

from persistusb.domain import Drive
from persistusb.logging import LoggerFactory
from persistusb.storage.commands import run_with_progress
from persistusb.storage.devices import human_size
from persistusb.storage.exceptions import CapacityError, RawWriteError


log = LoggerFactory.for_device()

DD_BLOCK_SIZE = "4M"


def build_dd_command(image_path: Path, device_path: str) -> list[str]:
    return [
        "dd",
        f"if={image_path}",
        f"of={device_path}",
        f"bs={DD_BLOCK_SIZE}",
        "conv=fsync",
        "oflag=direct",
        "status=progress",
    ]


def write_raw_image(image_path: Path, drive: Drive) -> None:
    """Write an image file directly to a device using dd.

    Args:
        image_path: Path to the image file
        drive: Validated target drive

    Raises:
        CapacityError: Image is larger than the device
        RawWriteError: dd failed or the image cannot be read
    """
    try:
        image_size = image_path.stat().st_size
    except OSError as error:
        raise RawWriteError(f"Cannot read {image_path}", detail=str(error)) from error

    if image_size > drive.size_bytes:
        raise CapacityError(
            drive.size_bytes,
            image_size,
            f"target too small ({human_size(drive.size_bytes)} < {human_size(image_size)})",
        )

    log.info(f"Writing {image_path.name} to {drive.device_path}...")
    run_with_progress(
        build_dd_command(image_path, drive.device_path),
        error=RawWriteError,
        total_bytes=image_size,
        title=f"Writing {image_path.name}",
    )
    log.info(f"Wrote {human_size(image_size)} to {drive.device_path}")
