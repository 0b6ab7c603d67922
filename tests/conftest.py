"""
Pytest configuration and shared fixtures for persistusb tests.

This module provides common fixtures and utilities used across all test modules.
No fixture touches a real block device: lsblk output, images and mounted
trees are all fabricated under tmp_path.
"""

import json
from pathlib import Path
from typing import Any, Dict
from unittest.mock import Mock

import pytest

from persistusb.domain import Drive, MediumDescriptor, TargetLabels


# ==============================================================================
# Device Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_usb_device() -> Dict[str, Any]:
    """
    Fixture providing a removable USB stick as reported by lsblk -J -b.

    Returns:
        Dict representing a 16 GiB USB device with one partition.
    """
    return {
        "name": "sdb",
        "type": "disk",
        "size": 17179869184,
        "log-sec": 512,
        "model": "Ultra",
        "vendor": "SanDisk ",
        "tran": "usb",
        "rm": True,
        "hotplug": True,
        "mountpoint": None,
        "fstype": None,
        "children": [
            {
                "name": "sdb1",
                "type": "part",
                "size": 17178820608,
                "log-sec": 512,
                "tran": None,
                "rm": True,
                "hotplug": True,
                "mountpoint": None,
                "fstype": "vfat",
            }
        ],
    }


@pytest.fixture
def mock_system_disk() -> Dict[str, Any]:
    """
    Fixture providing a mock system disk (non-removable).

    Returns:
        Dict representing a system disk that must never be provisioned.
    """
    return {
        "name": "nvme0n1",
        "type": "disk",
        "size": "512110190592",
        "log-sec": "512",
        "model": "Samsung SSD 980",
        "vendor": None,
        "tran": "nvme",
        "rm": "0",
        "hotplug": "0",
        "mountpoint": None,
        "fstype": None,
        "children": [
            {"name": "nvme0n1p1", "type": "part", "mountpoint": "/boot"},
            {"name": "nvme0n1p2", "type": "part", "mountpoint": "/"},
        ],
    }


@pytest.fixture
def mock_lsblk_output(mock_usb_device) -> str:
    """Fixture providing lsblk JSON output for the USB device."""
    return json.dumps({"blockdevices": [mock_usb_device]})


@pytest.fixture
def usb_drive(mock_usb_device) -> Drive:
    return Drive.from_lsblk_dict(mock_usb_device)


@pytest.fixture
def command_ok() -> Mock:
    """A successful CommandResult-like object."""
    return Mock(returncode=0, stdout="", stderr="", ok=True)


# ==============================================================================
# Medium Fixtures
# ==============================================================================


DESCRIPTOR_TEXT = """\
# medium data for the persistent live USB
MEDIUMDATA=v1
iso_label=LIVE_202610
install_dir=live
arch=x86_64
esp_files_settings=(loader/entries/0live_persistence-x86_64.conf live/boot/syslinux/live_sys-linux.cfg)
persistence_files_settings=(x86_64/upperdir/etc/fstab)
persistence_entry=loader/entries/0live_persistence-x86_64.conf
persistence_syslinux=live/boot/syslinux/live_sys-linux.cfg
"""

LOADER_ENTRY = """\
title    Live persistent (x86_64, UEFI)
linux    /live/boot/x86_64/vmlinuz-linux
initrd   /live/boot/x86_64/initramfs-linux.img
options  archisobasedir=live archisolabel=%IMG_LABEL% cow_label=%COW_LABEL% cow_spacesize=1G
"""

SYSLINUX_CONFIG = """\
LABEL live
MENU LABEL Live (x86_64, BIOS)
LINUX /live/boot/x86_64/vmlinuz-linux
INITRD /live/boot/x86_64/initramfs-linux.img
APPEND archisobasedir=live archisolabel=LIVE_202610

LABEL live_persistence
MENU LABEL Live persistent (x86_64, BIOS)
LINUX /live/boot/x86_64/vmlinuz-linux
INITRD /live/boot/x86_64/initramfs-linux.img
APPEND archisobasedir=live archisolabel=LIVE_202610 cow_label=%COW_LABEL%
"""


@pytest.fixture
def descriptor_text() -> str:
    return DESCRIPTOR_TEXT


@pytest.fixture
def medium() -> MediumDescriptor:
    return MediumDescriptor(
        version="v1",
        iso_label="LIVE_202610",
        install_dir="live",
        arch="x86_64",
        rootfs_image="x86_64/airootfs.sfs",
        esp_files=(
            "loader/entries/0live_persistence-x86_64.conf",
            "live/boot/syslinux/live_sys-linux.cfg",
        ),
        persistence_files=("x86_64/upperdir/etc/fstab",),
        persistence_entry="loader/entries/0live_persistence-x86_64.conf",
        persistence_syslinux="live/boot/syslinux/live_sys-linux.cfg",
    )


@pytest.fixture
def labels() -> TargetLabels:
    return TargetLabels(image="LIVE_AB12", esp="LIVEEAB12", persistence="LIVEPAB12")


@pytest.fixture
def image_root(tmp_path) -> Path:
    """
    Fixture providing the directory tree of a mounted compatible image.

    Returns:
        Path to the fake image root.
    """
    root = tmp_path / "image"
    (root / "mkusb").mkdir(parents=True)
    (root / "mkusb" / "mediumdata").write_text(DESCRIPTOR_TEXT, encoding="utf-8")

    syslinux = root / "live" / "boot" / "syslinux"
    syslinux.mkdir(parents=True)
    (syslinux / "live_sys-linux.cfg").write_text(SYSLINUX_CONFIG, encoding="utf-8")

    entries = root / "mkusb" / "esp" / "loader" / "entries"
    entries.mkdir(parents=True)
    (entries / "0live_persistence-x86_64.conf").write_text(LOADER_ENTRY, encoding="utf-8")

    skeleton = root / "mkusb" / "persistent_LIVE_202610" / "x86_64" / "upperdir" / "etc"
    skeleton.mkdir(parents=True)
    (skeleton / "fstab").write_text(
        "LABEL=%ESP_LABEL% /boot vfat defaults 0 2\n", encoding="utf-8"
    )
    return root


@pytest.fixture
def esp_root(tmp_path) -> Path:
    """Fixture providing an ESP tree with both persistence boot configs."""
    root = tmp_path / "esp"
    entries = root / "loader" / "entries"
    entries.mkdir(parents=True)
    (entries / "0live_persistence-x86_64.conf").write_text(
        LOADER_ENTRY.replace("%IMG_LABEL%", "LIVE_AB12").replace("%COW_LABEL%", "LIVEPAB12"),
        encoding="utf-8",
    )
    syslinux = root / "live" / "boot" / "syslinux"
    syslinux.mkdir(parents=True)
    (syslinux / "live_sys-linux.cfg").write_text(
        SYSLINUX_CONFIG.replace("%COW_LABEL%", "LIVEPAB12"), encoding="utf-8"
    )
    return root


@pytest.fixture
def iso_image(tmp_path) -> Path:
    """Fixture providing a small file with an ISO 9660 signature."""
    path = tmp_path / "live.iso"
    data = bytearray(0x8001 + 5 + 2048)
    data[0x8001 : 0x8001 + 5] = b"CD001"
    path.write_bytes(bytes(data))
    return path


@pytest.fixture
def mbr_image(tmp_path) -> Path:
    """Fixture providing a disk image with only an MBR boot signature."""
    path = tmp_path / "disk.img"
    data = bytearray(4096)
    data[510:512] = b"\x55\xaa"
    path.write_bytes(bytes(data))
    return path
