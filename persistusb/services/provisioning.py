"""Provisioning session orchestration.

A session drives one request from validation to a bootable device. The
control flow is linear, with one early branch:

Raw write:
    validate -> confirm -> dd the image onto the disk

Persistent live USB:
    validate -> mount image read-only -> read medium descriptor ->
    compute geometry -> confirm -> partition -> [encrypt: format + open
    container] -> format -> mount partitions -> copy image -> install ESP
    assets -> [encrypt: patch boot configs] -> configure persistence ->
    [encrypt: regenerate initramfs] -> release working tree ->
    install boot loader

Nothing is written before the operator confirms. Every mount, directory
and open container belongs to the WorkingTree and is released in reverse
order on success, failure, or a termination signal.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from persistusb.config import settings
from persistusb.domain import (
    DeviceGeometry,
    Drive,
    PartitionRole,
    ProvisioningRequest,
    TargetLabels,
)
from persistusb.logging import LoggerFactory, operation_context
from persistusb.storage.bootloader import install_bootloader
from persistusb.storage.encryption import EncryptionManager
from persistusb.storage.exceptions import PartitionError, StageError
from persistusb.storage.format import format_partitions
from persistusb.storage.geometry import compute_geometry
from persistusb.storage.medium import (
    derive_target_labels,
    read_medium_descriptor,
    require_encrypted_boot_configs,
)
from persistusb.storage.mount import WorkingTree, interrupt_on_signals
from persistusb.storage.partition import write_partition_table
from persistusb.storage.payload import (
    copy_image_tree,
    install_esp_assets,
    install_persistence,
    regenerate_initramfs,
)
from persistusb.storage.raw_write import write_raw_image
from persistusb.storage.validation import validate_request
from persistusb.ui.prompts import confirm_target


class SessionStatus(Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SessionResult:
    status: SessionStatus
    device_path: str
    raw_write: bool = False
    labels: Optional[TargetLabels] = None
    geometry: Optional[DeviceGeometry] = None

    @property
    def completed(self) -> bool:
        return self.status is SessionStatus.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.status is SessionStatus.CANCELLED


class ProvisioningSession:
    """Run one provisioning request against one device."""

    def __init__(
        self,
        request: ProvisioningRequest,
        *,
        settle_delay_seconds: Optional[float] = None,
        work_dir_parent: Optional[str] = None,
        mapper_name: Optional[str] = None,
        mbr_bin_path: Optional[str] = None,
        confirm: Callable[[Drive], bool] = confirm_target,
        job_id: Optional[str] = None,
    ):
        self.request = request
        self.settle_delay_seconds = (
            settle_delay_seconds
            if settle_delay_seconds is not None
            else settings.get_float("settle_delay_seconds", settings.DEFAULT_SETTLE_DELAY_SECONDS)
        )
        self.work_dir_parent = work_dir_parent or settings.get_setting("work_dir_parent", "/tmp")
        self.mapper_name = mapper_name or settings.get_setting(
            "mapper_name", settings.DEFAULT_MAPPER_NAME
        )
        self.mbr_bin_path = mbr_bin_path or settings.get_setting(
            "mbr_bin_path", settings.DEFAULT_MBR_BIN_PATH
        )
        self.confirm = confirm
        self.log = LoggerFactory.for_session(job_id, device=request.device_path)

    @property
    def boot_size_mib(self) -> int:
        if self.request.boot_size_mib is not None:
            return self.request.boot_size_mib
        return settings.get_int("default_boot_size_mib", settings.DEFAULT_BOOT_SIZE_MIB)

    def run(self) -> SessionResult:
        """Run the session.

        Returns:
            SessionResult, completed or cancelled by the operator

        Raises:
            ValidationError: Request rejected, nothing was written
            CapacityError: Layout does not fit, nothing was written
            StageError: A stage failed, the device may be partially written
            SessionInterrupted: A termination signal arrived
        """
        with interrupt_on_signals():
            with operation_context("validate", device=self.request.device_path):
                drive = validate_request(self.request)
            if self.request.raw_write:
                return self._run_raw_write(drive)
            return self._run_persistent(drive)

    def _cancelled(self, **details) -> SessionResult:
        self.log.info("Cancelled, nothing was written.")
        return SessionResult(
            status=SessionStatus.CANCELLED, device_path=self.request.device_path, **details
        )

    def _run_raw_write(self, drive: Drive) -> SessionResult:
        request = self.request
        ignored = [
            flag
            for flag, enabled in (
                ("--encrypt", request.encrypt),
                ("--no-journal", not request.journal),
                ("--size-part2", request.boot_size_mib is not None),
                ("--size-part3", request.persistence_size_mib is not None),
            )
            if enabled
        ]
        if ignored:
            self.log.warning(f"Raw write ignores {', '.join(ignored)}")
        if not self.confirm(drive):
            return self._cancelled(raw_write=True)
        with operation_context("raw-write", device=drive.device_path):
            write_raw_image(request.image_path, drive)
        self.log.success(f"{drive.device_path} now holds a raw copy of {request.image_path.name}")
        return SessionResult(
            status=SessionStatus.COMPLETED, device_path=drive.device_path, raw_write=True
        )

    def _run_persistent(self, drive: Drive) -> SessionResult:
        request = self.request
        image_bytes = request.image_path.stat().st_size

        with WorkingTree(self.work_dir_parent) as tree:
            image_root = tree.mount(request.image_path, "image", options="ro,loop")
            medium = read_medium_descriptor(image_root)
            if request.encrypt:
                require_encrypted_boot_configs(medium)
            labels = derive_target_labels(medium)
            geometry = compute_geometry(
                drive.size_bytes,
                image_bytes,
                drive.sector_size,
                boot_size_mib=self.boot_size_mib,
                persistence_size_mib=request.persistence_size_mib,
            )
            self._log_plan(geometry, labels)
            if not self.confirm(drive):
                return self._cancelled(labels=labels, geometry=geometry)

            try:
                with operation_context("partition", device=drive.device_path):
                    nodes = write_partition_table(drive, geometry, self.settle_delay_seconds)
            except PartitionError:
                self.log.warning(
                    f"{drive.device_path} is in an indeterminate state; "
                    "re-run to provision it again"
                )
                raise

            persistence_device = nodes[PartitionRole.PERSISTENCE]
            manager: Optional[EncryptionManager] = None
            if request.encrypt:
                manager = EncryptionManager(
                    nodes[PartitionRole.PERSISTENCE], labels.persistence, self.mapper_name
                )
                with operation_context("encryption", device=persistence_device):
                    manager.format_container()
                    tree.register_callback(manager.close, "close encrypted container")
                    persistence_device = manager.open_container()

            with operation_context("format", device=drive.device_path):
                format_partitions(nodes, persistence_device, labels, request)

            with operation_context("mount", device=drive.device_path):
                live_root = tree.mount(nodes[PartitionRole.LIVE], "live")
                esp_root = tree.mount(nodes[PartitionRole.ESP], "esp")
                persistence_root = tree.mount(persistence_device, "persistence")

            with operation_context("copy", device=drive.device_path):
                copy_image_tree(image_root, live_root)
                install_esp_assets(image_root, esp_root, medium, labels)
                if manager is not None:
                    manager.patch_boot_configs(esp_root, medium)
                install_persistence(image_root, persistence_root, medium, labels)

            if manager is not None:
                with operation_context("initramfs", device=persistence_device):
                    regenerate_initramfs(
                        tree, live_root, persistence_root, esp_root, medium, labels
                    )

            self.log.info("Syncing and unmounting...")

        with operation_context("bootloader", device=drive.device_path):
            install_bootloader(drive, nodes[PartitionRole.ESP], medium, self.mbr_bin_path)

        self.log.success(f"{drive.device_path} is ready: persistent live USB ({labels.image})")
        return SessionResult(
            status=SessionStatus.COMPLETED,
            device_path=drive.device_path,
            labels=labels,
            geometry=geometry,
        )

    def _log_plan(self, geometry: DeviceGeometry, labels: TargetLabels) -> None:
        names = {
            PartitionRole.LIVE: labels.image,
            PartitionRole.ESP: labels.esp,
            PartitionRole.PERSISTENCE: labels.persistence,
        }
        for extent in geometry.partitions:
            self.log.info(
                f"  #{extent.number} {names[extent.role]:<12} {extent.size_bytes // (1024 * 1024)} MiB"
            )


def describe_failure(error: StageError) -> str:
    return f"Failed during {error.stage}: {error.message}" + (
        f" ({error.detail})" if error.detail else ""
    )
