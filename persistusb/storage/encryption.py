"""LUKS container lifecycle for the persistence partition.

State Machine:
    UNCONFIGURED --format_container()--> FORMATTED
    FORMATTED    --open_container()----> OPEN
    OPEN         --close()-------------> CLOSED

cryptsetup runs attached to the terminal for luksFormat and open, so the
operator types the passphrase (and its confirmation) directly into it.
This program never sees or stores the passphrase.

The container UUID is generated once per session so the boot entries can
reference it with ``cryptdevice=UUID=<uuid>:<mapper>`` before the
container even exists.
"""

from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import Callable, Optional

from persistusb.config.settings import DEFAULT_MAPPER_NAME
from persistusb.domain import EncryptionState, MediumDescriptor
from persistusb.logging import LoggerFactory
from persistusb.storage.bootconfig import patch_loader_entry, patch_syslinux_config
from persistusb.storage.commands import run_command
from persistusb.storage.exceptions import EncryptionError


log = LoggerFactory.for_device()

MAPPER_DIR = "/dev/mapper"


class EncryptionManager:
    """Create, open and close the encrypted persistence container."""

    def __init__(
        self,
        partition: str,
        label: str,
        mapper_name: str = DEFAULT_MAPPER_NAME,
        container_uuid: Optional[str] = None,
    ):
        self.partition = partition
        self.label = label
        self.mapper_name = mapper_name
        self.container_uuid = container_uuid or str(uuid.uuid4())
        self.state = EncryptionState.UNCONFIGURED

    @property
    def mapped_device(self) -> str:
        return f"{MAPPER_DIR}/{self.mapper_name}"

    @property
    def cryptdevice_parameter(self) -> str:
        return f"cryptdevice=UUID={self.container_uuid}:{self.mapper_name}"

    def mapping_exists(self) -> bool:
        return os.path.exists(self.mapped_device)

    def format_container(self) -> None:
        """Write a LUKS header to the partition; cryptsetup asks for the passphrase."""
        if self.state is not EncryptionState.UNCONFIGURED:
            raise EncryptionError(
                f"Cannot format container in state {self.state.value}"
            )
        log.info(f"Creating encrypted container on {self.partition}...")
        run_command(
            [
                "cryptsetup",
                "--label",
                self.label,
                "--uuid",
                self.container_uuid,
                "-q",
                "luksFormat",
                self.partition,
            ],
            error=EncryptionError,
            interactive=True,
        )
        self.state = EncryptionState.FORMATTED

    def open_container(self) -> str:
        """Open the container and return the mapped device path."""
        if self.state is not EncryptionState.FORMATTED:
            raise EncryptionError(f"Cannot open container in state {self.state.value}")
        if self.mapping_exists():
            raise EncryptionError(
                f"Mapping {self.mapped_device} already exists",
                detail="close it or choose another mapper_name",
            )
        log.info(f"Opening encrypted container as {self.mapper_name}...")
        run_command(
            ["cryptsetup", "open", self.partition, self.mapper_name],
            error=EncryptionError,
            interactive=True,
        )
        self.state = EncryptionState.OPEN
        return self.mapped_device

    def close(self) -> None:
        """Close the mapping if present. Safe to call repeatedly, never raises."""
        if not self.mapping_exists():
            if self.state is EncryptionState.OPEN:
                self.state = EncryptionState.CLOSED
            return
        result = run_command(
            ["cryptsetup", "close", self.mapper_name],
            error=EncryptionError,
            check=False,
        )
        if not result.ok:
            log.warning(
                f"Failed to close {self.mapped_device}: "
                f"{result.stderr.strip() or result.returncode}"
            )
            return
        log.debug(f"Closed {self.mapped_device}")
        self.state = EncryptionState.CLOSED

    def patch_boot_configs(self, esp_root: Path, medium: MediumDescriptor) -> list[Path]:
        """Point the persistence boot entries at the encrypted container.

        Returns:
            Paths of the rewritten files

        Raises:
            EncryptionError: A boot config is unnamed or missing
        """
        patched = []
        targets: list[tuple[str, Callable[[str, str], str]]] = [
            ("persistence_entry", patch_loader_entry),
            ("persistence_syslinux", patch_syslinux_config),
        ]
        for key, patcher in targets:
            relative = getattr(medium, key)
            if not relative:
                raise EncryptionError(f"Medium descriptor has no {key} to patch")
            path = Path(esp_root) / relative
            try:
                text = path.read_text(encoding="utf-8")
            except OSError as error:
                raise EncryptionError(
                    f"Cannot read boot config {relative}", detail=str(error)
                ) from error
            updated = patcher(text, self.cryptdevice_parameter)
            if updated != text:
                try:
                    path.write_text(updated, encoding="utf-8")
                except OSError as error:
                    raise EncryptionError(
                        f"Cannot write boot config {relative}", detail=str(error)
                    ) from error
            log.debug(f"Patched {relative} with {self.cryptdevice_parameter}")
            patched.append(path)
        return patched
