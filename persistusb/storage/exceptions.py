"""Custom exceptions for provisioning operations.

This module defines a hierarchy of exceptions so that every failure names
the stage it came from and callers can tell validation problems (nothing
was touched) from execution problems (the device may be half-written).

Exception Hierarchy:
    ProvisioningError (base)
        ├── ValidationError
        │   ├── UsageError
        │   ├── PrivilegeError
        │   ├── DeviceValidationError
        │   ├── DeviceBusyError
        │   ├── ImageValidationError
        │   ├── MissingToolError
        │   ├── SizeRequestError
        │   └── MediumDescriptorError
        │       └── MediumVersionError
        ├── CapacityError
        ├── StageError
        │   ├── PartitionError
        │   ├── FormatError
        │   ├── EncryptionError
        │   ├── MountError
        │   ├── CopyError
        │   ├── BootloaderError
        │   └── RawWriteError
        └── SessionInterrupted

Usage:
    from persistusb.storage.exceptions import CapacityError

    if required_bytes > device_bytes:
        raise CapacityError(device_bytes, required_bytes)
"""

from __future__ import annotations

from typing import Optional, Sequence


class ProvisioningError(Exception):
    """Base exception for all provisioning operations."""


class ValidationError(ProvisioningError):
    """Input was rejected before anything was written."""


class UsageError(ValidationError):
    """Command-line arguments are malformed."""


class PrivilegeError(ValidationError):
    """Caller lacks root privileges."""

    def __init__(self) -> None:
        super().__init__("This program must be run as root")


class DeviceValidationError(ValidationError):
    """Target failed a device safety check."""

    def __init__(self, device_name: str, reason: str):
        self.device_name = device_name
        self.reason = reason
        super().__init__(f"Device validation failed for {device_name}: {reason}")


class DeviceBusyError(ValidationError):
    """Target device or one of its partitions is mounted."""

    def __init__(self, device_name: str, mountpoints: Sequence[str] = ()):
        self.device_name = device_name
        self.mountpoints = list(mountpoints)
        msg = f"Device {device_name} is busy"
        if self.mountpoints:
            msg += f": mounted at {', '.join(self.mountpoints)}"
        super().__init__(msg)


class ImageValidationError(ValidationError):
    """Source image is missing or not a bootable image."""

    def __init__(self, image_path: str, reason: str):
        self.image_path = image_path
        self.reason = reason
        super().__init__(f"Image validation failed for {image_path}: {reason}")


class MissingToolError(ValidationError):
    """A required host utility is not installed."""

    def __init__(self, tools: Sequence[str]):
        self.tools = list(tools)
        super().__init__(f"Required tools not found: {', '.join(self.tools)}")


class SizeRequestError(ValidationError):
    """A requested partition size is not a positive integer."""

    def __init__(self, name: str, value: object):
        self.name = name
        self.value = value
        super().__init__(f"Invalid {name} size: {value!r} (expected a positive integer)")


class MediumDescriptorError(ValidationError):
    """Medium descriptor is missing or malformed."""


class MediumVersionError(MediumDescriptorError):
    """Medium descriptor declares an unsupported format version."""

    def __init__(self, found: str, supported: str):
        self.found = found
        self.supported = supported
        super().__init__(
            f"Unsupported medium version {found!r}, this tool supports {supported!r}"
        )


class CapacityError(ProvisioningError):
    """Device is too small for the requested layout."""

    def __init__(self, device_bytes: int, required_bytes: int, reason: str = ""):
        self.device_bytes = device_bytes
        self.required_bytes = required_bytes
        msg = (
            f"Device capacity {device_bytes} bytes is insufficient, "
            f"{required_bytes} bytes required"
        )
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class StageError(ProvisioningError):
    """An external tool or filesystem step failed during a stage."""

    stage = "provisioning"

    def __init__(
        self,
        message: str,
        command: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        detail: str = "",
    ):
        self.command = list(command) if command else None
        self.returncode = returncode
        self.detail = detail
        self.message = message
        text = f"[{self.stage}] {message}"
        if returncode is not None:
            text += f" (exit status {returncode})"
        if detail:
            text += f": {detail}"
        super().__init__(text)


class PartitionError(StageError):
    stage = "partition"


class FormatError(StageError):
    stage = "format"


class EncryptionError(StageError):
    stage = "encryption"


class MountError(StageError):
    stage = "mount"


class CopyError(StageError):
    stage = "copy"


class BootloaderError(StageError):
    stage = "bootloader"


class RawWriteError(StageError):
    stage = "raw-write"


class SessionInterrupted(ProvisioningError):
    """A termination signal arrived while the session was running."""

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"Interrupted by signal {signum}")
