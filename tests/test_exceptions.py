"""Tests for storage exception classes."""

import pytest

from persistusb.storage.exceptions import (
    BootloaderError,
    CapacityError,
    CopyError,
    DeviceBusyError,
    DeviceValidationError,
    EncryptionError,
    FormatError,
    ImageValidationError,
    MediumDescriptorError,
    MediumVersionError,
    MissingToolError,
    MountError,
    PartitionError,
    PrivilegeError,
    ProvisioningError,
    RawWriteError,
    SessionInterrupted,
    SizeRequestError,
    StageError,
    UsageError,
    ValidationError,
)


class TestExceptionHierarchy:
    """Test exception inheritance hierarchy."""

    @pytest.mark.parametrize(
        "error",
        [
            UsageError("bad"),
            PrivilegeError(),
            DeviceValidationError("/dev/sdb", "not removable"),
            DeviceBusyError("/dev/sdb"),
            ImageValidationError("/tmp/x.iso", "missing"),
            MissingToolError(["sgdisk"]),
            SizeRequestError("--size-part3", 0),
            MediumDescriptorError("broken"),
            MediumVersionError("v2", "v1"),
        ],
    )
    def test_validation_errors(self, error):
        """Test that every pre-write failure is a ValidationError."""
        assert isinstance(error, ValidationError)
        assert isinstance(error, ProvisioningError)

    def test_medium_version_is_descriptor_error(self):
        assert isinstance(MediumVersionError("v2", "v1"), MediumDescriptorError)

    def test_capacity_error_is_not_validation_error(self):
        error = CapacityError(100, 200)
        assert isinstance(error, ProvisioningError)
        assert not isinstance(error, ValidationError)

    @pytest.mark.parametrize(
        "cls, stage",
        [
            (PartitionError, "partition"),
            (FormatError, "format"),
            (EncryptionError, "encryption"),
            (MountError, "mount"),
            (CopyError, "copy"),
            (BootloaderError, "bootloader"),
            (RawWriteError, "raw-write"),
        ],
    )
    def test_stage_errors_name_their_stage(self, cls, stage):
        error = cls("boom")
        assert isinstance(error, StageError)
        assert error.stage == stage
        assert str(error).startswith(f"[{stage}]")

    def test_session_interrupted(self):
        error = SessionInterrupted(15)
        assert error.signum == 15
        assert "15" in str(error)


class TestStageError:
    """Tests for StageError attributes and message."""

    def test_full_message(self):
        error = FormatError(
            "Command failed: mkfs.fat",
            command=["mkfs.fat", "/dev/sdb2"],
            returncode=1,
            detail="No such device",
        )
        assert error.command == ["mkfs.fat", "/dev/sdb2"]
        assert error.returncode == 1
        assert error.detail == "No such device"
        assert error.message == "Command failed: mkfs.fat"
        assert str(error) == "[format] Command failed: mkfs.fat (exit status 1): No such device"

    def test_minimal_message(self):
        error = PartitionError("Geometry mismatch")
        assert error.command is None
        assert error.returncode is None
        assert str(error) == "[partition] Geometry mismatch"


class TestValidationErrorMessages:
    def test_privilege_error_message(self):
        assert str(PrivilegeError()) == "This program must be run as root"

    def test_device_busy_lists_mountpoints(self):
        error = DeviceBusyError("/dev/sdb", ["/media/usb", "/mnt"])
        assert error.mountpoints == ["/media/usb", "/mnt"]
        assert "/media/usb, /mnt" in str(error)

    def test_missing_tool_lists_tools(self):
        error = MissingToolError(["sgdisk", "syslinux"])
        assert error.tools == ["sgdisk", "syslinux"]
        assert "sgdisk, syslinux" in str(error)

    def test_capacity_error_attributes(self):
        error = CapacityError(1024, 4096, "persistence too large")
        assert error.device_bytes == 1024
        assert error.required_bytes == 4096
        assert "persistence too large" in str(error)

    def test_medium_version_attributes(self):
        error = MediumVersionError("v2", "v1")
        assert error.found == "v2"
        assert error.supported == "v1"
