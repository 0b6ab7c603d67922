"""Tests for storage/geometry.py - partition layout arithmetic."""

import pytest

from persistusb.domain import GIB, MIB, PartitionRole
from persistusb.storage.exceptions import CapacityError, DeviceValidationError, SizeRequestError
from persistusb.storage.geometry import compute_geometry, parse_size_gib


def _assert_contiguous(geometry):
    extents = geometry.partitions
    assert [extent.number for extent in extents] == [1, 2, 3]
    assert extents[0].start_sector == geometry.start_sector
    for previous, current in zip(extents, extents[1:]):
        assert current.start_sector == previous.end_sector + 1
    for extent in extents:
        assert extent.sector_count * geometry.sector_size == extent.size_bytes
        assert extent.size_bytes % MIB == 0


class TestParseSizeGib:
    @pytest.mark.parametrize("text", ["8", "8g", "8G", " 8G "])
    def test_accepted_forms(self, text):
        assert parse_size_gib(text) == 8 * 1024

    @pytest.mark.parametrize("text", ["0", "-1", "1.5", "8M", "eight", "", "8GB"])
    def test_rejected_forms(self, text):
        with pytest.raises(SizeRequestError):
            parse_size_gib(text, "--size-part3")


class TestComputeGeometry:
    """Tests for compute_geometry()."""

    def test_defaults_on_16_gib_device(self):
        geometry = compute_geometry(16 * GIB, 1 * GIB, 512)

        live = geometry.extent(PartitionRole.LIVE)
        esp = geometry.extent(PartitionRole.ESP)
        persistence = geometry.extent(PartitionRole.PERSISTENCE)
        assert geometry.start_sector == 2048
        assert live.size_bytes == 1152 * MIB
        assert esp.size_bytes == 512 * MIB
        assert persistence.size_bytes == 14718 * MIB
        _assert_contiguous(geometry)
        assert geometry.partitions[-1].next_sector * geometry.sector_size + MIB <= 16 * GIB

    def test_explicit_sizes_fit_with_leftover(self):
        geometry = compute_geometry(
            20 * GIB, 3 * GIB, 512, boot_size_mib=1024, persistence_size_mib=10 * 1024
        )

        assert geometry.extent(PartitionRole.ESP).size_bytes == 1 * GIB
        assert geometry.extent(PartitionRole.PERSISTENCE).size_bytes == 10 * GIB
        assert geometry.partitions[-1].next_sector * geometry.sector_size < 20 * GIB
        _assert_contiguous(geometry)

    def test_unaligned_image_is_rounded_up(self):
        geometry = compute_geometry(16 * GIB, GIB + 1, 512)

        assert geometry.extent(PartitionRole.LIVE).size_bytes == 1153 * MIB
        _assert_contiguous(geometry)

    def test_4k_sectors(self):
        geometry = compute_geometry(16 * GIB, GIB, 4096)

        assert geometry.start_sector == 256
        _assert_contiguous(geometry)

    def test_device_not_larger_than_image_plus_headroom(self):
        with pytest.raises(CapacityError):
            compute_geometry(GIB + 1024 * MIB, GIB, 512)

    def test_device_smaller_than_image(self):
        with pytest.raises(CapacityError):
            compute_geometry(GIB, 2 * GIB, 512)

    def test_persistence_larger_than_remaining(self):
        with pytest.raises(CapacityError) as exc_info:
            compute_geometry(16 * GIB, GIB, 512, persistence_size_mib=15000)

        assert exc_info.value.device_bytes == 16 * GIB

    def test_boot_partition_consumes_remaining(self):
        with pytest.raises(CapacityError):
            compute_geometry(4 * GIB, GIB, 512, boot_size_mib=2 * 1024 + 1024)

    @pytest.mark.parametrize("value", [0, -5, 1.5, True, "512"])
    def test_invalid_boot_size(self, value):
        with pytest.raises(SizeRequestError):
            compute_geometry(16 * GIB, GIB, 512, boot_size_mib=value)

    @pytest.mark.parametrize("value", [0, -1, 2.0])
    def test_invalid_persistence_size(self, value):
        with pytest.raises(SizeRequestError):
            compute_geometry(16 * GIB, GIB, 512, persistence_size_mib=value)

    @pytest.mark.parametrize("sector_size", [0, 3000])
    def test_unsupported_sector_size(self, sector_size):
        with pytest.raises(DeviceValidationError):
            compute_geometry(16 * GIB, GIB, sector_size)
