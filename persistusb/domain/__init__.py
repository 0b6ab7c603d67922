"""Domain models for live USB provisioning."""

from __future__ import annotations

from .models import (
    GIB,
    MIB,
    DeviceGeometry,
    Drive,
    EncryptionState,
    MediumDescriptor,
    PartitionExtent,
    PartitionRole,
    PersistenceFilesystem,
    ProvisioningRequest,
    TargetLabels,
)


__all__ = [
    "GIB",
    "MIB",
    "DeviceGeometry",
    "Drive",
    "EncryptionState",
    "MediumDescriptor",
    "PartitionExtent",
    "PartitionRole",
    "PersistenceFilesystem",
    "ProvisioningRequest",
    "TargetLabels",
]
