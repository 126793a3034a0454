"""
Exception hierarchy shared by the store, resolver and replicator.

Comparator and scorer never raise: missing fields contribute nothing.
"""

from typing import Optional


class DeviceMeshError(Exception):
    """Base class for all devicemesh errors."""


class ValidationError(DeviceMeshError):
    """Malformed token, header or identity. Raised before any store access."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class SecurityBoundaryError(DeviceMeshError):
    """Asserted identity disagrees with the identity bound to a device."""

    def __init__(self, message: str, device_id: Optional[str] = None):
        super().__init__(message)
        self.device_id = device_id


class StoreIOError(DeviceMeshError):
    """A device shard or the index could not be read or written."""

    def __init__(self, message: str, device_id: Optional[str] = None):
        super().__init__(message)
        self.device_id = device_id


class DeviceNotFoundError(DeviceMeshError):
    """Management operation on a device that has no shard."""

    def __init__(self, device_id: str):
        super().__init__(f"Device not found: {device_id}")
        self.device_id = device_id


class ReplicationError(DeviceMeshError):
    """Applying a change log entry to a sibling shard failed."""

    def __init__(self, message: str, entry_id: Optional[str] = None, target_device_id: Optional[str] = None):
        super().__init__(message)
        self.entry_id = entry_id
        self.target_device_id = target_device_id


class ResolutionTimeout(DeviceMeshError):
    """Resolution ran past its deadline."""


class VerificationError(DeviceMeshError):
    """Out-of-band verification failed or was throttled."""
