"""
SQLAlchemy models for a single device shard.

One SQLite file per physical device. Every table below lives in every shard:

- DeviceInfo: the device's own identity row (exactly one per shard)
- BrowserKey: browser installations seen on this device
- AccessLog: append-only ip / user agent history
- FingerprintRecord: latest hardware/browser snapshot (one row)
- WebAuthnCredential, PeerDevice, OwnerIdentity: replicated owner-wide rows
- ChangeLogEntry / ChangeDelivery: outbound change log and its fan-out receipts
- SyncState: audit trail of sync passes
"""

import enum

from sqlalchemy import (
    Column, String, Integer, Boolean, Text,
    Index, Enum as SAEnum,
)

from devicemesh.models.types import JSONText, UTCDateTime, generate_id, utcnow
from devicemesh.storage.database import DeviceBase


class DeviceType(str, enum.Enum):
    desktop = "Desktop"
    mobile = "Mobile"
    tablet = "Tablet"


class ChangeOperation(str, enum.Enum):
    UPSERT = "UPSERT"
    DELETE = "DELETE"


class DeviceInfo(DeviceBase):
    __tablename__ = "device_info"

    device_id = Column(String(64), primary_key=True)
    handle = Column(String, nullable=True)
    guid = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    last_verified_at = Column(UTCDateTime, nullable=True)

    device_name = Column(String, nullable=True)      # user-assigned display name
    device_type = Column(SAEnum(DeviceType), default=DeviceType.desktop, nullable=False)
    is_trusted = Column(Boolean, default=False, nullable=False)

    @property
    def is_claimed(self) -> bool:
        return bool(self.handle and self.guid and self.phone)

    @property
    def display_name(self) -> str:
        if self.device_name:
            return self.device_name
        return {
            DeviceType.mobile: "Mobile Phone",
            DeviceType.tablet: "Tablet",
        }.get(self.device_type, "Computer")


class BrowserKey(DeviceBase):
    __tablename__ = "browser_keys"

    browser_id = Column(String, primary_key=True)
    browser_family = Column(String, nullable=False, default="Unknown")
    user_agent = Column(Text, nullable=True)
    added_at = Column(UTCDateTime, default=utcnow, nullable=False)
    last_used_at = Column(UTCDateTime, default=utcnow, nullable=False)
    pending = Column(Boolean, default=True, nullable=False)


class AccessLog(DeviceBase):
    __tablename__ = "access_log"
    __table_args__ = (Index("ix_access_log_ip", "ip"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    ip = Column(String, nullable=False)
    user_agent = Column(Text, nullable=True)
    access_time = Column(UTCDateTime, default=utcnow, nullable=False)


class FingerprintRecord(DeviceBase):
    __tablename__ = "fingerprint_snapshots"

    id = Column(Integer, primary_key=True)            # always 1
    characteristics = Column(JSONText, nullable=False)
    browser_family = Column(String, nullable=False, default="Unknown")
    updated_at = Column(UTCDateTime, default=utcnow, nullable=False)


class WebAuthnCredential(DeviceBase):
    __tablename__ = "webauthn_credentials"

    credential_id = Column(String, primary_key=True)
    public_key = Column(Text, nullable=False)
    owner_guid = Column(String, nullable=False)
    device_guid = Column(String, nullable=True)      # device_id the credential was registered on
    nickname = Column(String, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    last_used_at = Column(UTCDateTime, nullable=True)
    hlc_version = Column(String, nullable=True)


class PeerDevice(DeviceBase):
    """This shard's replicated view of a device owned by the same identity."""
    __tablename__ = "peer_devices"

    device_id = Column(String(64), primary_key=True)
    device_name = Column(String, nullable=True)
    device_type = Column(String, nullable=True)
    is_trusted = Column(Boolean, default=False, nullable=False)
    last_verified_at = Column(UTCDateTime, nullable=True)
    signed_out = Column(Boolean, default=False, nullable=False)
    hlc_version = Column(String, nullable=True)


class OwnerIdentity(DeviceBase):
    __tablename__ = "owner_identity"

    guid = Column(String, primary_key=True)
    handle = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    hlc_version = Column(String, nullable=True)


class ChangeLogEntry(DeviceBase):
    __tablename__ = "change_log"
    __table_args__ = (
        Index("ix_change_log_synced_hlc", "synced", "hlc_timestamp"),
        Index("ix_change_log_entity", "entity_table", "entity_id"),
    )

    id = Column(String, primary_key=True, default=generate_id)
    hlc_timestamp = Column(String, nullable=False)
    origin_device_id = Column(String(64), nullable=False)
    owner_guid = Column(String, nullable=False)      # owner whose devices receive the entry
    entity_table = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    operation = Column(SAEnum(ChangeOperation), nullable=False)
    payload = Column(JSONText, nullable=True)       # {"field": new_value}
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    synced = Column(Boolean, default=False, nullable=False)


class ChangeDelivery(DeviceBase):
    """Receipt that a sibling shard has applied one of this shard's entries."""
    __tablename__ = "change_deliveries"

    entry_id = Column(String, primary_key=True)
    target_device_id = Column(String(64), primary_key=True)
    delivered_at = Column(UTCDateTime, default=utcnow, nullable=False)


class SyncState(DeviceBase):
    __tablename__ = "sync_state"

    id = Column(Integer, primary_key=True, autoincrement=True)
    last_sync = Column(UTCDateTime, default=utcnow, nullable=False)
    status = Column(String, nullable=False)
    detail = Column(Text, nullable=True)


# Tables a change log entry may target, with their primary key column.
REPLICATED_TABLES = {
    "peer_devices": (PeerDevice, "device_id"),
    "owner_identity": (OwnerIdentity, "guid"),
    "webauthn_credentials": (WebAuthnCredential, "credential_id"),
}
