"""
Owner and browser index.

Secondary lookup tables so resolution and sibling discovery do not open every
device shard. The shards stay authoritative; `DeviceStore.rebuild_index()`
regenerates these rows from them.
"""

from sqlalchemy import Column, String, Index

from devicemesh.models.types import UTCDateTime, utcnow
from devicemesh.storage.database import IndexBase


class OwnerIndexEntry(IndexBase):
    __tablename__ = "owner_index"
    __table_args__ = (
        Index("ix_owner_index_handle", "handle"),
        Index("ix_owner_index_guid", "guid"),
        Index("ix_owner_index_phone", "phone"),
    )

    device_id = Column(String(64), primary_key=True)
    handle = Column(String, nullable=True)
    guid = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    last_verified_at = Column(UTCDateTime, nullable=True)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class BrowserIndexEntry(IndexBase):
    __tablename__ = "browser_index"
    __table_args__ = (Index("ix_browser_index_device", "device_id"),)

    browser_id = Column(String, primary_key=True)
    device_id = Column(String(64), nullable=False)
