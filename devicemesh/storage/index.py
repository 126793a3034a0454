"""
Owner/browser index access.

Shards are authoritative; everything here can be regenerated with
DeviceStore.rebuild_index(). Lookups never open a device shard.
"""

import logging
from typing import Optional

from sqlalchemy.orm import sessionmaker

from devicemesh.models.index import BrowserIndexEntry, OwnerIndexEntry
from devicemesh.models.types import utcnow
from devicemesh.storage.database import make_engine, make_session_factory, session_scope
from devicemesh.storage.migrations import INDEX_MIGRATIONS, migrate

logger = logging.getLogger(__name__)


class DeviceIndex:

    def __init__(self, url: str, timeout: Optional[float] = None):
        self.engine = make_engine(url, timeout)
        migrate(self.engine, INDEX_MIGRATIONS)
        self._factory: sessionmaker = make_session_factory(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    # ── Owners ───────────────────────────────────────────────────────

    def upsert_owner(self, device) -> None:
        """Mirror a device record's owner fields."""
        with session_scope(self._factory) as db:
            row = db.get(OwnerIndexEntry, device.device_id)
            if row is None:
                row = OwnerIndexEntry(device_id=device.device_id)
                db.add(row)
            row.handle = device.handle
            row.guid = device.guid
            row.phone = device.phone
            row.last_verified_at = device.last_verified_at
            row.updated_at = utcnow()

    def owner_device_ids(
        self,
        handle: Optional[str] = None,
        guid: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> list[str]:
        """Devices whose owner matches every given field, most recently verified first."""
        filters = []
        if handle:
            filters.append(OwnerIndexEntry.handle == handle)
        if guid:
            filters.append(OwnerIndexEntry.guid == guid)
        if phone:
            filters.append(OwnerIndexEntry.phone == phone)
        if not filters:
            return []

        with session_scope(self._factory) as db:
            rows = (
                db.query(OwnerIndexEntry.device_id, OwnerIndexEntry.last_verified_at)
                .filter(*filters)
                .all()
            )
        rows.sort(key=lambda r: (r.last_verified_at is not None, r.last_verified_at, r.device_id), reverse=True)
        return [r.device_id for r in rows]

    def all_device_ids(self) -> list[str]:
        with session_scope(self._factory) as db:
            return [r.device_id for r in db.query(OwnerIndexEntry.device_id).all()]

    # ── Browsers ─────────────────────────────────────────────────────

    def add_browser(self, browser_id: str, device_id: str, replace: bool = False) -> bool:
        """Point a browser token at a device.

        A token already bound to another device only moves when `replace` is
        set, i.e. once the new association has been verified. Returns whether
        the token now points at `device_id`.
        """
        with session_scope(self._factory) as db:
            row = db.get(BrowserIndexEntry, browser_id)
            if row is None:
                db.add(BrowserIndexEntry(browser_id=browser_id, device_id=device_id))
            elif row.device_id != device_id:
                if not replace:
                    logger.warning(
                        "Browser %s is bound to device %s; not moving it to %s",
                        browser_id[:10], row.device_id[:10], device_id[:10],
                    )
                    return False
                logger.info(
                    "Browser %s moved from device %s to %s",
                    browser_id[:10], row.device_id[:10], device_id[:10],
                )
                row.device_id = device_id

    def browser_device(self, browser_id: str) -> Optional[str]:
        with session_scope(self._factory) as db:
            row = db.get(BrowserIndexEntry, browser_id)
            return row.device_id if row else None

    def remove_browsers(self, device_id: str) -> int:
        with session_scope(self._factory) as db:
            return db.query(BrowserIndexEntry).filter_by(device_id=device_id).delete(synchronize_session=False)

    # ── Maintenance ──────────────────────────────────────────────────

    def remove_device(self, device_id: str) -> None:
        with session_scope(self._factory) as db:
            db.query(BrowserIndexEntry).filter_by(device_id=device_id).delete(synchronize_session=False)
            db.query(OwnerIndexEntry).filter_by(device_id=device_id).delete(synchronize_session=False)

    def clear(self) -> None:
        with session_scope(self._factory) as db:
            db.query(BrowserIndexEntry).delete(synchronize_session=False)
            db.query(OwnerIndexEntry).delete(synchronize_session=False)
