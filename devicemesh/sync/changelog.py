"""
Change tracking for replicated tables.

Hooks into SQLAlchemy before_flush events on every shard session factory and
logs an UPSERT or DELETE entry for each touched row of a replicated table,
stamping the row's hlc_version with the same timestamp. Entries are written
in the same transaction as the mutation that produced them.

A session only logs when it knows which owner the change belongs to
(session.info["owner_guid"]); unclaimed devices have nobody to replicate to.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from devicemesh.models.device import REPLICATED_TABLES, ChangeLogEntry, ChangeOperation
from devicemesh.models.types import UTCDateTime, as_utc, generate_id
from devicemesh.sync.clock import HybridLogicalClock

logger = logging.getLogger(__name__)

DEVICE_KEY = "device_id"
OWNER_KEY = "owner_guid"
SUPPRESS_KEY = "changelog_suppressed"
CREATED_KEY = "changelog_created"


class ChangeTracker:
    """Hooks into SQLAlchemy to auto-log changes on replicated tables."""

    def __init__(self, clock: HybridLogicalClock):
        self.clock = clock
        self._installed: set[int] = set()

    def install(self, session_factory) -> None:
        """Register the flush listener on a shard's session factory."""
        if id(session_factory) in self._installed:
            return
        event.listen(session_factory, "before_flush", self._before_flush)
        self._installed.add(id(session_factory))

    @staticmethod
    @contextmanager
    def suppress(session: Session):
        """Disable change logging on one session (sync-apply, local cleanup)."""
        previous = session.info.get(SUPPRESS_KEY, False)
        session.info[SUPPRESS_KEY] = True
        try:
            yield
        finally:
            session.info[SUPPRESS_KEY] = previous

    @staticmethod
    def created_entries(session: Session) -> list[ChangeLogEntry]:
        return list(session.info.get(CREATED_KEY, []))

    def _before_flush(self, session: Session, flush_context, instances) -> None:
        if session.info.get(SUPPRESS_KEY):
            return
        origin = session.info.get(DEVICE_KEY)
        owner_guid = session.info.get(OWNER_KEY)
        if not origin or not owner_guid:
            return

        for obj in list(session.new):
            if _is_replicated(obj):
                self._log(session, obj, ChangeOperation.UPSERT)

        for obj in list(session.dirty):
            if not _is_replicated(obj):
                continue
            if not session.is_modified(obj, include_collections=False):
                continue
            self._log(session, obj, ChangeOperation.UPSERT)

        for obj in list(session.deleted):
            if _is_replicated(obj):
                self._log(session, obj, ChangeOperation.DELETE)

    def record(
        self,
        session: Session,
        entity_table: str,
        entity_id: str,
        operation: ChangeOperation,
        payload: Optional[dict] = None,
    ) -> ChangeLogEntry:
        """Log an explicit change on a session bound to a device and owner."""
        origin = session.info.get(DEVICE_KEY)
        owner_guid = session.info.get(OWNER_KEY)
        if not origin or not owner_guid:
            raise ValueError("Session is not bound to a device and owner")

        ts = str(self.clock.now(origin))
        entry = ChangeLogEntry(
            id=generate_id(),
            hlc_timestamp=ts,
            origin_device_id=origin,
            owner_guid=owner_guid,
            entity_table=entity_table,
            entity_id=entity_id,
            operation=ChangeOperation(operation),
            payload=payload if operation == ChangeOperation.UPSERT else None,
        )
        session.add(entry)
        session.info.setdefault(CREATED_KEY, []).append(entry)
        logger.debug("Logged %s %s/%s at %s", entry.operation.value, entity_table, entity_id, ts)
        return entry

    def _log(self, session: Session, obj: Any, operation: ChangeOperation) -> ChangeLogEntry:
        payload = row_payload(obj) if operation == ChangeOperation.UPSERT else None
        entry = self.record(session, obj.__class__.__tablename__, primary_key_of(obj), operation, payload)
        obj.hlc_version = entry.hlc_timestamp
        return entry


def _is_replicated(obj: Any) -> bool:
    return getattr(obj.__class__, "__tablename__", None) in REPLICATED_TABLES


def primary_key_of(obj: Any) -> str:
    _, pk_name = REPLICATED_TABLES[obj.__class__.__tablename__]
    return str(getattr(obj, pk_name))


def row_payload(obj: Any) -> dict:
    """Every column except the version, datetimes as ISO strings."""
    payload = {}
    for col in inspect(obj.__class__).columns:
        if col.key == "hlc_version":
            continue
        value = getattr(obj, col.key)
        if isinstance(value, datetime):
            value = as_utc(value).isoformat()
        payload[col.key] = value
    return payload


def apply_payload(obj: Any, payload: Optional[dict]) -> None:
    """Apply payload values to a row, skipping the primary key and unknown columns."""
    if not payload:
        return
    table = obj.__class__.__table__
    pk_names = {col.name for col in table.primary_key.columns}
    columns = {col.name: col for col in table.columns}

    for key, value in payload.items():
        if key in pk_names or key == "hlc_version":
            continue
        col = columns.get(key)
        if col is None or (value is None and not col.nullable):
            continue
        if isinstance(col.type, UTCDateTime) and isinstance(value, str):
            value = datetime.fromisoformat(value)
        setattr(obj, key, value)


def entry_to_dict(entry: ChangeLogEntry) -> dict:
    return {
        "id": entry.id,
        "hlc_timestamp": entry.hlc_timestamp,
        "origin_device_id": entry.origin_device_id,
        "owner_guid": entry.owner_guid,
        "entity_table": entry.entity_table,
        "entity_id": entry.entity_id,
        "operation": entry.operation.value if hasattr(entry.operation, "value") else entry.operation,
        "payload": entry.payload,
        "synced": entry.synced,
    }
