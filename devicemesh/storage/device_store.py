"""
Device Store — one SQLite shard per physical device plus the owner/browser index.

Every mutation of a shard runs under that device's lock and commits together
with the change log entries it produced. The index is refreshed after the
shard commit; if that refresh fails the shard still wins and
`rebuild_index()` repairs the index.
"""

import logging
import platform
import re
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Generator, Iterable, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from devicemesh.config.settings import settings
from devicemesh.errors import (
    DeviceMeshError, DeviceNotFoundError, ReplicationError, SecurityBoundaryError,
    StoreIOError, ValidationError,
)
from devicemesh.fingerprint.snapshot import FingerprintSnapshot, detect_browser, detect_device_type
from devicemesh.models.device import (
    REPLICATED_TABLES, AccessLog, BrowserKey, ChangeDelivery, ChangeLogEntry, ChangeOperation,
    DeviceInfo, DeviceType, FingerprintRecord, OwnerIdentity, PeerDevice, SyncState,
    WebAuthnCredential,
)
from devicemesh.models.types import utcnow
from devicemesh.storage.database import (
    KeyedLocks, make_engine, make_session_factory, session_scope, shard_url,
)
from devicemesh.storage.index import DeviceIndex
from devicemesh.storage.migrations import SHARD_MIGRATIONS, migrate
from devicemesh.sync.changelog import (
    DEVICE_KEY, OWNER_KEY, ChangeTracker, apply_payload, entry_to_dict, row_payload,
)
from devicemesh.sync.clock import HybridLogicalClock, is_newer

logger = logging.getLogger(__name__)

DeviceRecord = DeviceInfo

HEX64 = re.compile(r"^[0-9a-f]{64}$")
BROWSER_TOKEN = re.compile(r"^[A-Za-z0-9_\-.:=+/]{1,256}$")
MAX_DEVICE_NAME = 64
SHARD_SUFFIX = ".sqlite3"

# Errors that mean "this shard (or the index) could not be read or written"
STORE_ERRORS = (SQLAlchemyError, sqlite3.Error, ValueError)


@dataclass(frozen=True)
class Identity:
    """Owner identity bound to a device. All three fields or none."""
    handle: str
    guid: str
    phone: str


def validate_device_id(value: Any, field: str = "device_id") -> str:
    if not isinstance(value, str) or not HEX64.match(value):
        raise ValidationError(f"{field} must be 64 lowercase hex characters", field=field)
    return value


def validate_browser_token(value: Any, field: str = "opaque_browser_token") -> str:
    if not isinstance(value, str) or not BROWSER_TOKEN.match(value):
        raise ValidationError(f"{field} is malformed", field=field)
    return value


def _check_identity(identity: Any) -> Identity:
    fields = {}
    for name in ("handle", "guid", "phone"):
        value = getattr(identity, name, None)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"Identity is missing {name}", field=name)
        fields[name] = value.strip()
    return Identity(**fields)


def _owned_by(device: DeviceInfo, handle: Optional[str], guid: Optional[str], phone: Optional[str]) -> bool:
    return (
        (not handle or device.handle == handle)
        and (not guid or device.guid == guid)
        and (not phone or device.phone == phone)
    )


class DeviceStore:
    """Sharded device persistence.

    Shards are opened lazily, migrated once on open and cached for the life
    of the store. `clock` supplies wall time (injectable for tests); `hlc`
    stamps change log entries.
    """

    def __init__(
        self,
        devices_dir: Optional[Path] = None,
        index_url: Optional[str] = None,
        clock: Callable = utcnow,
        hlc: Optional[HybridLogicalClock] = None,
        locks: Optional[KeyedLocks] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.devices_dir = Path(devices_dir or settings.devices_dir)
        self.devices_dir.mkdir(parents=True, exist_ok=True)
        if index_url is None:
            settings.data_dir.mkdir(parents=True, exist_ok=True)
        self.clock = clock
        self.hlc = hlc or HybridLogicalClock(platform.node() or "local")
        self.tracker = ChangeTracker(self.hlc)
        self.locks = locks or KeyedLocks()
        self.lock_timeout = settings.sqlite_timeout_seconds if lock_timeout is None else lock_timeout
        try:
            self.index = DeviceIndex(index_url or settings.index_url)
        except STORE_ERRORS as exc:
            raise StoreIOError(f"Cannot open device index: {exc}") from exc

        self._guard = threading.Lock()
        self._engines: dict = {}
        self._factories: dict[str, sessionmaker] = {}

    # ── Shards ───────────────────────────────────────────────────────

    def shard_path(self, device_id: str) -> Path:
        return self.devices_dir / f"{device_id}{SHARD_SUFFIX}"

    def has_device(self, device_id: str) -> bool:
        return self.shard_path(validate_device_id(device_id)).exists()

    def all_device_ids(self) -> list[str]:
        """Device ids with a shard on disk."""
        ids = []
        for path in sorted(self.devices_dir.glob(f"*{SHARD_SUFFIX}")):
            stem = path.name[: -len(SHARD_SUFFIX)]
            if HEX64.match(stem):
                ids.append(stem)
        return ids

    def _factory(self, device_id: str, create: bool = False) -> Optional[sessionmaker]:
        validate_device_id(device_id)
        with self._guard:
            factory = self._factories.get(device_id)
            if factory is not None:
                return factory
            if not create and not self.shard_path(device_id).exists():
                return None

            engine = make_engine(shard_url(self.devices_dir, device_id))
            try:
                migrate(engine, SHARD_MIGRATIONS)
            except (SQLAlchemyError, sqlite3.Error) as exc:
                engine.dispose()
                raise StoreIOError(f"Cannot open shard {device_id[:10]}: {exc}", device_id) from exc

            factory = make_session_factory(engine, info={DEVICE_KEY: device_id})
            self.tracker.install(factory)
            self._engines[device_id] = engine
            self._factories[device_id] = factory
            return factory

    @contextmanager
    def _session(self, device_id: str, create: bool = False) -> Generator[Session, None, None]:
        factory = self._factory(device_id, create=create)
        if factory is None:
            raise DeviceNotFoundError(device_id)
        try:
            with session_scope(factory) as db:
                yield db
        except DeviceMeshError:
            raise
        except STORE_ERRORS as exc:
            raise StoreIOError(f"Shard {device_id[:10]} failed: {exc}", device_id) from exc

    @contextmanager
    def _writing(self, device_id: str, create: bool = False) -> Generator[Session, None, None]:
        validate_device_id(device_id)
        try:
            with self.locks.hold(device_id, timeout=self.lock_timeout):
                with self._session(device_id, create=create) as db:
                    yield db
        except TimeoutError as exc:
            raise StoreIOError(f"Shard {device_id[:10]} is busy", device_id) from exc

    @staticmethod
    def _device_row(db: Session, device_id: str) -> DeviceInfo:
        device = db.get(DeviceInfo, device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        return device

    @staticmethod
    def _bind_owner(db: Session, guid: Optional[str]) -> None:
        db.info[OWNER_KEY] = guid

    @staticmethod
    def _sync_peer_row(db: Session, device: DeviceInfo, signed_out: bool = False) -> PeerDevice:
        """Mirror the device's own record into its replicated peer view."""
        peer = db.get(PeerDevice, device.device_id)
        if peer is None:
            peer = PeerDevice(device_id=device.device_id)
            db.add(peer)
        peer.device_name = device.device_name
        peer.device_type = device.device_type.value if device.device_type else None
        peer.is_trusted = bool(device.is_trusted)
        peer.last_verified_at = device.last_verified_at
        peer.signed_out = signed_out
        return peer

    def _index_call(self, fn: Callable, *args) -> None:
        try:
            fn(*args)
        except STORE_ERRORS:
            logger.exception("Index update failed (%s); run reindex to repair", fn.__name__)

    def close(self) -> None:
        with self._guard:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()
            self._factories.clear()
        self.index.close()

    # ── Device records ───────────────────────────────────────────────

    def create_device(
        self,
        seed_token: str,
        device_type: Union[DeviceType, str, None] = None,
        user_agent: Optional[str] = None,
    ) -> DeviceInfo:
        """Create an unclaimed device. Returns the existing record if the shard already has one."""
        device_id = validate_device_id(seed_token, field="seed_token")
        with self._writing(device_id, create=True) as db:
            device = db.get(DeviceInfo, device_id)
            created = device is None
            if created:
                device = DeviceInfo(
                    device_id=device_id,
                    created_at=self.clock(),
                    device_type=DeviceType(device_type or detect_device_type(user_agent)),
                    is_trusted=False,
                )
                db.add(device)

        if created:
            self._index_call(self.index.upsert_owner, device)
            logger.info("Created device %s (%s)", device_id[:10], device.device_type.value)
        return device

    def get_device(self, device_id: str) -> Optional[DeviceInfo]:
        if self._factory(device_id) is None:
            return None
        with self._session(device_id) as db:
            return db.get(DeviceInfo, device_id)

    def owner_device_ids(
        self,
        handle: Optional[str] = None,
        guid: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> list[str]:
        try:
            return self.index.owner_device_ids(handle=handle, guid=guid, phone=phone)
        except STORE_ERRORS as exc:
            raise StoreIOError(f"Device index unreadable: {exc}") from exc

    def find_devices_by_owner(
        self,
        handle: Optional[str] = None,
        guid: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> list[DeviceInfo]:
        """Claimed devices of an owner, most recently verified first.

        Each index hit is confirmed against its shard; unreadable shards and
        stale index rows are skipped.
        """
        devices = []
        for device_id in self.owner_device_ids(handle=handle, guid=guid, phone=phone):
            try:
                device = self.get_device(device_id)
            except StoreIOError:
                logger.exception("Skipping unreadable shard %s", device_id[:10])
                continue
            if device is None or not device.is_claimed or not _owned_by(device, handle, guid, phone):
                logger.warning("Stale owner index entry for %s", device_id[:10])
                continue
            devices.append(device)
        return devices

    def list_owner_devices(self, handle: str) -> list[DeviceInfo]:
        return self.find_devices_by_owner(handle=handle)

    def claim(self, device_id: str, identity: Any) -> DeviceInfo:
        """Bind an owner identity to a device and mark it verified now."""
        identity = _check_identity(identity)
        with self._writing(device_id) as db:
            device = self._device_row(db, device_id)
            if device.is_claimed and device.guid != identity.guid:
                logger.warning(
                    "SECURITY: claim of device %s by %s while owned by %s",
                    device_id[:10], identity.handle, device.handle,
                )
                raise SecurityBoundaryError("Device is claimed by another owner", device_id)

            device.handle = identity.handle
            device.guid = identity.guid
            device.phone = identity.phone
            device.last_verified_at = self.clock()

            self._bind_owner(db, identity.guid)
            owner = db.get(OwnerIdentity, identity.guid)
            if owner is None:
                owner = OwnerIdentity(guid=identity.guid)
                db.add(owner)
            owner.handle = identity.handle
            owner.phone = identity.phone
            self._sync_peer_row(db, device)

        self._index_call(self.index.upsert_owner, device)
        logger.info("Device %s claimed by %s", device_id[:10], identity.handle)
        return device

    def mark_verified(self, device_id: str) -> DeviceInfo:
        with self._writing(device_id) as db:
            device = self._device_row(db, device_id)
            if not device.is_claimed:
                raise ValidationError("Device is not claimed", field="device_id")
            device.last_verified_at = self.clock()
            self._bind_owner(db, device.guid)
            self._sync_peer_row(db, device)

        self._index_call(self.index.upsert_owner, device)
        return device

    def reset_device(self, device_id: str) -> DeviceInfo:
        """Clear the owner and every dependent row; the device id survives.

        Siblings learn about it through the peer row being signed out and the
        device's own credentials being deleted.
        """
        with self._writing(device_id) as db:
            device = self._device_row(db, device_id)
            previous_handle = device.handle

            if device.guid:
                self._bind_owner(db, device.guid)
                device.is_trusted = False
                self._sync_peer_row(db, device, signed_out=True)
                for credential in db.query(WebAuthnCredential).filter_by(device_guid=device_id).all():
                    db.delete(credential)
                db.flush()

            with self.tracker.suppress(db):
                db.query(WebAuthnCredential).delete(synchronize_session=False)
                db.query(OwnerIdentity).delete(synchronize_session=False)
                db.query(PeerDevice).filter(PeerDevice.device_id != device_id).delete(synchronize_session=False)
                db.query(BrowserKey).delete(synchronize_session=False)
                db.query(AccessLog).delete(synchronize_session=False)
                db.query(FingerprintRecord).delete(synchronize_session=False)
                device.handle = None
                device.guid = None
                device.phone = None
                device.last_verified_at = None
                device.is_trusted = False
                db.flush()

        self._index_call(self.index.upsert_owner, device)
        self._index_call(self.index.remove_browsers, device_id)
        logger.info("Device %s reset (was %s)", device_id[:10], previous_handle or "unclaimed")
        return device

    # ── Device management ────────────────────────────────────────────

    def rename_device(self, device_id: str, name: Optional[str]) -> DeviceInfo:
        name = (name or "").strip() or None
        if name and len(name) > MAX_DEVICE_NAME:
            raise ValidationError(f"Device name longer than {MAX_DEVICE_NAME} characters", field="device_name")
        with self._writing(device_id) as db:
            device = self._device_row(db, device_id)
            device.device_name = name
            if device.is_claimed:
                self._bind_owner(db, device.guid)
                self._sync_peer_row(db, device)
        return device

    def set_trusted(self, device_id: str, trusted: bool) -> DeviceInfo:
        with self._writing(device_id) as db:
            device = self._device_row(db, device_id)
            device.is_trusted = bool(trusted)
            if device.is_claimed:
                self._bind_owner(db, device.guid)
                self._sync_peer_row(db, device)
        return device

    def remove_device(self, device_id: str, current_device_id: Optional[str] = None) -> dict:
        """Delete a device shard. The device making the request cannot remove itself."""
        validate_device_id(device_id)
        if device_id == current_device_id:
            raise ValidationError("Cannot remove the current device", field="device_id")
        device = self.get_device(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)

        # Tell the rest of the owner's devices through the requesting device's log
        if current_device_id and device.guid:
            current = self.get_device(current_device_id)
            if current is not None and current.guid == device.guid:
                self.append_change(current_device_id, "peer_devices", device_id, ChangeOperation.DELETE)

        with self.locks.hold(device_id, timeout=self.lock_timeout):
            with self._guard:
                engine = self._engines.pop(device_id, None)
                self._factories.pop(device_id, None)
            if engine is not None:
                engine.dispose()
            base = self.shard_path(device_id)
            for path in (base, Path(f"{base}-wal"), Path(f"{base}-shm")):
                path.unlink(missing_ok=True)

        self._index_call(self.index.remove_device, device_id)
        self.locks.discard(device_id)
        logger.info("Removed device %s", device_id[:10])
        return {"device_id": device_id, "device_name": device.display_name}

    def register_credential(
        self,
        device_id: str,
        credential_id: str,
        public_key: str,
        nickname: Optional[str] = None,
    ) -> WebAuthnCredential:
        if not credential_id or not public_key:
            raise ValidationError("Credential id and public key are required", field="credential_id")
        with self._writing(device_id) as db:
            device = self._device_row(db, device_id)
            if not device.is_claimed:
                raise ValidationError("Device is not claimed", field="device_id")
            if db.get(WebAuthnCredential, credential_id) is not None:
                raise ValidationError("Credential already registered", field="credential_id")

            self._bind_owner(db, device.guid)
            credential = WebAuthnCredential(
                credential_id=credential_id,
                public_key=public_key,
                owner_guid=device.guid,
                device_guid=device_id,
                nickname=nickname,
                created_at=self.clock(),
            )
            db.add(credential)
        logger.info("Registered credential %s on device %s", credential_id[:10], device_id[:10])
        return credential

    def list_credentials(self, device_id: str) -> list[WebAuthnCredential]:
        with self._session(device_id) as db:
            return db.query(WebAuthnCredential).order_by(WebAuthnCredential.created_at).all()

    # ── Browsers ─────────────────────────────────────────────────────

    def add_browser(
        self,
        device_id: str,
        token: str,
        user_agent: Optional[str] = None,
        pending: bool = True,
    ) -> BrowserKey:
        """Associate a browser token with a device. Re-adding only refreshes it."""
        token = validate_browser_token(token)
        with self._writing(device_id) as db:
            self._device_row(db, device_id)
            now = self.clock()
            key = db.get(BrowserKey, token)
            if key is None:
                key = BrowserKey(
                    browser_id=token,
                    browser_family=detect_browser(user_agent),
                    user_agent=user_agent,
                    added_at=now,
                    last_used_at=now,
                    pending=pending,
                )
                db.add(key)
            else:
                key.last_used_at = now
                if user_agent:
                    key.user_agent = user_agent
                    key.browser_family = detect_browser(user_agent)
                if not pending:
                    key.pending = False

        # Pending associations never take a token over from another device
        self._index_call(self.index.add_browser, token, device_id, not key.pending)
        return key

    def confirm_pending_browsers(self, device_id: str) -> int:
        with self._writing(device_id) as db:
            self._device_row(db, device_id)
            tokens = [
                key.browser_id
                for key in db.query(BrowserKey).filter(BrowserKey.pending.is_(True)).all()
            ]
            if tokens:
                db.query(BrowserKey).filter(BrowserKey.browser_id.in_(tokens)).update(
                    {BrowserKey.pending: False}, synchronize_session=False,
                )

        # Verified now, so these tokens belong to this device
        for token in tokens:
            self._index_call(self.index.add_browser, token, device_id, True)
        if tokens:
            logger.info("Confirmed %d pending browser(s) on %s", len(tokens), device_id[:10])
        return len(tokens)

    def find_device_by_browser(self, token: str) -> Optional[str]:
        """Device id for a browser token; a token equal to a device id is the legacy form."""
        token = validate_browser_token(token)
        try:
            device_id = self.index.browser_device(token)
        except STORE_ERRORS as exc:
            raise StoreIOError(f"Device index unreadable: {exc}") from exc
        if device_id:
            return device_id
        if HEX64.match(token) and self.shard_path(token).exists():
            return token
        return None

    def touch_browser(self, device_id: str, token: str) -> bool:
        with self._writing(device_id) as db:
            key = db.get(BrowserKey, token)
            if key is None:
                return False
            key.last_used_at = self.clock()
            return True

    def get_browser(self, device_id: str, token: str) -> Optional[BrowserKey]:
        if self._factory(device_id) is None:
            return None
        with self._session(device_id) as db:
            return db.get(BrowserKey, token)

    def list_browsers(self, device_id: str) -> list[BrowserKey]:
        with self._session(device_id) as db:
            return db.query(BrowserKey).order_by(BrowserKey.added_at).all()

    def count_known_browsers(self, device_id: str) -> int:
        with self._session(device_id) as db:
            return db.query(BrowserKey).filter(BrowserKey.pending.is_(False)).count()

    # ── Access log ───────────────────────────────────────────────────

    def record_access(self, device_id: str, ip: str, user_agent: Optional[str] = None) -> AccessLog:
        if not ip or not isinstance(ip, str):
            raise ValidationError("Access requires an ip", field="ip")
        with self._writing(device_id) as db:
            self._device_row(db, device_id)
            entry = AccessLog(ip=ip, user_agent=user_agent, access_time=self.clock())
            db.add(entry)
        return entry

    def has_access_from(self, device_id: str, ip: Optional[str]) -> bool:
        if not ip:
            return False
        with self._session(device_id) as db:
            return db.query(AccessLog.id).filter(AccessLog.ip == ip).first() is not None

    def access_history(self, device_id: str, limit: int = 20) -> list[AccessLog]:
        with self._session(device_id) as db:
            return (
                db.query(AccessLog)
                .order_by(AccessLog.access_time.desc(), AccessLog.id.desc())
                .limit(limit)
                .all()
            )

    # ── Fingerprints ─────────────────────────────────────────────────

    def put_fingerprint_snapshot(self, device_id: str, snapshot: Any) -> FingerprintSnapshot:
        snapshot = FingerprintSnapshot.from_mapping(snapshot)
        with self._writing(device_id) as db:
            self._device_row(db, device_id)
            record = db.get(FingerprintRecord, 1)
            if record is None:
                record = FingerprintRecord(id=1)
                db.add(record)
            record.characteristics = snapshot.to_characteristics()
            record.browser_family = snapshot.browser
            record.updated_at = self.clock()
        return snapshot

    def get_fingerprint_snapshot(self, device_id: str) -> Optional[FingerprintSnapshot]:
        if self._factory(device_id) is None:
            return None
        with self._session(device_id) as db:
            record = db.get(FingerprintRecord, 1)
            if record is None:
                return None
            return FingerprintSnapshot.from_mapping(record.characteristics)

    # ── Change log plumbing ──────────────────────────────────────────

    def append_change(
        self,
        device_id: str,
        entity_table: str,
        entity_id: str,
        operation: Union[ChangeOperation, str],
        payload: Optional[dict] = None,
    ) -> ChangeLogEntry:
        """Apply a replicated-row change locally and log it for the device's siblings."""
        if entity_table not in REPLICATED_TABLES:
            raise ValidationError(f"Table {entity_table} is not replicated", field="entity_table")
        operation = ChangeOperation(operation)
        model, pk_name = REPLICATED_TABLES[entity_table]

        with self._writing(device_id) as db:
            device = self._device_row(db, device_id)
            if not device.is_claimed:
                raise ValidationError("Device is not claimed", field="device_id")
            self._bind_owner(db, device.guid)

            with self.tracker.suppress(db):
                row = db.get(model, entity_id)
                if operation == ChangeOperation.DELETE:
                    if row is not None:
                        db.delete(row)
                else:
                    if row is None:
                        row = model()
                        setattr(row, pk_name, entity_id)
                        db.add(row)
                    apply_payload(row, payload)
                    if entity_table == "owner_identity" and entity_id == device.guid:
                        device.handle = row.handle
                        device.phone = row.phone
                db.flush()

            entry = self.tracker.record(
                db, entity_table, entity_id, operation,
                row_payload(row) if operation == ChangeOperation.UPSERT else None,
            )
            with self.tracker.suppress(db):
                if operation == ChangeOperation.UPSERT:
                    row.hlc_version = entry.hlc_timestamp
                db.flush()

        if entity_table == "owner_identity":
            self._index_call(self.index.upsert_owner, device)
        return entry

    def unsynced_changes(
        self, device_id: str, limit: Optional[int] = None, offset: int = 0,
    ) -> list[ChangeLogEntry]:
        with self._session(device_id) as db:
            query = (
                db.query(ChangeLogEntry)
                .filter(ChangeLogEntry.synced.is_(False))
                .order_by(ChangeLogEntry.hlc_timestamp, ChangeLogEntry.id)
            )
            if offset:
                query = query.offset(offset)
            if limit:
                query = query.limit(limit)
            return query.all()

    def change_log(self, device_id: str, limit: int = 50) -> list[ChangeLogEntry]:
        with self._session(device_id) as db:
            return (
                db.query(ChangeLogEntry)
                .order_by(ChangeLogEntry.hlc_timestamp.desc())
                .limit(limit)
                .all()
            )

    def apply_change(self, device_id: str, entry: Union[ChangeLogEntry, dict]) -> bool:
        """Apply a sibling's entry without re-logging it.

        Last writer wins per row: the entry is applied only when its HLC is
        strictly newer than the row's hlc_version, so replays are no-ops.
        Returns whether anything changed.
        """
        data = entry if isinstance(entry, dict) else entry_to_dict(entry)
        entry_id = data.get("id")
        table = data.get("entity_table")
        if table not in REPLICATED_TABLES:
            raise ReplicationError(f"Unknown table: {table}", entry_id=entry_id, target_device_id=device_id)
        model, pk_name = REPLICATED_TABLES[table]
        ts = data["hlc_timestamp"]
        entity_id = data["entity_id"]
        try:
            self.hlc.receive(ts)
            operation = ChangeOperation(data["operation"])
        except ValueError as exc:
            raise ReplicationError(str(exc), entry_id=entry_id, target_device_id=device_id) from exc

        mirrored = None
        with self._writing(device_id) as db, self.tracker.suppress(db):
            row = db.get(model, entity_id)
            if row is not None and not is_newer(ts, row.hlc_version):
                return False

            if operation == ChangeOperation.DELETE:
                if row is None:
                    return False
                db.delete(row)
            else:
                if row is None:
                    row = model()
                    setattr(row, pk_name, entity_id)
                    db.add(row)
                apply_payload(row, data.get("payload"))
                row.hlc_version = ts

                # Owner profile edits flow into the device's own identity
                if table == "owner_identity":
                    device = db.get(DeviceInfo, device_id)
                    if device is not None and device.guid == entity_id:
                        device.handle = row.handle
                        device.phone = row.phone
                        mirrored = device
            db.flush()

        if mirrored is not None:
            self._index_call(self.index.upsert_owner, mirrored)
        logger.debug(
            "Applied %s %s/%s from %s to %s",
            operation.value, table, entity_id, data.get("origin_device_id", "?")[:10], device_id[:10],
        )
        return True

    def record_delivery(self, origin_device_id: str, entry_id: str, target_device_id: str) -> None:
        with self._writing(origin_device_id) as db:
            if db.get(ChangeDelivery, (entry_id, target_device_id)) is None:
                db.add(ChangeDelivery(
                    entry_id=entry_id,
                    target_device_id=target_device_id,
                    delivered_at=self.clock(),
                ))

    def delivered_targets(self, origin_device_id: str, entry_id: str) -> set[str]:
        with self._session(origin_device_id) as db:
            rows = db.query(ChangeDelivery.target_device_id).filter_by(entry_id=entry_id).all()
            return {r.target_device_id for r in rows}

    def mark_synced(self, device_id: str, entry_ids: Iterable[str]) -> int:
        entry_ids = list(entry_ids)
        if not entry_ids:
            return 0
        with self._writing(device_id) as db:
            return (
                db.query(ChangeLogEntry)
                .filter(ChangeLogEntry.id.in_(entry_ids))
                .update({ChangeLogEntry.synced: True}, synchronize_session=False)
            )

    def record_sync_state(self, device_id: str, status: str, detail: Optional[str] = None) -> SyncState:
        with self._writing(device_id) as db:
            state = SyncState(last_sync=self.clock(), status=status, detail=detail)
            db.add(state)
        return state

    def latest_sync_state(self, device_id: str) -> Optional[SyncState]:
        with self._session(device_id) as db:
            return db.query(SyncState).order_by(SyncState.last_sync.desc(), SyncState.id.desc()).first()

    def list_peers(self, device_id: str) -> list[PeerDevice]:
        with self._session(device_id) as db:
            return db.query(PeerDevice).order_by(PeerDevice.device_id).all()

    def replicated_rows(self, device_id: str) -> list[tuple[str, str, str, dict]]:
        """(table, entity id, hlc_version, payload) for every replicated row in a shard."""
        rows = []
        with self._session(device_id) as db:
            for table, (model, pk_name) in REPLICATED_TABLES.items():
                for row in db.query(model).all():
                    if row.hlc_version:
                        rows.append((table, str(getattr(row, pk_name)), row.hlc_version, row_payload(row)))
        return rows

    # ── Maintenance ──────────────────────────────────────────────────

    def rebuild_index(self) -> int:
        """Rewrite the owner/browser index from the shards. Returns devices indexed."""
        try:
            self.index.clear()
        except STORE_ERRORS as exc:
            raise StoreIOError(f"Device index unwritable: {exc}") from exc

        indexed = 0
        for device_id in self.all_device_ids():
            try:
                device = self.get_device(device_id)
                if device is None:
                    continue
                self.index.upsert_owner(device)
                for browser in self.list_browsers(device_id):
                    self.index.add_browser(browser.browser_id, device_id, not browser.pending)
            except (StoreIOError, *STORE_ERRORS):
                logger.exception("Could not index shard %s", device_id[:10])
                continue
            indexed += 1
        logger.info("Rebuilt index for %d device(s)", indexed)
        return indexed
