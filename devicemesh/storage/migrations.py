"""
Versioned schema for device shards and the index database.

Migrations run once when a shard or the index is opened; nothing on the
request path checks whether a table exists.
"""

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Column, Integer, MetaData, String, Table, select
from sqlalchemy.engine import Connection, Engine

from devicemesh.models import device as device_models
from devicemesh.models import index as index_models
from devicemesh.models.types import UTCDateTime, utcnow
from devicemesh.storage.database import DeviceBase, IndexBase

logger = logging.getLogger(__name__)

_version_metadata = MetaData()

schema_version = Table(
    "schema_version",
    _version_metadata,
    Column("version", Integer, primary_key=True),
    Column("name", String, nullable=False),
    Column("applied_at", UTCDateTime, nullable=False),
)


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _shard_initial_schema(conn: Connection) -> None:
    DeviceBase.metadata.create_all(conn, tables=[
        device_models.DeviceInfo.__table__,
        device_models.BrowserKey.__table__,
        device_models.AccessLog.__table__,
        device_models.FingerprintRecord.__table__,
        device_models.WebAuthnCredential.__table__,
        device_models.PeerDevice.__table__,
        device_models.OwnerIdentity.__table__,
        device_models.ChangeLogEntry.__table__,
        device_models.ChangeDelivery.__table__,
        device_models.SyncState.__table__,
    ])


def _index_initial_schema(conn: Connection) -> None:
    IndexBase.metadata.create_all(conn, tables=[
        index_models.OwnerIndexEntry.__table__,
        index_models.BrowserIndexEntry.__table__,
    ])


SHARD_MIGRATIONS: list[Migration] = [
    Migration(1, "initial_shard_schema", _shard_initial_schema),
]

INDEX_MIGRATIONS: list[Migration] = [
    Migration(1, "initial_index_schema", _index_initial_schema),
]


def current_version(conn: Connection) -> int:
    _version_metadata.create_all(conn, tables=[schema_version])
    versions = conn.execute(select(schema_version.c.version)).scalars().all()
    return max(versions, default=0)


def migrate(engine: Engine, migrations: list[Migration]) -> list[int]:
    """Apply pending migrations in one transaction. Returns the versions applied."""
    applied = []
    with engine.begin() as conn:
        version = current_version(conn)
        for migration in sorted(migrations, key=lambda m: m.version):
            if migration.version <= version:
                continue
            migration.apply(conn)
            conn.execute(schema_version.insert().values(
                version=migration.version,
                name=migration.name,
                applied_at=utcnow(),
            ))
            applied.append(migration.version)
    if applied:
        logger.debug("Applied migrations %s on %s", applied, engine.url)
    return applied
