import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from devicemesh.config.settings import settings

# Per-device shard tables and the owner/browser index live in separate files,
# so they get separate metadata.
DeviceBase = declarative_base()
IndexBase = declarative_base()


def make_engine(url: str, timeout: Optional[float] = None) -> Engine:
    engine = create_engine(
        url,
        connect_args={
            "check_same_thread": False,  # SQLite specific
            "timeout": timeout or settings.sqlite_timeout_seconds,
        },
        echo=False,
    )
    event.listen(engine, "connect", _enable_sqlite_pragmas)
    return engine


def _enable_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def shard_url(devices_dir: Path, device_id: str) -> str:
    return f"sqlite:///{devices_dir / f'{device_id}.sqlite3'}"


def make_session_factory(engine: Engine, **kwargs) -> sessionmaker:
    # Objects handed back to callers outlive the session that loaded them.
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine, **kwargs)


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


class KeyedLocks:
    """One re-entrant lock per key, created on demand.

    Serializes writers of a single device shard (or a single phone number in
    the verification flow) without a process-wide mutex.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None):
        lock = self.get(key)
        acquired = lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            raise TimeoutError(f"Timed out waiting for lock on {key}")
        try:
            yield
        finally:
            lock.release()

    def discard(self, key: str) -> None:
        with self._guard:
            self._locks.pop(key, None)


class Deadline:
    """Monotonic deadline carried through resolution and sync passes."""

    def __init__(self, seconds: Optional[float]):
        self._expires_at = None if seconds is None else time.monotonic() + seconds

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())
