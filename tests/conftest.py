from datetime import datetime, timedelta, timezone

import pytest

from devicemesh.storage.device_store import DeviceStore, Identity
from devicemesh.sync.clock import HybridLogicalClock

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

ALICE = Identity(handle="@alice", guid="guid-alice", phone="+15550001111")
BOB = Identity(handle="@bob", guid="guid-bob", phone="+15550002222")

CHROME_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
SAFARI_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Safari/605.1.15"
)

MAC_CHROME = {
    "platform": "MacIntel",
    "timezone": "Europe/London",
    "screenWidth": 1512,
    "screenHeight": 982,
    "devicePixelRatio": 2.0,
    "cpuModel": "Apple M1",
    "browserFamily": "Chrome",
}


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def device_id(n: int) -> str:
    return f"{n:064x}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    store = DeviceStore(
        devices_dir=tmp_path / "devices",
        index_url=f"sqlite:///{tmp_path / 'index.sqlite3'}",
        clock=clock,
        hlc=HybridLogicalClock("test-node"),
    )
    yield store
    store.close()


@pytest.fixture
def claimed(store):
    """Factory: an alice-owned device, optionally with a confirmed browser."""

    def make(n: int, identity: Identity = ALICE, browser: str = None, snapshot: dict = None):
        store.create_device(device_id(n), user_agent=CHROME_UA)
        store.claim(device_id(n), identity)
        if browser:
            store.add_browser(device_id(n), browser, CHROME_UA, pending=False)
        if snapshot:
            store.put_fingerprint_snapshot(device_id(n), snapshot)
        return store.get_device(device_id(n))

    return make
