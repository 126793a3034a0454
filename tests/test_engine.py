import asyncio

import pytest

from devicemesh.sync.engine import SyncEngine
from devicemesh.sync.replicator import Replicator

from conftest import device_id


@pytest.fixture
def engine(store):
    engine = SyncEngine(interval_seconds=3600, enabled=True)
    engine.initialize(replicator=Replicator(store, timeout=30))
    return engine


def test_uninitialized_engine_refuses_to_sync():
    with pytest.raises(RuntimeError):
        asyncio.run(SyncEngine().sync_now())


def test_sync_now_for_one_device(engine, claimed, store):
    claimed(1)
    claimed(2)

    result = asyncio.run(engine.sync_now(device_id(1)))

    assert result["status"] == "success"
    assert result["pulled"] == 2
    status = engine.status()
    assert status["last_result"] == result
    assert status["failed_passes"] == 0
    assert status["last_pass_at"] is not None
    assert store.unsynced_changes(device_id(2)) == []


def test_sync_now_for_every_device(engine, claimed):
    claimed(1)
    claimed(2)
    result = asyncio.run(engine.sync_now())
    assert result["devices"] == 2
    assert result["errors"] == []


def test_request_sync_wakes_the_worker(engine, claimed, store):
    claimed(1)
    claimed(2)

    async def cycle():
        await engine.start_auto_sync()
        engine.request_sync(device_id(1))
        for _ in range(500):
            if engine.status()["last_result"] is not None:
                break
            await asyncio.sleep(0.01)
        await engine.stop_auto_sync()

    asyncio.run(cycle())

    assert engine.status()["last_result"]["device_id"] == device_id(1)
    assert store.unsynced_changes(device_id(1)) == []
    assert not engine.status()["auto_sync_running"]


def test_disabled_engine_does_not_start(store):
    engine = SyncEngine(enabled=False)
    engine.initialize(store=store)

    async def cycle():
        await engine.start_auto_sync()
        return engine.running

    assert asyncio.run(cycle()) is False
