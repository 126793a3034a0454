"""
Background replication for every device shard in this process.

Two triggers feed the same worker:
  - request_sync(device_id): a mutation just happened on that shard; push it
    (and pull its siblings) soon.
  - the interval timer: a full pass over every shard, which also retries
    deliveries that failed earlier.

Only one pass runs at a time. Replicator calls are blocking SQLite work and
run in a worker thread.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from devicemesh.config.settings import settings
from devicemesh.models.types import utcnow
from devicemesh.storage.device_store import DeviceStore, validate_device_id
from devicemesh.sync.replicator import Replicator

logger = logging.getLogger(__name__)


class SyncEngine:

    def __init__(self, interval_seconds: Optional[int] = None, enabled: Optional[bool] = None):
        self._replicator: Optional[Replicator] = None
        self._interval = interval_seconds
        self.enabled = settings.sync_enabled if enabled is None else enabled
        self._pass_lock = asyncio.Lock()
        self._wakeup: Optional[asyncio.Event] = None
        self._pending: set[str] = set()
        self._worker: Optional[asyncio.Task] = None
        self._last_result: Optional[dict] = None
        self._last_pass_at: Optional[datetime] = None
        self._failed_passes = 0

    @property
    def interval_seconds(self) -> int:
        return self._interval or settings.sync_interval_seconds

    @property
    def replicator(self) -> Replicator:
        if self._replicator is None:
            raise RuntimeError("Sync engine not initialized")
        return self._replicator

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def initialize(self, store: Optional[DeviceStore] = None, replicator: Optional[Replicator] = None) -> dict:
        if replicator is None:
            replicator = Replicator(store or DeviceStore())
        self._replicator = replicator
        devices = len(replicator.store.all_device_ids())
        logger.info("Sync engine ready over %d shard(s) in %s", devices, replicator.store.devices_dir)
        return {"devices_dir": str(replicator.store.devices_dir), "devices": devices}

    # ── Passes ───────────────────────────────────────────────────────

    async def sync_now(self, device_id: Optional[str] = None) -> dict:
        """Run one pass now: a single device's push/pull, or every shard."""
        replicator = self.replicator
        async with self._pass_lock:
            if device_id:
                report = await asyncio.to_thread(replicator.sync_device, device_id)
                result = report.to_dict()
                failed = bool(report.errors) or report.timed_out
            else:
                result = await asyncio.to_thread(replicator.sync_all)
                failed = bool(result["errors"]) or result["timed_out"]

        self._failed_passes = self._failed_passes + 1 if failed else 0
        self._last_pass_at = utcnow()
        self._last_result = result
        return result

    def request_sync(self, device_id: str) -> None:
        """Queue a device whose shard just changed for the next worker wakeup."""
        self._pending.add(validate_device_id(device_id))
        if self._wakeup is not None:
            self._wakeup.set()

    async def _drain_pending(self) -> None:
        while self._pending:
            device_id = self._pending.pop()
            try:
                await self.sync_now(device_id)
            except Exception:
                logger.exception("Sync of %s failed; the next full pass retries it", device_id[:10])

    # ── Worker ───────────────────────────────────────────────────────

    async def start_auto_sync(self) -> None:
        if not self.enabled:
            logger.info("Auto-sync disabled")
            return
        if self.running:
            return
        self._wakeup = asyncio.Event()
        self._worker = asyncio.create_task(self._run())
        logger.info("Auto-sync started (interval: %ds)", self.interval_seconds)

    async def stop_auto_sync(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        self._wakeup = None
        logger.info("Auto-sync stopped")

    async def _run(self) -> None:
        while True:
            try:
                woken = await self._wait(self.interval_seconds)
                if woken:
                    await self._drain_pending()
                else:
                    await self.sync_now()
            except asyncio.CancelledError:
                break
            except Exception:
                self._failed_passes += 1
                logger.exception("Auto-sync pass failed")

    async def _wait(self, timeout: float) -> bool:
        """True when woken by request_sync, False when the interval elapsed."""
        if self._pending:
            return True
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            self._wakeup.clear()
        return True

    # ── Status ───────────────────────────────────────────────────────

    def status(self) -> dict:
        return {
            "initialized": self._replicator is not None,
            "sync_enabled": self.enabled,
            "auto_sync_running": self.running,
            "sync_interval_seconds": self.interval_seconds,
            "pending_devices": sorted(d[:10] for d in self._pending),
            "last_pass_at": self._last_pass_at.isoformat() if self._last_pass_at else None,
            "failed_passes": self._failed_passes,
            "last_result": self._last_result,
        }


# Shared by the CLI and any host application
sync_engine = SyncEngine()
