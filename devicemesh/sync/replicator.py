"""
Change log replicator — fans identity-affecting changes out to sibling shards.

Push: every unsynced entry of a device is applied to each current sibling
      (same owner) that has not received it yet; a delivery receipt is kept at
      the origin and the entry is marked synced once every sibling has it.
Pull: the unsynced entries of each sibling are pushed to this device only.

Appliers are idempotent (HLC last-writer-wins per row), so a crash between
apply and receipt only costs a redundant no-op apply on the next pass.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Optional, Union

from devicemesh.config.settings import settings
from devicemesh.errors import DeviceMeshError, ReplicationError
from devicemesh.models.device import ChangeLogEntry, ChangeOperation
from devicemesh.storage.database import Deadline
from devicemesh.storage.device_store import DeviceStore

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    device_id: str
    siblings: list[str] = field(default_factory=list)
    pushed: int = 0             # entries applied on a sibling
    pulled: int = 0             # sibling entries applied here
    unchanged: int = 0          # deliveries that were already up to date
    marked_synced: int = 0
    errors: list[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def status(self) -> str:
        if self.timed_out:
            return "timeout"
        return "partial" if self.errors else "success"

    def to_dict(self) -> dict:
        result = asdict(self)
        result["status"] = self.status
        return result


class Replicator:

    def __init__(
        self,
        store: DeviceStore,
        timeout: Optional[float] = None,
        batch_size: Optional[int] = None,
    ):
        self.store = store
        self.timeout = settings.sync_timeout_seconds if timeout is None else timeout
        self.batch_size = batch_size or settings.sync_max_batch_size

    def siblings(self, device_id: str) -> list[str]:
        """Other devices of the same owner that still have a shard."""
        device = self.store.get_device(device_id)
        if device is None or not device.is_claimed:
            return []
        return [
            d for d in self.store.owner_device_ids(guid=device.guid)
            if d != device_id and self.store.has_device(d)
        ]

    def append_change(
        self,
        device_id: str,
        entity_table: str,
        entity_id: str,
        operation: Union[ChangeOperation, str],
        payload: Optional[dict] = None,
    ) -> ChangeLogEntry:
        return self.store.append_change(device_id, entity_table, entity_id, operation, payload)

    # ── Sync ─────────────────────────────────────────────────────────

    def sync_device(self, device_id: str, deadline: Optional[Deadline] = None) -> SyncReport:
        """Push this device's changes, then pull each sibling's pending changes."""
        deadline = deadline or Deadline(self.timeout)
        report = SyncReport(device_id=device_id, siblings=self.siblings(device_id))

        self._push(device_id, report, deadline)
        for sibling in report.siblings:
            if deadline.expired:
                report.timed_out = True
                break
            try:
                self._push(sibling, report, deadline, only_target=device_id)
            except DeviceMeshError as exc:
                logger.warning("Could not pull from %s: %s", sibling[:10], exc)
                report.errors.append(f"{sibling[:10]}: {exc}")

        self._record(device_id, report)
        logger.info(
            "Sync %s: pushed %d, pulled %d, %d unchanged, %d error(s)%s",
            device_id[:10], report.pushed, report.pulled, report.unchanged,
            len(report.errors), " (timed out)" if report.timed_out else "",
        )
        return report

    def sync_all(self) -> dict:
        """Push every device's pending changes once."""
        deadline = Deadline(self.timeout)
        totals = {"devices": 0, "pushed": 0, "marked_synced": 0, "errors": [], "timed_out": False}

        for device_id in self.store.all_device_ids():
            if deadline.expired:
                totals["timed_out"] = True
                break
            report = SyncReport(device_id=device_id)
            try:
                self._push(device_id, report, deadline)
            except DeviceMeshError as exc:
                logger.warning("Skipping device %s in sync pass: %s", device_id[:10], exc)
                totals["errors"].append(f"{device_id[:10]}: {exc}")
                continue
            totals["devices"] += 1
            totals["pushed"] += report.pushed
            totals["marked_synced"] += report.marked_synced
            totals["errors"].extend(report.errors)
            totals["timed_out"] = totals["timed_out"] or report.timed_out
            if report.pushed or report.errors:
                self._record(device_id, report)

        logger.info(
            "Sync pass over %d device(s): %d deliveries, %d error(s)",
            totals["devices"], totals["pushed"], len(totals["errors"]),
        )
        return totals

    def _push(
        self,
        origin: str,
        report: SyncReport,
        deadline: Deadline,
        only_target: Optional[str] = None,
    ) -> None:
        """Deliver up to `batch_size` entries that still have a reachable target.

        A target that fails once is skipped for the rest of the pass, and
        entries waiting only on failed targets do not use up the batch, so one
        broken sibling never holds back the others.
        """
        targets_by_owner: dict[str, list[str]] = {}
        failed: set[str] = set()
        synced = []
        budget = self.batch_size
        offset = 0

        while budget > 0 and not report.timed_out:
            entries = self.store.unsynced_changes(origin, limit=self.batch_size, offset=offset)
            if not entries:
                break
            offset += len(entries)

            for entry in entries:
                if deadline.expired:
                    report.timed_out = True
                    break

                targets = targets_by_owner.get(entry.owner_guid)
                if targets is None:
                    targets = [
                        d for d in self.store.owner_device_ids(guid=entry.owner_guid)
                        if d != origin and self.store.has_device(d)
                    ]
                    targets_by_owner[entry.owner_guid] = targets

                delivered = self.store.delivered_targets(origin, entry.id)
                reachable = [
                    t for t in targets
                    if t not in delivered and t not in failed and (not only_target or t == only_target)
                ]
                if reachable:
                    budget -= 1
                for target in reachable:
                    if self._deliver(origin, entry, target, report):
                        delivered.add(target)
                    else:
                        failed.add(target)

                if all(t in delivered for t in targets):
                    synced.append(entry.id)
                if budget <= 0:
                    break

        report.marked_synced += self.store.mark_synced(origin, synced)

    def _deliver(self, origin: str, entry: ChangeLogEntry, target: str, report: SyncReport) -> bool:
        try:
            applied = self.store.apply_change(target, entry)
            self.store.record_delivery(origin, entry.id, target)
        except DeviceMeshError as exc:
            error = exc if isinstance(exc, ReplicationError) else ReplicationError(
                f"Apply {entry.entity_table}/{entry.entity_id} on {target[:10]} failed: {exc}",
                entry_id=entry.id,
                target_device_id=target,
            )
            logger.warning("Replication failed, will retry next pass: %s", error)
            report.errors.append(str(error))
            return False

        if not applied:
            report.unchanged += 1
        elif target == report.device_id:
            report.pulled += 1
        else:
            report.pushed += 1
        return True

    def _record(self, device_id: str, report: SyncReport) -> None:
        detail = json.dumps({
            "pushed": report.pushed,
            "pulled": report.pulled,
            "unchanged": report.unchanged,
            "errors": report.errors[:10],
        })
        try:
            self.store.record_sync_state(device_id, report.status, detail)
        except DeviceMeshError:
            logger.exception("Could not record sync state for %s", device_id[:10])

    # ── Initial clone (newly claimed device) ─────────────────────────

    def initial_clone(self, device_id: str) -> int:
        """Copy every replicated row the siblings hold into a newly claimed device.

        Already-synced entries are never delivered again, so a device joining
        an owner starts from the siblings' current rows instead.
        """
        applied = 0
        for sibling in self.siblings(device_id):
            try:
                rows = self.store.replicated_rows(sibling)
            except DeviceMeshError:
                logger.exception("Could not read sibling %s for clone", sibling[:10])
                continue
            for table, entity_id, version, payload in rows:
                entry = {
                    "id": None,
                    "hlc_timestamp": version,
                    "origin_device_id": sibling,
                    "entity_table": table,
                    "entity_id": entity_id,
                    "operation": ChangeOperation.UPSERT.value,
                    "payload": payload,
                }
                if self.store.apply_change(device_id, entry):
                    applied += 1
        logger.info("Initial clone of %s applied %d row(s)", device_id[:10], applied)
        return applied
