from concurrent.futures import ThreadPoolExecutor

import pytest

from devicemesh.errors import DeviceNotFoundError, SecurityBoundaryError, StoreIOError, ValidationError
from devicemesh.models.device import ChangeOperation, DeviceType
from devicemesh.storage.device_store import Identity

from conftest import ALICE, BOB, CHROME_UA, MAC_CHROME, NOW, device_id


# ── Records ──────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("bad", ["", "abc", "G" * 64, "A" * 64, "0" * 63, "../" + "0" * 61, None])
def test_create_device_rejects_malformed_ids(store, bad):
    with pytest.raises(ValidationError):
        store.create_device(bad)


def test_create_device_is_idempotent(store, clock):
    first = store.create_device(device_id(1), user_agent=CHROME_UA)
    clock.advance(hours=1)
    second = store.create_device(device_id(1))
    assert second.created_at == first.created_at == NOW
    assert not second.is_claimed
    assert second.device_type == DeviceType.desktop


def test_get_device_for_unknown_id_is_none(store):
    assert store.get_device(device_id(404)) is None


def test_claim_round_trip(store):
    store.create_device(device_id(1))
    store.claim(device_id(1), ALICE)

    device = store.get_device(device_id(1))
    assert (device.handle, device.guid, device.phone) == (ALICE.handle, ALICE.guid, ALICE.phone)
    assert device.last_verified_at == NOW
    assert device.is_claimed


def test_claim_logs_owner_and_peer_changes(store):
    store.create_device(device_id(1))
    store.claim(device_id(1), ALICE)

    entries = store.unsynced_changes(device_id(1))
    assert {(e.entity_table, e.entity_id) for e in entries} == {
        ("owner_identity", ALICE.guid),
        ("peer_devices", device_id(1)),
    }
    assert all(e.owner_guid == ALICE.guid for e in entries)
    assert all(e.origin_device_id == device_id(1) for e in entries)

    peer = store.list_peers(device_id(1))[0]
    assert peer.hlc_version == next(e.hlc_timestamp for e in entries if e.entity_table == "peer_devices")


def test_claim_by_another_owner_is_refused(store, claimed):
    claimed(1)
    with pytest.raises(SecurityBoundaryError):
        store.claim(device_id(1), BOB)
    assert store.get_device(device_id(1)).handle == ALICE.handle


def test_claim_requires_the_whole_identity(store):
    store.create_device(device_id(1))
    with pytest.raises(ValidationError):
        store.claim(device_id(1), Identity(handle="@alice", guid="", phone="+1555"))


def test_mark_verified_refreshes_timestamp(store, claimed, clock):
    claimed(1)
    later = clock.advance(days=3)
    assert store.mark_verified(device_id(1)).last_verified_at == later


def test_mark_verified_needs_a_claimed_device(store):
    store.create_device(device_id(1))
    with pytest.raises(ValidationError):
        store.mark_verified(device_id(1))
    with pytest.raises(DeviceNotFoundError):
        store.mark_verified(device_id(2))


def test_find_devices_by_owner_orders_by_last_verified(store, claimed, clock):
    claimed(1)
    clock.advance(days=1)
    claimed(2)
    clock.advance(days=1)
    claimed(3, identity=BOB)

    ids = [d.device_id for d in store.find_devices_by_owner(handle=ALICE.handle)]
    assert ids == [device_id(2), device_id(1)]
    assert store.owner_device_ids(guid=BOB.guid) == [device_id(3)]
    assert store.find_devices_by_owner() == []


# ── Browsers, access, fingerprints ───────────────────────────────────────────

def test_browser_lifecycle(store, claimed):
    claimed(1)
    store.add_browser(device_id(1), "tok-safari", user_agent="Safari/605.1.15")
    assert store.count_known_browsers(device_id(1)) == 0
    assert store.find_device_by_browser("tok-safari") == device_id(1)

    assert store.confirm_pending_browsers(device_id(1)) == 1
    assert store.confirm_pending_browsers(device_id(1)) == 0
    assert store.count_known_browsers(device_id(1)) == 1
    assert store.get_browser(device_id(1), "tok-safari").browser_family == "Safari"


def test_pending_browser_does_not_take_over_a_bound_token(store, claimed):
    claimed(1, browser="tok-shared")
    claimed(2, identity=BOB)

    store.add_browser(device_id(2), "tok-shared")
    assert store.find_device_by_browser("tok-shared") == device_id(1)

    # Verification on device 2 is what moves the token
    store.confirm_pending_browsers(device_id(2))
    assert store.find_device_by_browser("tok-shared") == device_id(2)


def test_find_device_by_browser_falls_back_to_legacy_token(store):
    store.create_device(device_id(5))
    assert store.find_device_by_browser(device_id(5)) == device_id(5)
    assert store.find_device_by_browser("never-seen") is None
    with pytest.raises(ValidationError):
        store.find_device_by_browser("has spaces")


def test_touch_browser(store, claimed, clock):
    claimed(1, browser="tok-1")
    later = clock.advance(minutes=5)
    assert store.touch_browser(device_id(1), "tok-1")
    assert store.get_browser(device_id(1), "tok-1").last_used_at == later
    assert not store.touch_browser(device_id(1), "tok-2")


def test_access_log(store, claimed):
    claimed(1)
    store.record_access(device_id(1), "203.0.113.7", CHROME_UA)
    assert store.has_access_from(device_id(1), "203.0.113.7")
    assert not store.has_access_from(device_id(1), "198.51.100.1")
    assert not store.has_access_from(device_id(1), None)


def test_fingerprint_snapshot_is_overwritten(store, claimed):
    claimed(1, snapshot=MAC_CHROME)
    assert store.get_fingerprint_snapshot(device_id(1)).platform == "MacIntel"

    store.put_fingerprint_snapshot(device_id(1), {**MAC_CHROME, "platform": "Win32"})
    snapshot = store.get_fingerprint_snapshot(device_id(1))
    assert snapshot.platform == "Win32"
    assert snapshot.cpu_model == "Apple M1"


# ── Reset and management ─────────────────────────────────────────────────────

def test_reset_clears_owner_and_dependents(store, claimed):
    claimed(1, browser="tok-1", snapshot=MAC_CHROME)
    store.record_access(device_id(1), "203.0.113.7")
    store.register_credential(device_id(1), "cred-1", "pk-1")

    device = store.reset_device(device_id(1))

    assert device.device_id == device_id(1)
    assert not device.is_claimed
    assert device.handle is None and device.guid is None and device.phone is None
    assert store.count_known_browsers(device_id(1)) == 0
    assert store.get_fingerprint_snapshot(device_id(1)) is None
    assert not store.has_access_from(device_id(1), "203.0.113.7")
    assert store.list_credentials(device_id(1)) == []
    assert store.find_device_by_browser("tok-1") is None
    assert store.find_devices_by_owner(handle=ALICE.handle) == []

    [own_peer] = store.list_peers(device_id(1))
    assert own_peer.signed_out


def test_reset_is_change_logged_for_the_previous_owner(store, claimed):
    claimed(1)
    store.register_credential(device_id(1), "cred-1", "pk-1")
    store.reset_device(device_id(1))

    ops = {(e.entity_table, e.operation) for e in store.unsynced_changes(device_id(1))}
    assert ("peer_devices", ChangeOperation.UPSERT) in ops
    assert ("webauthn_credentials", ChangeOperation.DELETE) in ops


def test_rename_and_trust_replicate_through_peer_row(store, claimed):
    claimed(1)
    before = len(store.unsynced_changes(device_id(1)))
    store.rename_device(device_id(1), "  Work laptop ")
    store.set_trusted(device_id(1), True)

    device = store.get_device(device_id(1))
    assert device.display_name == "Work laptop"
    assert device.is_trusted
    assert len(store.unsynced_changes(device_id(1))) == before + 2
    assert store.list_peers(device_id(1))[0].device_name == "Work laptop"


def test_remove_device(store, claimed):
    claimed(1)
    claimed(2)
    with pytest.raises(ValidationError):
        store.remove_device(device_id(1), current_device_id=device_id(1))

    store.remove_device(device_id(2), current_device_id=device_id(1))

    assert store.get_device(device_id(2)) is None
    assert not store.shard_path(device_id(2)).exists()
    assert store.owner_device_ids(guid=ALICE.guid) == [device_id(1)]
    deletes = [
        e for e in store.unsynced_changes(device_id(1))
        if e.operation == ChangeOperation.DELETE and e.entity_table == "peer_devices"
    ]
    assert [e.entity_id for e in deletes] == [device_id(2)]


def test_register_credential(store, claimed):
    claimed(1)
    credential = store.register_credential(device_id(1), "cred-1", "pk-1", nickname="Touch ID")
    assert credential.owner_guid == ALICE.guid
    assert credential.device_guid == device_id(1)
    with pytest.raises(ValidationError):
        store.register_credential(device_id(1), "cred-1", "pk-2")
    assert [c.credential_id for c in store.list_credentials(device_id(1))] == ["cred-1"]


# ── Failure and maintenance ──────────────────────────────────────────────────

def test_corrupt_shard_raises_store_io_error(store):
    path = store.shard_path(device_id(9))
    path.write_bytes(b"this is not a sqlite database " * 64)
    with pytest.raises(StoreIOError):
        store.get_device(device_id(9))


def test_rebuild_index_restores_lookups(store, claimed):
    claimed(1, browser="tok-1")
    claimed(2, identity=BOB)
    store.index.clear()
    assert store.find_devices_by_owner(handle=ALICE.handle) == []

    assert store.rebuild_index() == 2
    assert [d.device_id for d in store.find_devices_by_owner(handle=ALICE.handle)] == [device_id(1)]
    assert store.find_device_by_browser("tok-1") == device_id(1)


def test_rebuild_index_skips_corrupt_shards(store, claimed):
    claimed(1)
    store.shard_path(device_id(9)).write_bytes(b"garbage " * 200)
    assert store.rebuild_index() == 1


# ── Concurrency ──────────────────────────────────────────────────────────────

def test_concurrent_mutations_of_one_device_are_serialized(store, claimed):
    claimed(1)
    logged_before = len(store.change_log(device_id(1), limit=500))

    def mutate(n):
        store.register_credential(device_id(1), f"cred-{n}", f"pk-{n}")
        store.add_browser(device_id(1), f"tok-{n}", CHROME_UA)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(mutate, range(20)))

    assert store.confirm_pending_browsers(device_id(1)) == 20
    assert store.count_known_browsers(device_id(1)) == 20
    assert len(store.list_credentials(device_id(1))) == 20

    entries = store.change_log(device_id(1), limit=500)
    credential_entries = [e for e in entries if e.entity_table == "webauthn_credentials"]
    assert len(entries) == logged_before + 20
    assert sorted(e.entity_id for e in credential_entries) == sorted(f"cred-{n}" for n in range(20))
    assert len({e.hlc_timestamp for e in entries}) == len(entries)
