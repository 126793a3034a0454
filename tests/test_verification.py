import pytest

from devicemesh.errors import VerificationError
from devicemesh.recognition import InMemoryOwnerLookup, InMemoryVerifier, Owner, VerificationFlow
from devicemesh.sync.replicator import Replicator

from conftest import ALICE, BOB, CHROME_UA, MAC_CHROME, NOW, device_id


@pytest.fixture
def verifier(clock):
    return InMemoryVerifier(ttl_minutes=10, clock=clock)


@pytest.fixture
def flow(store, verifier, clock):
    owners = InMemoryOwnerLookup([
        Owner(ALICE.handle, ALICE.guid, ALICE.phone),
        Owner(BOB.handle, BOB.guid, BOB.phone, has_pin=True),
    ])
    return VerificationFlow(
        store, owners, verifier,
        replicator=Replicator(store, timeout=30),
        max_attempts=3,
        window_minutes=15,
        clock=clock,
    )


def verify(flow, verifier, n, phone, **kwargs):
    flow.start(phone)
    return flow.complete(device_id(n), phone, verifier.issued_code(phone), **kwargs)


def wrong_code(verifier, phone):
    return f"{(int(verifier.issued_code(phone)) + 1) % 1_000_000:06d}"


def test_start_masks_the_phone(flow):
    assert flow.start(ALICE.phone) == "***-***-1111"


def test_unknown_phone_cannot_start(flow):
    with pytest.raises(VerificationError):
        flow.start("+19995550000")


def test_code_claims_a_new_device(store, flow, verifier):
    result = verify(
        flow, verifier, 1, ALICE.phone,
        browser_token="tok-1", user_agent=CHROME_UA, ip="203.0.113.7", characteristics=MAC_CHROME,
    )

    assert result.newly_claimed
    assert result.device.handle == ALICE.handle
    assert result.device.last_verified_at == NOW
    assert store.count_known_browsers(device_id(1)) == 1
    assert store.has_access_from(device_id(1), "203.0.113.7")
    assert store.get_fingerprint_snapshot(device_id(1)).platform == "MacIntel"
    assert store.find_device_by_browser("tok-1") == device_id(1)


def test_verification_confirms_pending_browsers(store, flow, verifier):
    store.create_device(device_id(1))
    store.add_browser(device_id(1), "tok-earlier")

    result = verify(flow, verifier, 1, ALICE.phone, browser_token="tok-now")

    assert result.browsers_confirmed == 1
    assert store.count_known_browsers(device_id(1)) == 2


def test_wrong_code_changes_nothing(store, flow, verifier):
    flow.start(ALICE.phone)
    with pytest.raises(VerificationError):
        flow.complete(device_id(1), ALICE.phone, wrong_code(verifier, ALICE.phone))
    assert store.get_device(device_id(1)) is None


def test_expired_code_is_refused(flow, verifier, clock):
    flow.start(ALICE.phone)
    code = verifier.issued_code(ALICE.phone)
    clock.advance(minutes=11)
    with pytest.raises(VerificationError):
        flow.complete(device_id(1), ALICE.phone, code)


def test_repeated_failures_are_throttled(store, flow, verifier, clock):
    flow.start(ALICE.phone)
    for _ in range(3):
        with pytest.raises(VerificationError, match="Invalid"):
            flow.complete(device_id(1), ALICE.phone, wrong_code(verifier, ALICE.phone))

    with pytest.raises(VerificationError, match="Too many"):
        flow.complete(device_id(1), ALICE.phone, verifier.issued_code(ALICE.phone))

    clock.advance(minutes=16)
    assert verify(flow, verifier, 1, ALICE.phone).newly_claimed


def test_expired_failures_are_forgotten(flow, verifier, clock):
    flow.start(ALICE.phone)
    with pytest.raises(VerificationError):
        flow.complete(device_id(1), ALICE.phone, wrong_code(verifier, ALICE.phone))
    assert ALICE.phone in flow._failures

    clock.advance(minutes=16)
    flow.start(ALICE.phone)
    assert ALICE.phone not in flow._failures


def test_same_owner_reverification_refreshes(flow, verifier, clock):
    verify(flow, verifier, 1, ALICE.phone)
    later = clock.advance(days=10)
    result = verify(flow, verifier, 1, ALICE.phone)
    assert not result.newly_claimed
    assert result.device.last_verified_at == later


def test_another_owner_verifying_resets_the_device(store, flow, verifier):
    verify(flow, verifier, 1, ALICE.phone, browser_token="tok-alice", characteristics=MAC_CHROME)

    result = verify(flow, verifier, 1, BOB.phone, browser_token="tok-bob")

    assert result.newly_claimed
    assert result.device.handle == BOB.handle
    assert store.find_device_by_browser("tok-alice") is None
    assert store.find_device_by_browser("tok-bob") == device_id(1)
    assert store.find_devices_by_owner(handle=ALICE.handle) == []
    assert store.get_fingerprint_snapshot(device_id(1)) is None


def test_new_device_is_seeded_from_its_siblings(store, claimed, flow, verifier):
    claimed(2)
    store.register_credential(device_id(2), "cred-2", "pk-2")

    result = verify(flow, verifier, 1, ALICE.phone)

    assert result.rows_cloned == 2
    assert [c.credential_id for c in store.list_credentials(device_id(1))] == ["cred-2"]
    assert device_id(2) in [p.device_id for p in store.list_peers(device_id(1))]
