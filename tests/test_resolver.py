import json

import pytest

from devicemesh.errors import ValidationError
from devicemesh.recognition import (
    DecisionStatus,
    DeviceResolver,
    InMemoryOwnerLookup,
    Owner,
    ResolutionState,
)
from devicemesh.scoring import ConfidenceLevel, ConfidenceScorer, MatchType, Thresholds

from conftest import ALICE, BOB, MAC_CHROME, NOW, SAFARI_UA, device_id

SAFARI_ON_SAME_MAC = {**MAC_CHROME, "browserFamily": "Safari"}

WINDOWS_FIREFOX = {
    "platform": "Win32",
    "timezone": "America/Chicago",
    "screenWidth": 1920,
    "screenHeight": 1080,
    "devicePixelRatio": 1.0,
    "cpuModel": "Intel Core i7-9750H",
    "browserFamily": "Firefox",
}


def make_resolver(store, owners=None, **kwargs):
    return DeviceResolver(store, owners=owners, scorer=ConfidenceScorer(Thresholds()), timeout=5, **kwargs)


def owners_with(has_pin):
    return InMemoryOwnerLookup([Owner(ALICE.handle, ALICE.guid, ALICE.phone, has_pin=has_pin)])


# ── No match ─────────────────────────────────────────────────────────────────

def test_empty_hints_need_registration(store):
    decision = make_resolver(store).resolve({})
    assert decision.status == DecisionStatus.NEEDS_REGISTRATION
    assert decision.state == ResolutionState.NO_MATCH
    assert decision.device_id is None


def test_unknown_token_needs_registration_and_writes_nothing(store, claimed):
    claimed(1)
    decision = make_resolver(store).resolve({"opaqueBrowserToken": "tok-never-seen"})
    assert decision.status == DecisionStatus.NEEDS_REGISTRATION
    assert store.find_device_by_browser("tok-never-seen") is None


def test_unclaimed_device_is_reported_without_owner_fields(store):
    store.create_device(device_id(3))
    store.add_browser(device_id(3), "tok-3")

    decision = make_resolver(store).resolve({"opaqueBrowserToken": "tok-3"})
    assert decision.is_no_match
    assert decision.device_id == device_id(3)
    assert decision.handle is None
    assert decision.masked_phone is None


# ── Exact token ──────────────────────────────────────────────────────────────

def test_known_token_resolves_exactly_and_repeatably(store, claimed, clock):
    claimed(1, browser="tok-1")
    clock.advance(days=8)
    resolver = make_resolver(store)

    first = resolver.resolve({"opaqueBrowserToken": "tok-1"})
    second = resolver.resolve({"opaqueBrowserToken": "tok-1"})

    for decision in (first, second):
        assert decision.match_type == MatchType.EXACT
        assert decision.score == 90
        assert decision.status == DecisionStatus.AUTHENTICATED
        assert decision.handle == ALICE.handle
        assert decision.masked_phone == "***-***-1111"
        assert not decision.cross_browser

    # Resolving is not verifying
    assert store.get_device(device_id(1)).last_verified_at == NOW


def test_recent_verification_lifts_exact_match(store, claimed):
    claimed(1, browser="tok-1")
    decision = make_resolver(store).resolve({"opaqueBrowserToken": "tok-1"})
    assert decision.score == 100
    assert decision.level == ConfidenceLevel.HIGH


def test_ip_history_counts(store, claimed, clock):
    claimed(1, browser="tok-1")
    store.record_access(device_id(1), "203.0.113.7")
    clock.advance(days=30)
    decision = make_resolver(store).resolve({"opaqueBrowserToken": "tok-1", "requestIp": "203.0.113.7"})
    assert decision.score == 100


# ── Identity header ──────────────────────────────────────────────────────────

def test_header_for_another_owner_is_rejected_without_leaking(store, claimed):
    claimed(1, browser="tok-1", snapshot=MAC_CHROME)
    hints = {
        "opaqueBrowserToken": "tok-1",
        "identityHeader": {"deviceId": device_id(1), "userGuid": BOB.guid},
    }
    decision = make_resolver(store).resolve(hints)

    assert decision.state == ResolutionState.REJECTED
    assert decision.status == DecisionStatus.NEEDS_REGISTRATION
    assert decision.device_id is None
    assert decision.handle is None
    assert decision.masked_phone is None
    assert decision.to_dict()["handle"] is None


def test_session_owner_disagreeing_with_device_is_rejected(store, claimed):
    claimed(1)
    hints = {
        "identityHeader": {"deviceId": device_id(1)},
        "sessionOwnerContext": {"handle": BOB.handle},
    }
    assert make_resolver(store).resolve(hints).state == ResolutionState.REJECTED


def test_header_with_matching_hardware_authenticates(store, claimed):
    claimed(1, snapshot=MAC_CHROME)
    hints = {
        "identityHeader": {
            "deviceId": device_id(1),
            "userHandle": ALICE.handle,
            "deviceCharacteristics": SAFARI_ON_SAME_MAC,
        },
    }
    decision = make_resolver(store).resolve(hints)
    # 70 + 15 recent + 2 * (platform, timezone, screen, pixel ratio)
    assert decision.score == 93
    assert decision.match_type == MatchType.CROSS_BROWSER_HEADER
    assert decision.cross_browser
    assert decision.authenticated
    # An authenticated header match keeps the stored characteristics current
    assert store.get_fingerprint_snapshot(device_id(1)).browser_family == "Safari"


def test_header_with_different_hardware_is_penalized(store, claimed):
    claimed(1, snapshot=MAC_CHROME)
    hints = {
        "identityHeader": {
            "deviceId": device_id(1),
            "userHandle": ALICE.handle,
            "deviceCharacteristics": WINDOWS_FIREFOX,
        },
    }
    decision = make_resolver(store).resolve(hints)
    assert decision.score == 70 + 15 - 40
    assert decision.level == ConfidenceLevel.LOW
    assert decision.status == DecisionStatus.NEEDS_VERIFICATION
    assert store.get_fingerprint_snapshot(device_id(1)).platform == "MacIntel"


def test_header_may_arrive_as_raw_json(store, claimed):
    claimed(1)
    raw = json.dumps({"deviceId": device_id(1), "userGuid": ALICE.guid})
    decision = make_resolver(store).resolve({"identityHeader": raw})
    assert decision.match_type == MatchType.CROSS_BROWSER_HEADER
    assert decision.device_id == device_id(1)


# ── Same person, new browser ─────────────────────────────────────────────────

def safari_hints():
    return {
        "opaqueBrowserToken": "tok-safari",
        "userAgent": SAFARI_UA,
        "identityHeader": {
            "deviceId": device_id(2),
            "userHandle": ALICE.handle,
            "deviceCharacteristics": SAFARI_ON_SAME_MAC,
        },
    }


@pytest.mark.parametrize("has_pin, status", [
    (True, DecisionStatus.NEEDS_PIN_VERIFICATION),
    (False, DecisionStatus.NEEDS_VERIFICATION),
])
def test_new_browser_on_known_hardware_is_never_auto_authenticated(store, claimed, has_pin, status):
    claimed(1, browser="tok-chrome", snapshot=MAC_CHROME)

    decision = make_resolver(store, owners=owners_with(has_pin)).resolve(safari_hints())

    assert decision.match_type == MatchType.FINGERPRINT
    assert decision.device_id == device_id(1)
    assert decision.score == 84
    assert decision.level == ConfidenceLevel.MEDIUM
    assert decision.status == status
    assert decision.pin_available is has_pin
    assert decision.cross_browser


def test_new_browser_is_recorded_as_pending(store, claimed):
    claimed(1, browser="tok-chrome", snapshot=MAC_CHROME)
    make_resolver(store).resolve(safari_hints())

    browser = store.get_browser(device_id(1), "tok-safari")
    assert browser.pending
    assert browser.browser_family == "Safari"
    assert store.count_known_browsers(device_id(1)) == 1


def test_pending_browser_never_authenticates_on_its_own(store, claimed):
    claimed(1, browser="tok-chrome", snapshot=MAC_CHROME)
    resolver = make_resolver(store, owners=owners_with(True))
    assert resolver.resolve(safari_hints()).status == DecisionStatus.NEEDS_PIN_VERIFICATION

    decision = resolver.resolve({"opaqueBrowserToken": "tok-safari"})

    assert decision.match_type == MatchType.OTHER
    assert decision.score == 30 + 15
    assert decision.status == DecisionStatus.NEEDS_VERIFICATION
    assert store.get_browser(device_id(1), "tok-safari").pending

    # Once verified, the same token is an exact match
    store.confirm_pending_browsers(device_id(1))
    confirmed = resolver.resolve({"opaqueBrowserToken": "tok-safari"})
    assert confirmed.match_type == MatchType.EXACT
    assert confirmed.authenticated


def test_low_confidence_match_does_not_bind_the_browser(store, claimed):
    claimed(1, identity=BOB, browser="tok-bob", snapshot=MAC_CHROME)
    resolver = make_resolver(store)

    first = resolver.resolve({"opaqueBrowserToken": "tok-stranger", "identityHeader": {"deviceId": device_id(1)}})
    assert first.level == ConfidenceLevel.LOW
    assert store.get_browser(device_id(1), "tok-stranger") is None
    assert store.find_device_by_browser("tok-stranger") is None

    second = resolver.resolve({"opaqueBrowserToken": "tok-stranger"})
    assert second.status == DecisionStatus.NEEDS_REGISTRATION
    assert second.handle is None


def test_session_owner_must_own_the_token_device(store, claimed):
    claimed(1, browser="tok-1")
    hints = {
        "opaqueBrowserToken": "tok-1",
        "sessionOwnerContext": {"handle": BOB.handle, "guid": BOB.guid},
    }
    decision = make_resolver(store).resolve(hints)
    assert decision.state == ResolutionState.REJECTED
    assert decision.device_id is None
    assert decision.handle is None


@pytest.mark.parametrize("context", [
    {"handle": ALICE.handle, "guid": ALICE.guid},
    {"handle": "@alice-renamed", "previousHandle": ALICE.handle},
])
def test_token_resolves_for_its_own_session_owner(store, claimed, context):
    claimed(1, browser="tok-1")
    decision = make_resolver(store).resolve({"opaqueBrowserToken": "tok-1", "sessionOwnerContext": context})
    assert decision.match_type == MatchType.EXACT
    assert decision.authenticated


def test_characteristics_only_search_stays_within_the_claimed_owner(store, claimed):
    claimed(1, identity=BOB, snapshot=MAC_CHROME)
    decision = make_resolver(store).resolve(safari_hints())
    assert decision.status == DecisionStatus.NEEDS_REGISTRATION


# ── Owner context ────────────────────────────────────────────────────────────

def test_owner_context_picks_most_recently_verified_device(store, claimed, clock):
    claimed(1)
    clock.advance(days=1)
    claimed(2)

    decision = make_resolver(store).resolve({"sessionOwnerContext": {"handle": ALICE.handle}})
    assert decision.match_type == MatchType.OWNER_CONTEXT
    assert decision.device_id == device_id(2)
    assert decision.score == 65
    assert decision.status == DecisionStatus.NEEDS_VERIFICATION


def test_owner_context_falls_back_to_previous_identity(store, claimed):
    claimed(1)
    hints = {"sessionOwnerContext": {"handle": "@alice-renamed", "previousHandle": ALICE.handle}}
    decision = make_resolver(store).resolve(hints)
    assert decision.device_id == device_id(1)


# ── Failure modes ────────────────────────────────────────────────────────────

def test_timeout_fails_toward_verification(store, claimed):
    claimed(1, browser="tok-1")
    decision = make_resolver(store).resolve({"opaqueBrowserToken": "tok-1"}, timeout=0)
    assert decision.status == DecisionStatus.NEEDS_VERIFICATION
    assert decision.reason == "timeout"
    assert decision.device_id is None


@pytest.mark.parametrize("hints", [
    {"opaqueBrowserToken": "has spaces in it"},
    {"identityHeader": {"deviceId": "not-hex"}},
    {"identityHeader": "{not json"},
    {"requestIp": "999.1.1.1"},
])
def test_malformed_hints_raise_before_store_access(store, hints):
    with pytest.raises(ValidationError):
        make_resolver(store).resolve(hints)


def test_corrupt_shard_is_skipped(store, claimed):
    claimed(1)
    store.shard_path(device_id(9)).write_bytes(b"not sqlite " * 100)
    store.index.add_browser("tok-9", device_id(9))

    decision = make_resolver(store).resolve({"opaqueBrowserToken": "tok-9"})
    assert decision.status == DecisionStatus.NEEDS_REGISTRATION
