"""
Device Resolver — request hints in, authentication decision out.

Candidate search, first success wins:
  1. identity header   → device by id (cross_browser_header), or, for an
                         unknown id, the owner's devices by characteristics
                         (fingerprint)
  2. browser token     → device via the browser index (exact once the
                         browser is confirmed, other while still pending)
  3. session owner     → owner's most recently verified device (owner_context)
  4. nothing           → needs_registration

The scan is read-only. Browser bookkeeping is written only after a
decision exists, so a timeout or error mid-scan leaves the store untouched.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from devicemesh.config.settings import settings
from devicemesh.errors import ResolutionTimeout, SecurityBoundaryError, StoreIOError
from devicemesh.fingerprint.comparator import compare, same_physical_device
from devicemesh.fingerprint.snapshot import FingerprintSnapshot
from devicemesh.models.device import DeviceInfo
from devicemesh.recognition.decision import Decision, DecisionStatus
from devicemesh.recognition.hints import IdentityHeader, OwnerContext, RequestHints
from devicemesh.recognition.owners import OwnerLookup
from devicemesh.scoring.confidence import (
    AuthAction, ConfidenceLevel, ConfidenceScorer, DeviceProfile, MatchType, ScoringContext, decision_policy,
)
from devicemesh.storage.database import Deadline
from devicemesh.storage.device_store import DeviceStore

logger = logging.getLogger(__name__)

_STATUS_FOR_ACTION = {
    AuthAction.AUTHENTICATE: DecisionStatus.AUTHENTICATED,
    AuthAction.OFFER_PIN: DecisionStatus.NEEDS_PIN_VERIFICATION,
    AuthAction.REQUIRE_VERIFICATION: DecisionStatus.NEEDS_VERIFICATION,
}


@dataclass
class Candidate:
    device: DeviceInfo
    match_type: MatchType
    # None when no comparison applies to this match path
    same_physical_device: Optional[bool] = None


def _session_owns(device: DeviceInfo, context: Optional[OwnerContext]) -> bool:
    """False when the session names an owner, current or previous, that is not the device's."""
    if context is None:
        return True
    identities = [
        fields for fields in (context.current(), context.previous())
        if fields["handle"] or fields["guid"]
    ]
    if not identities:
        return True
    return any(
        (not fields["guid"] or fields["guid"] == device.guid)
        and (not fields["handle"] or fields["handle"] == device.handle)
        for fields in identities
    )


class DeviceResolver:

    def __init__(
        self,
        store: DeviceStore,
        owners: Optional[OwnerLookup] = None,
        scorer: Optional[ConfidenceScorer] = None,
        timeout: Optional[float] = None,
    ):
        self.store = store
        self.owners = owners
        self.scorer = scorer or ConfidenceScorer()
        self.timeout = settings.resolve_timeout_seconds if timeout is None else timeout

    def resolve(self, hints: Any, timeout: Optional[float] = None) -> Decision:
        hints = RequestHints.parse(hints)
        deadline = Deadline(self.timeout if timeout is None else timeout)

        try:
            candidate, unclaimed_id = self._find_candidate(hints, deadline)
            if candidate is None:
                return Decision.no_match("unknown_device", device_id=unclaimed_id)
            decision = self._decide(candidate, hints, deadline)
        except SecurityBoundaryError as exc:
            logger.warning("SECURITY: identity mismatch on device %s; treating as unknown", (exc.device_id or "?")[:10])
            return Decision.rejected()
        except ResolutionTimeout:
            logger.warning("Resolution timed out; requiring verification")
            return Decision.timed_out()

        self._record_browser(decision, hints)
        self._refresh_characteristics(decision, hints)
        logger.info(
            "Resolved device %s via %s: score %d (%s) -> %s",
            decision.device_id[:10], decision.match_type.value, decision.score,
            decision.level.value, decision.status.value,
        )
        return decision

    # ── Candidate search ─────────────────────────────────────────────

    def _find_candidate(self, hints: RequestHints, deadline: Deadline) -> tuple[Optional[Candidate], Optional[str]]:
        unclaimed_id = None
        context = hints.session_owner_context

        header = hints.identity_header
        if header is not None:
            candidate, unclaimed = self._from_header(header, context, deadline)
            if candidate is not None:
                return candidate, None
            unclaimed_id = unclaimed_id or unclaimed

        if hints.opaque_browser_token:
            self._check(deadline)
            candidate, unclaimed = self._from_browser_token(hints.opaque_browser_token, context)
            if candidate is not None:
                return candidate, None
            unclaimed_id = unclaimed_id or unclaimed

        if context is not None:
            self._check(deadline)
            candidate = self._from_owner_context(context)
            if candidate is not None:
                return candidate, None

        return None, unclaimed_id

    def _from_header(
        self,
        header: IdentityHeader,
        context: Optional[OwnerContext],
        deadline: Deadline,
    ) -> tuple[Optional[Candidate], Optional[str]]:
        self._check(deadline)
        device = self._load(header.device_id)
        characteristics = header.characteristics

        if device is not None and device.is_claimed:
            self._enforce_boundary(device, header, context)
            stored = self._snapshot(device.device_id)
            return Candidate(
                device=device,
                match_type=MatchType.CROSS_BROWSER_HEADER,
                same_physical_device=same_physical_device(characteristics, stored),
            ), None

        unclaimed = device.device_id if device is not None else None
        if characteristics is None:
            return None, unclaimed

        owner = self._owner_scope(header, context)
        if owner is None:
            return None, unclaimed
        return self._match_characteristics(characteristics, owner, deadline), unclaimed

    def _from_browser_token(
        self, token: str, context: Optional[OwnerContext],
    ) -> tuple[Optional[Candidate], Optional[str]]:
        try:
            device_id = self.store.find_device_by_browser(token)
        except StoreIOError:
            logger.exception("Browser index lookup failed")
            return None, None
        if device_id is None:
            return None, None

        device = self._load(device_id)
        if device is None:
            return None, None
        if not device.is_claimed:
            return None, device.device_id
        if not _session_owns(device, context):
            raise SecurityBoundaryError("Session owner does not own this browser's device", device.device_id)

        # The legacy token is the device id itself and has no browser row
        if token == device_id:
            return Candidate(device=device, match_type=MatchType.EXACT), None
        try:
            browser = self.store.get_browser(device_id, token)
        except StoreIOError:
            logger.exception("Browser row unreadable on %s", device_id[:10])
            browser = None
        if browser is None or browser.pending:
            return Candidate(device=device, match_type=MatchType.OTHER), None
        return Candidate(device=device, match_type=MatchType.EXACT), None

    def _from_owner_context(self, context: OwnerContext) -> Optional[Candidate]:
        for fields in (context.current(), context.previous()):
            if not any(fields.values()):
                continue
            try:
                devices = self.store.find_devices_by_owner(**fields)
            except StoreIOError:
                logger.exception("Owner index lookup failed")
                return None
            if devices:
                # find_devices_by_owner orders by last_verified_at, newest first
                return Candidate(device=devices[0], match_type=MatchType.OWNER_CONTEXT)
        return None

    def _match_characteristics(
        self,
        characteristics: FingerprintSnapshot,
        owner: dict,
        deadline: Deadline,
    ) -> Optional[Candidate]:
        """Best same-device match among the owner's devices, by comparison score."""
        try:
            device_ids = self.store.owner_device_ids(**owner)
        except StoreIOError:
            logger.exception("Owner index lookup failed")
            return None

        best: Optional[tuple[float, DeviceInfo]] = None
        for device_id in device_ids:
            self._check(deadline)
            device = self._load(device_id)
            if device is None or not device.is_claimed:
                continue
            stored = self._snapshot(device_id)
            if stored is None:
                continue
            result = compare(characteristics, stored)
            logger.debug(
                "Characteristics vs %s: %.1f%% (%s)", device_id[:10], result.score,
                "same" if result.same_device else "different",
            )
            if result.same_device and (best is None or result.score > best[0]):
                best = (result.score, device)

        if best is None:
            return None
        return Candidate(device=best[1], match_type=MatchType.FINGERPRINT, same_physical_device=True)

    # ── Guards ───────────────────────────────────────────────────────

    @staticmethod
    def _enforce_boundary(device: DeviceInfo, header: IdentityHeader, context: Optional[OwnerContext]) -> None:
        mismatched = (
            (header.user_guid and header.user_guid != device.guid)
            or (header.user_handle and header.user_handle != device.handle)
        )
        if mismatched or not _session_owns(device, context):
            raise SecurityBoundaryError("Asserted identity does not own this device", device.device_id)

    @staticmethod
    def _owner_scope(header: IdentityHeader, context: Optional[OwnerContext]) -> Optional[dict]:
        """Owner whose devices a characteristics match may consider."""
        if context is not None and (context.guid or context.handle):
            return {"guid": context.guid, "handle": context.handle}
        if header.claims_identity:
            return {"guid": header.user_guid, "handle": header.user_handle}
        return None

    @staticmethod
    def _check(deadline: Deadline) -> None:
        if deadline.expired:
            raise ResolutionTimeout("Device resolution exceeded its deadline")

    def _load(self, device_id: str) -> Optional[DeviceInfo]:
        try:
            return self.store.get_device(device_id)
        except StoreIOError:
            logger.exception("Skipping unreadable device %s", device_id[:10])
            return None

    def _snapshot(self, device_id: str) -> Optional[FingerprintSnapshot]:
        try:
            return self.store.get_fingerprint_snapshot(device_id)
        except StoreIOError:
            logger.exception("Fingerprint unreadable for %s", device_id[:10])
            return None

    # ── Scoring ──────────────────────────────────────────────────────

    def _decide(self, candidate: Candidate, hints: RequestHints, deadline: Deadline) -> Decision:
        device = candidate.device
        device_id = device.device_id
        self._check(deadline)

        try:
            known_browsers = self.store.count_known_browsers(device_id)
            ip_seen = self.store.has_access_from(device_id, hints.request_ip)
        except StoreIOError:
            logger.exception("Could not read history for %s", device_id[:10])
            known_browsers, ip_seen = 0, False

        profile = DeviceProfile(
            device_id=device_id,
            last_verified_at=device.last_verified_at,
            known_browser_count=known_browsers,
            snapshot=self._snapshot(device_id),
            ip_seen=ip_seen,
        )
        context = ScoringContext(
            characteristics=hints.identity_header.characteristics if hints.identity_header else None,
            same_physical_device=candidate.same_physical_device,
            now=self.store.clock(),
        )
        score = self.scorer.score(candidate.match_type, profile, context)
        level = self.scorer.level(score)
        pin_available = self._pin_available(device)
        status = _STATUS_FOR_ACTION[decision_policy(level, pin_available)]

        # Last chance to fail toward verification before anything is written
        self._check(deadline)
        return Decision.for_device(device, status, candidate.match_type, score, level, pin_available)

    def _pin_available(self, device: DeviceInfo) -> bool:
        if self.owners is None or not device.handle:
            return False
        owner = self.owners.find(handle=device.handle)
        return bool(owner and owner.guid == device.guid and owner.has_pin)

    # ── Bookkeeping ──────────────────────────────────────────────────

    def _record_browser(self, decision: Decision, hints: RequestHints) -> None:
        """Authenticated browsers are confirmed; medium confidence leaves a pending row."""
        token = hints.opaque_browser_token
        if not token:
            return
        device_id = decision.device_id
        try:
            known = self.store.get_browser(device_id, token) is not None
            if decision.authenticated:
                self.store.add_browser(device_id, token, hints.user_agent, pending=False)
            elif known:
                self.store.touch_browser(device_id, token)
            elif decision.level in (ConfidenceLevel.HIGH, ConfidenceLevel.MEDIUM):
                self.store.add_browser(device_id, token, hints.user_agent, pending=True)
            else:
                logger.debug("Not associating browser %s at %s confidence", token[:10], decision.level.value)
        except StoreIOError:
            logger.exception("Could not record browser %s on %s", token[:10], device_id[:10])

    def _refresh_characteristics(self, decision: Decision, hints: RequestHints) -> None:
        """Keep the stored snapshot current after an authenticated header match."""
        header = hints.identity_header
        if not decision.authenticated or header is None or header.characteristics is None:
            return
        if decision.match_type != MatchType.CROSS_BROWSER_HEADER:
            return
        try:
            self.store.put_fingerprint_snapshot(decision.device_id, header.characteristics)
        except StoreIOError:
            logger.exception("Could not refresh characteristics on %s", decision.device_id[:10])
