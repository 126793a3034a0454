"""
Out-of-band verification: the path that claims a device for an owner.

start(phone)     → send a code
complete(...)    → check the code, claim or re-verify the device, confirm
                   pending browsers, record access and the fingerprint

Attempts are throttled per phone, and each phone's check-and-consume runs
under its own lock so two tabs cannot both redeem the same code.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from devicemesh.config.settings import settings
from devicemesh.errors import VerificationError
from devicemesh.models.device import DeviceInfo
from devicemesh.recognition.decision import mask_phone
from devicemesh.recognition.owners import OutOfBandVerifier, Owner, OwnerLookup
from devicemesh.storage.database import KeyedLocks
from devicemesh.storage.device_store import DeviceStore, validate_browser_token, validate_device_id
from devicemesh.sync.replicator import Replicator

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    device: DeviceInfo
    owner: Owner
    newly_claimed: bool
    browsers_confirmed: int
    rows_cloned: int = 0


class VerificationFlow:

    def __init__(
        self,
        store: DeviceStore,
        owners: OwnerLookup,
        verifier: OutOfBandVerifier,
        replicator: Optional[Replicator] = None,
        locks: Optional[KeyedLocks] = None,
        max_attempts: Optional[int] = None,
        window_minutes: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.owners = owners
        self.verifier = verifier
        self.replicator = replicator
        self.locks = locks or KeyedLocks()
        self.max_attempts = max_attempts or settings.verification_max_attempts
        self.window = timedelta(minutes=window_minutes or settings.verification_window_minutes)
        self.clock = clock or store.clock
        self._failures: dict[str, list[datetime]] = {}

    def start(self, phone: str) -> str:
        """Send a code to a known owner's phone. Returns the masked phone."""
        owner = self._owner_for(phone)
        with self.locks.hold(f"phone:{owner.phone}"):
            self._throttle(owner.phone)
            self.verifier.send_code(owner.phone)
        logger.info("Verification started for %s", owner.handle)
        return mask_phone(owner.phone)

    def complete(
        self,
        device_id: str,
        phone: str,
        code: str,
        browser_token: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
        characteristics: Optional[Any] = None,
    ) -> VerificationResult:
        validate_device_id(device_id)
        if browser_token is not None:
            validate_browser_token(browser_token)
        owner = self._owner_for(phone)

        with self.locks.hold(f"phone:{owner.phone}"):
            self._throttle(owner.phone)
            if not self.verifier.check_code(owner.phone, code):
                self._failures.setdefault(owner.phone, []).append(self.clock())
                logger.warning("Invalid verification code for %s", owner.handle)
                raise VerificationError("Invalid or expired verification code")
            self._failures.pop(owner.phone, None)

        device = self.store.create_device(device_id, user_agent=user_agent)
        if device.is_claimed and device.guid != owner.guid:
            logger.warning(
                "Device %s re-verified by %s; resetting previous owner %s",
                device_id[:10], owner.handle, device.handle,
            )
            device = self.store.reset_device(device_id)
        newly_claimed = not device.is_claimed

        device = self.store.claim(device_id, owner.identity)
        if browser_token:
            self.store.add_browser(device_id, browser_token, user_agent, pending=False)
        confirmed = self.store.confirm_pending_browsers(device_id)
        if ip:
            self.store.record_access(device_id, ip, user_agent)
        if characteristics:
            self.store.put_fingerprint_snapshot(device_id, characteristics)

        cloned = 0
        if newly_claimed and self.replicator is not None:
            cloned = self.replicator.initial_clone(device_id)

        logger.info(
            "Device %s verified for %s (%s)",
            device_id[:10], owner.handle, "new claim" if newly_claimed else "re-verified",
        )
        return VerificationResult(
            device=device,
            owner=owner,
            newly_claimed=newly_claimed,
            browsers_confirmed=confirmed,
            rows_cloned=cloned,
        )

    def _owner_for(self, phone: str) -> Owner:
        if not phone or not isinstance(phone, str):
            raise VerificationError("A phone number is required")
        owner = self.owners.find(phone=phone)
        if owner is None:
            raise VerificationError("No account is registered for this phone")
        return owner

    def _throttle(self, phone: str) -> None:
        cutoff = self.clock() - self.window
        recent = [t for t in self._failures.get(phone, []) if t > cutoff]
        if recent:
            self._failures[phone] = recent
        else:
            self._failures.pop(phone, None)
        if len(recent) >= self.max_attempts:
            logger.warning("Verification throttled for phone ending %s", phone[-4:])
            raise VerificationError("Too many attempts; try again later")
