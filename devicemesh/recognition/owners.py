"""
External collaborators: the owner identity store and the out-of-band
(SMS) verifier. Only their interfaces matter here; the in-memory versions
back the CLI and the tests.
"""

import hmac
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional, Protocol

from devicemesh.config.settings import settings
from devicemesh.models.types import utcnow
from devicemesh.storage.device_store import Identity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Owner:
    handle: str
    guid: str
    phone: str
    has_pin: bool = False

    @property
    def identity(self) -> Identity:
        return Identity(handle=self.handle, guid=self.guid, phone=self.phone)


class OwnerLookup(Protocol):
    def find(self, handle: Optional[str] = None, phone: Optional[str] = None) -> Optional[Owner]:
        ...


class OutOfBandVerifier(Protocol):
    def send_code(self, phone: str) -> None:
        ...

    def check_code(self, phone: str, code: str) -> bool:
        ...


class InMemoryOwnerLookup:

    def __init__(self, owners: Optional[list[Owner]] = None):
        self._owners: list[Owner] = list(owners or [])

    def add(self, owner: Owner) -> Owner:
        self._owners = [o for o in self._owners if o.guid != owner.guid]
        self._owners.append(owner)
        return owner

    def find(self, handle: Optional[str] = None, phone: Optional[str] = None) -> Optional[Owner]:
        for owner in self._owners:
            if handle and owner.handle == handle:
                return owner
            if phone and owner.phone == phone:
                return owner
        return None

    @classmethod
    def from_file(cls, path: Path) -> "InMemoryOwnerLookup":
        """Load owners from a JSON list of {handle, guid, phone, has_pin}."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls([
            Owner(
                handle=item["handle"],
                guid=item["guid"],
                phone=item["phone"],
                has_pin=bool(item.get("has_pin", False)),
            )
            for item in data
        ])


class InMemoryVerifier:
    """Issues six-digit codes and keeps them in memory until they expire."""

    def __init__(self, ttl_minutes: Optional[int] = None, clock: Callable[[], datetime] = utcnow):
        self.ttl = timedelta(minutes=ttl_minutes or settings.verification_window_minutes)
        self.clock = clock
        self._codes: dict[str, tuple[str, datetime]] = {}

    def send_code(self, phone: str) -> None:
        code = f"{secrets.randbelow(1_000_000):06d}"
        self._codes[phone] = (code, self.clock() + self.ttl)
        logger.info("Verification code issued for phone ending %s", phone[-4:])

    def issued_code(self, phone: str) -> Optional[str]:
        entry = self._codes.get(phone)
        return entry[0] if entry else None

    def check_code(self, phone: str, code: str) -> bool:
        entry = self._codes.get(phone)
        if entry is None:
            return False
        expected, expires_at = entry
        if self.clock() >= expires_at:
            self._codes.pop(phone, None)
            return False
        if not hmac.compare_digest(expected, str(code)):
            return False
        self._codes.pop(phone, None)
        return True
