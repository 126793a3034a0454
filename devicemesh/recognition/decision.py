import enum
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from devicemesh.models.device import DeviceInfo
from devicemesh.scoring.confidence import ConfidenceLevel, MatchType


class DecisionStatus(str, enum.Enum):
    AUTHENTICATED = "authenticated"
    NEEDS_PIN_VERIFICATION = "needs_pin_verification"
    NEEDS_VERIFICATION = "needs_verification"
    NEEDS_REGISTRATION = "needs_registration"


class ResolutionState(str, enum.Enum):
    UNRESOLVED = "unresolved"
    REJECTED = "rejected"                       # security boundary, terminal
    NO_MATCH = "no_match"                       # terminal
    CANDIDATE = "candidate"
    AUTHENTICATED = "authenticated"
    PIN_OFFERED = "pin_offered"
    VERIFICATION_REQUIRED = "verification_required"


def mask_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    digits = [c for c in phone if c.isdigit()]
    if len(digits) < 4:
        return "***"
    return "***-***-" + "".join(digits[-4:])


@dataclass(frozen=True)
class Decision:
    """Outcome of resolving one request. Terminal no-match decisions carry no owner fields."""
    status: DecisionStatus
    state: ResolutionState
    match_type: Optional[MatchType] = None
    score: Optional[int] = None
    level: Optional[ConfidenceLevel] = None
    pin_available: bool = False
    cross_browser: bool = False
    device_id: Optional[str] = None
    handle: Optional[str] = None
    device_name: Optional[str] = None
    masked_phone: Optional[str] = None
    last_verified_at: Optional[datetime] = None
    reason: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self.status == DecisionStatus.AUTHENTICATED

    @property
    def is_no_match(self) -> bool:
        return self.state in (ResolutionState.NO_MATCH, ResolutionState.REJECTED)

    @classmethod
    def no_match(cls, reason: str, device_id: Optional[str] = None) -> "Decision":
        # device_id is only ever set for an unclaimed device, which has no owner to leak
        return cls(
            status=DecisionStatus.NEEDS_REGISTRATION,
            state=ResolutionState.NO_MATCH,
            device_id=device_id,
            reason=reason,
        )

    @classmethod
    def rejected(cls) -> "Decision":
        return cls(
            status=DecisionStatus.NEEDS_REGISTRATION,
            state=ResolutionState.REJECTED,
            reason="security_boundary",
        )

    @classmethod
    def timed_out(cls) -> "Decision":
        return cls(
            status=DecisionStatus.NEEDS_VERIFICATION,
            state=ResolutionState.VERIFICATION_REQUIRED,
            reason="timeout",
        )

    @classmethod
    def for_device(
        cls,
        device: DeviceInfo,
        status: DecisionStatus,
        match_type: MatchType,
        score: int,
        level: ConfidenceLevel,
        pin_available: bool,
    ) -> "Decision":
        state = {
            DecisionStatus.AUTHENTICATED: ResolutionState.AUTHENTICATED,
            DecisionStatus.NEEDS_PIN_VERIFICATION: ResolutionState.PIN_OFFERED,
        }.get(status, ResolutionState.VERIFICATION_REQUIRED)
        return cls(
            status=status,
            state=state,
            match_type=match_type,
            score=score,
            level=level,
            pin_available=pin_available,
            cross_browser=match_type in (MatchType.CROSS_BROWSER_HEADER, MatchType.FINGERPRINT),
            device_id=device.device_id,
            handle=device.handle,
            device_name=device.display_name,
            masked_phone=mask_phone(device.phone),
            last_verified_at=device.last_verified_at,
        )

    def to_dict(self) -> dict:
        result = asdict(self)
        for key in ("status", "state", "match_type", "level"):
            if result[key] is not None:
                result[key] = result[key].value
        if self.last_verified_at:
            result["last_verified_at"] = self.last_verified_at.isoformat()
        return result
