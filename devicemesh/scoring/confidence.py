"""
Confidence scoring for a candidate device.

score = base(match type)
      + 15   verified within the recency window
      + 5/browser for more than one confirmed browser (max 15)
      + 2    per coarse characteristic shared with the stored snapshot
      + 10   request IP already in the access log
      - 40   comparator says the hardware is a different physical device
clamped to 0..100. Characteristics-only matches are additionally capped
below the auto-login threshold.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from devicemesh.config.settings import settings
from devicemesh.fingerprint.snapshot import FingerprintSnapshot
from devicemesh.models.types import as_utc, utcnow

logger = logging.getLogger(__name__)


class MatchType(str, enum.Enum):
    EXACT = "exact"
    CROSS_BROWSER_HEADER = "cross_browser_header"
    FINGERPRINT = "fingerprint"
    OWNER_CONTEXT = "owner_context"
    OTHER = "other"


class ConfidenceLevel(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    VERY_LOW = "very_low"


class AuthAction(str, enum.Enum):
    AUTHENTICATE = "authenticate"
    OFFER_PIN = "offer_pin"
    REQUIRE_VERIFICATION = "require_verification"


BASE_SCORES = {
    MatchType.EXACT: 90,
    MatchType.CROSS_BROWSER_HEADER: 70,
    MatchType.FINGERPRINT: 70,
    MatchType.OWNER_CONTEXT: 50,
    MatchType.OTHER: 30,
}

RECENT_VERIFICATION_POINTS = 15
POINTS_PER_BROWSER = 5
MAX_BROWSER_POINTS = 15
POINTS_PER_CHARACTERISTIC = 2
IP_HISTORY_POINTS = 10
DIFFERENT_HARDWARE_PENALTY = 40
PIXEL_RATIO_COARSE_TOLERANCE = 0.5


@dataclass(frozen=True)
class Thresholds:
    high: int = 85
    medium: int = 60
    low: int = 30
    recent_days: int = 7

    @classmethod
    def from_settings(cls) -> "Thresholds":
        return cls(
            high=settings.confidence_high,
            medium=settings.confidence_medium,
            low=settings.confidence_low,
            recent_days=settings.recent_verification_days,
        )


@dataclass(frozen=True)
class DeviceProfile:
    """What the scorer needs to know about a stored device."""
    device_id: str
    last_verified_at: Optional[datetime] = None
    known_browser_count: int = 0
    snapshot: Optional[FingerprintSnapshot] = None
    ip_seen: bool = False


@dataclass(frozen=True)
class ScoringContext:
    """What the scorer needs to know about the inbound request."""
    characteristics: Optional[FingerprintSnapshot] = None
    # None: no comparison was made. False: comparator rejected the hardware.
    same_physical_device: Optional[bool] = None
    now: Optional[datetime] = None


@dataclass
class ScoreBreakdown:
    match_type: MatchType
    base: int
    adjustments: list[tuple[str, int]] = field(default_factory=list)
    ceiling: int = 100
    total: int = 0

    def add(self, reason: str, points: int) -> None:
        self.adjustments.append((reason, points))


def count_matching_characteristics(
    current: Optional[FingerprintSnapshot], stored: Optional[FingerprintSnapshot],
) -> int:
    """Coarse characteristics shared by both snapshots. Absent on either side counts as no match."""
    if current is None or stored is None:
        return 0

    matches = 0
    for attr in ("platform", "timezone", "language", "browser_family"):
        left, right = getattr(current, attr), getattr(stored, attr)
        if left is not None and right is not None and left == right:
            matches += 1

    if current.has_screen and stored.has_screen:
        if current.screen_width == stored.screen_width and current.screen_height == stored.screen_height:
            matches += 1

    if current.device_pixel_ratio is not None and stored.device_pixel_ratio is not None:
        if abs(current.device_pixel_ratio - stored.device_pixel_ratio) < PIXEL_RATIO_COARSE_TOLERANCE:
            matches += 1

    return matches


class ConfidenceScorer:
    """Pure scoring: no I/O, never raises on missing data."""

    def __init__(self, thresholds: Optional[Thresholds] = None):
        self.thresholds = thresholds or Thresholds.from_settings()

    def breakdown(
        self,
        match_type: MatchType,
        profile: DeviceProfile,
        context: Optional[ScoringContext] = None,
    ) -> ScoreBreakdown:
        context = context or ScoringContext()
        match_type = MatchType(match_type)
        result = ScoreBreakdown(match_type=match_type, base=BASE_SCORES[match_type])

        now = as_utc(context.now) or utcnow()
        verified_at = as_utc(profile.last_verified_at)
        if verified_at and verified_at > now - timedelta(days=self.thresholds.recent_days):
            result.add("recently_verified", RECENT_VERIFICATION_POINTS)

        if profile.known_browser_count > 1:
            result.add(
                "known_browsers",
                min(MAX_BROWSER_POINTS, POINTS_PER_BROWSER * profile.known_browser_count),
            )

        shared = count_matching_characteristics(context.characteristics, profile.snapshot)
        if shared:
            result.add("matching_characteristics", POINTS_PER_CHARACTERISTIC * shared)

        if profile.ip_seen:
            result.add("ip_history", IP_HISTORY_POINTS)

        if context.same_physical_device is False:
            result.add("different_hardware", -DIFFERENT_HARDWARE_PENALTY)

        if match_type in (MatchType.FINGERPRINT, MatchType.OTHER):
            # Characteristics alone, or an unconfirmed browser, never clear the auto-login bar
            result.ceiling = self.thresholds.high - 1

        raw = result.base + sum(points for _, points in result.adjustments)
        result.total = max(0, min(raw, 100, result.ceiling))
        return result

    def score(
        self,
        match_type: MatchType,
        profile: DeviceProfile,
        context: Optional[ScoringContext] = None,
    ) -> int:
        result = self.breakdown(match_type, profile, context)
        logger.debug(
            "Confidence for %s (%s): base %d %s -> %d",
            profile.device_id[:10], result.match_type.value, result.base,
            result.adjustments, result.total,
        )
        return result.total

    def level(self, score: int) -> ConfidenceLevel:
        if score >= self.thresholds.high:
            return ConfidenceLevel.HIGH
        if score >= self.thresholds.medium:
            return ConfidenceLevel.MEDIUM
        if score >= self.thresholds.low:
            return ConfidenceLevel.LOW
        return ConfidenceLevel.VERY_LOW


def decision_policy(level: ConfidenceLevel, pin_available: bool) -> AuthAction:
    """Low and very low confidence never get the PIN shortcut."""
    if level == ConfidenceLevel.HIGH:
        return AuthAction.AUTHENTICATE
    if level == ConfidenceLevel.MEDIUM and pin_available:
        return AuthAction.OFFER_PIN
    return AuthAction.REQUIRE_VERIFICATION
