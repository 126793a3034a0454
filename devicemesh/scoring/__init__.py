from devicemesh.scoring.confidence import (
    AuthAction,
    ConfidenceLevel,
    ConfidenceScorer,
    DeviceProfile,
    MatchType,
    ScoringContext,
    Thresholds,
    decision_policy,
)

__all__ = [
    "AuthAction",
    "ConfidenceLevel",
    "ConfidenceScorer",
    "DeviceProfile",
    "MatchType",
    "ScoringContext",
    "Thresholds",
    "decision_policy",
]
