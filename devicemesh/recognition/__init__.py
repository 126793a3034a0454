from devicemesh.recognition.decision import Decision, DecisionStatus, ResolutionState
from devicemesh.recognition.hints import IdentityHeader, OwnerContext, RequestHints
from devicemesh.recognition.owners import InMemoryOwnerLookup, InMemoryVerifier, Owner
from devicemesh.recognition.resolver import DeviceResolver
from devicemesh.recognition.verification import VerificationFlow

__all__ = [
    "Decision",
    "DecisionStatus",
    "ResolutionState",
    "IdentityHeader",
    "OwnerContext",
    "RequestHints",
    "InMemoryOwnerLookup",
    "InMemoryVerifier",
    "Owner",
    "DeviceResolver",
    "VerificationFlow",
]
