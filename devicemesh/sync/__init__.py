from devicemesh.sync.clock import HLCTimestamp, HybridLogicalClock
from devicemesh.sync.changelog import ChangeTracker

__all__ = ["HLCTimestamp", "HybridLogicalClock", "ChangeTracker"]
