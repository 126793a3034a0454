from devicemesh.fingerprint.comparator import ComparisonResult, compare, same_physical_device
from devicemesh.fingerprint.snapshot import FingerprintSnapshot, detect_browser, detect_device_type

__all__ = [
    "ComparisonResult",
    "compare",
    "same_physical_device",
    "FingerprintSnapshot",
    "detect_browser",
    "detect_device_type",
]
