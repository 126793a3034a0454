"""
Fingerprint comparison — is this snapshot from the same physical device?

Same browser family:  strict OR over the legacy hardware identifiers.
Different families:   weighted score over signals present in both snapshots,
                      with tolerances tuned per browser pair.

Signals missing from either side are left out of both the achieved and the
possible score. With nothing comparable the answer is "not the same device".
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from devicemesh.fingerprint.normalize import (
    cpu_models_match,
    fingerprint_similarity,
    gpu_info_matches,
    memory_in_mb,
    normalize_cpu_model,
    normalize_gpu_info,
)
from devicemesh.fingerprint.snapshot import FingerprintSnapshot

logger = logging.getLogger(__name__)

SAME_BROWSER = "same_browser"
CROSS_BROWSER = "cross_browser"

CROSS_BROWSER_ACCEPT_PERCENT = 60.0
SAME_BROWSER_MEMORY_TOLERANCE = 0.5

# Signal weights for the cross-browser score
WEIGHTS = {
    "platform": 60,
    "timezone": 20,
    "screen": 15,
    "pixel_ratio": 10,
    "cpu": 15,
    "gpu": 15,
    "canvas": 10,
    "webgl": 10,
    "memory": 5,
}

SCREEN_FULL_PX = 100
SCREEN_PARTIAL_PX = 300
SCREEN_PARTIAL_POINTS = 10


def _pair(a: str, b: str) -> frozenset:
    return frozenset((a, b))


PIXEL_RATIO_TOLERANCE = {
    _pair("Chrome", "Safari"): 0.45,
    _pair("Chrome", "Firefox"): 0.3,
    _pair("Chrome", "Opera"): 0.25,
    _pair("Chrome", "Edge"): 0.2,
    _pair("Firefox", "Safari"): 0.5,
    _pair("Firefox", "Opera"): 0.3,
    _pair("Firefox", "Edge"): 0.3,
    _pair("Safari", "Opera"): 0.5,
    _pair("Safari", "Edge"): 0.5,
    _pair("Opera", "Edge"): 0.25,
}
DEFAULT_PIXEL_RATIO_TOLERANCE = 0.2

CANVAS_BASE_THRESHOLD = 85
CANVAS_ADJUSTMENT = {
    _pair("Chrome", "Firefox"): -5,
    _pair("Chrome", "Safari"): -10,
    _pair("Chrome", "Edge"): -5,
    _pair("Chrome", "Opera"): -3,
    _pair("Firefox", "Safari"): -10,
    _pair("Firefox", "Edge"): -7,
    _pair("Firefox", "Opera"): -7,
    _pair("Safari", "Edge"): -10,
    _pair("Safari", "Opera"): -10,
    _pair("Edge", "Opera"): -3,
}

WEBGL_BASE_THRESHOLD = 80
WEBGL_ADJUSTMENT = {
    _pair("Chrome", "Firefox"): -10,
    _pair("Chrome", "Safari"): -15,
    _pair("Chrome", "Edge"): -5,
    _pair("Chrome", "Opera"): -3,
    _pair("Firefox", "Safari"): -15,
    _pair("Firefox", "Edge"): -10,
    _pair("Firefox", "Opera"): -10,
    _pair("Safari", "Edge"): -15,
    _pair("Safari", "Opera"): -15,
    _pair("Edge", "Opera"): -3,
}

MEMORY_TOLERANCE_MB = {
    _pair("Chrome", "Safari"): 1024,
    _pair("Chrome", "Firefox"): 768,
    _pair("Chrome", "Edge"): 512,
    _pair("Chrome", "Opera"): 512,
    _pair("Firefox", "Safari"): 1024,
    _pair("Firefox", "Edge"): 768,
    _pair("Firefox", "Opera"): 768,
    _pair("Safari", "Edge"): 1024,
    _pair("Safari", "Opera"): 1024,
    _pair("Edge", "Opera"): 512,
}
DEFAULT_MEMORY_TOLERANCE_MB = 768


@dataclass(frozen=True)
class ComparisonResult:
    same_device: bool
    score: float                                    # 0..100
    mode: str
    matched_signals: tuple[str, ...] = ()
    compared_signals: tuple[str, ...] = ()
    details: dict = field(default_factory=dict, compare=False)

    @property
    def comparable(self) -> bool:
        return bool(self.compared_signals)


def compare(a: Any, b: Any) -> ComparisonResult:
    """Compare two snapshots (models or raw characteristic dicts)."""
    current = FingerprintSnapshot.from_mapping(a)
    stored = FingerprintSnapshot.from_mapping(b)

    if current.browser == stored.browser:
        return compare_same_browser(current, stored)
    return compare_cross_browser(current, stored)


# ── Same browser ─────────────────────────────────────────────────────────────

def compare_same_browser(current: FingerprintSnapshot, stored: FingerprintSnapshot) -> ComparisonResult:
    compared = []
    matched = []

    for name, attr in (
        ("cpu", "cpu_model"),
        ("hardware", "hardware_fingerprint"),
        ("canvas", "canvas_fingerprint"),
        ("webgl", "webgl_fingerprint"),
    ):
        left, right = getattr(current, attr), getattr(stored, attr)
        if left is None or right is None:
            continue
        compared.append(name)
        if left == right:
            matched.append(name)

    if current.memory_size is not None and stored.memory_size is not None:
        compared.append("memory")
        if abs(current.memory_size - stored.memory_size) < SAME_BROWSER_MEMORY_TOLERANCE:
            matched.append("memory")

    score = len(matched) / len(compared) * 100.0 if compared else 0.0
    same = bool(matched)
    logger.debug(
        "Same-browser comparison (%s): %d of %d identifiers match",
        current.browser, len(matched), len(compared),
    )
    return ComparisonResult(
        same_device=same,
        score=round(score, 2),
        mode=SAME_BROWSER,
        matched_signals=tuple(matched),
        compared_signals=tuple(compared),
    )


# ── Cross browser ────────────────────────────────────────────────────────────

def compare_cross_browser(current: FingerprintSnapshot, stored: FingerprintSnapshot) -> ComparisonResult:
    current_browser, stored_browser = current.browser, stored.browser
    pair = _pair(current_browser, stored_browser)

    achieved = 0
    possible = 0
    compared: list[str] = []
    matched: list[str] = []
    details: dict[str, str] = {}

    def record(signal: str, points: int, note: str) -> None:
        nonlocal achieved, possible
        possible += WEIGHTS[signal]
        achieved += points
        compared.append(signal)
        if points > 0:
            matched.append(signal)
        details[signal] = note

    if current.platform is not None and stored.platform is not None:
        hit = current.platform == stored.platform
        record("platform", WEIGHTS["platform"] if hit else 0, f"{current.platform} vs {stored.platform}")

    if current.timezone is not None and stored.timezone is not None:
        hit = current.timezone == stored.timezone
        record("timezone", WEIGHTS["timezone"] if hit else 0, f"{current.timezone} vs {stored.timezone}")

    if current.has_screen and stored.has_screen:
        width_diff = abs(current.screen_width - stored.screen_width)
        height_diff = abs(current.screen_height - stored.screen_height)
        if width_diff <= SCREEN_FULL_PX and height_diff <= SCREEN_FULL_PX:
            points = WEIGHTS["screen"]
        elif width_diff <= SCREEN_PARTIAL_PX and height_diff <= SCREEN_PARTIAL_PX:
            points = SCREEN_PARTIAL_POINTS
        else:
            points = 0
        record("screen", points, f"diff {width_diff:g}x{height_diff:g}")

    if current.device_pixel_ratio is not None and stored.device_pixel_ratio is not None:
        tolerance = PIXEL_RATIO_TOLERANCE.get(pair, DEFAULT_PIXEL_RATIO_TOLERANCE)
        diff = abs(current.device_pixel_ratio - stored.device_pixel_ratio)
        if diff < tolerance / 2:
            points = WEIGHTS["pixel_ratio"]
        elif diff < tolerance:
            points = WEIGHTS["pixel_ratio"] // 2
        else:
            points = 0
        record("pixel_ratio", points, f"diff {diff:.3f}, tolerance {tolerance}")

    current_cpu = normalize_cpu_model(current.cpu_model, current_browser)
    stored_cpu = normalize_cpu_model(stored.cpu_model, stored_browser)
    if current_cpu and stored_cpu:
        hit = cpu_models_match(current_cpu, stored_cpu, current_browser, stored_browser)
        record("cpu", WEIGHTS["cpu"] if hit else 0, f"{current_cpu} vs {stored_cpu}")

    current_gpu = normalize_gpu_info(current.webgl_renderer, current_browser)
    stored_gpu = normalize_gpu_info(stored.webgl_renderer, stored_browser)
    if current_gpu and stored_gpu:
        hit = gpu_info_matches(current_gpu, stored_gpu, current_browser, stored_browser)
        record("gpu", WEIGHTS["gpu"] if hit else 0, f"{current_gpu} vs {stored_gpu}")

    if current.canvas_fingerprint and stored.canvas_fingerprint:
        threshold = CANVAS_BASE_THRESHOLD + CANVAS_ADJUSTMENT.get(pair, 0)
        similarity = fingerprint_similarity(current.canvas_fingerprint, stored.canvas_fingerprint)
        hit = similarity >= threshold
        record("canvas", WEIGHTS["canvas"] if hit else 0, f"{similarity:.1f}% >= {threshold}%: {hit}")

    if current.webgl_fingerprint and stored.webgl_fingerprint:
        threshold = WEBGL_BASE_THRESHOLD + WEBGL_ADJUSTMENT.get(pair, 0)
        similarity = fingerprint_similarity(current.webgl_fingerprint, stored.webgl_fingerprint)
        hit = similarity >= threshold
        record("webgl", WEIGHTS["webgl"] if hit else 0, f"{similarity:.1f}% >= {threshold}%: {hit}")

    if current.memory_size is not None and stored.memory_size is not None:
        tolerance = MEMORY_TOLERANCE_MB.get(pair, DEFAULT_MEMORY_TOLERANCE_MB)
        diff = abs(
            memory_in_mb(current.memory_size, current_browser)
            - memory_in_mb(stored.memory_size, stored_browser)
        )
        hit = diff <= tolerance
        record("memory", WEIGHTS["memory"] if hit else 0, f"diff {diff:g}MB, tolerance {tolerance}MB")

    if possible == 0:
        logger.debug("No comparable characteristics between %s and %s", current_browser, stored_browser)
        return ComparisonResult(same_device=False, score=0.0, mode=CROSS_BROWSER, details=details)

    percentage = achieved / possible * 100.0
    platform_plus_hardware = "platform" in matched and any(
        signal in matched for signal in ("gpu", "cpu", "screen")
    )
    same = percentage >= CROSS_BROWSER_ACCEPT_PERCENT or platform_plus_hardware

    logger.debug(
        "Cross-browser comparison %s/%s: %d/%d (%.2f%%) -> %s",
        current_browser, stored_browser, achieved, possible, percentage,
        "same device" if same else "different device",
    )
    return ComparisonResult(
        same_device=same,
        score=round(percentage, 2),
        mode=CROSS_BROWSER,
        matched_signals=tuple(matched),
        compared_signals=tuple(compared),
        details=details,
    )


def same_physical_device(current: Optional[Any], stored: Optional[Any]) -> bool:
    """False whenever either side is missing: absence of evidence is not identity."""
    if current is None or stored is None:
        return False
    return compare(current, stored).same_device
