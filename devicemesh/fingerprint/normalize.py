"""
Browser-aware normalization of CPU and GPU strings.

Different browsers report the same hardware differently: Chromium wraps the
WebGL renderer in "ANGLE (...)", Safari abbreviates CPU models and hides the
exact Apple GPU, Firefox appends driver details. These helpers reduce each
report to a comparable core before the cross-browser comparison.
"""

import re
from typing import Optional

_DECORATIONS = re.compile(r"\(R\)|\(TM\)", re.I)
_CPU_CLOCK = re.compile(r"CPU @.*")
_WHITESPACE = re.compile(r"\s+")
_APPLE_GENERATION = re.compile(r"M\d+")
_INTEL_MODEL = re.compile(r"i\d+-\d+[A-Z0-9]*")
_INTEL_FAMILY = re.compile(r"\bi(\d+)\b")

_ANGLE = re.compile(r"ANGLE \((.*)\)")
_APPLE_GPU = re.compile(r"(Apple M\d+\s?(?:Pro|Max|Ultra)?)")
_NVIDIA_GPU = re.compile(r"((?:NVIDIA\s)?(?:GeForce\s)?(?:RTX|GTX)\s\d+\s?(?:Ti|Super)?)")
_NVIDIA_MODEL = re.compile(r"(?:RTX|GTX)\s\d+")
_AMD_GPU = re.compile(r"((?:AMD\s)?(?:Radeon\s)?(?:RX|HD)\s\d+\s?(?:XT|Pro)?)")
_AMD_MODEL = re.compile(r"(?:RX|HD)\s\d+")
_INTEL_GPU = re.compile(r"(Intel\s+(?:HD|UHD|Iris|Xe)\s+Graphics\s*\d*)")


def _squash(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


# ── CPU ──────────────────────────────────────────────────────────────────────

def normalize_cpu_model(cpu: Optional[str], browser: str) -> Optional[str]:
    if not cpu:
        return None

    normalized = _squash(_CPU_CLOCK.sub("", _DECORATIONS.sub("", cpu)))

    if browser == "Safari":
        normalized = re.sub(r"^(Intel|AMD) ", "", normalized)
    elif browser == "Firefox":
        normalized = re.sub(r" with.*$", "", normalized)
        normalized = re.sub(r"\d+-Core ", "", normalized)
    elif browser in ("Chrome", "Edge"):
        model = _INTEL_MODEL.search(normalized)
        if model:
            normalized = model.group(0)

    # Apple silicon reports collapse to their generation ("Apple M1").
    if "Apple" in normalized:
        generation = _APPLE_GENERATION.search(normalized)
        if generation:
            normalized = f"Apple {generation.group(0)}"

    return normalized or None


def cpu_models_match(cpu1: Optional[str], cpu2: Optional[str], browser1: str, browser2: str) -> bool:
    if not cpu1 or not cpu2:
        return False
    if cpu1 == cpu2:
        return True

    if "Apple" in cpu1 and "Apple" in cpu2:
        gen1 = _APPLE_GENERATION.search(cpu1)
        gen2 = _APPLE_GENERATION.search(cpu2)
        if gen1 and gen2 and gen1.group(0) == gen2.group(0):
            return True

    family1 = _INTEL_FAMILY.search(cpu1)
    family2 = _INTEL_FAMILY.search(cpu2)
    if family1 and family2 and family1.group(1) == family2.group(1):
        return True

    # Safari abbreviates CPU names
    if "Safari" in (browser1, browser2):
        if cpu1 in cpu2 or cpu2 in cpu1:
            return True

    return False


# ── GPU ──────────────────────────────────────────────────────────────────────

def unwrap_angle(renderer: str) -> str:
    match = _ANGLE.search(renderer)
    return match.group(1) if match else renderer


def normalize_gpu_info(renderer: Optional[str], browser: str) -> Optional[str]:
    if not renderer:
        return None

    normalized = unwrap_angle(renderer)

    if browser == "Safari":
        if "Apple" in normalized:
            chip = _APPLE_GPU.search(normalized)
            normalized = chip.group(1) if chip else "Apple GPU"
    elif browser == "Firefox":
        normalized = re.sub(r" \(.+\)$", "", normalized)
        normalized = re.sub(r"/PCIe/SSE\d+$", "", normalized)

    if "Apple" in normalized:
        chip = _APPLE_GPU.search(normalized)
        if chip:
            normalized = chip.group(1)

    if "NVIDIA" in normalized or "GeForce" in normalized:
        model = _NVIDIA_GPU.search(normalized)
        if model:
            normalized = model.group(1)

    if "AMD" in normalized or "Radeon" in normalized:
        model = _AMD_GPU.search(normalized)
        if model:
            normalized = model.group(1)

    if "Intel" in normalized and "Graphics" in normalized:
        model = _INTEL_GPU.search(normalized)
        if model:
            normalized = model.group(1)

    return _squash(normalized) or None


def gpu_info_matches(gpu1: Optional[str], gpu2: Optional[str], browser1: str, browser2: str) -> bool:
    if not gpu1 or not gpu2:
        return False
    if gpu1 == gpu2:
        return True

    # Safari never exposes the exact Apple GPU, so any Apple GPU pairs up.
    if "Apple" in gpu1 and "Apple" in gpu2:
        return True

    if _is_nvidia(gpu1) and _is_nvidia(gpu2):
        model1 = _NVIDIA_MODEL.search(gpu1)
        model2 = _NVIDIA_MODEL.search(gpu2)
        if model1 and model2 and model1.group(0) == model2.group(0):
            return True

    if _is_amd(gpu1) and _is_amd(gpu2):
        model1 = _AMD_MODEL.search(gpu1)
        model2 = _AMD_MODEL.search(gpu2)
        if model1 and model2 and model1.group(0) == model2.group(0):
            return True

    if all("Intel" in g and "Graphics" in g for g in (gpu1, gpu2)):
        return True

    if "Safari" in (browser1, browser2):
        if gpu1 in gpu2 or gpu2 in gpu1:
            return True

    return False


def _is_nvidia(gpu: str) -> bool:
    return "NVIDIA" in gpu or "GeForce" in gpu


def _is_amd(gpu: str) -> bool:
    return "AMD" in gpu or "Radeon" in gpu


# ── Fingerprint strings ──────────────────────────────────────────────────────

def fingerprint_similarity(fp1: Optional[str], fp2: Optional[str]) -> float:
    """Percentage of positions (over the shorter string) holding the same character."""
    if not fp1 or not fp2:
        return 0.0
    length = min(len(fp1), len(fp2))
    matches = sum(1 for a, b in zip(fp1[:length], fp2[:length]) if a == b)
    return matches / length * 100.0


def memory_in_mb(size: float, browser: str) -> float:
    """Firefox reports memory in MB, every other browser in GB."""
    return size if browser == "Firefox" else size * 1024
