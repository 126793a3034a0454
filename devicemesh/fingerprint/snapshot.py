"""
Fingerprint snapshots and user-agent helpers.

Snapshots arrive from the browser as camelCase JSON. Parsing is lenient:
a field that fails validation is dropped, never fatal, so comparison and
scoring always see "absent" rather than an exception.
"""

import logging
import re
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

UNKNOWN_BROWSER = "Unknown"


class FingerprintSnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    platform: Optional[str] = None
    timezone: Optional[str] = None
    screen_width: Optional[float] = Field(default=None, alias="screenWidth")
    screen_height: Optional[float] = Field(default=None, alias="screenHeight")
    device_pixel_ratio: Optional[float] = Field(default=None, alias="devicePixelRatio")
    language: Optional[str] = None
    cpu_model: Optional[str] = Field(default=None, alias="cpuModel")
    webgl_renderer: Optional[str] = Field(default=None, alias="webglRenderer")
    canvas_fingerprint: Optional[str] = Field(default=None, alias="canvasFingerprint")
    webgl_fingerprint: Optional[str] = Field(default=None, alias="webglFingerprint")
    hardware_fingerprint: Optional[str] = Field(default=None, alias="hardwareFingerprint")
    memory_size: Optional[float] = Field(default=None, alias="memorySize")
    browser_family: Optional[str] = Field(default=None, alias="browserFamily")

    @field_validator("*", mode="before")
    @classmethod
    def blank_is_absent(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def browser(self) -> str:
        return self.browser_family or UNKNOWN_BROWSER

    @property
    def has_screen(self) -> bool:
        return self.screen_width is not None and self.screen_height is not None

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)

    def to_characteristics(self) -> dict:
        """camelCase dict, absent fields omitted."""
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_mapping(cls, data: Any) -> "FingerprintSnapshot":
        if isinstance(data, FingerprintSnapshot):
            return data
        if not isinstance(data, Mapping):
            return cls()
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            bad = {err["loc"][0] for err in exc.errors() if err.get("loc")}
            logger.debug("Dropping malformed fingerprint fields: %s", sorted(map(str, bad)))
            cleaned = {k: v for k, v in data.items() if k not in bad}
            try:
                return cls.model_validate(cleaned)
            except ValidationError:
                return cls()


_BROWSER_PATTERNS = [
    ("Edge", re.compile(r"Edg(e|A|iOS)?/", re.I)),
    ("Opera", re.compile(r"OPR/|Opera", re.I)),
    ("Firefox", re.compile(r"Firefox|FxiOS", re.I)),
    ("Chrome", re.compile(r"Chrome|CriOS", re.I)),
    ("Safari", re.compile(r"Safari", re.I)),
    ("Internet Explorer", re.compile(r"MSIE|Trident", re.I)),
]


def detect_browser(user_agent: Optional[str]) -> str:
    """Browser family from a user agent string.

    Chromium derivatives are checked before Chrome because their user agents
    also contain "Chrome".
    """
    if not user_agent:
        return UNKNOWN_BROWSER
    for family, pattern in _BROWSER_PATTERNS:
        if pattern.search(user_agent):
            return family
    return UNKNOWN_BROWSER


def detect_device_type(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "Desktop"
    if "iPad" in user_agent or "Tablet" in user_agent:
        return "Tablet"
    if "Mobile" in user_agent or "Android" in user_agent or "iPhone" in user_agent:
        return "Mobile"
    return "Desktop"
