"""
dpop_guard/fingerprint.py

Soft device binding from browser characteristics.

A fingerprint is a secondary signal: it never proves possession of
anything, it only tells us whether the device presenting a valid proof
looks like the device that enrolled the key.

Wire format (X-Fingerprint header, JSON):

    {"ua": ..., "lang": ..., "tz": ..., "scr": ..., "hwc": 8, "mem": 8,
     "platform": ..., "webgl": ...}

Two operations:
  - fingerprint_hash(): FNV-1a 32-bit over the canonical serialization,
    stored next to the device key at enrollment.
  - similarity(): weighted per-field comparison in [0, 1]. User agents get
    partial credit for the same browser family a few major versions apart,
    because browsers auto-update between sessions.
"""

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

FNV32_OFFSET = 0x811C9DC5
FNV32_PRIME = 0x01000193

# wire key -> weight; sums to 1.0
FIELD_WEIGHTS: Dict[str, float] = {
    "ua": 0.3,
    "lang": 0.1,
    "tz": 0.1,
    "scr": 0.2,
    "hwc": 0.1,
    "mem": 0.1,
    "platform": 0.05,
    "webgl": 0.05,
}

# full credit at delta 0, nothing at delta >= 10
UA_VERSION_SPAN = 10

# only the first N chars of a UA take part in edit distance
UA_COMPARE_MAX = 512

# Edge and Opera embed "Chrome/"; Chrome embeds "Safari/". Order matters.
_BROWSER_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("edge", re.compile(r"Edge?/(\d+)")),
    ("opera", re.compile(r"(?:OPR|Opera)/(\d+)")),
    ("firefox", re.compile(r"(?:Firefox|FxiOS)/(\d+)")),
    ("chrome", re.compile(r"(?:Chrome|CriOS)/(\d+)")),
    ("safari", re.compile(r"Version/(\d+).*Safari/")),
    ("safari", re.compile(r"Safari/(\d+)")),
)

_HEADLESS_MARKERS = ("HeadlessChrome", "PhantomJS", "SlimerJS", "Selenium")


def _number(v: Any) -> Union[int, float]:
    if v is None or v == "":
        return 0
    if isinstance(v, bool):
        raise ValueError("expected a number")
    try:
        n = float(v)
    except (OverflowError, TypeError):
        raise ValueError("expected a finite number") from None
    # json.loads accepts NaN and Infinity; treat them as absent
    if not math.isfinite(n):
        return 0
    return int(n) if n.is_integer() else n


class Fingerprint(BaseModel):
    """Immutable snapshot; unknown keys are ignored, missing ones default."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    user_agent: str = Field("", alias="ua")
    languages: str = Field("", alias="lang")
    timezone: str = Field("", alias="tz")
    screen: str = Field("", alias="scr")
    hardware_concurrency: Union[int, float] = Field(0, alias="hwc")
    device_memory: Union[int, float] = Field(0, alias="mem")
    platform: str = ""
    graphics_renderer: str = Field("", alias="webgl")

    @field_validator("user_agent", "timezone", "screen", "platform", "graphics_renderer", mode="before")
    @classmethod
    def default_str(cls, v):
        return "" if v is None else v

    @field_validator("languages", mode="before")
    @classmethod
    def join_languages(cls, v):
        # navigator.languages is a list
        if v is None:
            return ""
        if isinstance(v, (list, tuple)):
            return ",".join(str(x) for x in v)
        return v

    @field_validator("hardware_concurrency", "device_memory", mode="before")
    @classmethod
    def normalize_number(cls, v):
        return _number(v)

    def wire(self) -> Dict[str, Any]:
        """Normalized fields under their wire keys."""
        return self.model_dump(by_alias=True)


def fingerprint_payload(raw: Any) -> Optional[Dict[str, Any]]:
    """Raw X-Fingerprint value as a dict; None unless it is a JSON object."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    return raw if isinstance(raw, dict) else None


def parse_fingerprint(raw: Any) -> Optional[Fingerprint]:
    """Fingerprint from a model, dict or JSON string; None when unparseable."""
    if raw is None:
        return None
    if isinstance(raw, Fingerprint):
        return raw

    data = fingerprint_payload(raw)
    if data is None:
        return None

    try:
        return Fingerprint.model_validate(data)
    except (ValidationError, ValueError, TypeError):
        return None


# -----------------------------------------------------------------------------
# Hash
# -----------------------------------------------------------------------------
def fnv1a_32(data: bytes) -> int:
    h = FNV32_OFFSET
    for byte in data:
        h ^= byte
        h = (h * FNV32_PRIME) & 0xFFFFFFFF
    return h


def canonical_fingerprint_bytes(fp: Fingerprint) -> bytes:
    return json.dumps(fp.wire(), sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def fingerprint_hash(fp: Union[Fingerprint, Dict[str, Any], str]) -> Optional[str]:
    """8-char lowercase hex, or None if the input does not parse."""
    parsed = parse_fingerprint(fp)
    if parsed is None:
        return None
    return f"{fnv1a_32(canonical_fingerprint_bytes(parsed)):08x}"


# -----------------------------------------------------------------------------
# Similarity
# -----------------------------------------------------------------------------
def browser_family(ua: str) -> Optional[Tuple[str, int]]:
    for family, pattern in _BROWSER_PATTERNS:
        m = pattern.search(ua or "")
        if m:
            return family, int(m.group(1))
    return None


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def string_similarity(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    a, b = a[:UA_COMPARE_MAX], b[:UA_COMPARE_MAX]
    longer = max(len(a), len(b))
    return (longer - levenshtein(a, b)) / longer


def user_agent_similarity(stored: str, current: str) -> float:
    if not stored or not current:
        return 0.0
    if stored == current:
        return 1.0

    s_info = browser_family(stored)
    c_info = browser_family(current)

    if s_info is None or c_info is None:
        return string_similarity(stored, current)

    if s_info[0] != c_info[0]:
        return 0.0

    delta = abs(s_info[1] - c_info[1])
    return max(0.0, 1.0 - delta / UA_VERSION_SPAN)


def similarity(stored: Any, current: Any) -> float:
    """
    Weighted similarity in [0, 1]; 0 if either side is absent or does not
    parse. Symmetric in its arguments.
    """
    a = parse_fingerprint(stored)
    b = parse_fingerprint(current)
    if a is None or b is None:
        return 0.0

    wa, wb = a.wire(), b.wire()
    score = 0.0
    for key, weight in FIELD_WEIGHTS.items():
        if wa[key] == wb[key]:
            score += weight
        elif key == "ua":
            score += weight * user_agent_similarity(wa[key], wb[key])

    # float sums of the weights can land a hair above 1.0
    return min(1.0, max(0.0, round(score, 6)))


# -----------------------------------------------------------------------------
# Raw payload checks
# -----------------------------------------------------------------------------
@dataclass
class SuspiciousFingerprint:
    suspicious: bool
    patterns: List[str] = field(default_factory=list)
    score: float = 0.0


def validate_fingerprint_data(data: Any) -> bool:
    """Structural limits on a raw X-Fingerprint payload."""
    if not isinstance(data, dict):
        return False

    for key in ("ua", "lang", "tz", "scr"):
        if key not in data:
            return False

    limits = {"ua": 500, "lang": 100, "tz": 50, "scr": 20}
    for key, limit in limits.items():
        if not isinstance(data[key], str) or len(data[key]) > limit:
            return False

    for key, upper in (("hwc", 128), ("mem", 32)):
        if key in data and data[key] is not None:
            v = data[key]
            if isinstance(v, bool) or not isinstance(v, (int, float)):
                return False
            if isinstance(v, float) and not math.isfinite(v):
                return False
            if v < 0 or v > upper:
                return False

    return True


def detect_suspicious_fingerprint(data: Any) -> SuspiciousFingerprint:
    """Headless/automation tells in a raw fingerprint payload."""
    if data is None:
        return SuspiciousFingerprint(False)

    data = fingerprint_payload(data)
    if data is None:
        return SuspiciousFingerprint(True, ["parsing_error"], 1.0)

    patterns: List[str] = []

    ua = data.get("ua") or ""
    if isinstance(ua, str) and any(marker in ua for marker in _HEADLESS_MARKERS):
        patterns.append("headless_browser_ua")

    hwc = data.get("hwc")
    if hwc == 0 or (isinstance(hwc, (int, float)) and hwc > 64):
        patterns.append("unusual_hardware_concurrency")

    scr = data.get("scr")
    if not scr or not isinstance(scr, str) or scr == "0x0" or "NaN" in scr:
        patterns.append("invalid_screen_resolution")

    tz = data.get("tz")
    if not tz or not isinstance(tz, str) or tz == "UTC" or len(tz) < 3:
        patterns.append("suspicious_timezone")

    lang = data.get("lang")
    if isinstance(lang, list):
        lang = ",".join(str(x) for x in lang)
    if not lang or not isinstance(lang, str) or len(lang) < 2:
        patterns.append("missing_languages")

    return SuspiciousFingerprint(bool(patterns), patterns, len(patterns) / 5)
