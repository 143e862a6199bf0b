"""
Core Utility Functions.

Common utilities used across the application.
"""

import hashlib
import json
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

import numpy as np


OBJECT_ID_RE = re.compile(r"^[0-9a-fA-F]{24}$")
PERIOD_RE = re.compile(r"^\s*(\d+)\s*([dhw])\s*$")


# =============================================================================
# Time
# =============================================================================

def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC, convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso8601(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp.

    Accepts datetimes unchanged and strings with a trailing ``Z``.
    Returns None when the value cannot be parsed.

    Example:
        >>> parse_iso8601("2024-05-01T10:00:00Z").year
        2024
        >>> parse_iso8601("yesterday") is None
        True
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def parse_period_days(period: str, max_days: int) -> float:
    """
    Parse a period such as ``7d``, ``12h`` or ``2w`` into days, capped.

    Raises:
        ValueError: On anything else.
    """
    match = PERIOD_RE.match(period or "")
    if not match:
        raise ValueError(f"Invalid period: {period!r}")
    amount, unit = int(match.group(1)), match.group(2)
    days = {"h": amount / 24.0, "d": float(amount), "w": amount * 7.0}[unit]
    if days <= 0:
        raise ValueError(f"Invalid period: {period!r}")
    return min(days, float(max_days))


# =============================================================================
# Validation helpers
# =============================================================================

def is_object_id(value: Any) -> bool:
    """True for 24 hex character catalog ids."""
    return isinstance(value, str) and bool(OBJECT_ID_RE.match(value))


def parse_csv(value: Optional[str]) -> List[str]:
    """Split a comma separated query value, dropping blanks and duplicates."""
    if not value:
        return []
    seen: List[str] = []
    for part in value.split(","):
        item = part.strip().lower()
        if item and item not in seen:
            seen.append(item)
    return seen


def normalize_string_set(items: Iterable[Optional[str]]) -> Set[str]:
    """
    Normalize strings to a set of lowercase, stripped strings.

    Args:
        items: Iterable of strings (may contain None, empty strings)
    """
    return {s.lower().strip() for s in items if s and s.strip()}


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def is_finite_number(value: Any) -> bool:
    """Real numbers only: bools and NaN/inf are rejected."""
    if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
        return False
    return math.isfinite(float(value))


# =============================================================================
# Serialization
# =============================================================================

def fingerprint(payload: Dict[str, Any]) -> str:
    """Stable sha1 digest of a JSON-able mapping (key order independent)."""
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(encoded.encode("utf-8")).hexdigest()


def convert_numpy(obj: Any) -> Any:
    """
    Convert numpy types to Python native types for JSON serialization.

    Examples:
        >>> convert_numpy(np.float64(1.5))
        1.5
        >>> convert_numpy({'a': np.array([1, 2])})
        {'a': [1, 2]}
    """
    if isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.floating):
        return float(obj)
    elif isinstance(obj, np.ndarray):
        return obj.tolist()
    elif isinstance(obj, dict):
        return {convert_numpy(k): convert_numpy(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [convert_numpy(v) for v in obj]
    elif isinstance(obj, tuple):
        return tuple(convert_numpy(v) for v in obj)
    elif isinstance(obj, set):
        return sorted(convert_numpy(v) for v in obj)
    return obj
