"""
Engagement quality scoring.

Maps one interaction (kind + metadata) to a score in [0, 10]:

    base(kind)
      + min(4, time_on_page / 60)
      + scroll_depth * 3
      + min(3, session_duration / 300)
      + min(2, click_count)

clamped to [0, 10]. Pure and deterministic; never raises. If any of the
adjustment fields is present but malformed the base score is returned alone.
"""

from typing import Any, Mapping, Optional, Tuple, Union

from pydantic import BaseModel

from config.constants import DEFAULT_ENGAGEMENT_CONFIG, EngagementConfig
from core.utils import clamp, is_finite_number
from recs.models import InteractionKind


# (snake_case, camelCase) spellings accepted for each adjustment field
_TIME_ON_PAGE = ("time_on_page", "timeOnPage")
_SCROLL_DEPTH = ("scroll_depth", "scrollDepth")
_SESSION_DURATION = ("session_duration", "sessionDuration")
_CLICK_COUNT = ("click_count", "clickCount")
_ENGAGEMENT_METRICS = ("engagement_metrics", "engagementMetrics")


class _Malformed(Exception):
    pass


def base_score(kind: Union[InteractionKind, str, None],
               config: EngagementConfig = DEFAULT_ENGAGEMENT_CONFIG) -> float:
    if isinstance(kind, InteractionKind):
        name = kind.value
    elif isinstance(kind, str):
        name = kind.strip().lower()
    else:
        return config.OTHER_BASE_SCORE
    return config.BASE_SCORES.get(name, config.OTHER_BASE_SCORE)


def _as_mapping(metadata: Any) -> Optional[Mapping[str, Any]]:
    if metadata is None:
        return {}
    if isinstance(metadata, BaseModel):
        return metadata.model_dump(exclude_none=True)
    if isinstance(metadata, Mapping):
        return metadata
    return None


def _lookup(data: Mapping[str, Any], names: Tuple[str, str]) -> Any:
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    return None


def _number(data: Mapping[str, Any], names: Tuple[str, str], upper: Optional[float] = None) -> float:
    value = _lookup(data, names)
    if value is None:
        return 0.0
    if not is_finite_number(value) or value < 0:
        raise _Malformed(names[1])
    if upper is not None and value > upper:
        raise _Malformed(names[1])
    return float(value)


def _adjustments(data: Mapping[str, Any], config: EngagementConfig) -> float:
    time_on_page = _number(data, _TIME_ON_PAGE)
    scroll_depth = _number(data, _SCROLL_DEPTH, upper=1.0)
    session_duration = _number(data, _SESSION_DURATION)

    click_count = _number(data, _CLICK_COUNT)
    metrics = _lookup(data, _ENGAGEMENT_METRICS)
    if metrics is not None:
        metrics = _as_mapping(metrics)
        if metrics is None:
            raise _Malformed("engagementMetrics")
        click_count = max(click_count, _number(metrics, _CLICK_COUNT))

    total = 0.0
    if time_on_page > 0:
        total += min(config.TIME_ON_PAGE_CAP, time_on_page / config.TIME_ON_PAGE_DIVISOR)
    if scroll_depth > 0:
        total += scroll_depth * config.SCROLL_DEPTH_FACTOR
    if session_duration > 0:
        total += min(config.SESSION_DURATION_CAP, session_duration / config.SESSION_DURATION_DIVISOR)
    if click_count > 0:
        total += min(config.CLICK_COUNT_CAP, click_count)
    return total


def score_engagement(
    kind: Union[InteractionKind, str, None],
    metadata: Any = None,
    config: EngagementConfig = DEFAULT_ENGAGEMENT_CONFIG,
) -> float:
    """
    Engagement quality of one interaction.

    Args:
        kind: Interaction kind (enum or raw string; unknown kinds score as "other")
        metadata: Mapping or pydantic metadata model; camelCase or snake_case keys
        config: Base scores and caps

    Returns:
        Score in [config.MIN_SCORE, config.MAX_SCORE]

    Example:
        >>> score_engagement("view", {"timeOnPage": 120, "scrollDepth": 0.8})
        6.4
    """
    base = base_score(kind, config)
    data = _as_mapping(metadata)
    if data is None:
        return clamp(base, config.MIN_SCORE, config.MAX_SCORE)
    try:
        extra = _adjustments(data, config)
    except _Malformed:
        return clamp(base, config.MIN_SCORE, config.MAX_SCORE)
    return clamp(round(base + extra, 6), config.MIN_SCORE, config.MAX_SCORE)
