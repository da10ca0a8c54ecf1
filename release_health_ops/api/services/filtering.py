from __future__ import annotations

from typing import Optional, Tuple

from exceptions import InvalidRequestException
from metrics.aging import DEFAULT_STALE_DAYS
from metrics.stage_flow import DEFAULT_WINDOW_DAYS

STALE_DAYS_RANGE: Tuple[int, int] = (1, 365)
WINDOW_DAYS_RANGE: Tuple[int, int] = (1, 90)


def require_release(release: Optional[str]) -> str:
    """Trimmed release name; blank or missing is a caller error."""
    value = (release or "").strip()
    if not value:
        raise InvalidRequestException("release is required")
    return value


def clamp(value: Optional[int], bounds: Tuple[int, int], default: int) -> int:
    if value is None:
        return default
    low, high = bounds
    return min(max(int(value), low), high)


def clamp_stale_days(value: Optional[int]) -> int:
    return clamp(value, STALE_DAYS_RANGE, DEFAULT_STALE_DAYS)


def clamp_window_days(value: Optional[int]) -> int:
    return clamp(value, WINDOW_DAYS_RANGE, DEFAULT_WINDOW_DAYS)
