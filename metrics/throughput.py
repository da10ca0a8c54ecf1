from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from analytics.states import StateTaxonomy
from metrics.aging import latest_as_of
from metrics.schemas import LatestRow, ThroughputSummary
from utils import _normalize_datetime, _to_utc


def done_at(row: LatestRow) -> Optional[datetime]:
    """Completion timestamp: closed_date, else state_change_date."""
    for key in ("closed_date", "state_change_date"):
        value = row.get(key)
        if value is not None:
            return _to_utc(value)
    return None


def _count_in_window(events: Sequence[datetime], as_of: datetime, days: int) -> int:
    start = as_of - timedelta(days=days)
    return sum(1 for ts in events if start < ts <= as_of)


def estimate_eta_days(remaining: int, avg_per_day: float) -> Optional[int]:
    """Days to burn ``remaining`` at ``avg_per_day``; None without velocity."""
    if avg_per_day <= 0:
        return None
    # Rounded first so float noise cannot push an exact quotient up a day.
    return int(math.ceil(round(remaining / avg_per_day, 6)))


def compute_throughput_summary(
    *,
    release: str,
    items: Sequence[LatestRow],
    taxonomy: StateTaxonomy,
    as_of: Optional[datetime] = None,
) -> ThroughputSummary:
    """
    Rolling completions for a release and a naive completion-date projection.

    Done items are dated by ``done_at``; items without any date never count
    towards a window. Remaining work is every active item. With no completions
    in the trailing 7 days the ETA is undefined (``None``), never zero or
    infinite.
    """
    rows = [r for r in items if r.get("release") == release]
    as_of = _normalize_datetime(as_of) or latest_as_of(rows)

    events: List[datetime] = []
    remaining = 0
    for row in rows:
        state = row.get("state")
        if taxonomy.is_done(state):
            ts = done_at(row)
            if ts is not None:
                events.append(ts)
        elif taxonomy.is_active(state):
            remaining += 1

    if as_of is None:
        return ThroughputSummary(
            release=release,
            as_of=None,
            done_7d=0,
            done_14d=0,
            avg_per_day_7d=0.0,
            avg_per_day_14d=0.0,
            remaining=remaining,
            eta_days=None,
            eta_date=None,
        )

    done_7d = _count_in_window(events, as_of, 7)
    done_14d = _count_in_window(events, as_of, 14)
    avg_7d = done_7d / 7.0
    avg_14d = done_14d / 14.0
    eta_days = estimate_eta_days(remaining, avg_7d)
    eta_date = (as_of + timedelta(days=eta_days)).date() if eta_days is not None else None

    return ThroughputSummary(
        release=release,
        as_of=as_of,
        done_7d=done_7d,
        done_14d=done_14d,
        avg_per_day_7d=avg_7d,
        avg_per_day_14d=avg_14d,
        remaining=remaining,
        eta_days=eta_days,
        eta_date=eta_date,
    )
