from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from analytics.states import StateTaxonomy, normalize_state
from metrics.schemas import AgedItem, AgingStateBreakdown, AgingSummary, LatestRow
from utils import _normalize_datetime, _to_utc

DEFAULT_STALE_DAYS = 7
TOP_N = 5

_DAY = timedelta(days=1)


def state_since(row: LatestRow) -> Optional[datetime]:
    """First known of state_change_date, changed_date, created_date."""
    for key in ("state_change_date", "changed_date", "created_date"):
        value = row.get(key)
        if value is not None:
            return _to_utc(value)
    return None


def age_days(as_of: datetime, since: datetime) -> int:
    """Whole days between ``since`` and ``as_of``; never negative."""
    delta = _to_utc(as_of) - _to_utc(since)
    return max(0, delta // _DAY)


def latest_as_of(items: Iterable[LatestRow]) -> Optional[datetime]:
    synced = [_to_utc(r["synced_at"]) for r in items if r.get("synced_at") is not None]
    return max(synced) if synced else None


def _aged_item(row: LatestRow, since: datetime, as_of: datetime) -> AgedItem:
    return AgedItem(
        work_item_id=int(row["work_item_id"]),
        title=row.get("title"),
        type=row.get("type"),
        state=row.get("state"),
        assigned_to=row.get("assigned_to"),
        state_since=since,
        age_days=age_days(as_of, since),
    )


def oldest_items(
    items: Iterable[LatestRow], as_of: datetime, limit: int = TOP_N
) -> List[AgedItem]:
    """
    Items that have sat longest in their current state.

    Ordered by age descending, then by how early they entered the state, then
    by id so the list is stable. Items with no timestamp are skipped.
    """
    aged = []
    for row in items:
        since = state_since(row)
        if since is None:
            continue
        aged.append(_aged_item(row, since, as_of))
    aged.sort(key=lambda a: (-a.age_days, a.state_since, a.work_item_id))
    return aged[:limit]


def compute_aging_summary(
    *,
    release: str,
    items: Sequence[LatestRow],
    taxonomy: StateTaxonomy,
    stale_days: int = DEFAULT_STALE_DAYS,
    as_of: Optional[datetime] = None,
) -> AgingSummary:
    """
    Staleness of the active (not done, not removed) items of a release.

    ``as_of`` defaults to the most recent ``synced_at`` among the items. Items
    with no state, changed or created date are counted as active but carry no
    age, so they never count as stale.
    """
    as_of = _normalize_datetime(as_of) or latest_as_of(items)
    active = [
        r
        for r in items
        if r.get("release") == release and taxonomy.is_active(r.get("state"))
    ]
    if as_of is None:
        return AgingSummary(
            release=release,
            as_of=None,
            stale_days=stale_days,
            active_count=len(active),
            max_age_days=None,
            stale_count=0,
        )

    by_state: Dict[str, Dict[str, Optional[int]]] = {}
    display: Dict[str, str] = {}
    max_age: Optional[int] = None
    stale_total = 0
    for row in active:
        state = row.get("state") or ""
        key = normalize_state(state)
        display.setdefault(key, state)
        bucket = by_state.setdefault(key, {"count": 0, "stale": 0, "oldest": None})
        bucket["count"] += 1

        since = state_since(row)
        if since is None:
            continue
        age = age_days(as_of, since)
        if max_age is None or age > max_age:
            max_age = age
        if bucket["oldest"] is None or age > bucket["oldest"]:
            bucket["oldest"] = age
        if age >= stale_days:
            bucket["stale"] += 1
            stale_total += 1

    breakdown = [
        AgingStateBreakdown(
            state=display[key],
            count=int(stats["count"]),
            stale_count=int(stats["stale"]),
            oldest_age_days=stats["oldest"],
        )
        for key, stats in by_state.items()
    ]
    breakdown.sort(key=lambda b: (-b.stale_count, -b.count, b.state))

    return AgingSummary(
        release=release,
        as_of=as_of,
        stale_days=stale_days,
        active_count=len(active),
        max_age_days=max_age,
        stale_count=stale_total,
        by_state=breakdown,
        oldest=oldest_items(active, as_of),
    )
