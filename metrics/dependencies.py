from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

from analytics.states import StateTaxonomy
from metrics.aging import latest_as_of
from metrics.schemas import BlockedItem, DependencyRiskSummary, LatestRow
from utils import _normalize_datetime, percent

TOP_N = 5


def compute_dependency_risk(
    *,
    release: str,
    items: Sequence[LatestRow],
    taxonomy: StateTaxonomy,
    as_of: Optional[datetime] = None,
) -> DependencyRiskSummary:
    """
    Share of active items waiting on open dependencies.

    An unreported ``open_dep_count`` (None) counts as zero for blocking and
    totals, and is surfaced separately as ``unreported_count``.

    The top list is ordered by open dependencies descending with ties going to
    the higher (more recently created) work item id.
    """
    rows = [r for r in items if r.get("release") == release]
    as_of = _normalize_datetime(as_of) or latest_as_of(rows)
    active = [r for r in rows if taxonomy.is_active(r.get("state"))]

    blocked = []
    open_dep_total = 0
    unreported = 0
    for row in active:
        open_deps = row.get("open_dep_count")
        if open_deps is None:
            unreported += 1
            continue
        open_dep_total += int(open_deps)
        if open_deps > 0:
            blocked.append(row)

    blocked.sort(
        key=lambda r: (int(r["open_dep_count"]), int(r["work_item_id"])), reverse=True
    )
    top = [
        BlockedItem(
            work_item_id=int(r["work_item_id"]),
            title=r.get("title"),
            type=r.get("type"),
            state=r.get("state"),
            assigned_to=r.get("assigned_to"),
            open_dep_count=int(r["open_dep_count"]),
        )
        for r in blocked[:TOP_N]
    ]

    return DependencyRiskSummary(
        release=release,
        as_of=as_of,
        active_count=len(active),
        blocked_count=len(blocked),
        blocked_pct=percent(len(blocked), len(active)),
        open_dep_total=open_dep_total,
        unreported_count=unreported,
        top_blocked=top,
    )
