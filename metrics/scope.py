from __future__ import annotations

from typing import Dict, Optional, Sequence

from analytics.states import StateTaxonomy
from metrics.schemas import ScopeSummary, SnapshotRow
from utils import _to_utc, percent


def compute_scope_summary(
    *,
    release: str,
    snapshots: Sequence[SnapshotRow],
    taxonomy: StateTaxonomy,
) -> ScopeSummary:
    """
    Reconcile a release's committed scope against its current scope.

    The baseline is the set of items seen in the earliest snapshot run for the
    release, the current set is the latest run. Rows from any run in between
    are ignored, so callers may pass either every snapshot of the release or
    only the rows of the two boundary runs.

    - added = current - baseline
    - removed = baseline - current
    - delivered_from_baseline = baseline items whose current state is done
    - predictability_pct = round(100 * delivered / baseline), 0 for an empty
      baseline
    """
    rows = [r for r in snapshots if r.get("release") == release]
    if not rows:
        return ScopeSummary(
            release=release,
            baseline_at=None,
            latest_at=None,
            baseline_scope=0,
            current_scope=0,
            added_count=0,
            removed_count=0,
            delivered_from_baseline=0,
            predictability_pct=0,
            as_of=None,
        )

    baseline_at = min(_to_utc(r["snapshot_at"]) for r in rows)
    latest_at = max(_to_utc(r["snapshot_at"]) for r in rows)

    baseline_ids = set()
    current_states: Dict[int, Optional[str]] = {}
    for row in rows:
        observed_at = _to_utc(row["snapshot_at"])
        if observed_at == baseline_at:
            baseline_ids.add(int(row["work_item_id"]))
        if observed_at == latest_at:
            current_states[int(row["work_item_id"])] = row.get("state")

    current_ids = set(current_states)
    added = current_ids - baseline_ids
    removed = baseline_ids - current_ids
    delivered = sum(
        1
        for item_id in baseline_ids & current_ids
        if taxonomy.is_done(current_states[item_id])
    )

    return ScopeSummary(
        release=release,
        baseline_at=baseline_at,
        latest_at=latest_at,
        baseline_scope=len(baseline_ids),
        current_scope=len(current_ids),
        added_count=len(added),
        removed_count=len(removed),
        delivered_from_baseline=delivered,
        predictability_pct=percent(delivered, len(baseline_ids)),
        as_of=latest_at,
        added_ids=sorted(added),
        removed_ids=sorted(removed),
    )
