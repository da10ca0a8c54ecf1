from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from analytics.states import (
    STAGE_DEV,
    STAGE_DONE,
    STAGE_INTAKE,
    STAGE_QA_QUEUE,
    STAGE_QA_TESTING,
    StateTaxonomy,
)
from metrics.aging import latest_as_of, oldest_items
from metrics.schemas import (
    CycleSummary,
    LatestRow,
    SnapshotRow,
    StageCounts,
    StageTransition,
)
from utils import _normalize_datetime, _to_utc

DEFAULT_WINDOW_DAYS = 7
AGED_STAGES = (STAGE_DEV, STAGE_QA_QUEUE, STAGE_QA_TESTING)


def build_transitions(
    snapshots: Sequence[SnapshotRow],
    *,
    window_start: Optional[datetime] = None,
    as_of: Optional[datetime] = None,
) -> List[StageTransition]:
    """
    Pair every in-window snapshot of an item with the one observed before it.

    Snapshots outside ``[window_start, as_of]`` are dropped before pairing, so
    the first in-window observation of an item has ``prev_state=None`` even if
    older history exists. Snapshots without a state are skipped, so pairing
    continues from the last known state.
    """
    history: Dict[int, List[SnapshotRow]] = defaultdict(list)
    for row in snapshots:
        ts = _to_utc(row["snapshot_at"])
        if window_start is not None and ts < window_start:
            continue
        if as_of is not None and ts > as_of:
            continue
        if row.get("state") is None:
            continue
        history[int(row["work_item_id"])].append(row)

    transitions: List[StageTransition] = []
    for work_item_id in sorted(history):
        rows = sorted(history[work_item_id], key=lambda r: _to_utc(r["snapshot_at"]))
        prev_state: Optional[str] = None
        for row in rows:
            transitions.append(
                StageTransition(
                    work_item_id=work_item_id,
                    type=row.get("type"),
                    snapshot_at=_to_utc(row["snapshot_at"]),
                    state=row.get("state"),
                    prev_state=prev_state,
                )
            )
            prev_state = row.get("state")
    return transitions


def _stage_counts(items: Sequence[LatestRow], taxonomy: StateTaxonomy) -> StageCounts:
    counts = {"intake": 0, "dev": 0, "blocked": 0, "qa_queue": 0, "qa_testing": 0, "done": 0}
    for row in items:
        info = taxonomy.classify(row.get("state"))
        if info.stage in (STAGE_INTAKE, STAGE_DEV, STAGE_QA_QUEUE, STAGE_QA_TESTING, STAGE_DONE):
            counts[info.stage] += 1
        if info.blocked:
            counts["blocked"] += 1
    return StageCounts(**counts)


def compute_cycle_summary(
    *,
    release: str,
    snapshots: Sequence[SnapshotRow],
    items: Sequence[LatestRow],
    taxonomy: StateTaxonomy,
    window_days: int = DEFAULT_WINDOW_DAYS,
    as_of: Optional[datetime] = None,
) -> CycleSummary:
    """
    Stage flow of a release over a trailing window.

    Stage counts and the oldest-in-stage lists come from the current state of
    each item; done and rework events come from state transitions between
    consecutive snapshots inside the window.

    - done event: the new state is done and the previous one was known and
      not done (re-confirming a done state does not count)
    - rework event: the previous state was QA queue, QA testing or done and the
      item was sent back (reopened for bugs, returned to development otherwise)
    """
    release_snaps = [r for r in snapshots if r.get("release") == release]
    current = [r for r in items if r.get("release") == release]

    as_of = _normalize_datetime(as_of)
    if as_of is None and release_snaps:
        as_of = max(_to_utc(r["snapshot_at"]) for r in release_snaps)
    if as_of is None:
        as_of = latest_as_of(current)

    stages = _stage_counts(current, taxonomy)
    if as_of is None:
        return CycleSummary(
            release=release,
            as_of=None,
            window_days=window_days,
            window_start=None,
            stages=stages,
            done_events=0,
            done_items=0,
            rework_events=0,
            rework_items=0,
        )

    window_start = as_of - timedelta(days=window_days)
    transitions = build_transitions(release_snaps, window_start=window_start, as_of=as_of)

    done_events = 0
    done_items = set()
    rework_events = 0
    rework_items = set()
    for t in transitions:
        if t.prev_state is None:
            continue
        if taxonomy.is_done(t.state) and not taxonomy.is_done(t.prev_state):
            done_events += 1
            done_items.add(t.work_item_id)
        if taxonomy.is_rework(t.type, t.prev_state, t.state):
            rework_events += 1
            rework_items.add(t.work_item_id)

    oldest_by_stage = {
        stage: oldest_items(
            [r for r in current if taxonomy.stage_of(r.get("state")) == stage], as_of
        )
        for stage in AGED_STAGES
    }

    return CycleSummary(
        release=release,
        as_of=as_of,
        window_days=window_days,
        window_start=window_start,
        stages=stages,
        done_events=done_events,
        done_items=len(done_items),
        rework_events=rework_events,
        rework_items=len(rework_items),
        oldest_by_stage=oldest_by_stage,
    )
