from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, TypedDict
from typing_extensions import NotRequired


class SnapshotRow(TypedDict):
    work_item_id: int
    snapshot_at: datetime
    release: Optional[str]
    type: Optional[str]
    state: Optional[str]
    # Optional snapshot facts; analyzers only rely on the keys above.
    run_id: NotRequired[str]
    severity: NotRequired[Optional[str]]
    effort: NotRequired[Optional[float]]
    dep_count: NotRequired[int]
    open_dep_count: NotRequired[Optional[int]]
    related_link_count: NotRequired[int]
    open_related_count: NotRequired[Optional[int]]
    closed_date: NotRequired[Optional[datetime]]


class LatestRow(TypedDict):
    work_item_id: int
    release: Optional[str]
    type: Optional[str]
    state: Optional[str]
    synced_at: datetime
    title: NotRequired[Optional[str]]
    created_date: NotRequired[Optional[datetime]]
    changed_date: NotRequired[Optional[datetime]]
    state_change_date: NotRequired[Optional[datetime]]
    closed_date: NotRequired[Optional[datetime]]
    open_dep_count: NotRequired[Optional[int]]
    dep_count: NotRequired[int]
    assigned_to: NotRequired[Optional[str]]


@dataclass(frozen=True)
class ScopeSummary:
    release: str
    baseline_at: Optional[datetime]
    latest_at: Optional[datetime]
    baseline_scope: int
    current_scope: int
    added_count: int
    removed_count: int
    delivered_from_baseline: int
    predictability_pct: int
    as_of: Optional[datetime]
    added_ids: List[int] = field(default_factory=list)
    removed_ids: List[int] = field(default_factory=list)


@dataclass(frozen=True)
class BurnupPoint:
    bucket_start: datetime
    total_scope: int
    done_scope: int


@dataclass(frozen=True)
class AgedItem:
    work_item_id: int
    title: Optional[str]
    type: Optional[str]
    state: Optional[str]
    assigned_to: Optional[str]
    state_since: datetime
    age_days: int


@dataclass(frozen=True)
class AgingStateBreakdown:
    state: str
    count: int
    stale_count: int
    oldest_age_days: Optional[int]


@dataclass(frozen=True)
class AgingSummary:
    release: str
    as_of: Optional[datetime]
    stale_days: int
    active_count: int
    max_age_days: Optional[int]
    stale_count: int
    by_state: List[AgingStateBreakdown] = field(default_factory=list)
    oldest: List[AgedItem] = field(default_factory=list)


@dataclass(frozen=True)
class ThroughputSummary:
    release: str
    as_of: Optional[datetime]
    done_7d: int
    done_14d: int
    avg_per_day_7d: float
    avg_per_day_14d: float
    remaining: int
    eta_days: Optional[int]
    eta_date: Optional[date]


@dataclass(frozen=True)
class BlockedItem:
    work_item_id: int
    title: Optional[str]
    type: Optional[str]
    state: Optional[str]
    assigned_to: Optional[str]
    open_dep_count: int


@dataclass(frozen=True)
class DependencyRiskSummary:
    release: str
    as_of: Optional[datetime]
    active_count: int
    blocked_count: int
    blocked_pct: int
    open_dep_total: int
    unreported_count: int
    top_blocked: List[BlockedItem] = field(default_factory=list)


@dataclass(frozen=True)
class StageTransition:
    work_item_id: int
    type: Optional[str]
    snapshot_at: datetime
    state: Optional[str]
    prev_state: Optional[str]


@dataclass(frozen=True)
class StageCounts:
    intake: int = 0
    dev: int = 0
    blocked: int = 0
    qa_queue: int = 0
    qa_testing: int = 0
    done: int = 0


@dataclass(frozen=True)
class CycleSummary:
    release: str
    as_of: Optional[datetime]
    window_days: int
    window_start: Optional[datetime]
    stages: StageCounts
    done_events: int
    done_items: int
    rework_events: int
    rework_items: int
    oldest_by_stage: Dict[str, List[AgedItem]] = field(default_factory=dict)
