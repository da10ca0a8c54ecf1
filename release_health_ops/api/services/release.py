from __future__ import annotations

from dataclasses import asdict
from datetime import timedelta
from typing import Optional

from analytics.states import StateTaxonomy
from metrics.aging import compute_aging_summary
from metrics.burnup import compute_burnup, normalize_bucket
from metrics.dependencies import compute_dependency_risk
from metrics.scope import compute_scope_summary
from metrics.stage_flow import compute_cycle_summary
from metrics.throughput import compute_throughput_summary
from storage import SQLAlchemyStore

from ..models.schemas import (
    AgingResponse,
    BurnupPointModel,
    BurnupResponse,
    DependencyRiskResponse,
    FlowResponse,
    ScopeResponse,
    ThroughputResponse,
)
from .filtering import clamp_stale_days, clamp_window_days, require_release

NO_SNAPSHOTS = "No snapshots recorded for this release yet."
NO_ITEMS = "No work items recorded for this release yet."
SINGLE_RUN = "Only one snapshot run so far; baseline equals current scope."
INSUFFICIENT_TREND = "Insufficient trend data: fewer than 2 burnup points."


async def build_scope_response(
    store: SQLAlchemyStore, *, release: Optional[str], taxonomy: StateTaxonomy
) -> ScopeResponse:
    release = require_release(release)
    baseline_at, latest_at, run_count = await store.release_run_bounds(release)
    snapshots = []
    if baseline_at is not None:
        snapshots = await store.snapshots_at(release, [baseline_at, latest_at])

    summary = compute_scope_summary(release=release, snapshots=snapshots, taxonomy=taxonomy)
    message = None
    if run_count == 0:
        message = NO_SNAPSHOTS
    elif run_count == 1:
        message = SINGLE_RUN
    return ScopeResponse(**asdict(summary), message=message)


async def build_burnup_response(
    store: SQLAlchemyStore,
    *,
    release: Optional[str],
    bucket: Optional[str],
    taxonomy: StateTaxonomy,
) -> BurnupResponse:
    release = require_release(release)
    bucket = normalize_bucket(bucket)
    snapshots = await store.snapshots_for_release(release)
    points = compute_burnup(snapshots=snapshots, taxonomy=taxonomy, bucket=bucket)

    as_of = max((r["snapshot_at"] for r in snapshots), default=None)
    insufficient = len(points) < 2
    message = None
    if not snapshots:
        message = NO_SNAPSHOTS
    elif insufficient:
        message = INSUFFICIENT_TREND
    return BurnupResponse(
        release=release,
        as_of=as_of,
        message=message,
        bucket=bucket,
        insufficient_data=insufficient,
        points=[BurnupPointModel(**asdict(p)) for p in points],
    )


async def build_aging_response(
    store: SQLAlchemyStore,
    *,
    release: Optional[str],
    stale_days: Optional[int],
    taxonomy: StateTaxonomy,
) -> AgingResponse:
    release = require_release(release)
    items = await store.latest_for_release(release)
    summary = compute_aging_summary(
        release=release,
        items=items,
        taxonomy=taxonomy,
        stale_days=clamp_stale_days(stale_days),
    )
    return AgingResponse(**asdict(summary), message=None if items else NO_ITEMS)


async def build_throughput_response(
    store: SQLAlchemyStore, *, release: Optional[str], taxonomy: StateTaxonomy
) -> ThroughputResponse:
    release = require_release(release)
    items = await store.latest_for_release(release)
    summary = compute_throughput_summary(release=release, items=items, taxonomy=taxonomy)
    return ThroughputResponse(**asdict(summary), message=None if items else NO_ITEMS)


async def build_dependency_response(
    store: SQLAlchemyStore, *, release: Optional[str], taxonomy: StateTaxonomy
) -> DependencyRiskResponse:
    release = require_release(release)
    items = await store.latest_for_release(release)
    summary = compute_dependency_risk(release=release, items=items, taxonomy=taxonomy)
    return DependencyRiskResponse(**asdict(summary), message=None if items else NO_ITEMS)


async def build_flow_response(
    store: SQLAlchemyStore,
    *,
    release: Optional[str],
    window_days: Optional[int],
    taxonomy: StateTaxonomy,
) -> FlowResponse:
    release = require_release(release)
    window_days = clamp_window_days(window_days)
    _, latest_at, _ = await store.release_run_bounds(release)
    snapshots = []
    if latest_at is not None:
        snapshots = await store.snapshots_for_release(
            release, since=latest_at - timedelta(days=window_days)
        )
    items = await store.latest_for_release(release)

    summary = compute_cycle_summary(
        release=release,
        snapshots=snapshots,
        items=items,
        taxonomy=taxonomy,
        window_days=window_days,
        as_of=latest_at,
    )
    return FlowResponse(
        **asdict(summary), message=None if latest_at is not None else NO_SNAPSHOTS
    )
