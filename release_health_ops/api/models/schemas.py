from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    ok: bool = False
    error: str
    message: str
    retryable: bool = False


class HealthResponse(BaseModel):
    ok: bool
    status: str
    services: Dict[str, str]


class SyncResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    count: int
    run_id: uuid.UUID = Field(alias="runId")
    run_at: datetime = Field(alias="runAt")


class WorkItemsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    as_of: Optional[datetime] = Field(default=None, alias="asOf")
    count: int
    limit: int
    offset: int
    rollup: Dict[str, int]
    rows: List[Dict[str, Any]]


class ReleaseInfo(BaseModel):
    release: str
    item_count: int
    synced_at: Optional[datetime]


class ReleasesResponse(BaseModel):
    ok: bool = True
    releases: List[ReleaseInfo]


class ReleaseResponse(BaseModel):
    """Fields shared by every release analytics response."""

    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    release: str
    as_of: Optional[datetime] = Field(default=None, alias="asOf")
    message: Optional[str] = None


class ScopeResponse(ReleaseResponse):
    baseline_at: Optional[datetime]
    latest_at: Optional[datetime]
    baseline_scope: int
    current_scope: int
    added_count: int
    removed_count: int
    delivered_from_baseline: int
    predictability_pct: int
    added_ids: List[int] = []
    removed_ids: List[int] = []


class BurnupPointModel(BaseModel):
    bucket_start: datetime
    total_scope: int
    done_scope: int


class BurnupResponse(ReleaseResponse):
    bucket: str
    insufficient_data: bool
    points: List[BurnupPointModel]


class AgedItemModel(BaseModel):
    work_item_id: int
    title: Optional[str]
    type: Optional[str]
    state: Optional[str]
    assigned_to: Optional[str]
    state_since: datetime
    age_days: int


class AgingStateModel(BaseModel):
    state: str
    count: int
    stale_count: int
    oldest_age_days: Optional[int]


class AgingResponse(ReleaseResponse):
    stale_days: int
    active_count: int
    max_age_days: Optional[int]
    stale_count: int
    by_state: List[AgingStateModel]
    oldest: List[AgedItemModel]


class ThroughputResponse(ReleaseResponse):
    done_7d: int
    done_14d: int
    avg_per_day_7d: float
    avg_per_day_14d: float
    remaining: int
    eta_days: Optional[int]
    eta_date: Optional[date]


class BlockedItemModel(BaseModel):
    work_item_id: int
    title: Optional[str]
    type: Optional[str]
    state: Optional[str]
    assigned_to: Optional[str]
    open_dep_count: int


class DependencyRiskResponse(ReleaseResponse):
    active_count: int
    blocked_count: int
    blocked_pct: int
    open_dep_total: int
    unreported_count: int
    top_blocked: List[BlockedItemModel]


class StageCountsModel(BaseModel):
    intake: int
    dev: int
    blocked: int
    qa_queue: int
    qa_testing: int
    done: int


class FlowResponse(ReleaseResponse):
    window_days: int
    window_start: Optional[datetime]
    stages: StageCountsModel
    done_events: int
    done_items: int
    rework_events: int
    rework_items: int
    oldest_by_stage: Dict[str, List[AgedItemModel]]
