from __future__ import annotations

from datetime import datetime
from typing import Optional

from exceptions import InvalidRequestException
from storage import DEFAULT_PAGE_LIMIT, SQLAlchemyStore, WorkItemQuery
from utils import parse_datetime

from ..models.schemas import ReleaseInfo, ReleasesResponse, WorkItemsResponse


def _parse_bound(name: str, value: Optional[str]) -> Optional[datetime]:
    if value is None or not value.strip():
        return None
    parsed = parse_datetime(value)
    if parsed is None:
        raise InvalidRequestException(f"{name} is not a valid timestamp: {value!r}")
    return parsed


def work_item_query(
    *,
    q: Optional[str] = None,
    release: Optional[str] = None,
    assigned_to_upn: Optional[str] = None,
    state: Optional[str] = None,
    type: Optional[str] = None,
    feature: Optional[str] = None,
    from_changed: Optional[str] = None,
    to_changed: Optional[str] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> WorkItemQuery:
    return WorkItemQuery(
        q=q,
        release=release.strip() if release else None,
        assigned_to_upn=assigned_to_upn or None,
        state=state or None,
        type=type or None,
        feature=feature or None,
        changed_from=_parse_bound("fromChanged", from_changed),
        changed_to=_parse_bound("toChanged", to_changed),
        limit=DEFAULT_PAGE_LIMIT if limit is None else limit,
        offset=0 if offset is None else offset,
    )


async def build_work_items_response(
    store: SQLAlchemyStore, query: WorkItemQuery
) -> WorkItemsResponse:
    page = await store.latest(query)
    as_of = max((r["synced_at"] for r in page.rows if r.get("synced_at")), default=None)
    return WorkItemsResponse(
        as_of=as_of,
        count=page.total,
        limit=page.limit,
        offset=page.offset,
        rollup=page.rollup,
        rows=page.rows,
    )


async def build_releases_response(store: SQLAlchemyStore) -> ReleasesResponse:
    rows = await store.list_releases()
    return ReleasesResponse(releases=[ReleaseInfo(**row) for row in rows])
