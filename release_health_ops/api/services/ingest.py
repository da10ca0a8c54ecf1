from __future__ import annotations

from exceptions import InvalidRequestException
from storage import SQLAlchemyStore
from utils import parse_datetime

from ..models.filters import SyncRequest
from ..models.schemas import SyncResponse


async def ingest_batch(store: SQLAlchemyStore, payload: SyncRequest) -> SyncResponse:
    """
    Append one ingestion batch as a new snapshot run.

    Replaying the same batch creates another run: rows are idempotent per
    work item, runs are not.
    """
    run_at = None
    if payload.synced_at_utc:
        run_at = parse_datetime(payload.synced_at_utc)
        if run_at is None:
            raise InvalidRequestException(
                f"syncedAtUtc is not a valid timestamp: {payload.synced_at_utc!r}"
            )

    result = await store.append_run(payload.source, payload.rows, run_at=run_at)
    return SyncResponse(count=result.count, run_id=result.run_id, run_at=result.run_at)
