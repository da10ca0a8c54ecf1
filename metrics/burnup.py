from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Sequence, Tuple

from analytics.states import StateTaxonomy
from metrics.schemas import BurnupPoint, SnapshotRow
from utils import _to_utc

BUCKETS = ("hour", "day", "week")
DEFAULT_BUCKET = "day"


def normalize_bucket(bucket: str | None) -> str:
    """Unrecognized granularities fall back to ``day``."""
    value = (bucket or "").strip().lower()
    return value if value in BUCKETS else DEFAULT_BUCKET


def truncate_to_bucket(ts: datetime, bucket: str) -> datetime:
    """
    Truncate a timestamp to the start of its UTC bucket.

    - hour: top of the hour
    - day: midnight
    - week: Monday midnight
    """
    ts = _to_utc(ts)
    if bucket == "hour":
        return ts.replace(minute=0, second=0, microsecond=0)
    start_of_day = ts.replace(hour=0, minute=0, second=0, microsecond=0)
    if bucket == "week":
        return start_of_day - timedelta(days=start_of_day.weekday())
    return start_of_day


def compute_burnup(
    *,
    snapshots: Sequence[SnapshotRow],
    taxonomy: StateTaxonomy,
    bucket: str = DEFAULT_BUCKET,
) -> List[BurnupPoint]:
    """
    Count total and done scope per time bucket, ascending by bucket start.

    Every snapshot row in a bucket counts once towards ``total_scope``, so two
    runs landing in the same bucket both contribute. Fewer than two points is
    a valid result that callers report as insufficient trend data.
    """
    bucket = normalize_bucket(bucket)
    counts: Dict[datetime, Tuple[int, int]] = {}
    for row in snapshots:
        start = truncate_to_bucket(row["snapshot_at"], bucket)
        total, done = counts.get(start, (0, 0))
        total += 1
        if taxonomy.is_done(row.get("state")):
            done += 1
        counts[start] = (total, done)

    return [
        BurnupPoint(bucket_start=start, total_scope=total, done_scope=done)
        for start, (total, done) in sorted(counts.items())
    ]
