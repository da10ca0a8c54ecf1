from __future__ import annotations

import math
import re
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, TypeVar

from exceptions import InvalidRequestException

T = TypeVar("T")

BATCH_SIZE = 200
DEFAULT_SOURCE = "tfs-weekly-sync"

# Column widths: Integer counts and BigInteger ids.
INT32_RANGE = (-(2**31), 2**31 - 1)
INT64_RANGE = (-(2**63), 2**63 - 1)

# .NET round-trip timestamps carry 7 fractional digits.
_FRACTION = re.compile(r"\.(\d+)")

# Wire names (camelCase, as sent by the sync job) -> column names.
_TEXT_FIELDS = {
    "type": "type",
    "title": "title",
    "state": "state",
    "reason": "reason",
    "assignedTo": "assigned_to",
    "assignedToUPN": "assigned_to_upn",
    "project": "project",
    "areaPath": "area_path",
    "iterationPath": "iteration_path",
    "tags": "tags",
    "release": "release",
    "createdBy": "created_by",
    "changedBy": "changed_by",
    "severity": "severity",
    "feature": "feature",
}
_DATE_FIELDS = {
    "createdDate": "created_date",
    "changedDate": "changed_date",
    "stateChangeDate": "state_change_date",
    "closedDate": "closed_date",
}
_OPTIONAL_INT_FIELDS = {
    "parentId": "parent_id",
    "featureId": "feature_id",
}
# Always reported by the source; missing means zero.
_DEFAULTED_COUNT_FIELDS = {
    "depCount": "dep_count",
    "relatedLinkCount": "related_link_count",
}
# Only reported when the link walk ran; missing or null means "no report".
_REPORTED_COUNT_FIELDS = {
    "openDepCount": "open_dep_count",
    "openRelatedCount": "open_related_count",
}


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _normalize_datetime(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return _to_utc(value)


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp leniently.

    Accepts datetimes, dates and ISO-8601 strings (a trailing ``Z`` is read as
    UTC). Naive values are assumed to be UTC. Anything unparseable is ``None``.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _to_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
    try:
        return _to_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def norm_num(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def norm_int(value: Any, bounds: Tuple[int, int] = INT32_RANGE) -> Optional[int]:
    """Integer within ``bounds``; malformed or out-of-range values are ``None``."""
    if isinstance(value, int) and not isinstance(value, bool):
        number = value
    else:
        try:
            number = int(str(value).strip())
        except (TypeError, ValueError):
            parsed = norm_num(value)
            if parsed is None:
                return None
            number = int(parsed)
    low, high = bounds
    if not low <= number <= high:
        return None
    return number


def _norm_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _pick(raw: Mapping[str, Any], wire_name: str, column: str) -> Any:
    if wire_name in raw:
        return raw[wire_name]
    return raw.get(column)


def normalize_work_item_row(
    raw: Mapping[str, Any],
    *,
    source: str,
    synced_at: datetime,
) -> Dict[str, Any]:
    """
    Convert one ingested work item record into a ``work_items_latest`` row.

    Malformed or out-of-range field values degrade to ``None`` (counts to 0)
    instead of failing the row; only a missing, unparseable or out-of-range
    ``workItemId`` is rejected, because the row cannot
    be keyed without it.
    """
    if not isinstance(raw, Mapping):
        raise InvalidRequestException("each row must be an object")

    work_item_id = norm_int(_pick(raw, "workItemId", "work_item_id"), INT64_RANGE)
    if work_item_id is None:
        raise InvalidRequestException("row is missing a valid workItemId")

    row: Dict[str, Any] = {"work_item_id": work_item_id}
    for wire_name, column in _TEXT_FIELDS.items():
        row[column] = _norm_text(_pick(raw, wire_name, column))
    for wire_name, column in _DATE_FIELDS.items():
        row[column] = parse_datetime(_pick(raw, wire_name, column))
    for wire_name, column in _OPTIONAL_INT_FIELDS.items():
        row[column] = norm_int(_pick(raw, wire_name, column), INT64_RANGE)
    for wire_name, column in _DEFAULTED_COUNT_FIELDS.items():
        value = norm_int(_pick(raw, wire_name, column))
        row[column] = value if value is not None else 0
    for wire_name, column in _REPORTED_COUNT_FIELDS.items():
        value = _pick(raw, wire_name, column)
        if value is None:
            row[column] = None
        else:
            parsed = norm_int(value)
            row[column] = parsed if parsed is not None else 0

    row["effort"] = norm_num(_pick(raw, "effort", "effort"))
    row["source"] = source
    row["synced_at"] = _to_utc(synced_at)
    return row


def percent(numerator: int, denominator: int) -> int:
    """Whole percentage rounded half-up; 0 when the denominator is 0."""
    if denominator <= 0:
        return 0
    return int(math.floor(100.0 * numerator / denominator + 0.5))


def chunked(items: Sequence[T], size: int = BATCH_SIZE) -> Iterator[List[T]]:
    size = max(1, int(size))
    for start in range(0, len(items), size):
        yield list(items[start : start + size])
