from datetime import date, datetime, timedelta, timezone

from metrics.throughput import compute_throughput_summary, done_at, estimate_eta_days

RELEASE = "2026.1"
AS_OF = datetime(2026, 3, 16, 12, tzinfo=timezone.utc)


def _done(work_item_id, days_ago, **extra):
    row = {
        "work_item_id": work_item_id,
        "release": RELEASE,
        "type": "Task",
        "state": "Closed",
        "synced_at": AS_OF,
        "closed_date": AS_OF - timedelta(days=days_ago),
    }
    row.update(extra)
    return row


def _active(work_item_id):
    return {
        "work_item_id": work_item_id,
        "release": RELEASE,
        "type": "Task",
        "state": "Active",
        "synced_at": AS_OF,
    }


def test_eta_from_seven_day_velocity(taxonomy):
    items = [_done(i, days_ago=1) for i in range(1, 8)]
    items += [_active(100 + i) for i in range(14)]

    summary = compute_throughput_summary(release=RELEASE, items=items, taxonomy=taxonomy)

    assert summary.done_7d == 7
    assert summary.avg_per_day_7d == 1.0
    assert summary.remaining == 14
    assert summary.eta_days == 14
    assert summary.eta_date == date(2026, 3, 30)


def test_windows_are_trailing_and_half_open(taxonomy):
    items = [
        _done(1, days_ago=0),
        _done(2, days_ago=7),  # on the 7-day boundary: outside the 7d window
        _done(3, days_ago=3),
        _done(7, days_ago=10),
        _done(4, days_ago=14),
        _done(5, days_ago=20),
        _active(6),
    ]

    summary = compute_throughput_summary(release=RELEASE, items=items, taxonomy=taxonomy)

    assert summary.done_7d == 2
    assert summary.done_14d == 4
    assert summary.avg_per_day_14d == 4 / 14.0
    assert summary.eta_days == 4


def test_no_recent_completions_means_no_eta(taxonomy):
    items = [_done(1, days_ago=30), _active(2)]

    summary = compute_throughput_summary(release=RELEASE, items=items, taxonomy=taxonomy)

    assert summary.done_7d == 0
    assert summary.eta_days is None
    assert summary.eta_date is None


def test_done_at_falls_back_to_state_change_date():
    changed = AS_OF - timedelta(days=2)
    assert done_at({"closed_date": None, "state_change_date": changed}) == changed
    assert done_at({}) is None


def test_removed_items_are_not_remaining(taxonomy):
    items = [_done(1, days_ago=1), _active(2), dict(_active(3), state="Removed")]

    summary = compute_throughput_summary(release=RELEASE, items=items, taxonomy=taxonomy)

    assert summary.remaining == 1


def test_estimate_eta_rounds_up():
    assert estimate_eta_days(10, 3.0) == 4
    assert estimate_eta_days(0, 1.0) == 0
    assert estimate_eta_days(5, 0.0) is None
