from datetime import datetime, timedelta, timezone

from metrics.aging import age_days, compute_aging_summary, oldest_items, state_since

RELEASE = "2026.1"
AS_OF = datetime(2026, 3, 16, 12, tzinfo=timezone.utc)


def _item(work_item_id, state="Active", days_in_state=0, **extra):
    row = {
        "work_item_id": work_item_id,
        "release": RELEASE,
        "type": "Task",
        "state": state,
        "title": f"Item {work_item_id}",
        "synced_at": AS_OF,
        "state_change_date": AS_OF - timedelta(days=days_in_state),
    }
    row.update(extra)
    return row


def test_stale_threshold_is_inclusive(taxonomy):
    items = [_item(1, days_in_state=10), _item(2, days_in_state=7), _item(3, days_in_state=6)]

    summary = compute_aging_summary(
        release=RELEASE, items=items, taxonomy=taxonomy, stale_days=7
    )

    assert summary.as_of == AS_OF
    assert summary.active_count == 3
    assert summary.max_age_days == 10
    assert summary.stale_count == 2
    assert [a.work_item_id for a in summary.oldest] == [1, 2, 3]


def test_item_changed_at_as_of_has_zero_age(taxonomy):
    summary = compute_aging_summary(
        release=RELEASE, items=[_item(1, days_in_state=0)], taxonomy=taxonomy
    )

    assert summary.max_age_days == 0
    assert summary.stale_count == 0


def test_done_and_removed_items_are_not_aged(taxonomy):
    items = [
        _item(1, state="Closed", days_in_state=30),
        _item(2, state="Removed", days_in_state=30),
        _item(3, state="Resolved", days_in_state=2),
    ]

    summary = compute_aging_summary(release=RELEASE, items=items, taxonomy=taxonomy)

    assert summary.active_count == 1
    assert summary.max_age_days == 2


def test_state_since_falls_back_through_dates():
    changed = datetime(2026, 3, 1, tzinfo=timezone.utc)
    created = datetime(2026, 2, 1, tzinfo=timezone.utc)

    assert state_since({"changed_date": changed, "created_date": created}) == changed
    assert state_since({"state_change_date": None, "created_date": created}) == created
    assert state_since({}) is None


def test_items_without_dates_count_but_never_age(taxonomy):
    undated = _item(1, state_change_date=None)
    summary = compute_aging_summary(
        release=RELEASE, items=[undated, _item(2, days_in_state=3)], taxonomy=taxonomy
    )

    assert summary.active_count == 2
    assert summary.max_age_days == 3
    assert [a.work_item_id for a in summary.oldest] == [2]


def test_future_timestamps_clamp_to_zero():
    assert age_days(AS_OF, AS_OF + timedelta(days=2)) == 0
    assert age_days(AS_OF, AS_OF - timedelta(hours=47)) == 1


def test_oldest_ties_break_on_entry_time_then_id():
    early = _item(7, days_in_state=0, state_change_date=AS_OF - timedelta(days=5, hours=6))
    late = _item(3, days_in_state=0, state_change_date=AS_OF - timedelta(days=5, hours=1))
    same_a = _item(9, days_in_state=5)
    same_b = _item(4, days_in_state=5)

    ordered = oldest_items([same_a, late, early, same_b], AS_OF)

    assert [a.work_item_id for a in ordered] == [7, 3, 4, 9]
    assert all(a.age_days == 5 for a in ordered)


def test_breakdown_groups_by_state(taxonomy):
    items = [
        _item(1, state="Active", days_in_state=9),
        _item(2, state="Active", days_in_state=1),
        _item(3, state="On-Hold", days_in_state=12),
    ]

    summary = compute_aging_summary(
        release=RELEASE, items=items, taxonomy=taxonomy, stale_days=7
    )

    by_state = {b.state: b for b in summary.by_state}
    assert by_state["Active"].count == 2
    assert by_state["Active"].stale_count == 1
    assert by_state["Active"].oldest_age_days == 9
    assert by_state["On-Hold"].oldest_age_days == 12


def test_breakdown_merges_state_case_variants(taxonomy):
    items = [
        _item(1, state="Active", days_in_state=9),
        _item(2, state="active", days_in_state=2),
    ]

    summary = compute_aging_summary(
        release=RELEASE, items=items, taxonomy=taxonomy, stale_days=7
    )

    assert len(summary.by_state) == 1
    (breakdown,) = summary.by_state
    assert breakdown.state == "Active"
    assert breakdown.count == 2
    assert breakdown.stale_count == 1
    assert breakdown.oldest_age_days == 9


def test_empty_release(taxonomy):
    summary = compute_aging_summary(release=RELEASE, items=[], taxonomy=taxonomy)

    assert summary.as_of is None
    assert summary.active_count == 0
    assert summary.max_age_days is None
    assert summary.oldest == []
