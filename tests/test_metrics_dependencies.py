from datetime import datetime, timezone

from metrics.dependencies import compute_dependency_risk

RELEASE = "2026.1"
AS_OF = datetime(2026, 3, 16, 12, tzinfo=timezone.utc)


def _item(work_item_id, open_deps, state="Active"):
    return {
        "work_item_id": work_item_id,
        "release": RELEASE,
        "type": "User Story",
        "state": state,
        "synced_at": AS_OF,
        "open_dep_count": open_deps,
    }


def test_blocked_share_of_active_items(taxonomy):
    items = [_item(1, 2), _item(2, 1), _item(3, 4)] + [_item(i, 0) for i in range(4, 11)]
    items.append(_item(50, 9, state="Closed"))

    summary = compute_dependency_risk(release=RELEASE, items=items, taxonomy=taxonomy)

    assert summary.active_count == 10
    assert summary.blocked_count == 3
    assert summary.blocked_pct == 30
    assert summary.open_dep_total == 7
    assert [b.work_item_id for b in summary.top_blocked] == [3, 1, 2]
    assert summary.as_of == AS_OF


def test_ties_go_to_higher_id_and_list_is_capped(taxonomy):
    items = [_item(i, 1) for i in range(1, 9)]

    summary = compute_dependency_risk(release=RELEASE, items=items, taxonomy=taxonomy)

    assert [b.work_item_id for b in summary.top_blocked] == [8, 7, 6, 5, 4]


def test_unreported_counts_are_surfaced_not_blocking(taxonomy):
    items = [_item(1, None), _item(2, 0), _item(3, 1)]

    summary = compute_dependency_risk(release=RELEASE, items=items, taxonomy=taxonomy)

    assert summary.active_count == 3
    assert summary.blocked_count == 1
    assert summary.unreported_count == 1
    assert summary.blocked_pct == 33


def test_no_active_items(taxonomy):
    summary = compute_dependency_risk(
        release=RELEASE, items=[_item(1, 3, state="Done")], taxonomy=taxonomy
    )

    assert summary.active_count == 0
    assert summary.blocked_pct == 0
    assert summary.top_blocked == []
