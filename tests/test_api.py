from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

from exceptions import StoreUnavailableException
from release_health_ops.api.main import app, get_store, get_taxonomy

RELEASE = "2026.1"
RUN_1 = datetime(2026, 3, 2, 9, tzinfo=timezone.utc)
RUN_2 = datetime(2026, 3, 9, 9, tzinfo=timezone.utc)


def _row(work_item_id, state, **extra):
    row = {
        "workItemId": work_item_id,
        "title": f"Item {work_item_id}",
        "type": "User Story",
        "state": state,
        "release": RELEASE,
    }
    row.update(extra)
    return row


@pytest_asyncio.fixture
async def client(store, taxonomy, monkeypatch):
    monkeypatch.delenv("SYNC_API_KEY", raising=False)
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_taxonomy] = lambda: taxonomy
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def _sync(client, rows, synced_at, headers=None):
    return await client.post(
        "/api/v1/sync",
        json={"source": "tfs-weekly-sync", "syncedAtUtc": synced_at.isoformat(), "rows": rows},
        headers=headers or {},
    )


@pytest_asyncio.fixture
async def seeded(client):
    closed = (RUN_2 - timedelta(days=1)).isoformat()
    await _sync(
        client,
        [_row(1, "Active"), _row(2, "Resolved"), _row(3, "New", openDepCount=2)],
        RUN_1,
    )
    await _sync(
        client,
        [
            _row(1, "Closed", closedDate=closed),
            _row(2, "Resolved"),
            _row(4, "Active", openDepCount=1, stateChangeDate=RUN_1.isoformat()),
        ],
        RUN_2,
    )
    return client


@pytest.mark.asyncio
async def test_health_reports_store_state(client, store, monkeypatch):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["services"] == {"store": "ok"}

    async def _down():
        raise StoreUnavailableException("ping timed out")

    monkeypatch.setattr(store, "ping", _down)
    response = await client.get("/health")
    assert response.status_code == 503
    assert response.json()["status"] == "down"


@pytest.mark.asyncio
async def test_sync_returns_run_details(client):
    response = await _sync(client, [_row(1, "Active")], RUN_1)

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["count"] == 1
    assert body["runId"]
    assert body["runAt"].startswith("2026-03-02T09:00:00")


@pytest.mark.asyncio
async def test_sync_rejects_bad_batches(client):
    empty = await client.post("/api/v1/sync", json={"rows": []})
    assert empty.status_code == 400
    assert empty.json() == {
        "ok": False,
        "error": "invalid_request",
        "message": "rows array required",
        "retryable": False,
    }

    missing_id = await client.post("/api/v1/sync", json={"rows": [{"title": "x"}]})
    assert missing_id.status_code == 400

    bad_time = await client.post(
        "/api/v1/sync", json={"syncedAtUtc": "last tuesday", "rows": [_row(1, "New")]}
    )
    assert bad_time.status_code == 400

    not_a_list = await client.post("/api/v1/sync", json={"rows": "nope"})
    assert not_a_list.status_code == 400
    assert not_a_list.json()["error"] == "invalid_request"


@pytest.mark.asyncio
async def test_sync_stores_out_of_range_numbers_as_fallbacks(client):
    rows = [
        _row(1, "Active", depCount=1e20, openDepCount="99999999999999999999", parentId=2**70),
        _row(2, "New", relatedLinkCount=-(2**40), openRelatedCount=2**31),
    ]

    response = await _sync(client, rows, RUN_1)
    assert response.status_code == 200
    assert response.json()["count"] == 2

    listing = await client.get("/api/v1/work-items", params={"release": RELEASE})
    by_id = {r["work_item_id"]: r for r in listing.json()["rows"]}
    assert by_id[1]["dep_count"] == 0
    assert by_id[1]["open_dep_count"] == 0
    assert by_id[1]["parent_id"] is None
    assert by_id[2]["related_link_count"] == 0
    assert by_id[2]["open_related_count"] == 0

    too_large_id = await _sync(client, [_row(2**70, "New")], RUN_2)
    assert too_large_id.status_code == 400
    assert too_large_id.json()["error"] == "invalid_request"


@pytest.mark.asyncio
async def test_sync_checks_api_key_when_configured(client, monkeypatch):
    monkeypatch.setenv("SYNC_API_KEY", "s3cret")

    denied = await _sync(client, [_row(1, "New")], RUN_1, headers={"x-api-key": "wrong"})
    assert denied.status_code == 401
    assert denied.json()["error"] == "unauthorized"

    allowed = await _sync(client, [_row(1, "New")], RUN_1, headers={"x-api-key": "s3cret"})
    assert allowed.status_code == 200


@pytest.mark.asyncio
async def test_work_items_listing(seeded):
    response = await seeded.get(
        "/api/v1/work-items", params={"release": RELEASE, "state": "Resolved"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 1
    assert body["rows"][0]["work_item_id"] == 2
    assert body["asOf"].startswith("2026-03-09")
    assert set(body["rollup"]) == {"dep_total", "rel_total", "open_dep_total", "open_rel_total"}


@pytest.mark.asyncio
async def test_work_items_rejects_bad_paging(seeded):
    response = await seeded.get("/api/v1/work-items", params={"limit": 5000})
    assert response.status_code == 400

    response = await seeded.get("/api/v1/work-items", params={"fromChanged": "soon"})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_releases(seeded):
    response = await seeded.get("/api/v1/releases")

    assert response.status_code == 200
    assert [r["release"] for r in response.json()["releases"]] == [RELEASE]


@pytest.mark.asyncio
async def test_release_is_required(client):
    for path in ("scope", "burnup", "aging", "throughput", "dependencies", "flow"):
        response = await client.get(f"/api/v1/release/{path}", params={"release": "  "})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"


@pytest.mark.asyncio
async def test_scope_endpoint(seeded):
    response = await seeded.get("/api/v1/release/scope", params={"release": f" {RELEASE} "})

    body = response.json()
    assert response.status_code == 200
    assert body["release"] == RELEASE
    assert body["baseline_scope"] == 3
    assert body["current_scope"] == 3
    assert body["added_ids"] == [4]
    assert body["removed_ids"] == [3]
    assert body["delivered_from_baseline"] == 1
    assert body["predictability_pct"] == 33
    assert body["asOf"].startswith("2026-03-09")


@pytest.mark.asyncio
async def test_scope_for_unknown_release_is_empty_not_error(client):
    response = await client.get("/api/v1/release/scope", params={"release": "nope"})

    body = response.json()
    assert response.status_code == 200
    assert body["ok"] is True
    assert body["baseline_scope"] == 0
    assert body["message"]


@pytest.mark.asyncio
async def test_burnup_endpoint(seeded):
    response = await seeded.get(
        "/api/v1/release/burnup", params={"release": RELEASE, "bucket": "week"}
    )

    body = response.json()
    assert body["bucket"] == "week"
    assert body["insufficient_data"] is False
    assert [p["total_scope"] for p in body["points"]] == [3, 3]
    assert [p["done_scope"] for p in body["points"]] == [0, 1]


@pytest.mark.asyncio
async def test_aging_throughput_dependencies_endpoints(seeded):
    aging = (
        await seeded.get("/api/v1/release/aging", params={"release": RELEASE, "stale_days": 0})
    ).json()
    assert aging["stale_days"] == 1
    assert aging["active_count"] == 3
    assert aging["oldest"][0]["work_item_id"] == 4
    assert aging["oldest"][0]["age_days"] == 7

    throughput = (
        await seeded.get("/api/v1/release/throughput", params={"release": RELEASE})
    ).json()
    assert throughput["done_7d"] == 1
    assert throughput["remaining"] == 3
    assert throughput["eta_days"] == 21

    deps = (
        await seeded.get("/api/v1/release/dependencies", params={"release": RELEASE})
    ).json()
    assert deps["active_count"] == 3
    assert deps["blocked_count"] == 2
    assert deps["blocked_pct"] == 67
    assert deps["unreported_count"] == 1


@pytest.mark.asyncio
async def test_flow_endpoint(seeded):
    response = await seeded.get(
        "/api/v1/release/flow", params={"release": RELEASE, "window_days": 30}
    )

    body = response.json()
    assert response.status_code == 200
    assert body["window_days"] == 30
    assert body["done_events"] == 1
    assert body["rework_events"] == 0
    assert body["stages"]["done"] == 1


@pytest.mark.asyncio
async def test_store_failure_maps_to_503(client, store, monkeypatch):
    async def _fail(*_args, **_kwargs):
        raise StoreUnavailableException("latest_for_release timed out after 30s")

    monkeypatch.setattr(store, "latest_for_release", _fail)
    response = await client.get("/api/v1/release/aging", params={"release": RELEASE})

    assert response.status_code == 503
    assert response.json()["retryable"] is True
