import datetime as dt

import pytest
import pytest_asyncio

from app.database import create_tables, make_session_factory
from app.models import SnapshotTokenIn
from app.services.snapshots import SnapshotStore
from conftest import ADDRESS

MIXED_CASE = ADDRESS.upper().replace("0X", "0x")


class Ticker:
    def __init__(self):
        self.moment = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)

    def __call__(self) -> dt.datetime:
        self.moment += dt.timedelta(minutes=1)
        return self.moment


@pytest_asyncio.fixture
async def store(engine):
    await create_tables(engine)
    return SnapshotStore(make_session_factory(engine), clock=Ticker())


@pytest.mark.asyncio
async def test_create_then_read_latest(store):
    receipt = await store.create_snapshot(
        MIXED_CASE,
        [
            SnapshotTokenIn(symbol="ETH", value=100, balance=10**18),
            SnapshotTokenIn(symbol="MATIC", value=50),
        ],
    )

    assert receipt.total_value == 150
    assert receipt.token_count == 2
    assert receipt.address == ADDRESS

    latest = await store.get_latest_snapshot(ADDRESS)
    assert latest.id == receipt.id
    assert latest.eth_value == 100
    assert latest.matic_value == 50
    assert [x.chain for x in latest.tokens] == ["ethereum", "polygon"]
    assert latest.tokens[0].balance == str(10**18)
    assert latest.tokens[1].balance == "0"
    assert latest.tokens[1].decimals == 18
    assert latest.tokens[1].change_24h is None
    assert latest.created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_list_is_newest_first_and_paginated(store):
    ids = [
        (await store.create_snapshot(ADDRESS, [SnapshotTokenIn(value=x)])).id
        for x in range(5)
    ]

    listed = await store.list_snapshots(ADDRESS, limit=3, offset=1)

    assert [x.id for x in listed] == [ids[3], ids[2], ids[1]]
    assert (await store.get_latest_snapshot(MIXED_CASE)).id == ids[4]
    assert len(await store.list_snapshots(ADDRESS, limit=500)) == 5
    assert len(await store.list_snapshots(ADDRESS, limit=0)) == 1
    assert len(await store.list_snapshots(ADDRESS, limit=2, offset=-3)) == 2


@pytest.mark.asyncio
async def test_unknown_lookups_return_none(store):
    assert await store.get_latest_snapshot(ADDRESS) is None
    assert await store.get_snapshot_by_id("does-not-exist") is None
    assert await store.list_snapshots(ADDRESS) == []


@pytest.mark.asyncio
async def test_snapshot_routes(client):
    response = await client.post(
        "/api/snapshots",
        json={
            "address": MIXED_CASE,
            "tokens": [{"symbol": "ETH", "value": 100}, {"symbol": "MATIC", "value": 50}],
        },
    )

    assert response.status_code == 200
    receipt = response.json()
    assert receipt["totalValue"] == 150
    assert receipt["tokenCount"] == 2
    assert receipt["address"] == ADDRESS

    response = await client.get("/api/snapshots", params={"address": ADDRESS})
    assert response.status_code == 200
    latest = response.json()
    assert latest["id"] == receipt["id"]
    assert latest["totalValue"] == 150
    assert [x["symbol"] for x in latest["tokens"]] == ["ETH", "MATIC"]

    response = await client.get("/api/snapshots", params={"address": ADDRESS, "limit": "5"})
    assert [x["id"] for x in response.json()["data"]] == [receipt["id"]]

    response = await client.get(f"/api/snapshots/{receipt['id']}")
    assert response.status_code == 200
    assert response.json()["data"]["tokenCount"] == 2


@pytest.mark.asyncio
async def test_snapshot_routes_not_found(client):
    response = await client.get("/api/snapshots", params={"address": ADDRESS})
    assert response.status_code == 404

    response = await client.get("/api/snapshots/missing")
    assert response.status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body, code",
    [
        ({"tokens": []}, "MISSING_PARAMETER"),
        ({"address": ADDRESS}, "MISSING_PARAMETER"),
        ({"address": ADDRESS, "tokens": "ETH"}, "MISSING_PARAMETER"),
        ({"address": "0xnope", "tokens": []}, "INVALID_ADDRESS"),
        ({"address": 123, "tokens": []}, "INVALID_ADDRESS"),
        ({"address": [ADDRESS], "tokens": []}, "INVALID_ADDRESS"),
        ({"address": {"a": 1}, "tokens": []}, "INVALID_ADDRESS"),
        ({"address": ADDRESS, "tokens": [{"value": "lots"}]}, "INVALID_PARAMETER"),
    ],
)
async def test_create_snapshot_validation(client, body, code):
    response = await client.post("/api/snapshots", json=body)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == code


@pytest.mark.asyncio
async def test_list_rejects_non_numeric_limit(client):
    response = await client.get("/api/snapshots", params={"address": ADDRESS, "limit": "many"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_PARAMETER"
