import pytest

from conftest import USDC


@pytest.mark.asyncio
async def test_simple_prices_route(client, upstreams, fake_redis):
    upstreams.coingecko["/api/v3/simple/price"] = {
        "ethereum": {"usd": 3000.0, "usd_24h_change": 2.5}
    }

    response = await client.get("/api/prices", params={"ids": "ethereum"})

    assert response.status_code == 200
    assert response.json() == {
        "source": "coingecko:simple",
        "data": {"ethereum": {"usd": 3000.0, "usd_24h_change": 2.5}},
    }
    assert fake_redis.ttls["prices:simple:usd:ethereum"] == 300

    response = await client.get("/api/prices", params={"ids": "ethereum"})
    assert response.json()["source"] == "cache:simple"
    assert len(upstreams.calls("coingecko")) == 1


@pytest.mark.asyncio
async def test_contract_prices_route(client, upstreams, fake_redis):
    upstreams.coingecko["/api/v3/simple/token_price/ethereum"] = {
        USDC: {"usd": 1.0, "usd_24h_change": 0.2}
    }

    response = await client.get(
        "/api/prices",
        params={"platform": "ethereum", "contracts": USDC, "include_24hr_change": "true"},
    )

    body = response.json()
    assert body["source"] == "coingecko:contract"
    assert body["platform"] == "ethereum"
    assert body["data"][USDC] == {"usd": 1.0, "usd_24h_change": 0.2}
    assert f"prices:contract:ethereum:usd:withChange:{USDC}" in fake_redis.store


@pytest.mark.asyncio
async def test_prices_route_needs_a_query(client):
    response = await client.get("/api/prices", params={"platform": "ethereum"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "MISSING_PARAMETER"


@pytest.mark.asyncio
async def test_prices_route_upstream_failure(client, upstreams):
    upstreams.status["coingecko"] = 429

    response = await client.get("/api/prices", params={"ids": "ethereum"})

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "EXTERNAL_API_ERROR"


@pytest.mark.asyncio
async def test_simple_prices_cache_key_ignores_case_and_order(client, upstreams, fake_redis):
    upstreams.coingecko["/api/v3/simple/price"] = {
        "ethereum": {"usd": 3000.0},
        "matic-network": {"usd": 0.7},
    }

    first = await client.get("/api/prices", params={"ids": "matic-network,Ethereum"})
    second = await client.get("/api/prices", params={"ids": "ethereum,MATIC-network"})

    assert first.json()["source"] == "coingecko:simple"
    assert second.json()["source"] == "cache:simple"
    assert second.json()["data"] == first.json()["data"]
    assert "prices:simple:usd:ethereum,matic-network" in fake_redis.store
    assert len(upstreams.calls("coingecko")) == 1
