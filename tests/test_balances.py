import asyncio
import json

import pytest

from app.cache import CacheStore
from app.models import TokenHolding
from app.services.aggregator import BalanceAggregator, balances_cache_key
from conftest import ADDRESS, DAI, USDC, FakeRedis, token_balances


def holding(chain: str, symbol: str, value: float) -> TokenHolding:
    return TokenHolding(
        chain=chain,
        contract_address="0x" + symbol.lower().ljust(40, "0")[:40],
        symbol=symbol,
        decimals=18,
        balance=10**18,
        formatted="1",
        price_usd=value,
        value_usd=value,
    )


class StubFetcher:
    def __init__(self, results: dict):
        self.results = results
        self.calls: list[int] = []

    async def get_token_balances(self, address: str, chain_id: int):
        self.calls.append(chain_id)
        result = self.results[chain_id]
        if isinstance(result, BaseException):
            raise result
        if callable(result):
            return await result()
        return result


@pytest.mark.asyncio
async def test_partial_failure_is_isolated():
    fetcher = StubFetcher(
        {
            1: [holding("ethereum", "USDC", 50.0)],
            137: RuntimeError("polygon rpc down"),
            42161: [holding("arbitrum", "ARB", 80.0)],
        }
    )
    aggregator = BalanceAggregator(fetcher, CacheStore(FakeRedis()))

    payload, from_cache = await aggregator.get_balances(
        ADDRESS, ["ethereum", "polygon", "arbitrum"]
    )

    assert from_cache is False
    assert [x["symbol"] for x in payload["tokens"]] == ["ARB", "USDC"]
    assert payload["errors"] == {"polygon": "polygon rpc down"}
    assert payload["chains"] == {"ethereum": True, "polygon": True, "arbitrum": True}
    assert payload["tokens"][0]["balance"] == str(10**18)


@pytest.mark.asyncio
async def test_slow_chain_times_out():
    async def never():
        await asyncio.sleep(10)

    fetcher = StubFetcher({1: [holding("ethereum", "USDC", 5.0)], 137: never})
    aggregator = BalanceAggregator(fetcher, CacheStore(None), chain_timeout=0.05)

    payload, _ = await aggregator.get_balances(ADDRESS, ["ethereum", "polygon"])

    assert [x["symbol"] for x in payload["tokens"]] == ["USDC"]
    assert "timed out" in payload["errors"]["polygon"]
    assert payload["chains"]["arbitrum"] is False


@pytest.mark.asyncio
async def test_result_is_cached_under_sorted_chain_key():
    fake_redis = FakeRedis()
    fetcher = StubFetcher({1: [], 137: [holding("polygon", "MATIC", 1.0)]})
    aggregator = BalanceAggregator(fetcher, CacheStore(fake_redis), ttl_seconds=180)

    await aggregator.get_balances(ADDRESS.upper().replace("0X", "0x"), ["polygon", "ethereum"])
    payload, from_cache = await aggregator.get_balances(ADDRESS, ["ethereum", "polygon"])

    key = balances_cache_key(ADDRESS, ["polygon", "ethereum"])
    assert key == f"balances:{ADDRESS}:ethereum,polygon"
    assert fake_redis.ttls[key] == 180
    assert from_cache is True
    assert payload["tokens"][0]["symbol"] == "MATIC"
    assert fetcher.calls == [1, 137]


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_fetch():
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return [holding("ethereum", "USDC", 1.0)]

    fetcher = StubFetcher({1: slow})
    aggregator = BalanceAggregator(fetcher, CacheStore(None))

    first = asyncio.create_task(aggregator.get_balances(ADDRESS, ["ethereum"]))
    second = asyncio.create_task(aggregator.get_balances(ADDRESS, ["ethereum"]))
    await asyncio.sleep(0)
    release.set()
    (a, _), (b, _) = await asyncio.gather(first, second)

    assert a == b
    assert fetcher.calls == [1]
    assert aggregator.in_flight == {}


def serve_ethereum_holdings(upstreams):
    upstreams.rpc[("eth-mainnet", "alchemy_getTokenBalances")] = token_balances(
        (USDC, hex(5_000_000)), (DAI, hex(2 * 10**18))
    )
    upstreams.rpc[("eth-mainnet", "alchemy_getTokenMetadata")] = lambda params: {
        USDC: {"symbol": "USDC", "name": "USD Coin", "decimals": 6},
        DAI: {"symbol": "DAI", "name": "Dai", "decimals": 18},
    }[params[0]]
    upstreams.coingecko["/api/v3/simple/token_price/ethereum"] = {
        USDC: {"usd": 1.0},
        DAI: {"usd": 1.0},
    }


@pytest.mark.asyncio
async def test_balances_route_miss_then_hit(client, upstreams, fake_redis):
    serve_ethereum_holdings(upstreams)

    response = await client.get("/api/balances", params={"address": ADDRESS, "chains": "ethereum"})

    assert response.status_code == 200
    assert response.headers["X-Cache"] == "MISS"
    assert response.headers["X-RateLimit-Remaining"] == "29"
    body = response.json()
    assert body["address"] == ADDRESS
    assert body["chains"] == {"ethereum": True, "polygon": False, "arbitrum": False}
    assert [x["symbol"] for x in body["tokens"]] == ["USDC", "DAI"]
    assert body["tokens"][0]["balance"] == "5000000"
    assert body["tokens"][0]["valueUsd"] == 5.0
    assert body["errors"] == {}

    upstream_calls = len(upstreams.requests)
    response = await client.get(
        "/api/balances",
        params={"address": ADDRESS.upper().replace("0X", "0x"), "chains": "ethereum"},
    )

    assert response.headers["X-Cache"] == "HIT"
    assert response.json() == body
    assert len(upstreams.requests) == upstream_calls


@pytest.mark.asyncio
async def test_balances_route_reports_failed_chain(client, upstreams):
    serve_ethereum_holdings(upstreams)
    upstreams.status["polygon-mainnet"] = 503

    response = await client.get(
        "/api/balances", params={"address": ADDRESS, "chains": "ethereum,polygon"}
    )

    assert response.status_code == 200
    body = response.json()
    assert len(body["tokens"]) == 2
    assert "503" in body["errors"]["polygon"]
    assert "ethereum" not in body["errors"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "params, code",
    [
        ({}, "MISSING_PARAMETER"),
        ({"address": "0x123"}, "INVALID_ADDRESS"),
        ({"address": ADDRESS, "chains": "solana"}, "INVALID_PARAMETER"),
        ({"address": ADDRESS, "chains": ""}, "INVALID_PARAMETER"),
    ],
)
async def test_balances_route_validation(client, upstreams, params, code):
    response = await client.get("/api/balances", params=params)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == code
    assert response.json()["error"]["statusCode"] == 400
    assert upstreams.requests == []


@pytest.mark.asyncio
async def test_balances_route_rate_limit(client, app):
    await app.cache.set(
        balances_cache_key(ADDRESS, ["ethereum"]),
        {"address": ADDRESS, "chains": {}, "tokens": [], "errors": {}},
        180,
    )

    statuses = []
    for _ in range(31):
        response = await client.get("/api/balances", params={"address": ADDRESS, "chains": "ethereum"})
        statuses.append(response.status_code)

    assert statuses[:30] == [200] * 30
    assert statuses[30] == 429
    assert response.json()["error"]["code"] == "RATE_LIMITED"
    assert int(response.headers["Retry-After"]) >= 1
    assert response.headers["X-RateLimit-Remaining"] == "0"


@pytest.mark.asyncio
async def test_rate_limit_window_is_shared_across_address_case(client, app, fake_redis):
    await client.get("/api/balances", params={"address": ADDRESS, "chains": "ethereum"})
    await client.get(
        "/api/balances",
        params={"address": ADDRESS.upper().replace("0X", "0x"), "chains": "ethereum"},
    )

    windows = [json.loads(v) for k, v in fake_redis.store.items() if k.startswith("ratelimit:")]
    assert len(windows) == 1
    assert windows[0]["count"] == 2
