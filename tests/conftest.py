import json
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional, Union

import httpx
import pytest
import pytest_asyncio
from asgi_lifespan import LifespanManager
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from app.main import create_app, setup_state

ADDRESS = "0x" + "ab" * 20
ALCHEMY_KEYS = {"ethereum": "test-key", "polygon": "test-key", "arbitrum": "test-key"}
USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
DAI = "0x6b175474e89094c44da98b954eedeac495271d0f"


class FakeRedis:
    """
    The slice of `redis.asyncio.StrictRedis` the cache uses. TTLs are
    recorded, not enforced.
    """

    def __init__(self):
        self.store: dict[str, bytes] = {}
        self.ttls: dict[str, Optional[int]] = {}
        self.down = False

    def _check(self):
        if self.down:
            raise RedisConnectionError("connection refused")

    async def get(self, key: str) -> Optional[bytes]:
        self._check()
        return self.store.get(key)

    async def set(self, key: str, value: Union[str, bytes], ex: Optional[int] = None):
        self._check()
        self.store[key] = value.encode() if isinstance(value, str) else value
        self.ttls[key] = ex
        return True

    async def ping(self) -> bool:
        self._check()
        return True


RpcResult = Union[Any, Callable[[list], Any]]


class FakeUpstreams:
    """
    Answers every outbound request the services make: Alchemy JSON-RPC
    (single and batch), CoinGecko, The Graph and the Lido APR API.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.rpc: dict[tuple[str, str], RpcResult] = {}
        self.rpc_errors: dict[tuple[str, str], str] = {}
        self.status: dict[str, int] = {}
        self.coingecko: dict[str, dict] = {}
        self.graph: dict[str, Any] = {}
        self.lido_apr: Any = {"data": {"apr": 3.5}}

    def calls(self, host_part: str) -> list[httpx.Request]:
        return [x for x in self.requests if host_part in x.url.host]

    def rpc_methods(self, network: str) -> list[str]:
        methods = []
        for request in self.calls(network):
            body = json.loads(request.content)
            for call in body if isinstance(body, list) else [body]:
                methods.append(call["method"])
        return methods

    def _rpc(self, network: str, call: dict) -> dict:
        key = (network, call["method"])
        if key in self.rpc_errors:
            return {
                "jsonrpc": "2.0",
                "id": call["id"],
                "error": {"code": -32000, "message": self.rpc_errors[key]},
            }
        result = self.rpc.get(key)
        if callable(result):
            result = result(call["params"])
        return {"jsonrpc": "2.0", "id": call["id"], "result": result}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host

        if host.endswith("g.alchemy.com"):
            network = host.split(".")[0]
            if network in self.status:
                return httpx.Response(self.status[network], text="unavailable")
            body = json.loads(request.content)
            if isinstance(body, list):
                return httpx.Response(200, json=[self._rpc(network, x) for x in body])
            return httpx.Response(200, json=self._rpc(network, body))

        if host == "api.coingecko.com":
            if "coingecko" in self.status:
                return httpx.Response(self.status["coingecko"], text="rate limited")
            return httpx.Response(200, json=self.coingecko.get(request.url.path, {}))

        if host == "api.thegraph.com":
            url = str(request.url)
            if url in self.status:
                return httpx.Response(self.status[url], text="indexer down")
            result = self.graph.get(url, {"data": {"users": [], "userReserves": []}})
            if callable(result):
                result = result(json.loads(request.content))
            return httpx.Response(200, json=result)

        if host == "eth-api.lido.fi":
            if "lido" in self.status:
                return httpx.Response(self.status["lido"])
            return httpx.Response(200, json=self.lido_apr)

        return httpx.Response(404)


def token_balances(*items: tuple[str, str]) -> dict:
    return {
        "address": ADDRESS,
        "tokenBalances": [
            {"contractAddress": contract, "tokenBalance": balance}
            for contract, balance in items
        ],
    }


@pytest.fixture
def upstreams() -> FakeUpstreams:
    return FakeUpstreams()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def httpx_client(upstreams):
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(upstreams.handler)
    ) as client:
        yield client


@pytest_asyncio.fixture
async def app(httpx_client, fake_redis, engine):
    @asynccontextmanager
    async def lifespan(app):
        await setup_state(app, httpx_client, engine, fake_redis, ALCHEMY_KEYS)
        yield

    app = create_app(lifespan=lifespan, metrics=False)
    async with LifespanManager(app):
        yield app


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://127.0.0.1:7000"
    ) as client:
        yield client
