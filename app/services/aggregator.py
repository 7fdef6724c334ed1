import asyncio
import logging
from typing import Protocol

from app.cache import CacheStore
from app.ENV import (
    CACHE_TTL_BALANCES,
    CHAIN_FETCH_TIMEOUT_SECONDS,
    CHAIN_IDS,
    SUPPORTED_CHAINS,
)
from app.logs import UPSTREAM_FAILURES
from app.models import TokenHolding

log = logging.getLogger(__name__)


class BalanceFetcher(Protocol):
    async def get_token_balances(self, address: str, chain_id: int) -> list[TokenHolding]: ...


def balances_cache_key(address: str, chains: list[str]) -> str:
    return f"balances:{address.lower()}:{','.join(sorted(chains))}"


def error_message(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


class BalanceAggregator:
    """
    Builds the `/api/balances` payload for an address over a set of chains.

    Chains are fetched concurrently and each failure is recorded in `errors`
    instead of failing the whole response. Results are cached per address and
    chain set, and concurrent misses for the same key share one fetch.
    """

    def __init__(
        self,
        fetcher: BalanceFetcher,
        cache: CacheStore,
        ttl_seconds: int = CACHE_TTL_BALANCES,
        chain_timeout: float = CHAIN_FETCH_TIMEOUT_SECONDS,
    ):
        self.fetcher = fetcher
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.chain_timeout = chain_timeout
        self.in_flight: dict[str, asyncio.Task] = {}

    async def get_balances(self, address: str, chains: list[str]) -> tuple[dict, bool]:
        """
        Returns (payload, served_from_cache).
        """
        address = address.lower()
        key = balances_cache_key(address, chains)

        cached = await self.cache.get(key)
        if cached is not None:
            return cached, True

        task = self.in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._aggregate(key, address, chains))
            self.in_flight[key] = task
            task.add_done_callback(lambda _: self.in_flight.pop(key, None))
        return await asyncio.shield(task), False

    async def _fetch_chain(self, address: str, chain: str) -> list[TokenHolding]:
        try:
            return await asyncio.wait_for(
                self.fetcher.get_token_balances(address, CHAIN_IDS[chain]),
                timeout=self.chain_timeout,
            )
        except asyncio.TimeoutError:
            raise TimeoutError(
                f"{chain} balances timed out after {self.chain_timeout:g}s"
            )

    async def _aggregate(self, key: str, address: str, chains: list[str]) -> dict:
        requested = [x for x in SUPPORTED_CHAINS if x in chains]
        results = await asyncio.gather(
            *[self._fetch_chain(address, chain) for chain in requested],
            return_exceptions=True,
        )

        tokens: list[TokenHolding] = []
        errors: dict[str, str] = {}
        for chain, result in zip(requested, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                UPSTREAM_FAILURES.labels(chain=chain).inc()
                log.warning("balances for %s on %s failed: %s", address, chain, result)
                errors[chain] = error_message(result)
            else:
                tokens.extend(result)

        tokens.sort(key=lambda x: x.value_usd or 0, reverse=True)
        payload = {
            "address": address,
            "chains": {chain: chain in requested for chain in SUPPORTED_CHAINS},
            "tokens": [x.model_dump(mode="json", by_alias=True) for x in tokens],
            "errors": errors,
        }
        await self.cache.set(key, payload, self.ttl_seconds)
        return payload
