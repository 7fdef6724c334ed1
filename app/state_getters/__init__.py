from fastapi import Request

from app.cache import CacheStore
from app.defi.aave import AaveFetcher
from app.defi.staking import StakingRegistry, StakingSummaryFetcher
from app.defi.uniswap import UniswapFetcher
from app.ratelimiting import RateLimiter
from app.services.aggregator import BalanceAggregator
from app.services.alchemy import AlchemyClient
from app.services.coingecko import PriceResolver
from app.services.snapshots import SnapshotStore
from app.services.transactions import TransactionHistory


async def get_cache(req: Request) -> CacheStore:
    return req.app.cache


async def get_rate_limiter(req: Request) -> RateLimiter:
    return req.app.rate_limiter


async def get_aggregator(req: Request) -> BalanceAggregator:
    return req.app.aggregator


async def get_alchemy(req: Request) -> AlchemyClient:
    return req.app.alchemy


async def get_price_resolver(req: Request) -> PriceResolver:
    return req.app.prices


async def get_aave(req: Request) -> AaveFetcher:
    return req.app.aave


async def get_uniswap(req: Request) -> UniswapFetcher:
    return req.app.uniswap


async def get_staking_summaries(req: Request) -> StakingSummaryFetcher:
    return req.app.staking_summaries


async def get_staking_registry(req: Request) -> StakingRegistry:
    return req.app.staking_registry


async def get_snapshot_store(req: Request) -> SnapshotStore:
    return req.app.snapshots


async def get_transaction_history(req: Request) -> TransactionHistory:
    return req.app.transactions


async def get_db_engine(req: Request):
    return req.app.db_engine
