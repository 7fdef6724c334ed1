import asyncio
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.cache import CacheStore
from app.defi.aave import AAVE_CHAINS, AaveFetcher
from app.defi.staking import StakingRegistry, StakingSummaryFetcher
from app.defi.uniswap import UNISWAP_CHAINS, UniswapFetcher
from app.ENV import (
    CACHE_TTL_DEFI_POSITIONS,
    CACHE_TTL_LP_POSITIONS,
    CACHE_TTL_REWARDS,
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_WINDOW_SECONDS,
)
from app.errors import validate_address, validate_chains
from app.models import StakingSummary
from app.ratelimiting import RateLimiter, enforce_rate_limit, rate_limit_headers
from app.state_getters import (
    get_aave,
    get_cache,
    get_rate_limiter,
    get_staking_registry,
    get_staking_summaries,
    get_uniswap,
)

router = APIRouter(tags=["DeFi"], prefix="/api/defi")

AAVE_DEFAULT_CHAINS = "ethereum,polygon"


async def cached_summary(
    cache: CacheStore,
    key: str,
    fetch: Callable[[], Awaitable[StakingSummary]],
) -> tuple[dict, bool]:
    cached = await cache.get(key)
    if cached is not None:
        return cached, True
    data = (await fetch()).model_dump(mode="json", by_alias=True)
    await cache.set(key, data, CACHE_TTL_DEFI_POSITIONS)
    return data, False


def rewards_breakdown(summary: StakingSummary) -> dict:
    daily = summary.estimated_daily_rewards_usd or 0
    return {
        "dailyUsd": daily,
        "monthlyUsd": daily * 30,
        "apr": summary.apr,
        "valueUsd": summary.value_usd,
    }


@router.get("/aave", response_class=JSONResponse)
async def get_aave_positions(
    request: Request,
    address: Optional[str] = None,
    chains: Optional[str] = None,
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    aave: AaveFetcher = Depends(get_aave),
) -> JSONResponse:
    """
    Supplied and borrowed reserve counts, health factor and APY range of
    `address` on Aave v3, per chain.
    """
    address = validate_address(address)
    selected = validate_chains(
        chains if chains is not None else AAVE_DEFAULT_CHAINS, AAVE_CHAINS
    )
    limit = await enforce_rate_limit(
        request, rate_limiter, "aave", RATE_LIMIT_DEFAULT, RATE_LIMIT_WINDOW_SECONDS
    )

    summary = await aave.get_positions(address, selected)
    return JSONResponse(
        {
            "source": aave.source,
            "data": summary.model_dump(mode="json", by_alias=True),
        },
        headers=rate_limit_headers(limit),
    )


@router.get("/lido", response_class=JSONResponse)
async def get_lido(
    request: Request,
    address: Optional[str] = None,
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    cache: CacheStore = Depends(get_cache),
    summaries: StakingSummaryFetcher = Depends(get_staking_summaries),
) -> JSONResponse:
    address = validate_address(address)
    limit = await enforce_rate_limit(
        request, rate_limiter, "lido", RATE_LIMIT_DEFAULT, RATE_LIMIT_WINDOW_SECONDS
    )

    data, from_cache = await cached_summary(
        cache, f"defi:lido:{address}", lambda: summaries.get_lido_summary(address)
    )
    headers = rate_limit_headers(limit)
    headers["X-Cache"] = "HIT" if from_cache else "MISS"
    return JSONResponse({"source": "lido:api+alchemy", "data": data}, headers=headers)


@router.get("/rocket-pool", response_class=JSONResponse)
async def get_rocket_pool(
    request: Request,
    address: Optional[str] = None,
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    cache: CacheStore = Depends(get_cache),
    summaries: StakingSummaryFetcher = Depends(get_staking_summaries),
) -> JSONResponse:
    address = validate_address(address)
    limit = await enforce_rate_limit(
        request,
        rate_limiter,
        "rocket-pool",
        RATE_LIMIT_DEFAULT,
        RATE_LIMIT_WINDOW_SECONDS,
    )

    data, from_cache = await cached_summary(
        cache,
        f"defi:rocket-pool:{address}",
        lambda: summaries.get_rocket_pool_summary(address),
    )
    headers = rate_limit_headers(limit)
    headers["X-Cache"] = "HIT" if from_cache else "MISS"
    return JSONResponse(
        {"source": "rocket-pool:api+alchemy", "data": data}, headers=headers
    )


@router.get("/rewards", response_class=JSONResponse)
async def get_rewards(
    request: Request,
    address: Optional[str] = None,
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    cache: CacheStore = Depends(get_cache),
    summaries: StakingSummaryFetcher = Depends(get_staking_summaries),
) -> JSONResponse:
    """
    Estimated staking rewards in USD across Lido and Rocket Pool.
    Monthly figures are 30 days of the daily estimate.
    """
    address = validate_address(address)
    limit = await enforce_rate_limit(
        request, rate_limiter, "rewards", RATE_LIMIT_DEFAULT, RATE_LIMIT_WINDOW_SECONDS
    )
    headers = rate_limit_headers(limit)

    cache_key = f"defi:rewards:{address}"
    cached = await cache.get(cache_key)
    if cached is not None:
        headers["X-Cache"] = "HIT"
        return JSONResponse({"data": cached}, headers=headers)

    lido, rocket_pool = await asyncio.gather(
        summaries.get_lido_summary(address),
        summaries.get_rocket_pool_summary(address),
    )
    breakdown = {
        "lido": rewards_breakdown(lido),
        "rocketPool": rewards_breakdown(rocket_pool),
    }
    daily = sum(x["dailyUsd"] for x in breakdown.values())
    data = {
        "totals": {"dailyUsd": daily, "monthlyUsd": daily * 30},
        "breakdown": breakdown,
        "meta": {"address": address, "source": "rewards:aggregate(lido+rocket)"},
    }
    await cache.set(cache_key, data, CACHE_TTL_REWARDS)

    headers["X-Cache"] = "MISS"
    return JSONResponse({"data": data}, headers=headers)


@router.get("/staking", response_class=JSONResponse)
async def get_staking_positions(
    request: Request,
    address: Optional[str] = None,
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    registry: StakingRegistry = Depends(get_staking_registry),
) -> JSONResponse:
    address = validate_address(address)
    limit = await enforce_rate_limit(
        request, rate_limiter, "staking", RATE_LIMIT_DEFAULT, RATE_LIMIT_WINDOW_SECONDS
    )

    positions = await registry.get_all_positions(address)
    return JSONResponse(
        {
            "data": [x.model_dump(mode="json", by_alias=True) for x in positions],
            "protocols": [
                x.model_dump(mode="json", by_alias=True) for x in registry.protocols()
            ],
        },
        headers=rate_limit_headers(limit),
    )


@router.get("/uniswap", response_class=JSONResponse)
async def get_uniswap_positions(
    request: Request,
    address: Optional[str] = None,
    chains: Optional[str] = None,
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    cache: CacheStore = Depends(get_cache),
    uniswap: UniswapFetcher = Depends(get_uniswap),
) -> JSONResponse:
    """
    Uniswap v3 LP positions of `address` with estimated USD value and
    7 day fee APR, on ethereum and polygon.
    """
    address = validate_address(address)
    selected = validate_chains(chains, UNISWAP_CHAINS)
    limit = await enforce_rate_limit(
        request, rate_limiter, "uniswap", RATE_LIMIT_DEFAULT, RATE_LIMIT_WINDOW_SECONDS
    )
    headers = rate_limit_headers(limit)

    cache_key = f"defi:uniswap:{address}:{','.join(selected)}"
    cached = await cache.get(cache_key)
    if cached is not None:
        headers["X-Cache"] = "HIT"
        return JSONResponse({"source": uniswap.source, "data": cached}, headers=headers)

    summary = await uniswap.get_positions(address, selected)
    data = summary.model_dump(mode="json", by_alias=True)
    await cache.set(cache_key, data, CACHE_TTL_LP_POSITIONS)

    headers["X-Cache"] = "MISS"
    return JSONResponse({"source": uniswap.source, "data": data}, headers=headers)
