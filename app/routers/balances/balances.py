from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.ENV import RATE_LIMIT_DEFAULT, RATE_LIMIT_WINDOW_SECONDS
from app.errors import validate_address, validate_chains
from app.ratelimiting import RateLimiter, enforce_rate_limit, rate_limit_headers
from app.services.aggregator import BalanceAggregator
from app.state_getters import get_aggregator, get_rate_limiter

router = APIRouter(tags=["Balances"], prefix="/api")


@router.get("/balances", response_class=JSONResponse)
async def get_balances(
    request: Request,
    address: Optional[str] = None,
    chains: Optional[str] = None,
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    aggregator: BalanceAggregator = Depends(get_aggregator),
) -> JSONResponse:
    """
    ERC-20 holdings of `address` across the requested chains, priced in USD
    and sorted by value. A chain that fails is reported under `errors` and
    the other chains are still returned.
    """
    address = validate_address(address)
    selected = validate_chains(chains)

    limit = await enforce_rate_limit(
        request, rate_limiter, "balances", RATE_LIMIT_DEFAULT, RATE_LIMIT_WINDOW_SECONDS
    )

    payload, from_cache = await aggregator.get_balances(address, selected)
    headers = rate_limit_headers(limit)
    headers["X-Cache"] = "HIT" if from_cache else "MISS"
    return JSONResponse(payload, headers=headers)
