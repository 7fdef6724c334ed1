from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.cache import CacheStore
from app.ENV import CACHE_TTL_PRICES
from app.errors import AppError, ErrorCodes
from app.services.coingecko import PriceResolver
from app.state_getters import get_cache, get_price_resolver

router = APIRouter(tags=["Prices"], prefix="/api")


def split_list(value: str) -> list[str]:
    return [x.strip() for x in value.split(",") if x.strip()]


def as_quotes(prices: dict, vs: str, include_change: bool = True) -> dict:
    """
    Back to the CoinGecko shape: `{id: {"usd": 1.0, "usd_24h_change": 0.5}}`.
    """
    quotes = {}
    for key, price in prices.items():
        quote = {vs: price.price}
        if include_change and price.change_24h is not None:
            quote[f"{vs}_24h_change"] = price.change_24h
        quotes[key] = quote
    return quotes


@router.get("/prices", response_class=JSONResponse)
async def get_prices(
    ids: Optional[str] = None,
    platform: Optional[str] = None,
    contracts: Optional[str] = None,
    vs: str = "usd",
    include_24hr_change: bool = False,
    cache: CacheStore = Depends(get_cache),
    prices: PriceResolver = Depends(get_price_resolver),
) -> dict:
    """
    USD (or `vs`) prices either by CoinGecko id (`ids=ethereum,matic-network`)
    or by token contract (`platform=ethereum&contracts=0x..`).
    """
    vs = vs.lower()

    if ids:
        id_list = sorted(set(x.lower() for x in split_list(ids)))
        cache_key = f"prices:simple:{vs}:{','.join(id_list)}"
        cached = await cache.get(cache_key)
        if cached is not None:
            return {"source": "cache:simple", "data": cached}

        data = as_quotes(await prices.get_simple_prices(id_list, vs), vs)
        await cache.set(cache_key, data, CACHE_TTL_PRICES)
        return {"source": "coingecko:simple", "data": data}

    if platform and contracts:
        addresses = [x.lower() for x in split_list(contracts)]
        variant = "withChange" if include_24hr_change else "simple"
        cache_key = f"prices:contract:{platform}:{vs}:{variant}:{','.join(addresses)}"
        cached = await cache.get(cache_key)
        if cached is not None:
            return {"source": "cache:contract", "platform": platform, "data": cached}

        data = as_quotes(
            await prices.get_token_prices_by_address(
                platform, addresses, vs, include_24h_change=include_24hr_change
            ),
            vs,
            include_change=include_24hr_change,
        )
        await cache.set(cache_key, data, CACHE_TTL_PRICES)
        return {"source": "coingecko:contract", "platform": platform, "data": data}

    raise AppError(
        ErrorCodes.MISSING_PARAMETER,
        "Missing query. Provide `ids` or `platform`+`contracts`.",
    )
