import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from redis.asyncio import StrictRedis
from sqlalchemy.ext.asyncio import AsyncEngine

from app.cache import CacheStore
from app.database import create_tables, make_engine, make_session_factory
from app.defi.aave import AaveFetcher
from app.defi.staking import StakingSummaryFetcher, build_registry
from app.defi.uniswap import UniswapFetcher
from app.ENV import (
    CORS_ORIGINS,
    HTTP_TIMEOUT_SECONDS,
    REDIS_URL,
    SENTRY_DSN,
    SENTRY_ENVIRONMENT,
)
from app.errors import AppError, ErrorCodes, UpstreamError, error_response
from app.logs import setup_logging
from app.ratelimiting import RateLimiter, RateLimitExceeded, too_many_response
from app.routers.balances import balances
from app.routers.defi import defi
from app.routers.health import health
from app.routers.prices import prices
from app.routers.snapshots import snapshots
from app.routers.transactions import transactions
from app.services.aggregator import BalanceAggregator
from app.services.alchemy import AlchemyClient, ChainBalanceFetcher
from app.services.coingecko import PriceResolver
from app.services.snapshots import SnapshotStore
from app.services.transactions import TransactionHistory

setup_logging()
log = logging.getLogger("app")

if SENTRY_DSN:
    sentry_sdk.init(
        dsn=SENTRY_DSN,
        environment=SENTRY_ENVIRONMENT,
        traces_sample_rate=1.0,
    )


async def setup_state(
    app: FastAPI,
    httpx_client: httpx.AsyncClient,
    engine: AsyncEngine,
    redis: Optional[StrictRedis] = None,
    alchemy_api_keys: Optional[dict[str, str]] = None,
) -> None:
    """
    Builds the shared clients and services and hangs them on the app, where
    the `state_getters` hand them to the routes.
    """
    app.httpx_client = httpx_client
    app.redis = redis
    app.cache = CacheStore(redis)
    app.rate_limiter = RateLimiter(app.cache)

    app.alchemy = AlchemyClient(httpx_client, alchemy_api_keys)
    app.prices = PriceResolver(httpx_client)
    app.aggregator = BalanceAggregator(
        ChainBalanceFetcher(app.alchemy, app.prices), app.cache
    )
    app.aave = AaveFetcher(httpx_client)
    app.uniswap = UniswapFetcher(httpx_client)
    app.staking_summaries = StakingSummaryFetcher(app.alchemy, app.prices, httpx_client)
    app.staking_registry = build_registry(app.staking_summaries)
    app.transactions = TransactionHistory(app.alchemy)

    app.db_engine = engine
    await create_tables(engine)
    app.snapshots = SnapshotStore(make_session_factory(engine))


@asynccontextmanager
async def lifespan(app: FastAPI):
    redis = StrictRedis.from_url(REDIS_URL) if REDIS_URL else None
    if redis is None:
        log.warning("REDIS_URL not set, caching is off and rate limits are per process")

    engine = make_engine()
    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS) as httpx_client:
        await setup_state(app, httpx_client, engine, redis)
        yield

    await engine.dispose()
    if redis is not None:
        await redis.aclose()


async def app_error_handler(request: Request, exc: AppError):
    return error_response(exc.code, exc.message, exc.status_code)


async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return too_many_response(exc.result)


async def upstream_error_handler(request: Request, exc: Exception):
    log.error("upstream failure on %s: %s", request.url.path, exc)
    return error_response(ErrorCodes.EXTERNAL_API_ERROR)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = sorted({str(x["loc"][-1]) for x in exc.errors() if x.get("loc")})
    message = f"Invalid value for: {', '.join(fields)}" if fields else None
    return error_response(ErrorCodes.INVALID_PARAMETER, message)


async def unhandled_error_handler(request: Request, exc: Exception):
    log.exception("unhandled error on %s", request.url.path)
    return error_response(ErrorCodes.INTERNAL_ERROR)


def create_app(lifespan=lifespan, metrics: bool = True) -> FastAPI:
    app = FastAPI(
        lifespan=lifespan,
        separate_input_output_schemas=False,
        title="DeFi Portfolio API",
        summary="Balances, prices, staking positions and snapshots for EVM wallets.",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(UpstreamError, upstream_error_handler)
    app.add_exception_handler(httpx.HTTPError, upstream_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    if metrics:
        Instrumentator().instrument(app).expose(app)

    app.include_router(balances.router)
    app.include_router(defi.router)
    app.include_router(prices.router)
    app.include_router(snapshots.router)
    app.include_router(transactions.router)
    app.include_router(health.router)
    return app


app = create_app()
