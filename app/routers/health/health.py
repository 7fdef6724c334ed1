import datetime as dt
import logging
import time

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.cache import CacheStore
from app.state_getters import get_cache, get_db_engine

log = logging.getLogger(__name__)

router = APIRouter(tags=["Health"], prefix="/api")


@router.get("/health", response_class=JSONResponse)
async def get_health(
    cache: CacheStore = Depends(get_cache),
    engine=Depends(get_db_engine),
) -> dict:
    db_status = "ok"
    latency_ms = None
    try:
        started = time.perf_counter()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        latency_ms = round((time.perf_counter() - started) * 1000, 2)
    except (SQLAlchemyError, OSError) as error:
        log.warning("database health check failed: %s", error)
        db_status = "error"

    if cache.redis is None:
        cache_status = "disabled"
    else:
        cache_status = "ok" if await cache.ping() else "error"

    return {
        "status": "ok",
        "time": dt.datetime.now(dt.timezone.utc).isoformat(),
        "db": {"status": db_status, "latency_ms": latency_ms},
        "cache": {"status": cache_status},
    }
