import json
import logging
from typing import Any, Optional

from redis.asyncio import StrictRedis
from redis.exceptions import RedisError

from app.logs import CACHE_EVENTS

log = logging.getLogger(__name__)


class CacheUnavailableError(Exception):
    pass


class CacheStore:
    """
    JSON values with a TTL in Redis.

    `get` and `set` never raise: an unreachable store reads as a miss and a
    failed write is logged and dropped. `read` and `write` are the strict
    variants for callers that need to know the store is down.
    """

    def __init__(
        self,
        redis: Optional[StrictRedis] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.redis = redis
        self.log = logger or log

    async def read(self, key: str) -> Optional[bytes]:
        if self.redis is None:
            raise CacheUnavailableError("no cache store configured")
        try:
            return await self.redis.get(key)
        except (RedisError, OSError) as error:
            raise CacheUnavailableError(str(error)) from error

    async def write(self, key: str, value: Any, ttl_seconds: int) -> None:
        if self.redis is None:
            raise CacheUnavailableError("no cache store configured")
        payload = json.dumps(value)
        try:
            await self.redis.set(key, payload, ex=ttl_seconds)
        except (RedisError, OSError) as error:
            raise CacheUnavailableError(str(error)) from error

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.read(key)
        except CacheUnavailableError as error:
            if self.redis is not None:
                CACHE_EVENTS.labels(event="error").inc()
                self.log.warning("cache get failed for %s: %s", key, error)
            return None

        if raw is None:
            CACHE_EVENTS.labels(event="miss").inc()
            return None
        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as error:
            CACHE_EVENTS.labels(event="error").inc()
            self.log.warning("cache value for %s is not valid JSON: %s", key, error)
            return None

        CACHE_EVENTS.labels(event="hit").inc()
        return value

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            await self.write(key, value, ttl_seconds)
        except CacheUnavailableError as error:
            if self.redis is not None:
                CACHE_EVENTS.labels(event="error").inc()
                self.log.warning("cache set failed for %s: %s", key, error)
        except (TypeError, ValueError) as error:
            CACHE_EVENTS.labels(event="error").inc()
            self.log.warning("cache value for %s is not serializable: %s", key, error)

    async def ping(self) -> bool:
        if self.redis is None:
            return False
        try:
            return bool(await self.redis.ping())
        except (RedisError, OSError):
            return False
