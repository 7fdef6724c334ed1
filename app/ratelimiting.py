import json
import logging
import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from app.cache import CacheStore, CacheUnavailableError
from app.errors import ErrorCodes, error_response
from app.logs import RATE_LIMIT_REJECTIONS
from app.models import RateLimitResult, RateLimitWindow

log = logging.getLogger(__name__)

# the local fallback map is pruned of expired windows past this size
MEMORY_PRUNE_THRESHOLD = 10_000


class RateLimitExceeded(Exception):
    def __init__(self, result: RateLimitResult, route: str = ""):
        self.result = result
        self.route = route
        super().__init__(f"rate limit exceeded for {route}")


class RateLimiter:
    """
    Fixed window counter per key.

    Windows live in the shared cache under `ratelimit:<key>` with a TTL of the
    window length. When the cache cannot be reached the same algorithm runs
    against a process-local map, so one instance still limits on its own.

    The read-modify-write against the cache is not atomic: concurrent requests
    for one key can undercount and let a short burst through.
    """

    def __init__(
        self,
        cache: CacheStore,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.clock = clock
        self.memory: dict[str, RateLimitWindow] = {}

    def _now(self) -> int:
        return int(self.clock())

    def _apply(
        self, window: Optional[RateLimitWindow], limit: int, window_seconds: int
    ) -> tuple[RateLimitWindow, RateLimitResult]:
        now = self._now()
        if window is None or now > window.reset_at:
            window = RateLimitWindow(count=0, reset_at=now + window_seconds)

        if window.count + 1 > limit:
            return window, RateLimitResult(
                allowed=False, remaining=0, reset_at=window.reset_at
            )

        window = RateLimitWindow(count=window.count + 1, reset_at=window.reset_at)
        return window, RateLimitResult(
            allowed=True,
            remaining=max(0, limit - window.count),
            reset_at=window.reset_at,
        )

    async def rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> RateLimitResult:
        cache_key = f"ratelimit:{key}"
        try:
            raw = await self.cache.read(cache_key)
            window, result = self._apply(
                self._decode(raw), limit, window_seconds
            )
            if result.allowed:
                await self.cache.write(
                    cache_key,
                    {"count": window.count, "resetAt": window.reset_at},
                    window_seconds,
                )
            return result
        except CacheUnavailableError as error:
            log.debug("rate limiter falling back to memory for %s: %s", key, error)
            return self._rate_limit_in_memory(key, limit, window_seconds)

    def _rate_limit_in_memory(
        self, key: str, limit: int, window_seconds: int
    ) -> RateLimitResult:
        if len(self.memory) > MEMORY_PRUNE_THRESHOLD:
            now = self._now()
            self.memory = {k: v for k, v in self.memory.items() if v.reset_at >= now}

        window, result = self._apply(self.memory.get(key), limit, window_seconds)
        self.memory[key] = window
        return result

    @staticmethod
    def _decode(raw: Optional[bytes]) -> Optional[RateLimitWindow]:
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return RateLimitWindow(count=int(data["count"]), reset_at=int(data["resetAt"]))
        except (TypeError, ValueError, KeyError):
            return None


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def client_key(request: Request, extra: Optional[str] = None) -> str:
    """
    `<path>:<ip>:<address>[:extra]`, with "/" in the path replaced by ":".
    The address is lowercased so differently cased requests share a window.
    """
    address = (request.query_params.get("address") or "noaddr").lower()
    path = request.url.path.replace("/", ":")
    suffix = f":{extra}" if extra else ""
    return f"{path}:{client_ip(request)}:{address}{suffix}"


async def enforce_rate_limit(
    request: Request,
    limiter: RateLimiter,
    route: str,
    limit: int,
    window_seconds: int,
) -> RateLimitResult:
    result = await limiter.rate_limit(
        client_key(request, route), limit, window_seconds
    )
    if not result.allowed:
        RATE_LIMIT_REJECTIONS.labels(route=route).inc()
        raise RateLimitExceeded(result, route)
    return result


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at),
    }


def too_many_response(result: RateLimitResult, now: Optional[int] = None) -> JSONResponse:
    now = int(time.time()) if now is None else now
    retry_after = max(1, result.reset_at - now)
    return error_response(
        ErrorCodes.RATE_LIMITED,
        headers={
            "Retry-After": str(retry_after),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(result.reset_at),
        },
    )
