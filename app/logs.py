import logging

from prometheus_client import Counter
from rich.logging import RichHandler

from app.ENV import LOG_LEVEL


def setup_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


CACHE_EVENTS = Counter(
    "portfolio_cache_events_total",
    "Cache store lookups and failures.",
    ["event"],
)
RATE_LIMIT_REJECTIONS = Counter(
    "portfolio_rate_limit_rejections_total",
    "Requests rejected by the rate limiter.",
    ["route"],
)
UPSTREAM_FAILURES = Counter(
    "portfolio_upstream_failures_total",
    "Per-chain upstream failures isolated by the balance aggregator.",
    ["chain"],
)
