import os
from dotenv import load_dotenv

load_dotenv()


ENVIRONMENT = os.environ.get("ENVIRONMENT", "prod")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
REDIS_URL = os.environ.get("REDIS_URL")
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./portfolio.db")
SENTRY_DSN = os.environ.get("SENTRY_DSN")
SENTRY_ENVIRONMENT = os.environ.get("SENTRY_ENVIRONMENT", ENVIRONMENT)
CORS_ORIGINS = [
    x.strip()
    for x in os.environ.get(
        "CORS_ORIGINS", "http://127.0.0.1:3000,http://localhost:3000"
    ).split(",")
    if x.strip()
]

ALCHEMY_API_KEY = os.environ.get("ALCHEMY_API_KEY", "")
ALCHEMY_API_KEYS = {
    "ethereum": os.environ.get("ALCHEMY_API_KEY_ETHEREUM") or ALCHEMY_API_KEY,
    "polygon": os.environ.get("ALCHEMY_API_KEY_POLYGON") or ALCHEMY_API_KEY,
    "arbitrum": os.environ.get("ALCHEMY_API_KEY_ARBITRUM") or ALCHEMY_API_KEY,
}
COINGECKO_API_KEY = os.environ.get("COINGECKO_API_KEY")
COINGECKO_BASE_URL = os.environ.get(
    "COINGECKO_BASE_URL", "https://api.coingecko.com/api/v3"
)
AAVE_SUBGRAPH_URLS = {
    "ethereum": os.environ.get(
        "AAVE_SUBGRAPH_URL_ETHEREUM",
        "https://api.thegraph.com/subgraphs/name/aave/protocol-v3",
    ),
    "polygon": os.environ.get(
        "AAVE_SUBGRAPH_URL_POLYGON",
        "https://api.thegraph.com/subgraphs/name/aave/protocol-v3-polygon",
    ),
}
UNISWAP_SUBGRAPH_URLS = {
    "ethereum": os.environ.get(
        "UNISWAP_SUBGRAPH_URL_ETHEREUM",
        "https://api.thegraph.com/subgraphs/name/uniswap/uniswap-v3",
    ),
    "polygon": os.environ.get(
        "UNISWAP_SUBGRAPH_URL_POLYGON",
        "https://api.thegraph.com/subgraphs/name/ianlapham/uniswap-v3-polygon",
    ),
}
LIDO_APR_URL = os.environ.get(
    "LIDO_APR_URL", "https://eth-api.lido.fi/v1/protocol/steth/apr/last"
)
# Rocket Pool publishes no APR endpoint we rely on; this is an estimate.
ROCKET_POOL_APR = float(os.environ.get("ROCKET_POOL_APR", "3.2"))

HTTP_TIMEOUT_SECONDS = float(os.environ.get("HTTP_TIMEOUT_SECONDS", "15"))
CHAIN_FETCH_TIMEOUT_SECONDS = float(
    os.environ.get("CHAIN_FETCH_TIMEOUT_SECONDS", "10")
)

RATE_LIMIT_DEFAULT = int(os.environ.get("RATE_LIMIT_DEFAULT", "30"))
RATE_LIMIT_TRANSACTIONS = int(os.environ.get("RATE_LIMIT_TRANSACTIONS", "10"))
RATE_LIMIT_WINDOW_SECONDS = int(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", "60"))

# TTLs in seconds
CACHE_TTL_BALANCES = 3 * 60
CACHE_TTL_PRICES = 5 * 60
CACHE_TTL_REWARDS = 5 * 60
CACHE_TTL_DEFI_POSITIONS = 10 * 60
CACHE_TTL_LP_POSITIONS = 60

# fixed order, also the join order of the aggregator
SUPPORTED_CHAINS = ["ethereum", "polygon", "arbitrum"]
CHAIN_IDS = {"ethereum": 1, "polygon": 137, "arbitrum": 42161}
CHAIN_BY_ID = {v: k for k, v in CHAIN_IDS.items()}
ALCHEMY_NETWORKS = {
    "ethereum": "eth-mainnet",
    "polygon": "polygon-mainnet",
    "arbitrum": "arb-mainnet",
}
COINGECKO_PLATFORMS = {
    "ethereum": "ethereum",
    "polygon": "polygon-pos",
    "arbitrum": "arbitrum-one",
}

STETH_ADDRESS = "0xae7ab96520de3a18e5e111b5eaab095312d7fe84"
RETH_ADDRESS = "0xae78736cd615f374d3085123a210448e74fc6393"
