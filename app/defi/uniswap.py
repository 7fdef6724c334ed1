"""
Uniswap v3 liquidity positions from The Graph subgraphs.

A position's USD value is estimated as its share of the pool's liquidity
times the pool TVL. The 7 day APR is fee income over the last seven daily
volumes, annualised by 52 weeks.
"""

import asyncio
import logging
from typing import Generic, Optional, TypeVar

import httpx
from pydantic import BaseModel, Field, ValidationError

from app.defi.aave import GraphError
from app.ENV import UNISWAP_SUBGRAPH_URLS
from app.errors import UpstreamError, UpstreamParseError, UpstreamStatusError
from app.models import (
    CamelModel,
    UniswapPosition,
    UniswapPositionsSummary,
    UniswapToken,
)

log = logging.getLogger(__name__)

UNISWAP_CHAINS = list(UNISWAP_SUBGRAPH_URLS)

POSITIONS_QUERY = """
query Positions($owner: String!) {
  positions(where: { owner: $owner }) {
    id
    liquidity
    pool {
      id
      liquidity
      totalValueLockedUSD
      feeTier
      token0 { id symbol }
      token1 { id symbol }
    }
  }
}
"""

POOL_DAY_DATAS_QUERY = """
query PoolDayDatas($poolIds: [String!]!) {
  poolDayDatas(where: { pool_in: $poolIds }, orderBy: date, orderDirection: desc, first: 700) {
    pool { id }
    volumeUSD
    date
  }
}
"""

DAYS_IN_APR_WINDOW = 7

T = TypeVar("T")


class GraphResponse(BaseModel, Generic[T]):
    data: Optional[T] = None
    errors: Optional[list[GraphError]] = None


class GraphToken(BaseModel):
    id: str
    symbol: str = ""


class GraphPool(CamelModel):
    id: str
    liquidity: float = 0
    total_value_locked_usd: float = Field(default=0, alias="totalValueLockedUSD")
    fee_tier: int = 0
    token0: GraphToken
    token1: GraphToken


class GraphPosition(BaseModel):
    id: str
    liquidity: float = 0
    pool: GraphPool


class PositionsData(BaseModel):
    positions: Optional[list[GraphPosition]] = None


class PoolRef(BaseModel):
    id: str


class PoolDayData(CamelModel):
    pool: PoolRef
    volume_usd: float = Field(default=0, alias="volumeUSD")
    date: int = 0


class PoolDayDatasData(CamelModel):
    pool_day_datas: Optional[list[PoolDayData]] = None


def to_position(chain: str, item: GraphPosition) -> UniswapPosition:
    pool = item.pool
    share = item.liquidity / pool.liquidity if pool.liquidity > 0 else 0
    return UniswapPosition(
        id=item.id,
        chain=chain,
        pool_address=pool.id,
        token0=UniswapToken(symbol=pool.token0.symbol, address=pool.token0.id),
        token1=UniswapToken(symbol=pool.token1.symbol, address=pool.token1.id),
        liquidity=item.liquidity,
        pool_liquidity=pool.liquidity,
        pool_tvl_usd=pool.total_value_locked_usd,
        fee_tier=pool.fee_tier,
        estimated_usd=pool.total_value_locked_usd * share,
    )


def apr_7d(volume_7d: float, fee_tier: int, tvl_usd: float) -> float:
    """
    `fee_tier` is in hundredths of a basis point, 500 is 0.05%. Result is
    a percentage.
    """
    if tvl_usd <= 0:
        return 0
    fee_percent = fee_tier / 10_000
    return volume_7d * fee_percent / tvl_usd * 52


def weekly_volumes(items: list[PoolDayData]) -> dict[str, float]:
    """
    Sums the most recent seven days per pool. `items` arrive newest first.
    """
    days: dict[str, list[float]] = {}
    for item in items:
        pool_days = days.setdefault(item.pool.id, [])
        if len(pool_days) < DAYS_IN_APR_WINDOW:
            pool_days.append(item.volume_usd)
    return {pool_id: sum(x) for pool_id, x in days.items()}


class UniswapFetcher:
    source = "thegraph:uniswap-v3"

    def __init__(
        self,
        httpx_client: httpx.AsyncClient,
        subgraph_urls: Optional[dict[str, str]] = None,
    ):
        self.httpx_client = httpx_client
        self.subgraph_urls = subgraph_urls or UNISWAP_SUBGRAPH_URLS

    async def graph_query(
        self, chain: str, query: str, variables: dict, data_model: type[T]
    ) -> T:
        response = await self.httpx_client.post(
            self.subgraph_urls[chain],
            json={"query": query, "variables": variables},
        )
        if response.status_code != 200:
            raise UpstreamStatusError(
                f"Uniswap subgraph {chain}", response.status_code, response.text[:200]
            )

        try:
            parsed = GraphResponse[data_model].model_validate(response.json())
        except (ValueError, ValidationError) as error:
            raise UpstreamParseError(f"Uniswap subgraph {chain}", str(error))
        if parsed.errors:
            raise UpstreamError(
                f"Uniswap subgraph {chain}",
                parsed.errors[0].message or "Graph error",
            )
        return parsed.data or data_model()

    async def fetch_chain_positions(
        self, chain: str, address: str
    ) -> list[UniswapPosition]:
        data = await self.graph_query(
            chain, POSITIONS_QUERY, {"owner": address.lower()}, PositionsData
        )
        return [to_position(chain, x) for x in data.positions or []]

    async def fetch_weekly_volumes(
        self, chain: str, pool_ids: list[str]
    ) -> dict[str, float]:
        if not pool_ids:
            return {}
        data = await self.graph_query(
            chain, POOL_DAY_DATAS_QUERY, {"poolIds": pool_ids}, PoolDayDatasData
        )
        return weekly_volumes(data.pool_day_datas or [])

    async def fetch_chain(self, chain: str, address: str) -> list[UniswapPosition]:
        positions = await self.fetch_chain_positions(chain, address)
        pool_ids = list(dict.fromkeys(x.pool_address for x in positions))
        volumes = await self.fetch_weekly_volumes(chain, pool_ids)
        for position in positions:
            position.apr_7d = apr_7d(
                volumes.get(position.pool_address, 0),
                position.fee_tier,
                position.pool_tvl_usd,
            )
        return positions

    async def get_positions(
        self, address: str, chains: Optional[list[str]] = None
    ) -> UniswapPositionsSummary:
        chains = chains or UNISWAP_CHAINS
        unique_chains = [x for x in dict.fromkeys(chains) if x in self.subgraph_urls]

        results = await asyncio.gather(
            *[self.fetch_chain(chain, address) for chain in unique_chains]
        )
        positions = [x for chain_positions in results for x in chain_positions]
        log.debug("%s uniswap positions for %s", len(positions), address)

        total_usd = sum(x.estimated_usd for x in positions)
        avg_apr = (
            sum((x.apr_7d or 0) * x.estimated_usd for x in positions) / total_usd
            if total_usd > 0
            else 0
        )
        return UniswapPositionsSummary(
            positions=positions, total_usd=total_usd, avg_apr_7d=avg_apr
        )
