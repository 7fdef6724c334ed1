"""
Aave v3 lending positions from The Graph subgraphs.
"""

import asyncio
import logging
from typing import Optional

import httpx
from pydantic import BaseModel, ValidationError

from app.ENV import AAVE_SUBGRAPH_URLS
from app.errors import UpstreamError, UpstreamParseError, UpstreamStatusError
from app.models import (
    AaveChainSummary,
    AavePositionsSummary,
    AaveTotals,
    CamelModel,
)
from app.utils import is_non_zero, ray_to_percent

log = logging.getLogger(__name__)

AAVE_CHAINS = list(AAVE_SUBGRAPH_URLS)

USER_POSITIONS_QUERY = """
query GetUserPositions($user: String!) {
  users(where: { id: $user }) { id healthFactor }
  userReserves(where: { user: $user }) {
    currentATokenBalance
    currentTotalDebt
    reserve { id symbol decimals liquidityRate variableBorrowRate stableBorrowRate }
  }
}
"""


class AaveReserve(CamelModel):
    id: str
    symbol: Optional[str] = None
    decimals: Optional[int] = None
    liquidity_rate: Optional[str] = None
    variable_borrow_rate: Optional[str] = None
    stable_borrow_rate: Optional[str] = None


class AaveUserReserve(CamelModel):
    current_a_token_balance: Optional[str] = None
    current_total_debt: Optional[str] = None
    reserve: AaveReserve


class AaveUser(CamelModel):
    id: str
    health_factor: Optional[str] = None


class AaveGraphData(CamelModel):
    users: Optional[list[AaveUser]] = None
    user_reserves: Optional[list[AaveUserReserve]] = None


class GraphError(BaseModel):
    message: str = ""


class AaveGraphResponse(BaseModel):
    data: Optional[AaveGraphData] = None
    errors: Optional[list[GraphError]] = None


def scale_health_factor(raw: Optional[str]) -> Optional[float]:
    """
    Health factor arrives scaled by 1e18. Absent or unparsable values are
    None, never 0, which would read as a liquidation.
    """
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    if value != value or value in (float("inf"), float("-inf")):
        return None
    return value / 1e18


def summarize_chain(chain: str, data: AaveGraphData) -> AaveChainSummary:
    reserves = data.user_reserves or []
    supplied = [x for x in reserves if is_non_zero(x.current_a_token_balance)]
    borrowed = [x for x in reserves if is_non_zero(x.current_total_debt)]

    supply_apys = [
        x
        for x in (ray_to_percent(r.reserve.liquidity_rate) for r in supplied)
        if x is not None
    ]
    borrow_apys = [
        x
        for x in (ray_to_percent(r.reserve.variable_borrow_rate) for r in borrowed)
        if x is not None
    ]

    user = data.users[0] if data.users else None
    return AaveChainSummary(
        chain=chain,
        supplied_count=len(supplied),
        borrowed_count=len(borrowed),
        health_factor=scale_health_factor(user.health_factor) if user else None,
        supply_apy_min=min(supply_apys) if supply_apys else None,
        supply_apy_max=max(supply_apys) if supply_apys else None,
        borrow_apy_min=min(borrow_apys) if borrow_apys else None,
        borrow_apy_max=max(borrow_apys) if borrow_apys else None,
    )


class AaveFetcher:
    source = "thegraph:aave-v3"

    def __init__(
        self,
        httpx_client: httpx.AsyncClient,
        subgraph_urls: Optional[dict[str, str]] = None,
    ):
        self.httpx_client = httpx_client
        self.subgraph_urls = subgraph_urls or AAVE_SUBGRAPH_URLS

    async def fetch_chain_positions(self, chain: str, address: str) -> AaveChainSummary:
        response = await self.httpx_client.post(
            self.subgraph_urls[chain],
            json={
                "query": USER_POSITIONS_QUERY,
                "variables": {"user": address.lower()},
            },
        )
        if response.status_code != 200:
            raise UpstreamStatusError(
                f"Aave subgraph {chain}", response.status_code, response.text[:200]
            )

        try:
            parsed = AaveGraphResponse.model_validate(response.json())
        except (ValueError, ValidationError) as error:
            raise UpstreamParseError(f"Aave subgraph {chain}", str(error))
        if parsed.errors:
            raise UpstreamError(
                f"Aave subgraph {chain}", "; ".join(x.message for x in parsed.errors)
            )

        return summarize_chain(chain, parsed.data or AaveGraphData())

    async def get_positions(
        self, address: str, chains: Optional[list[str]] = None
    ) -> AavePositionsSummary:
        chains = chains or ["ethereum", "polygon"]
        unique_chains = [x for x in dict.fromkeys(chains) if x in self.subgraph_urls]

        results = await asyncio.gather(
            *[self.fetch_chain_positions(chain, address) for chain in unique_chains]
        )
        totals = AaveTotals(
            supplied_count=sum(x.supplied_count for x in results),
            borrowed_count=sum(x.borrowed_count for x in results),
        )
        return AavePositionsSummary(chains=list(results), totals=totals)
