"""
Liquid staking positions: Lido stETH and Rocket Pool rETH on Ethereum.

`StakingSummaryFetcher` builds the per-protocol summaries served by
`/api/defi/lido`, `/api/defi/rocket-pool` and `/api/defi/rewards`. The
adapters wrap those summaries into the generic `StakingPosition` shape, and
`StakingRegistry` collects them for `/api/defi/staking`.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

import httpx
from pydantic import BaseModel, ValidationError

from app.ENV import LIDO_APR_URL, RETH_ADDRESS, ROCKET_POOL_APR, STETH_ADDRESS
from app.errors import UpstreamError
from app.models import (
    StakingPosition,
    StakingProtocolInfo,
    StakingRewards,
    StakingSummary,
    StakingToken,
)
from app.services.alchemy import AlchemyClient
from app.services.coingecko import PriceResolver
from app.utils import format_units, parse_quantity

log = logging.getLogger(__name__)

STETH = StakingToken(
    address=STETH_ADDRESS, symbol="stETH", name="Lido Staked Ether", decimals=18
)
RETH = StakingToken(
    address=RETH_ADDRESS, symbol="rETH", name="Rocket Pool ETH", decimals=18
)


class LidoAprData(BaseModel):
    apr: Optional[float] = None


class LidoAprResponse(BaseModel):
    apr: Optional[float] = None
    data: Optional[LidoAprData] = None


class StakingSummaryFetcher:
    def __init__(
        self,
        alchemy: AlchemyClient,
        prices: PriceResolver,
        httpx_client: httpx.AsyncClient,
        lido_apr_url: str = LIDO_APR_URL,
        rocket_pool_apr: Optional[float] = ROCKET_POOL_APR,
    ):
        self.alchemy = alchemy
        self.prices = prices
        self.httpx_client = httpx_client
        self.lido_apr_url = lido_apr_url
        self.rocket_pool_apr = rocket_pool_apr

    async def get_lido_summary(self, address: str) -> StakingSummary:
        return await self._summary(address, STETH, self._lido_apr)

    async def get_rocket_pool_summary(self, address: str) -> StakingSummary:
        return await self._summary(address, RETH, self._rocket_pool_apr)

    async def _summary(
        self,
        address: str,
        token: StakingToken,
        get_apr: Callable[[], Awaitable[Optional[float]]],
    ) -> StakingSummary:
        raw, meta, price, apr = await asyncio.gather(
            self._balance(address, token.address),
            self._metadata(token),
            self._price(token.address),
            get_apr(),
        )

        balance = format_units(raw, meta.decimals)
        value = float(balance) * price if price is not None else None
        daily = (
            value * (apr / 100) / 365 if value is not None and apr is not None else None
        )
        return StakingSummary(
            token=meta,
            balance=balance,
            balance_raw=str(raw),
            price_usd=price,
            value_usd=value,
            apr=apr,
            estimated_daily_rewards_usd=daily,
        )

    async def _balance(self, address: str, contract: str) -> int:
        if not self.alchemy.has_key("ethereum"):
            return 0
        balances = await self.alchemy.get_token_balances("ethereum", address, [contract])
        if not balances:
            return 0
        return parse_quantity(balances[0].token_balance) or 0

    async def _metadata(self, token: StakingToken) -> StakingToken:
        if not self.alchemy.has_key("ethereum"):
            return token
        try:
            meta = await self.alchemy.get_token_metadata("ethereum", token.address)
        except (UpstreamError, httpx.HTTPError) as error:
            log.debug("metadata for %s unavailable: %s", token.symbol, error)
            return token
        return StakingToken(
            address=token.address,
            symbol=meta.symbol or token.symbol,
            name=meta.name or token.name,
            decimals=meta.decimals if meta.decimals is not None else token.decimals,
        )

    async def _price(self, contract: str) -> Optional[float]:
        try:
            prices = await self.prices.get_token_prices_by_address(
                "ethereum", [contract], "usd", include_24h_change=True
            )
        except (UpstreamError, httpx.HTTPError) as error:
            log.warning("price for %s unavailable: %s", contract, error)
            return None
        price = prices.get(contract.lower())
        return price.price if price is not None else None

    async def _lido_apr(self) -> Optional[float]:
        try:
            response = await self.httpx_client.get(self.lido_apr_url)
        except httpx.HTTPError as error:
            log.warning("Lido APR request failed: %s", error)
            return None
        if response.status_code != 200:
            log.warning("Lido APR request failed: %s", response.status_code)
            return None
        try:
            parsed = LidoAprResponse.model_validate(response.json())
        except (ValueError, ValidationError) as error:
            log.warning("Lido APR payload unusable: %s", error)
            return None
        if parsed.apr is not None:
            return parsed.apr
        return parsed.data.apr if parsed.data else None

    async def _rocket_pool_apr(self) -> Optional[float]:
        return self.rocket_pool_apr


class StakingAdapter(ABC):
    """
    One staking protocol behind the generic position interface.
    """

    info: StakingProtocolInfo
    staked_token: str
    underlying_token: str = "ETH"
    token_address: str

    def __init__(self, summaries: StakingSummaryFetcher):
        self.summaries = summaries

    @abstractmethod
    async def get_summary(self, address: str) -> StakingSummary: ...

    def protocol_info(self) -> StakingProtocolInfo:
        return self.info

    def calculate_rewards(self, balance: float, apr: float) -> StakingRewards:
        annual = balance * (apr / 100)
        daily = annual / 365
        return StakingRewards(daily=daily, monthly=daily * 30, annual=annual)

    async def get_position(self, address: str) -> Optional[StakingPosition]:
        summary = await self.get_summary(address)
        balance = float(summary.balance or 0)
        if balance == 0:
            return None

        apr = summary.apr or 0
        rewards = self.calculate_rewards(balance, apr)
        return StakingPosition(
            protocol=self.info.id,
            protocol_name=self.info.name,
            staked_token=self.staked_token,
            underlying_token=self.underlying_token,
            balance=balance,
            value=summary.value_usd or 0,
            apr=apr,
            daily_rewards=rewards.daily,
            monthly_rewards=rewards.monthly,
            token_address=self.token_address,
            logo=self.info.logo,
        )


class LidoAdapter(StakingAdapter):
    info = StakingProtocolInfo(
        id="lido",
        name="Lido",
        description="Liquid staking for Ethereum",
        supported_tokens=["ETH"],
        website="https://lido.fi",
        logo="https://assets.coingecko.com/coins/images/13442/small/steth_logo.png",
    )
    staked_token = "stETH"
    token_address = STETH_ADDRESS

    async def get_summary(self, address: str) -> StakingSummary:
        return await self.summaries.get_lido_summary(address)


class RocketPoolAdapter(StakingAdapter):
    info = StakingProtocolInfo(
        id="rocket-pool",
        name="Rocket Pool",
        description="Decentralised Ethereum staking protocol",
        supported_tokens=["ETH"],
        website="https://rocketpool.net",
        logo="https://assets.coingecko.com/coins/images/20764/small/reth.png",
    )
    staked_token = "rETH"
    token_address = RETH_ADDRESS

    async def get_summary(self, address: str) -> StakingSummary:
        return await self.summaries.get_rocket_pool_summary(address)


class StakingRegistry:
    def __init__(self, adapters: Optional[list[StakingAdapter]] = None):
        self.adapters: dict[str, StakingAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: StakingAdapter) -> None:
        self.adapters[adapter.protocol_info().id] = adapter

    def protocols(self) -> list[StakingProtocolInfo]:
        return [x.protocol_info() for x in self.adapters.values()]

    def get_adapter(self, protocol_id: str) -> Optional[StakingAdapter]:
        return self.adapters.get(protocol_id)

    async def get_all_positions(self, address: str) -> list[StakingPosition]:
        """
        Positions with a non-zero balance across all registered protocols.
        A protocol that fails is logged and left out.
        """
        adapters = list(self.adapters.values())
        results = await asyncio.gather(
            *[x.get_position(address) for x in adapters], return_exceptions=True
        )

        positions = []
        for adapter, result in zip(adapters, results):
            if isinstance(result, (UpstreamError, httpx.HTTPError)):
                log.warning(
                    "staking position for %s failed: %s", adapter.info.name, result
                )
                continue
            if isinstance(result, BaseException):
                raise result
            if result is not None and result.balance > 0:
                positions.append(result)
        return positions


def build_registry(summaries: StakingSummaryFetcher) -> StakingRegistry:
    return StakingRegistry([LidoAdapter(summaries), RocketPoolAdapter(summaries)])
