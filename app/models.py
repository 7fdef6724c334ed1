from __future__ import annotations

import datetime as dt
from typing import Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
)
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RateLimitWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    count: int = Field(ge=0)
    reset_at: int


class RateLimitResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    remaining: int
    reset_at: int


class TokenHolding(CamelModel):
    """
    One token balance on one chain. `balance` is the raw integer amount in the
    token's smallest unit; it is serialized as a decimal string.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    chain: str
    contract_address: str
    symbol: Optional[str] = None
    name: Optional[str] = None
    decimals: Optional[int] = None
    balance: int = Field(ge=0)
    formatted: str
    price_usd: Optional[float] = None
    value_usd: Optional[float] = None
    change_24h: Optional[float] = Field(default=None, alias="change24h")

    @field_serializer("balance")
    def serialize_balance(self, balance: int) -> str:
        return str(balance)


class SimplePrice(BaseModel):
    price: float
    change_24h: Optional[float] = None


class TokenPrice(BaseModel):
    price: float
    change_24h: Optional[float] = None


class AaveChainSummary(CamelModel):
    chain: str
    supplied_count: int
    borrowed_count: int
    health_factor: Optional[float] = None
    supply_apy_min: Optional[float] = None
    supply_apy_max: Optional[float] = None
    borrow_apy_min: Optional[float] = None
    borrow_apy_max: Optional[float] = None


class AaveTotals(CamelModel):
    supplied_count: int = 0
    borrowed_count: int = 0


class AavePositionsSummary(CamelModel):
    chains: list[AaveChainSummary]
    totals: AaveTotals


class UniswapToken(CamelModel):
    symbol: str
    address: str


class UniswapPosition(CamelModel):
    id: str
    chain: str
    pool_address: str
    token0: UniswapToken
    token1: UniswapToken
    liquidity: float
    pool_liquidity: float
    pool_tvl_usd: float
    fee_tier: int = 0
    estimated_usd: float
    apr_7d: Optional[float] = Field(default=None, alias="apr7d")


class UniswapPositionsSummary(CamelModel):
    positions: list[UniswapPosition]
    total_usd: float = 0
    avg_apr_7d: float = Field(default=0, alias="avgApr7d")


class StakingToken(CamelModel):
    address: str
    symbol: str
    name: str
    decimals: int


class StakingSummary(CamelModel):
    chain: str = "ethereum"
    token: StakingToken
    balance: str
    balance_raw: str
    price_usd: Optional[float] = None
    value_usd: Optional[float] = None
    apr: Optional[float] = None
    estimated_daily_rewards_usd: Optional[float] = None


class StakingRewards(CamelModel):
    daily: float
    monthly: float
    annual: float


class StakingProtocolInfo(CamelModel):
    id: str
    name: str
    description: str
    supported_tokens: list[str]
    website: str
    logo: Optional[str] = None


class StakingPosition(CamelModel):
    protocol: str
    protocol_name: str
    staked_token: str
    underlying_token: str
    balance: float
    value: float
    apr: float
    daily_rewards: float
    monthly_rewards: float
    token_address: str
    logo: Optional[str] = None


class TransferRecord(CamelModel):
    hash: str
    from_address: str = Field(alias="from")
    to_address: Optional[str] = Field(default=None, alias="to")
    value: Optional[float] = None
    asset: Optional[str] = None
    timestamp: Optional[int] = None
    category: str = "unknown"
    gas_used: Optional[int] = None
    nonce: Optional[int] = None
    fee: Optional[float] = None


class SnapshotTokenIn(CamelModel):
    chain: Optional[str] = None
    address: Optional[str] = None
    symbol: Optional[str] = None
    name: Optional[str] = None
    balance: Optional[str] = None
    decimals: Optional[int] = None
    price: Optional[float] = None
    value: Optional[float] = None
    change_24h: Optional[float] = Field(default=None, alias="change24h")

    @field_validator("balance", mode="before")
    @classmethod
    def balance_as_string(cls, v):
        if v is None or isinstance(v, str):
            return v
        return str(v)


class SnapshotCreate(CamelModel):
    address: str
    tokens: list[SnapshotTokenIn]


class SnapshotReceipt(CamelModel):
    id: str
    address: str
    total_value: float
    created_at: dt.datetime
    token_count: int


class SnapshotSummary(CamelModel):
    id: str
    address: str
    total_value: float
    created_at: dt.datetime
    token_count: int


class SnapshotTokenOut(CamelModel):
    chain: str
    address: str
    symbol: str
    name: str
    balance: str
    decimals: int
    price: float
    value: float
    change_24h: Optional[float] = Field(default=None, alias="change24h")


class SnapshotDetail(CamelModel):
    id: str
    address: str
    total_value: float
    eth_value: float = 0
    matic_value: float = 0
    token_count: int
    created_at: dt.datetime
    tokens: list[SnapshotTokenOut]
