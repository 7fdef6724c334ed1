import asyncio
import logging
from typing import Any, Optional, Union

import httpx
from pydantic import BaseModel, ValidationError

from app.ENV import ALCHEMY_API_KEYS, ALCHEMY_NETWORKS, CHAIN_BY_ID, COINGECKO_PLATFORMS
from app.errors import (
    UnsupportedChainError,
    UpstreamError,
    UpstreamParseError,
    UpstreamStatusError,
)
from app.models import CamelModel, TokenHolding, TokenPrice
from app.services.coingecko import PriceResolver
from app.utils import format_units, parse_quantity

log = logging.getLogger(__name__)

METADATA_BATCH_SIZE = 10
DEFAULT_DECIMALS = 18


class JsonRpcError(BaseModel):
    code: Optional[int] = None
    message: Optional[str] = None


class JsonRpcResponse(BaseModel):
    id: Optional[Union[int, str]] = None
    result: Any = None
    error: Optional[JsonRpcError] = None


class AlchemyTokenBalance(CamelModel):
    contract_address: str
    token_balance: Optional[str] = None


class AlchemyTokenBalances(CamelModel):
    address: Optional[str] = None
    token_balances: list[AlchemyTokenBalance]


class AlchemyTokenMetadata(BaseModel):
    name: Optional[str] = None
    symbol: Optional[str] = None
    decimals: Optional[int] = None


class AlchemyClient:
    """
    Thin JSON-RPC client for the Alchemy node endpoints of each supported chain.
    """

    source = "alchemy"

    def __init__(
        self,
        httpx_client: httpx.AsyncClient,
        api_keys: Optional[dict[str, str]] = None,
    ):
        self.httpx_client = httpx_client
        self.api_keys = ALCHEMY_API_KEYS if api_keys is None else api_keys

    def has_key(self, chain: str) -> bool:
        return bool(self.api_keys.get(chain))

    def endpoint(self, chain: str) -> str:
        return f"https://{ALCHEMY_NETWORKS[chain]}.g.alchemy.com/v2/{self.api_keys[chain]}"

    async def rpc(self, chain: str, method: str, params: list) -> Any:
        response = await self.httpx_client.post(
            self.endpoint(chain),
            json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params},
        )
        if response.status_code != 200:
            raise UpstreamStatusError(self.source, response.status_code)
        try:
            message = JsonRpcResponse.model_validate(response.json())
        except (ValueError, ValidationError) as error:
            raise UpstreamParseError(self.source, f"{method}: malformed response {error}")
        if message.error is not None:
            raise UpstreamError(self.source, message.error.message or "RPC error")
        return message.result

    async def rpc_batch(
        self, chain: str, calls: list[tuple[str, list]]
    ) -> list[Any]:
        """
        Sends calls as one JSON-RPC batch. Results come back in call order;
        a call that errored yields None.
        """
        if not calls:
            return []
        payload = [
            {"jsonrpc": "2.0", "id": index + 1, "method": method, "params": params}
            for index, (method, params) in enumerate(calls)
        ]
        response = await self.httpx_client.post(self.endpoint(chain), json=payload)
        if response.status_code != 200:
            raise UpstreamStatusError(self.source, response.status_code)
        try:
            messages = [JsonRpcResponse.model_validate(x) for x in response.json()]
        except (ValueError, TypeError, ValidationError) as error:
            raise UpstreamParseError(self.source, f"batch: malformed response {error}")

        results: list[Any] = [None] * len(calls)
        for message in messages:
            if isinstance(message.id, int) and 1 <= message.id <= len(calls):
                results[message.id - 1] = message.result if message.error is None else None
        return results

    async def get_token_balances(
        self, chain: str, address: str, contracts: Optional[list[str]] = None
    ) -> list[AlchemyTokenBalance]:
        params: list = [address]
        if contracts:
            params.append(contracts)
        result = await self.rpc(chain, "alchemy_getTokenBalances", params)
        try:
            return AlchemyTokenBalances.model_validate(result).token_balances
        except ValidationError as error:
            raise UpstreamParseError(self.source, f"alchemy_getTokenBalances: {error}")

    async def get_token_metadata(self, chain: str, contract: str) -> AlchemyTokenMetadata:
        result = await self.rpc(chain, "alchemy_getTokenMetadata", [contract])
        try:
            return AlchemyTokenMetadata.model_validate(result or {})
        except ValidationError as error:
            raise UpstreamParseError(self.source, f"alchemy_getTokenMetadata: {error}")


class ChainBalanceFetcher:
    """
    Lists the ERC-20 holdings of an address on one chain, with metadata and
    USD prices joined in.
    """

    def __init__(self, alchemy: AlchemyClient, prices: PriceResolver):
        self.alchemy = alchemy
        self.prices = prices

    async def get_token_balances(self, address: str, chain_id: int) -> list[TokenHolding]:
        chain = CHAIN_BY_ID.get(chain_id)
        if chain is None:
            raise UnsupportedChainError(f"Unsupported chainId: {chain_id}")

        if not self.alchemy.has_key(chain):
            log.warning("no Alchemy API key configured for %s, returning no balances", chain)
            return []

        balances: dict[str, int] = {}
        for item in await self.alchemy.get_token_balances(chain, address):
            amount = parse_quantity(item.token_balance)
            contract = item.contract_address.lower()
            if amount and amount > 0 and contract not in balances:
                balances[contract] = amount

        contracts = list(balances.keys())
        metadata = await self._get_metadata(chain, contracts)
        prices = await self._get_prices(chain, contracts)

        holdings = []
        for contract, amount in balances.items():
            meta = metadata.get(contract) or AlchemyTokenMetadata()
            decimals = meta.decimals if meta.decimals is not None else DEFAULT_DECIMALS
            formatted = format_units(amount, decimals)
            price = prices.get(contract)
            holdings.append(
                TokenHolding(
                    chain=chain,
                    contract_address=contract,
                    symbol=meta.symbol,
                    name=meta.name,
                    decimals=decimals,
                    balance=amount,
                    formatted=formatted,
                    price_usd=price.price if price is not None else None,
                    value_usd=float(formatted) * price.price if price is not None else None,
                    change_24h=price.change_24h if price is not None else None,
                )
            )

        holdings.sort(key=lambda x: x.value_usd or 0, reverse=True)
        log.info("%d holdings for %s on %s", len(holdings), address, chain)
        return holdings

    async def _get_metadata(
        self, chain: str, contracts: list[str]
    ) -> dict[str, AlchemyTokenMetadata]:
        async def lookup(contract: str) -> AlchemyTokenMetadata:
            try:
                return await self.alchemy.get_token_metadata(chain, contract)
            except (UpstreamError, httpx.HTTPError) as error:
                log.debug("metadata lookup for %s on %s failed: %s", contract, chain, error)
                return AlchemyTokenMetadata()

        metadata = {}
        for start in range(0, len(contracts), METADATA_BATCH_SIZE):
            batch = contracts[start : start + METADATA_BATCH_SIZE]
            results = await asyncio.gather(*[lookup(x) for x in batch])
            metadata.update(dict(zip(batch, results)))
        return metadata

    async def _get_prices(self, chain: str, contracts: list[str]) -> dict[str, TokenPrice]:
        if not contracts:
            return {}
        try:
            return await self.prices.get_token_prices_by_address(
                COINGECKO_PLATFORMS[chain], contracts, "usd", include_24h_change=True
            )
        except (UpstreamError, httpx.HTTPError) as error:
            log.warning("price lookup for %s failed, returning unpriced holdings: %s", chain, error)
            return {}
