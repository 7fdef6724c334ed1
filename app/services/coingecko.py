import logging
from typing import Optional

import httpx
from pydantic import RootModel, ValidationError

from app.ENV import COINGECKO_API_KEY, COINGECKO_BASE_URL
from app.errors import UpstreamParseError, UpstreamStatusError
from app.models import SimplePrice, TokenPrice

log = logging.getLogger(__name__)


class CoinGeckoPriceMap(RootModel[dict[str, dict[str, Optional[float]]]]):
    pass


class PriceResolver:
    """
    Client for the CoinGecko simple price endpoints. Failures raise; caching
    and retries are left to the caller.
    """

    source = "coingecko"

    def __init__(
        self,
        httpx_client: httpx.AsyncClient,
        base_url: str = COINGECKO_BASE_URL,
        api_key: Optional[str] = COINGECKO_API_KEY,
    ):
        self.httpx_client = httpx_client
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-cg-pro-api-key"] = self.api_key
        return headers

    async def _get(self, url: str, params: dict) -> dict[str, dict[str, Optional[float]]]:
        response = await self.httpx_client.get(url, params=params, headers=self._headers())
        if response.status_code != 200:
            raise UpstreamStatusError(self.source, response.status_code)
        try:
            return CoinGeckoPriceMap.model_validate(response.json()).root
        except (ValueError, ValidationError) as error:
            raise UpstreamParseError(self.source, f"unexpected price payload: {error}")

    async def get_simple_prices(
        self, ids: list[str], vs_currency: str = "usd"
    ) -> dict[str, SimplePrice]:
        ids = [x.strip().lower() for x in ids if x and x.strip()]
        if not ids:
            return {}

        vs_currency = vs_currency.lower()
        data = await self._get(
            f"{self.base_url}/simple/price",
            {
                "ids": ",".join(ids),
                "vs_currencies": vs_currency,
                "include_24hr_change": "true",
            },
        )
        prices = {}
        for token_id, quote in data.items():
            price = quote.get(vs_currency)
            if price is None:
                continue
            prices[token_id] = SimplePrice(
                price=price, change_24h=quote.get(f"{vs_currency}_24h_change")
            )
        return prices

    async def get_token_prices_by_address(
        self,
        platform: str,
        addresses: list[str],
        vs_currency: str = "usd",
        include_24h_change: bool = False,
    ) -> dict[str, TokenPrice]:
        addresses = [x.strip().lower() for x in addresses if x and x.strip()]
        if not addresses:
            return {}

        vs_currency = vs_currency.lower()
        params = {
            "contract_addresses": ",".join(addresses),
            "vs_currencies": vs_currency,
        }
        if include_24h_change:
            params["include_24hr_change"] = "true"

        data = await self._get(f"{self.base_url}/simple/token_price/{platform}", params)
        prices = {}
        for address, quote in data.items():
            price = quote.get(vs_currency)
            if price is None:
                continue
            prices[address.lower()] = TokenPrice(
                price=price, change_24h=quote.get(f"{vs_currency}_24h_change")
            )
        return prices
