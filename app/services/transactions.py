import asyncio
import datetime as dt
import logging
from typing import Optional

from pydantic import Field, ValidationError

from app.errors import UpstreamParseError
from app.models import CamelModel, TransferRecord
from app.services.alchemy import AlchemyClient
from app.utils import categorize_transaction, parse_quantity

log = logging.getLogger(__name__)

MAX_TRANSFERS = "0x32"
WEI = 1e18

# Arbitrum does not index internal transfers
TRANSFER_CATEGORIES = {
    "ethereum": ["external", "internal", "erc20", "erc721", "erc1155"],
    "polygon": ["external", "internal", "erc20", "erc721", "erc1155"],
    "arbitrum": ["external", "erc20", "erc721", "erc1155"],
}


class TransferMetadata(CamelModel):
    block_timestamp: Optional[str] = None


class AssetTransfer(CamelModel):
    unique_id: Optional[str] = None
    hash: str
    block_num: Optional[str] = None
    from_address: str = Field(alias="from")
    to_address: Optional[str] = Field(default=None, alias="to")
    value: Optional[float] = None
    asset: Optional[str] = None
    metadata: Optional[TransferMetadata] = None

    def dedupe_key(self) -> str:
        return self.unique_id or f"{self.hash}:{self.from_address}:{self.to_address}:{self.asset}"

    def timestamp(self) -> Optional[int]:
        if not self.metadata or not self.metadata.block_timestamp:
            return None
        try:
            moment = dt.datetime.fromisoformat(self.metadata.block_timestamp)
        except ValueError:
            return None
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=dt.timezone.utc)
        return int(moment.timestamp())


class AssetTransfers(CamelModel):
    transfers: list[AssetTransfer] = []


class TransactionReceipt(CamelModel):
    gas_used: Optional[str] = None
    effective_gas_price: Optional[str] = None


class TransactionDetail(CamelModel):
    nonce: Optional[str] = None
    gas_price: Optional[str] = None


def parse_optional(model, value):
    if not isinstance(value, dict):
        return model()
    try:
        return model.model_validate(value)
    except ValidationError:
        return model()


class TransactionHistory:
    """
    Recent asset transfers of an address on one chain, newest first, with
    gas used, nonce and fee joined from the receipts.
    """

    def __init__(self, alchemy: AlchemyClient):
        self.alchemy = alchemy

    async def _transfers(self, chain: str, direction: str, address: str) -> list[AssetTransfer]:
        result = await self.alchemy.rpc(
            chain,
            "alchemy_getAssetTransfers",
            [
                {
                    direction: address,
                    "category": TRANSFER_CATEGORIES[chain],
                    "withMetadata": True,
                    "maxCount": MAX_TRANSFERS,
                    "order": "desc",
                }
            ],
        )
        try:
            return AssetTransfers.model_validate(result or {}).transfers
        except ValidationError as error:
            raise UpstreamParseError(self.alchemy.source, f"alchemy_getAssetTransfers: {error}")

    async def get_transfers(self, address: str, chain: str) -> list[TransferRecord]:
        sent, received = await asyncio.gather(
            self._transfers(chain, "fromAddress", address),
            self._transfers(chain, "toAddress", address),
        )

        transfers = list({x.dedupe_key(): x for x in sent + received}.values())
        transfers.sort(key=lambda x: parse_quantity(x.block_num) or 0, reverse=True)

        hashes = list(dict.fromkeys(x.hash for x in transfers))
        receipts, details = await asyncio.gather(
            self.alchemy.rpc_batch(
                chain, [("eth_getTransactionReceipt", [x]) for x in hashes]
            ),
            self.alchemy.rpc_batch(
                chain, [("eth_getTransactionByHash", [x]) for x in hashes]
            ),
        )
        receipt_by_hash = {
            h: parse_optional(TransactionReceipt, r) for h, r in zip(hashes, receipts)
        }
        detail_by_hash = {
            h: parse_optional(TransactionDetail, d) for h, d in zip(hashes, details)
        }

        records = []
        for transfer in transfers:
            receipt = receipt_by_hash[transfer.hash]
            detail = detail_by_hash[transfer.hash]
            gas_used = parse_quantity(receipt.gas_used)
            gas_price = parse_quantity(receipt.effective_gas_price)
            if gas_price is None:
                gas_price = parse_quantity(detail.gas_price)
            fee = gas_used * gas_price / WEI if gas_used is not None and gas_price is not None else None

            records.append(
                TransferRecord(
                    hash=transfer.hash,
                    from_address=transfer.from_address,
                    to_address=transfer.to_address,
                    value=transfer.value,
                    asset=transfer.asset,
                    timestamp=transfer.timestamp(),
                    category=categorize_transaction(
                        transfer.from_address, transfer.to_address, address
                    ),
                    gas_used=gas_used,
                    nonce=parse_quantity(detail.nonce),
                    fee=fee,
                )
            )

        log.info("%d transfers for %s on %s", len(records), address, chain)
        return records
