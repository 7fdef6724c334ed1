import datetime as dt
import logging
import uuid
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from app.database import PortfolioSnapshotRow, SnapshotTokenRow
from app.models import (
    SnapshotDetail,
    SnapshotReceipt,
    SnapshotSummary,
    SnapshotTokenIn,
    SnapshotTokenOut,
)

log = logging.getLogger(__name__)

MAX_LIST_LIMIT = 50


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def as_utc(moment: dt.datetime) -> dt.datetime:
    # SQLite hands back naive datetimes
    if moment.tzinfo is None:
        return moment.replace(tzinfo=dt.timezone.utc)
    return moment


def default_chain(symbol: Optional[str]) -> str:
    return "polygon" if symbol == "MATIC" else "ethereum"


def first_value_for_symbol(tokens: list[SnapshotTokenIn], symbol: str) -> float:
    for token in tokens:
        if token.symbol == symbol:
            return token.value or 0
    return 0


def token_row(position: int, token: SnapshotTokenIn) -> SnapshotTokenRow:
    return SnapshotTokenRow(
        position=position,
        chain=token.chain or default_chain(token.symbol),
        address=token.address or "",
        symbol=token.symbol or "",
        name=token.name or "",
        balance=token.balance or "0",
        decimals=token.decimals if token.decimals is not None else 18,
        price=token.price or 0,
        value=token.value or 0,
        change_24h=token.change_24h,
    )


def to_detail(row: PortfolioSnapshotRow) -> SnapshotDetail:
    return SnapshotDetail(
        id=row.id,
        address=row.address,
        total_value=row.total_value,
        eth_value=row.eth_value,
        matic_value=row.matic_value,
        token_count=row.token_count,
        created_at=as_utc(row.created_at),
        tokens=[
            SnapshotTokenOut(
                chain=x.chain,
                address=x.address,
                symbol=x.symbol,
                name=x.name,
                balance=x.balance,
                decimals=x.decimals,
                price=x.price,
                value=x.value,
                change_24h=x.change_24h,
            )
            for x in row.tokens
        ],
    )


class SnapshotStore:
    """
    Portfolio snapshots in the relational store. Snapshots are written once
    and never updated; every address is stored and matched lowercased.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], dt.datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.clock = clock

    async def create_snapshot(
        self, address: str, tokens: list[SnapshotTokenIn]
    ) -> SnapshotReceipt:
        row = PortfolioSnapshotRow(
            id=str(uuid.uuid4()),
            address=address.lower(),
            total_value=sum(x.value or 0 for x in tokens),
            eth_value=first_value_for_symbol(tokens, "ETH"),
            matic_value=first_value_for_symbol(tokens, "MATIC"),
            token_count=len(tokens),
            created_at=self.clock(),
            tokens=[token_row(i, x) for i, x in enumerate(tokens)],
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(row)

        log.info("snapshot %s stored for %s", row.id, row.address)
        return SnapshotReceipt(
            id=row.id,
            address=row.address,
            total_value=row.total_value,
            created_at=as_utc(row.created_at),
            token_count=row.token_count,
        )

    async def get_latest_snapshot(self, address: str) -> Optional[SnapshotDetail]:
        statement = (
            select(PortfolioSnapshotRow)
            .where(PortfolioSnapshotRow.address == address.lower())
            .order_by(PortfolioSnapshotRow.created_at.desc())
            .options(selectinload(PortfolioSnapshotRow.tokens))
            .limit(1)
        )
        async with self.session_factory() as session:
            row = (await session.execute(statement)).scalars().first()
            return to_detail(row) if row else None

    async def list_snapshots(
        self, address: str, limit: int = 1, offset: int = 0
    ) -> list[SnapshotSummary]:
        limit = max(1, min(MAX_LIST_LIMIT, limit))
        offset = max(0, offset)
        statement = (
            select(PortfolioSnapshotRow)
            .where(PortfolioSnapshotRow.address == address.lower())
            .order_by(PortfolioSnapshotRow.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(statement)).scalars().all()
            return [
                SnapshotSummary(
                    id=x.id,
                    address=x.address,
                    total_value=x.total_value,
                    created_at=as_utc(x.created_at),
                    token_count=x.token_count,
                )
                for x in rows
            ]

    async def get_snapshot_by_id(self, snapshot_id: str) -> Optional[SnapshotDetail]:
        statement = (
            select(PortfolioSnapshotRow)
            .where(PortfolioSnapshotRow.id == snapshot_id)
            .options(selectinload(PortfolioSnapshotRow.tokens))
        )
        async with self.session_factory() as session:
            row = (await session.execute(statement)).scalars().first()
            return to_detail(row) if row else None
