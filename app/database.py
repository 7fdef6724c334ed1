import datetime as dt
from typing import Optional

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.ENV import DATABASE_URL


class Base(DeclarativeBase):
    pass


class PortfolioSnapshotRow(Base):
    __tablename__ = "portfolio_snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    address: Mapped[str] = mapped_column(String(42), index=True)
    total_value: Mapped[float] = mapped_column(Float, default=0)
    eth_value: Mapped[float] = mapped_column(Float, default=0)
    matic_value: Mapped[float] = mapped_column(Float, default=0)
    token_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), index=True
    )

    tokens: Mapped[list["SnapshotTokenRow"]] = relationship(
        back_populates="snapshot",
        order_by="SnapshotTokenRow.position",
        cascade="all, delete-orphan",
    )


class SnapshotTokenRow(Base):
    __tablename__ = "snapshot_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[str] = mapped_column(
        ForeignKey("portfolio_snapshots.id", ondelete="CASCADE"), index=True
    )
    position: Mapped[int] = mapped_column(Integer)
    chain: Mapped[str] = mapped_column(String(32))
    address: Mapped[str] = mapped_column(String(64), default="")
    symbol: Mapped[str] = mapped_column(String(64), default="")
    name: Mapped[str] = mapped_column(String(256), default="")
    # raw integer amounts exceed 64 bits, kept as text
    balance: Mapped[str] = mapped_column(String(96), default="0")
    decimals: Mapped[int] = mapped_column(Integer, default=18)
    price: Mapped[float] = mapped_column(Float, default=0)
    value: Mapped[float] = mapped_column(Float, default=0)
    change_24h: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    snapshot: Mapped[PortfolioSnapshotRow] = relationship(back_populates="tokens")


def make_engine(url: str = DATABASE_URL, **kwargs) -> AsyncEngine:
    return create_async_engine(url, **kwargs)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
