"""Relational storage for trades, strategies, and derived results (SQLAlchemy 2.x ORM).

Tables:

    - trades: immutable executions written by the ingestion side
    - trade_groups / trade_group_legs: strategies and their legs (a trade id may appear in
      at most one leg, enforced by a unique constraint)
    - closed_trades / positions: derived results, replaced wholesale per scope

Derived results are written in a single transaction per scope. Any database error rolls the
whole write back and surfaces as RepositoryError.

Trade ids are stored as strings, so trades read back from here always have string ids.
"""

from __future__ import annotations

import datetime
from collections.abc import Sequence
from typing import TYPE_CHECKING

from loguru import logger
from sqlalchemy import (
    DateTime,
    Engine,
    ForeignKey,
    Index,
    String,
    create_engine,
    delete,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    relationship,
    selectinload,
    sessionmaker,
)
from sqlalchemy.pool import StaticPool

from tradeledger.errors import RepositoryError
from tradeledger.loader import Rejection, Scope, TradeRepository
from tradeledger.strategy import Leg, LegType, Strategy, StrategyType
from tradeledger.trade import Instrument, Trade, TradeId, asUTC

if TYPE_CHECKING:
    from tradeledger.pipeline import LedgerResult


class Base(DeclarativeBase):
    type_annotation_map = {
        datetime.datetime: DateTime(timezone=True),
    }


class TradeRow(Base):
    __tablename__ = "trades"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    userId: Mapped[str | None] = mapped_column(String(64), index=True)
    accountId: Mapped[str] = mapped_column(String(64))
    symbol: Mapped[str] = mapped_column(String(32))
    instrument: Mapped[str] = mapped_column(String(16))
    action: Mapped[str] = mapped_column(String(32))
    quantity: Mapped[float]
    price: Mapped[float]
    multiplier: Mapped[float]
    fees: Mapped[float] = mapped_column(default=0.0)
    timestamp: Mapped[datetime.datetime]
    ingestedAt: Mapped[datetime.datetime | None]
    positionKey: Mapped[str | None] = mapped_column(String(160))

    __table_args__ = (Index("ix_trades_account_symbol", "accountId", "symbol"),)

    @classmethod
    def fromTrade(cls, t: Trade) -> TradeRow:
        return cls(
            id=str(t.id),
            userId=t.userId,
            accountId=t.accountId,
            symbol=t.symbol,
            instrument=t.instrument.name,
            action=t.action.name,
            quantity=t.quantity,
            price=t.price,
            multiplier=t.multiplier,
            fees=t.fees,
            timestamp=t.timestamp,
            ingestedAt=t.ingestedAt,
            positionKey=t.positionKey,
        )

    def toTrade(self) -> Trade:
        # sqlite drops timezones; Trade puts UTC back on naive timestamps
        return Trade(
            id=self.id,
            accountId=self.accountId,
            symbol=self.symbol,
            action=self.action,
            quantity=self.quantity,
            price=self.price,
            timestamp=self.timestamp,
            instrument=Instrument[self.instrument],
            multiplier=self.multiplier,
            fees=self.fees,
            ingestedAt=self.ingestedAt,
            userId=self.userId,
            positionKey=self.positionKey,
        )


class StrategyRow(Base):
    __tablename__ = "trade_groups"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    userId: Mapped[str] = mapped_column(String(64), index=True)
    accountId: Mapped[str] = mapped_column(String(64))
    underlying: Mapped[str] = mapped_column(String(32))
    strategyType: Mapped[str] = mapped_column(String(32))
    openedAt: Mapped[datetime.datetime]
    closedAt: Mapped[datetime.datetime | None]
    expiration: Mapped[datetime.date | None]
    netPremium: Mapped[float]
    realizedPnl: Mapped[float] = mapped_column(default=0.0)
    maxProfit: Mapped[float | None]
    maxLoss: Mapped[float | None]
    autoDetected: Mapped[bool] = mapped_column(default=False)
    confidence: Mapped[float | None]
    name: Mapped[str | None] = mapped_column(String(128))

    legs: Mapped[list[LegRow]] = relationship(
        back_populates="strategy",
        cascade="all, delete-orphan",
        order_by="LegRow.legNumber",
    )

    @classmethod
    def fromStrategy(cls, userId: str, s: Strategy) -> StrategyRow:
        return cls(
            id=s.id,
            userId=userId,
            accountId=s.accountId,
            underlying=s.underlying,
            strategyType=s.strategyType.name,
            openedAt=s.openedAt,
            closedAt=s.closedAt,
            expiration=s.expiration,
            netPremium=s.netPremium,
            realizedPnl=s.realizedPnl,
            maxProfit=s.maxProfit,
            maxLoss=s.maxLoss,
            autoDetected=s.autoDetected,
            confidence=s.confidence,
            name=s.name,
            legs=[
                LegRow(
                    tradeId=str(leg.tradeId),
                    legNumber=leg.legNumber,
                    legType=leg.legType.name,
                    symbol=leg.symbol,
                    strike=leg.strike,
                    expiration=leg.expiration,
                    quantity=leg.quantity,
                    entryPrice=leg.entryPrice,
                    multiplier=leg.multiplier,
                    exitPrice=leg.exitPrice,
                    closedAt=leg.closedAt,
                    realizedPnl=leg.realizedPnl,
                )
                for leg in s.legs
            ],
        )

    def toStrategy(self) -> Strategy:
        return Strategy(
            id=self.id,
            underlying=self.underlying,
            accountId=self.accountId,
            strategyType=StrategyType[self.strategyType],
            openedAt=asUTC(self.openedAt),
            netPremium=self.netPremium,
            legs=[
                Leg(
                    tradeId=leg.tradeId,
                    legNumber=leg.legNumber,
                    legType=LegType[leg.legType],
                    symbol=leg.symbol,
                    strike=leg.strike,
                    expiration=leg.expiration,
                    quantity=leg.quantity,
                    entryPrice=leg.entryPrice,
                    multiplier=leg.multiplier,
                    exitPrice=leg.exitPrice,
                    closedAt=asUTC(leg.closedAt) if leg.closedAt else None,
                    realizedPnl=leg.realizedPnl,
                )
                for leg in self.legs
            ],
            closedAt=asUTC(self.closedAt) if self.closedAt else None,
            expiration=self.expiration,
            realizedPnl=self.realizedPnl,
            maxProfit=self.maxProfit,
            maxLoss=self.maxLoss,
            autoDetected=self.autoDetected,
            confidence=self.confidence,
            name=self.name,
        )


class LegRow(Base):
    __tablename__ = "trade_group_legs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    strategyId: Mapped[str] = mapped_column(ForeignKey("trade_groups.id"), index=True)

    # a trade belongs to at most one strategy
    tradeId: Mapped[str] = mapped_column(String(64), unique=True)

    legNumber: Mapped[int]
    legType: Mapped[str] = mapped_column(String(16))
    symbol: Mapped[str] = mapped_column(String(32))
    strike: Mapped[float | None]
    expiration: Mapped[datetime.date | None]
    quantity: Mapped[float]
    entryPrice: Mapped[float]
    multiplier: Mapped[float]
    exitPrice: Mapped[float | None]
    closedAt: Mapped[datetime.datetime | None]
    realizedPnl: Mapped[float] = mapped_column(default=0.0)

    strategy: Mapped[StrategyRow] = relationship(back_populates="legs")


class ClosedTradeRow(Base):
    __tablename__ = "closed_trades"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    scope: Mapped[str] = mapped_column(String(255), index=True)
    accountId: Mapped[str] = mapped_column(String(64))
    symbol: Mapped[str] = mapped_column(String(32))
    instrument: Mapped[str] = mapped_column(String(16))
    pnl: Mapped[float]
    quantity: Mapped[float]
    entryPrice: Mapped[float]
    exitPrice: Mapped[float]
    openedAt: Mapped[datetime.datetime]
    closedAt: Mapped[datetime.datetime] = mapped_column(index=True)
    multiplier: Mapped[float]
    openTradeId: Mapped[str] = mapped_column(String(64))
    closeTradeId: Mapped[str | None] = mapped_column(String(64))
    isShort: Mapped[bool]


class PositionRow(Base):
    __tablename__ = "positions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    scope: Mapped[str] = mapped_column(String(255), index=True)
    key: Mapped[str] = mapped_column(String(160))
    accountId: Mapped[str] = mapped_column(String(64))
    symbol: Mapped[str] = mapped_column(String(32))
    instrument: Mapped[str] = mapped_column(String(16))
    net: Mapped[float]
    epoch: Mapped[datetime.datetime]
    phantom: Mapped[bool] = mapped_column(default=False)
    marketPrice: Mapped[float | None]
    marketValue: Mapped[float | None]
    unrealizedPnl: Mapped[float | None]
    quoteError: Mapped[str | None] = mapped_column(String(255))


def scopeName(scope: Scope) -> str:
    """Stable text name for `scope` used to tag derived rows."""
    accounts = ",".join(sorted(scope.accountIds)) if scope.accountIds is not None else "*"
    start = scope.start.isoformat() if scope.start else ""
    end = scope.end.isoformat() if scope.end else ""
    return f"{scope.userId}|{accounts}|{start}|{end}"


class SqlRepository(TradeRepository):
    def __init__(self, url: str = "sqlite://", engine: Engine | None = None):
        if engine is None:
            options = {}
            if url in {"sqlite://", "sqlite:///:memory:"}:
                # in-memory sqlite lives inside one connection, so every thread has to share it
                options = dict(poolclass=StaticPool, connect_args={"check_same_thread": False})

            engine = create_engine(url, **options)

        self.engine = engine
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(self.engine, expire_on_commit=False)

    def add(self, *trades: Trade) -> None:
        """Store trades (the ingestion side's job, used here for seeding and tests)."""
        try:
            with self.Session.begin() as session:
                session.add_all(TradeRow.fromTrade(t) for t in trades)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed storing {len(trades)} trades: {e}") from e

    def fetchTrades(self, scope: Scope) -> list[Trade | Rejection]:
        """Rows which no longer parse as trades come back as Rejections instead of failing the scope."""
        query = select(TradeRow).where(TradeRow.userId == scope.userId)

        if scope.accountIds is not None:
            query = query.where(TradeRow.accountId.in_(scope.accountIds))

        if scope.start:
            query = query.where(TradeRow.timestamp >= scope.start)

        if scope.end:
            query = query.where(TradeRow.timestamp < scope.end)

        with self.Session() as session:
            fetched: list[Trade | Rejection] = []
            for row in session.scalars(query):
                try:
                    fetched.append(row.toTrade())
                except (ValueError, KeyError) as e:
                    logger.warning("[{}] Unreadable trade row {}: {!r}", scope.userId, row.id, e)
                    fetched.append(Rejection(row.id, f"Unreadable trade: {e!r}"))

            return fetched

    def groupedTradeIds(self, userId: str) -> set[TradeId]:
        query = (
            select(LegRow.tradeId)
            .join(StrategyRow)
            .where(StrategyRow.userId == userId)
        )

        with self.Session() as session:
            return set(session.scalars(query))

    def fetchStrategies(self, userId: str) -> list[Strategy]:
        query = (
            select(StrategyRow)
            .where(StrategyRow.userId == userId)
            .options(selectinload(StrategyRow.legs))
            .order_by(StrategyRow.openedAt, StrategyRow.id)
        )

        with self.Session() as session:
            return [row.toStrategy() for row in session.scalars(query)]

    def saveStrategies(self, userId: str, strategies: Sequence[Strategy]) -> None:
        try:
            with self.Session.begin() as session:
                self.replaceStrategies(session, userId, strategies)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed saving strategies for {userId}: {e}") from e

    def replaceStrategies(
        self, session: Session, userId: str, strategies: Sequence[Strategy]
    ) -> None:
        ids = [s.id for s in strategies]
        session.execute(delete(LegRow).where(LegRow.strategyId.in_(ids)))
        session.execute(delete(StrategyRow).where(StrategyRow.id.in_(ids)))
        session.add_all(StrategyRow.fromStrategy(userId, s) for s in strategies)

    def saveResults(self, scope: Scope, result: LedgerResult) -> None:
        name = scopeName(scope)

        try:
            with self.Session.begin() as session:
                session.execute(delete(ClosedTradeRow).where(ClosedTradeRow.scope == name))
                session.execute(delete(PositionRow).where(PositionRow.scope == name))

                session.add_all(
                    ClosedTradeRow(
                        scope=name,
                        accountId=c.accountId,
                        symbol=c.symbol,
                        instrument=c.instrument.name,
                        pnl=c.pnl,
                        quantity=c.quantity,
                        entryPrice=c.entryPrice,
                        exitPrice=c.exitPrice,
                        openedAt=c.openedAt,
                        closedAt=c.closedAt,
                        multiplier=c.multiplier,
                        openTradeId=str(c.openTradeId),
                        closeTradeId=None if c.closeTradeId is None else str(c.closeTradeId),
                        isShort=c.isShort,
                    )
                    for c in result.closed
                )

                session.add_all(
                    PositionRow(
                        scope=name,
                        key=p.key,
                        accountId=p.accountId,
                        symbol=p.symbol,
                        instrument=p.instrument.name,
                        net=p.net,
                        epoch=p.epoch,
                        phantom=p.phantom,
                        marketPrice=p.marketPrice,
                        marketValue=p.marketValue,
                        unrealizedPnl=p.unrealizedPnl,
                        quoteError=p.quoteError,
                    )
                    for p in result.positions
                )

                self.replaceStrategies(session, scope.userId, result.strategies)
        except SQLAlchemyError as e:
            logger.error("[{}] Rolled back results for {}: {}", scope.userId, name, e)
            raise RepositoryError(f"Failed saving results for {name}: {e}") from e

        logger.info(
            "[{}] Saved {} closed trades and {} positions",
            scope.userId,
            len(result.closed),
            len(result.positions),
        )

    def closedTrades(self, scope: Scope) -> list[ClosedTradeRow]:
        with self.Session() as session:
            return list(
                session.scalars(
                    select(ClosedTradeRow)
                    .where(ClosedTradeRow.scope == scopeName(scope))
                    .order_by(ClosedTradeRow.id)
                )
            )

    def positions(self, scope: Scope) -> list[PositionRow]:
        with self.Session() as session:
            return list(
                session.scalars(
                    select(PositionRow)
                    .where(PositionRow.scope == scopeName(scope))
                    .order_by(PositionRow.id)
                )
            )
