"""Multi-leg strategies: legs, premiums, risk bounds, and realized P&L attribution.

A Strategy groups trades which were opened together (a vertical spread is two option trades
placed as one order) so they can be reported as one position. Each Leg references exactly one
Trade and a Trade may belong to at most one Strategy.

Premium sign convention: money received is positive (credit), money paid is negative (debit).

Max profit/loss is only defined for vertical spreads where the payoff is bounded by the strike
width. Every other strategy type reports None for both.
"""

from __future__ import annotations

import dataclasses
import datetime
import uuid
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Final, Literal, assert_never

from loguru import logger

from tradeledger.errors import CyclicGroupError, StrategyError
from tradeledger.lots import EPSILON, ClosedTrade
from tradeledger.trade import Side, Trade, TradeId

# fmt: off
StrategyType: Final = Enum(
    "StrategyType",
    "VERTICAL_SPREAD_BULL_CALL VERTICAL_SPREAD_BEAR_CALL "
    "VERTICAL_SPREAD_BULL_PUT VERTICAL_SPREAD_BEAR_PUT "
    "IRON_CONDOR IRON_BUTTERFLY STRADDLE STRANGLE COVERED_CALL PROTECTIVE_PUT CUSTOM",
)
# fmt: on

LegType: Final = Enum(
    "LegType", "LONG_CALL SHORT_CALL LONG_PUT SHORT_PUT LONG_STOCK SHORT_STOCK"
)

LABELS: Final = {
    StrategyType.VERTICAL_SPREAD_BULL_CALL: "Bull Call Spread",
    StrategyType.VERTICAL_SPREAD_BEAR_CALL: "Bear Call Spread",
    StrategyType.VERTICAL_SPREAD_BULL_PUT: "Bull Put Spread",
    StrategyType.VERTICAL_SPREAD_BEAR_PUT: "Bear Put Spread",
    StrategyType.IRON_CONDOR: "Iron Condor",
    StrategyType.IRON_BUTTERFLY: "Iron Butterfly",
    StrategyType.STRADDLE: "Straddle",
    StrategyType.STRANGLE: "Strangle",
    StrategyType.COVERED_CALL: "Covered Call",
    StrategyType.PROTECTIVE_PUT: "Protective Put",
    StrategyType.CUSTOM: "Custom Strategy",
}

# ids are derived from leg trade ids so re-running detection names the same groups the same way
NAMESPACE: Final = uuid.UUID("1b1b6b7e-3f4c-4b8e-9a55-7a2f3c1d9e10")

Direction = Literal["bullish", "bearish", "neutral"]


def isVertical(strategyType: StrategyType) -> bool:
    return strategyType.name.startswith("VERTICAL_SPREAD_")


def direction(strategyType: StrategyType) -> Direction:
    match strategyType:
        case (
            StrategyType.VERTICAL_SPREAD_BULL_CALL
            | StrategyType.VERTICAL_SPREAD_BULL_PUT
            | StrategyType.COVERED_CALL
        ):
            return "bullish"
        case (
            StrategyType.VERTICAL_SPREAD_BEAR_CALL
            | StrategyType.VERTICAL_SPREAD_BEAR_PUT
            | StrategyType.PROTECTIVE_PUT
        ):
            return "bearish"
        case (
            StrategyType.IRON_CONDOR
            | StrategyType.IRON_BUTTERFLY
            | StrategyType.STRADDLE
            | StrategyType.STRANGLE
            | StrategyType.CUSTOM
        ):
            return "neutral"
        case _:
            assert_never(strategyType)


@dataclass(slots=True)
class Leg:
    tradeId: TradeId
    legNumber: int
    legType: LegType
    symbol: str
    strike: float | None
    expiration: datetime.date | None
    quantity: float
    entryPrice: float
    multiplier: float

    # populated by attribute() once the leg's whole quantity has closed
    exitPrice: float | None = None
    closedAt: datetime.datetime | None = None

    realizedPnl: float = 0.0

    @property
    def isLong(self) -> bool:
        return self.legType.name.startswith("LONG_")


@dataclass(slots=True)
class Strategy:
    id: str
    underlying: str
    accountId: str
    strategyType: StrategyType
    openedAt: datetime.datetime
    netPremium: float
    legs: list[Leg] = field(default_factory=list)

    closedAt: datetime.datetime | None = None
    expiration: datetime.date | None = None
    realizedPnl: float = 0.0
    maxProfit: float | None = None
    maxLoss: float | None = None
    autoDetected: bool = False
    confidence: float | None = None
    name: str | None = None

    @property
    def label(self) -> str:
        return self.name or LABELS[self.strategyType]

    @property
    def status(self) -> Literal["open", "closed"]:
        return "closed" if self.closedAt else "open"

    @property
    def direction(self) -> Direction:
        return direction(self.strategyType)

    @property
    def tradeIds(self) -> list[TradeId]:
        return [leg.tradeId for leg in self.legs]


def determine_leg_type(trade: Trade) -> LegType:
    """Classify a leg from its option type and trade side (never from price)."""
    isBuy = trade.side is Side.BUY
    option = trade.option

    if not option:
        return LegType.LONG_STOCK if isBuy else LegType.SHORT_STOCK

    if option.isCall:
        return LegType.LONG_CALL if isBuy else LegType.SHORT_CALL

    return LegType.LONG_PUT if isBuy else LegType.SHORT_PUT


def net_premium(trades: Iterable[Trade]) -> float:
    """Signed premium over `trades`: buys pay (negative), sells collect (positive)."""
    total = 0.0
    for t in trades:
        cost = t.price * abs(t.quantity) * t.multiplier
        total += -cost if t.side is Side.BUY else cost

    return total


def spread_width(legs: Sequence[Leg]) -> float | None:
    """Dollar width between the two strikes of a vertical (None if not computable)."""
    if len(legs) != 2:
        return None

    a, b = legs
    if a.strike is None or b.strike is None:
        return None

    qty = min(abs(a.quantity), abs(b.quantity))
    return (max(a.strike, b.strike) - min(a.strike, b.strike)) * qty * a.multiplier


def max_profit_loss(
    strategyType: StrategyType, legs: Sequence[Leg], netPremium: float
) -> tuple[float | None, float | None]:
    """Return (maxProfit, maxLoss) for `strategyType`.

    Debit spreads (bull call, bear put) risk the premium paid and can earn the width minus
    that premium. Credit spreads (bear call, bull put) are the mirror image.
    """
    match strategyType:
        case StrategyType.VERTICAL_SPREAD_BULL_CALL | StrategyType.VERTICAL_SPREAD_BEAR_PUT:
            if (width := spread_width(legs)) is None:
                return None, None

            debit = abs(netPremium)
            return width - debit, debit
        case StrategyType.VERTICAL_SPREAD_BEAR_CALL | StrategyType.VERTICAL_SPREAD_BULL_PUT:
            if (width := spread_width(legs)) is None:
                return None, None

            credit = abs(netPremium)
            return credit, width - credit
        case (
            StrategyType.IRON_CONDOR
            | StrategyType.IRON_BUTTERFLY
            | StrategyType.STRADDLE
            | StrategyType.STRANGLE
            | StrategyType.COVERED_CALL
            | StrategyType.PROTECTIVE_PUT
            | StrategyType.CUSTOM
        ):
            # unbounded or multi-width payoffs aren't computed
            return None, None
        case _:
            assert_never(strategyType)


def strategy_id(trades: Iterable[Trade]) -> str:
    return str(uuid.uuid5(NAMESPACE, "|".join(sorted(str(t.id) for t in trades))))


def build_strategy(
    trades: Sequence[Trade],
    strategyType: StrategyType,
    autoDetected: bool = False,
    confidence: float | None = None,
    name: str | None = None,
) -> Strategy:
    """Create a Strategy with legs, premium, and risk bounds from `trades`."""
    ordered = sorted(trades, key=lambda t: t.sortKey)

    legs = []
    for i, t in enumerate(ordered, start=1):
        option = t.option
        legs.append(
            Leg(
                tradeId=t.id,
                legNumber=i,
                legType=determine_leg_type(t),
                symbol=t.symbol,
                strike=option.strike if option else None,
                expiration=option.expiration if option else None,
                quantity=abs(t.quantity),
                entryPrice=t.price,
                multiplier=t.multiplier,
            )
        )

    premium = net_premium(ordered)
    maxProfit, maxLoss = max_profit_loss(strategyType, legs, premium)

    firstOption = next((t for t in ordered if t.isOption), ordered[0])
    expirations = [leg.expiration for leg in legs if leg.expiration]

    return Strategy(
        id=strategy_id(ordered),
        underlying=firstOption.underlying,
        accountId=ordered[0].accountId,
        strategyType=strategyType,
        openedAt=ordered[0].timestamp,
        netPremium=round(premium, 2),
        legs=legs,
        expiration=min(expirations, default=None),
        maxProfit=None if maxProfit is None else round(maxProfit, 2),
        maxLoss=None if maxLoss is None else round(maxLoss, 2),
        autoDetected=autoDetected,
        confidence=confidence,
        name=name,
    )


def create_manual_strategy(
    trades: Sequence[Trade],
    strategyType: StrategyType = StrategyType.CUSTOM,
    grouped: Iterable[TradeId] = (),
    name: str | None = None,
    userId: str | None = None,
) -> Strategy:
    """Group user-selected trades into a Strategy.

    Raises StrategyError if fewer than two trades are given, if trades span accounts, if any
    trade is already part of a strategy, or (when `userId` is given) if any trade isn't theirs.
    """
    if len(trades) < 2:
        raise StrategyError("At least 2 trades are required to create a strategy")

    ids = [t.id for t in trades]
    if len(set(ids)) != len(ids):
        raise StrategyError("The same trade was selected more than once")

    if userId is not None and (
        foreign := [t.id for t in trades if t.userId != userId]
    ):
        raise StrategyError(f"Trades not owned by {userId}: {foreign}")

    if already := set(ids) & set(grouped):
        raise StrategyError(f"Trades already belong to a strategy: {sorted(map(str, already))}")

    if len({t.accountId for t in trades}) > 1:
        raise StrategyError("All trades must be from the same account")

    return build_strategy(trades, strategyType, autoDetected=False, name=name)


def attribute(strategy: Strategy, closed: Iterable[ClosedTrade]) -> Strategy:
    """Return a copy of `strategy` with realized P&L from lot matching applied to its legs.

    A leg collects every ClosedTrade whose lot was opened by the leg's trade. Once the leg's
    whole quantity has closed it also gets a quantity weighted exit price and close time, and
    once every leg has closed the strategy is closed at the latest leg close.
    """
    byOpen: defaultdict[TradeId, list[ClosedTrade]] = defaultdict(list)
    for c in closed:
        byOpen[c.openTradeId].append(c)

    legs = []
    for leg in strategy.legs:
        closes = byOpen.get(leg.tradeId, [])
        qty = sum(c.quantity for c in closes)
        pnl = sum(c.pnl for c in closes)

        fullyClosed = closes and qty >= leg.quantity - EPSILON
        legs.append(
            dataclasses.replace(
                leg,
                realizedPnl=pnl,
                exitPrice=sum(c.exitPrice * c.quantity for c in closes) / qty
                if fullyClosed
                else None,
                closedAt=max(c.closedAt for c in closes) if fullyClosed else None,
            )
        )

    closedAt = None
    if legs and all(leg.closedAt for leg in legs):
        closedAt = max(leg.closedAt for leg in legs)  # type: ignore[type-var]

    return dataclasses.replace(
        strategy,
        legs=legs,
        realizedPnl=round(sum(leg.realizedPnl for leg in legs), 2),
        closedAt=closedAt,
    )


def validate_assignments(strategies: Iterable[Strategy]) -> None:
    """Raise CyclicGroupError if any trade is used by more than one leg."""
    owners: defaultdict[TradeId, list[str]] = defaultdict(list)
    for s in strategies:
        for leg in s.legs:
            owners[leg.tradeId].append(s.id)

    for tradeId, strategyIds in owners.items():
        if len(strategyIds) > 1:
            logger.error("Trade {} is used by multiple legs: {}", tradeId, strategyIds)
            raise CyclicGroupError(tradeId, strategyIds)
