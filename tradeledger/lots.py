"""FIFO lot matching.

Every (account, symbol) pair is an independent state machine holding two queues of open lots:

    - longLots: quantity we bought and still hold (oldest first)
    - shortLots: quantity we sold without owning and still owe (oldest first)

A BUY-side trade first buys back shorts (oldest first) and only opens a new long lot with whatever
quantity is left after every short is covered. SELL-side trades do the reverse. So a book is
never long and short at the same time.

Each lot consumption produces exactly one ClosedTrade, so the sum of ClosedTrade.pnl is the total
realized P&L for whatever trades were matched. P&L stays unrounded here; rounding belongs to
whoever presents the numbers.

Nothing here is cached between runs. match_trades() builds fresh books from the trades it is
given every time it is called, so re-running after late or corrected trades always agrees with
a from-scratch run.
"""

from __future__ import annotations

import datetime
import math
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Final

from loguru import logger

from tradeledger import occ
from tradeledger.errors import NumericOverflowError
from tradeledger.trade import Action, Instrument, Side, Trade, TradeId, asUTC

# anything smaller than this is rounding noise, not a real quantity
EPSILON: Final = 0.000001

BookKey = tuple[str, str]


@dataclass(slots=True)
class Lot:
    """Unmatched remainder of one opening trade."""

    tradeId: TradeId
    price: float
    remaining: float
    multiplier: float
    openedAt: datetime.datetime
    instrument: Instrument

    # key the opening trade was stored with, if any
    positionKey: str | None = None


@dataclass(slots=True, frozen=True)
class ClosedTrade:
    accountId: str
    symbol: str
    instrument: Instrument
    pnl: float
    quantity: float
    entryPrice: float
    exitPrice: float
    openedAt: datetime.datetime
    closedAt: datetime.datetime
    multiplier: float
    openTradeId: TradeId

    # None when the lot closed by expiring worthless without any recorded trade
    closeTradeId: TradeId | None

    # True if the lot closed here was a short lot (bought back)
    isShort: bool = False

    @property
    def costBasis(self) -> float:
        return self.entryPrice * self.quantity * self.multiplier


@dataclass(slots=True, frozen=True)
class MatchFlag:
    """A closing trade found less opposite inventory than it needed.

    The leftover quantity opened a new lot instead, so the book keeps going, but the position
    built from this book is probably wrong until the missing history is loaded.
    """

    accountId: str
    symbol: str
    tradeId: TradeId
    action: str
    unmatched: float


@dataclass(slots=True)
class LotBook:
    accountId: str
    symbol: str
    instrument: Instrument = Instrument.STOCK

    longLots: deque[Lot] = field(default_factory=deque)
    shortLots: deque[Lot] = field(default_factory=deque)

    # how many BUY-side and SELL-side trades this book has seen
    buys: int = 0
    sells: int = 0

    # timestamp of the most recent trade applied to this book
    lastActivity: datetime.datetime | None = None

    # when the current continuously-open position started and the key its opening trade carried.
    # Both reset once the book goes flat.
    openedAt: datetime.datetime | None = None
    openingKey: str | None = None

    @property
    def key(self) -> BookKey:
        return (self.accountId, self.symbol)

    @property
    def longQty(self) -> float:
        return sum(lot.remaining for lot in self.longLots)

    @property
    def shortQty(self) -> float:
        return sum(lot.remaining for lot in self.shortLots)

    @property
    def net(self) -> float:
        return self.longQty - self.shortQty

    @property
    def lots(self) -> list[Lot]:
        return [*self.longLots, *self.shortLots]

    @property
    def epoch(self) -> datetime.datetime | None:
        """Opening time of the oldest lot still open (None if nothing is open)."""
        return min((lot.openedAt for lot in self.lots), default=None)

    @property
    def phantom(self) -> bool:
        """Net short without a single BUY-side trade ever recorded for this book."""
        return self.sells > 0 and self.buys == 0 and self.net < 0

    def apply(self, trade: Trade) -> tuple[list[ClosedTrade], MatchFlag | None]:
        """Apply one trade to this book, returning the closes it generated."""
        quantity = abs(trade.quantity)
        if quantity < EPSILON:
            return [], None

        self.lastActivity = trade.timestamp

        match trade.side:
            case Side.ADJUST:
                self.split(trade.quantity)
                return [], None
            case Side.NONE:
                return [], None
            case Side.BUY:
                self.buys += 1
                closing, opening, isShort = self.shortLots, self.longLots, True
            case Side.SELL:
                self.sells += 1
                closing, opening, isShort = self.longLots, self.shortLots, False

        # expired contracts are worth nothing whatever mark the broker left on the row
        price = 0.0 if trade.action is Action.OPTIONEXPIRATION else trade.price

        feePerUnit = abs(trade.fees) / quantity
        remaining = quantity
        closed: list[ClosedTrade] = []

        while remaining > EPSILON and closing:
            lot = closing[0]
            matched = min(remaining, lot.remaining)

            if isShort:
                pnl = (lot.price - price) * matched * lot.multiplier
            else:
                pnl = (price - lot.price) * matched * lot.multiplier

            pnl -= feePerUnit * matched

            closed.append(
                self.closeout(lot, matched, price, trade.timestamp, pnl, trade.id, isShort)
            )

            lot.remaining -= matched
            remaining -= matched

            if lot.remaining < EPSILON:
                closing.popleft()

        if not closing and not opening:
            self.openedAt = None
            self.openingKey = None

        flag = None
        if remaining > EPSILON:
            if trade.isClosing:
                flag = MatchFlag(
                    self.accountId, self.symbol, trade.id, trade.action.name, remaining
                )
                logger.warning(
                    "[{} {}] {} {} had {} left over with nothing to close, opening it instead",
                    self.accountId,
                    self.symbol,
                    trade.action.name,
                    trade.id,
                    remaining,
                )

            opening.append(
                Lot(
                    tradeId=trade.id,
                    price=price,
                    remaining=remaining,
                    multiplier=trade.multiplier,
                    openedAt=trade.timestamp,
                    instrument=trade.instrument,
                    positionKey=trade.positionKey,
                )
            )

            if self.openedAt is None:
                self.openedAt = trade.timestamp
                self.openingKey = trade.positionKey

        return closed, flag

    def split(self, delta: float) -> None:
        """Scale open lots so the held quantity grows (or shrinks) by `delta` shares.

        Cost basis is preserved: quantity scales by the split ratio and price by its inverse.
        """
        for lots in (self.longLots, self.shortLots):
            held = sum(lot.remaining for lot in lots)
            if held <= 0:
                continue

            ratio = (held + delta) / held
            if ratio <= 0:
                logger.warning(
                    "[{} {}] Ignoring split of {} against {} held (ratio {})",
                    self.accountId,
                    self.symbol,
                    delta,
                    held,
                    ratio,
                )
                continue

            for lot in lots:
                lot.remaining *= ratio
                lot.price /= ratio

    def expire(self, asOf: datetime.datetime) -> list[ClosedTrade]:
        """Close every lot of an option which expired before `asOf` at a price of zero."""
        parsed = occ.parse(self.symbol)
        if not parsed or parsed.expiresAt >= asOf:
            return []

        expiredAt = parsed.expiresAt
        closed = []
        for lot in self.longLots:
            closed.append(
                self.closeout(
                    lot, lot.remaining, 0.0, expiredAt, -lot.price * lot.remaining * lot.multiplier
                )
            )

        for lot in self.shortLots:
            closed.append(
                self.closeout(
                    lot,
                    lot.remaining,
                    0.0,
                    expiredAt,
                    lot.price * lot.remaining * lot.multiplier,
                    isShort=True,
                )
            )

        if closed:
            logger.info(
                "[{} {}] Expired {} open lots on {}",
                self.accountId,
                self.symbol,
                len(closed),
                parsed.expiration,
            )

        self.longLots.clear()
        self.shortLots.clear()
        self.openedAt = None
        self.openingKey = None
        return closed

    def closeout(
        self,
        lot: Lot,
        quantity: float,
        exitPrice: float,
        closedAt: datetime.datetime,
        pnl: float,
        closeTradeId: TradeId | None = None,
        isShort: bool = False,
    ) -> ClosedTrade:
        if not math.isfinite(pnl):
            raise NumericOverflowError(f"realized P&L for {self.accountId} {self.symbol}", pnl)

        return ClosedTrade(
            accountId=self.accountId,
            symbol=self.symbol,
            instrument=lot.instrument,
            pnl=pnl,
            quantity=quantity,
            entryPrice=lot.price,
            exitPrice=exitPrice,
            openedAt=lot.openedAt,
            closedAt=closedAt,
            multiplier=lot.multiplier,
            openTradeId=lot.tradeId,
            closeTradeId=closeTradeId,
            isShort=isShort,
        )


@dataclass(slots=True)
class MatchResult:
    closed: list[ClosedTrade] = field(default_factory=list)
    books: dict[BookKey, LotBook] = field(default_factory=dict)
    flags: list[MatchFlag] = field(default_factory=list)

    def realized(self) -> float:
        return sum(c.pnl for c in self.closed)

    def closed_between(
        self,
        start: datetime.datetime | None = None,
        end: datetime.datetime | None = None,
    ) -> list[ClosedTrade]:
        """Closed trades with start <= closedAt < end (either bound may be omitted)."""
        return [
            c
            for c in self.closed
            if (start is None or c.closedAt >= start) and (end is None or c.closedAt < end)
        ]

    def open_books(self) -> list[LotBook]:
        return [b for b in self.books.values() if abs(b.net) > EPSILON]


def match_trades(
    trades: Iterable[Trade], asOf: datetime.datetime | None = None
) -> MatchResult:
    """Run FIFO matching over `trades`, returning closes, residual books, and flags.

    Trades are partitioned by (account, symbol); each partition is matched in trade order
    (timestamp, ingestion time, id) and the partitions are merged in key order so the output
    only depends on the trades given, never on input order.

    If `asOf` is given, option lots whose contract expired before `asOf` are closed at zero.
    """
    if asOf:
        asOf = asUTC(asOf)

    partitions: dict[BookKey, list[Trade]] = {}
    for trade in trades:
        partitions.setdefault(trade.key, []).append(trade)

    result = MatchResult()
    for key in sorted(partitions):
        ordered = sorted(partitions[key], key=lambda t: t.sortKey)
        book = LotBook(*key, instrument=ordered[0].instrument)

        for trade in ordered:
            closed, flag = book.apply(trade)
            result.closed.extend(closed)
            if flag:
                result.flags.append(flag)

        if asOf and book.instrument is Instrument.OPTION:
            result.closed.extend(book.expire(asOf))

        result.books[key] = book

    return result
