"""Reduce residual lots into open positions.

One Position exists per (account, symbol) book holding a non-zero net quantity. Positions are
built only from lots left over after matching, so a position which fully closed no longer
exists here at all (its history lives in the ClosedTrade records instead).

Market prices come from whatever QuoteProvider the caller passes in. Quote failures never drop
a position: the unrealized fields stay None and quoteError explains why.
"""

from __future__ import annotations

import datetime
import math
from dataclasses import dataclass, field
from typing import Protocol

from cachetools import TTLCache, cachedmethod
from loguru import logger

from tradeledger.errors import LedgerError
from tradeledger.lots import EPSILON, Lot, LotBook, MatchResult
from tradeledger.positionkey import keyOf
from tradeledger.trade import Instrument


class QuoteProvider(Protocol):
    def quote(self, symbol: str) -> float:
        """Return the current mark for `symbol` (raise if none is available)."""


class CachedQuotes:
    """Remember quotes from `provider` for `ttl` seconds.

    Failed lookups are not cached so the next request tries the provider again."""

    def __init__(self, provider: QuoteProvider, ttl: float = 60, maxsize: int = 4096):
        self.provider = provider
        self.cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)

    @cachedmethod(lambda self: self.cache)
    def quote(self, symbol: str) -> float:
        return self.provider.quote(symbol)


@dataclass(slots=True)
class Position:
    accountId: str
    symbol: str
    instrument: Instrument

    # long positive, short negative, never zero
    net: float

    lots: list[Lot]

    # opening time of the oldest lot still open
    epoch: datetime.datetime

    key: str

    # short position without any buy history (see LotBook.phantom)
    phantom: bool = False

    marketPrice: float | None = None
    marketValue: float | None = None
    unrealizedPnl: float | None = None
    quoteError: str | None = None

    @property
    def isLong(self) -> bool:
        return self.net > 0

    @property
    def costBasis(self) -> float:
        """Signed cost of the open lots (shorts are negative since they were sold)."""
        sign = 1 if self.isLong else -1
        return sign * sum(lot.price * lot.remaining * lot.multiplier for lot in self.lots)

    @property
    def averagePrice(self) -> float:
        """Quantity weighted open price (always positive)."""
        qty = sum(lot.remaining for lot in self.lots)
        return sum(lot.price * lot.remaining for lot in self.lots) / qty

    def mark(self, price: float) -> None:
        """Set market fields from `price`."""
        sign = 1 if self.isLong else -1
        self.marketPrice = price
        self.marketValue = sign * sum(price * lot.remaining * lot.multiplier for lot in self.lots)
        self.unrealizedPnl = sign * sum(
            (price - lot.price) * lot.remaining * lot.multiplier for lot in self.lots
        )
        self.quoteError = None


def position_from_book(book: LotBook) -> Position | None:
    net = book.net
    if abs(net) <= EPSILON:
        return None

    epoch = book.epoch
    key = keyOf(book)
    if epoch is None or key is None:
        raise LedgerError(f"Open book {book.key} has no epoch or position key")

    return Position(
        accountId=book.accountId,
        symbol=book.symbol,
        instrument=book.instrument,
        net=net,
        lots=book.lots,
        epoch=epoch,
        key=key,
        phantom=book.phantom,
    )


def aggregate(
    result: MatchResult,
    quotes: QuoteProvider | None = None,
    includePhantom: bool = False,
) -> list[Position]:
    """Build open positions from matching output, optionally priced by `quotes`.

    Phantom shorts are left out unless `includePhantom` is set, in which case they are
    returned with `phantom=True` so callers can still tell them apart.
    """
    positions = []
    for book in result.books.values():
        if not (position := position_from_book(book)):
            continue

        if position.phantom and not includePhantom:
            logger.warning(
                "[{} {}] Skipping phantom short of {} (no buys recorded)",
                position.accountId,
                position.symbol,
                position.net,
            )
            continue

        positions.append(position)

    if quotes:
        for position in positions:
            enrich(position, quotes)

    return positions


def enrich(position: Position, quotes: QuoteProvider) -> None:
    try:
        price = quotes.quote(position.symbol)
    except Exception as e:
        logger.warning("[{}] Quote lookup failed: {}", position.symbol, e)
        position.quoteError = f"{type(e).__name__}: {e}"
        return

    if price is None or not math.isfinite(price):
        position.quoteError = f"No usable quote ({price})"
        return

    position.mark(price)


@dataclass(slots=True)
class PortfolioSummary:
    positions: int = 0
    stockPositions: int = 0
    optionPositions: int = 0
    costBasis: float = 0.0
    marketValue: float = 0.0
    unrealizedPnl: float = 0.0

    # positions without a usable quote (not included in marketValue/unrealizedPnl)
    unpriced: list[str] = field(default_factory=list)


def summarize(positions: list[Position]) -> PortfolioSummary:
    summary = PortfolioSummary()
    for p in positions:
        summary.positions += 1
        if p.instrument is Instrument.OPTION:
            summary.optionPositions += 1
        else:
            summary.stockPositions += 1

        summary.costBasis += p.costBasis

        if p.marketValue is None or p.unrealizedPnl is None:
            summary.unpriced.append(p.symbol)
            continue

        summary.marketValue += p.marketValue
        summary.unrealizedPnl += p.unrealizedPnl

    return summary
