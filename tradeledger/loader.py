"""Load the ordered trade set for a scope.

Lot matching is order dependent, so everything downstream relies on the loader returning trades
in exactly one order: (timestamp, ingestedAt, id). Trades which can't be matched at all
(dividends, invalid or unreadable records) never leave the loader.

Retrieval is all or nothing: if the repository fails part way through, the whole scope fails
with LoaderError instead of handing a partial history to the matcher.
"""

from __future__ import annotations

import abc
import datetime
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from loguru import logger

from tradeledger.config import LedgerConfig
from tradeledger.errors import LoaderError
from tradeledger.strategy import Strategy
from tradeledger.trade import (
    POSITION_AFFECTING,
    Trade,
    TradeId,
    asUTC,
    ordered,
    validate_trade,
)

if TYPE_CHECKING:
    from tradeledger.pipeline import LedgerResult


@dataclass(slots=True, frozen=True)
class Scope:
    """Which trades to load: one user, optionally narrowed by account and date range.

    Dates are half open: start <= timestamp < end.
    """

    userId: str
    accountIds: frozenset[str] | None = None
    start: datetime.datetime | None = None
    end: datetime.datetime | None = None

    def __post_init__(self):
        if self.accountIds is not None and not isinstance(self.accountIds, frozenset):
            object.__setattr__(self, "accountIds", frozenset(self.accountIds))

        for bound in ("start", "end"):
            if when := getattr(self, bound):
                object.__setattr__(self, bound, asUTC(when))

    def contains(self, trade: Trade) -> bool:
        if trade.userId != self.userId:
            return False

        if self.accountIds is not None and trade.accountId not in self.accountIds:
            return False

        if self.start and trade.timestamp < self.start:
            return False

        if self.end and trade.timestamp >= self.end:
            return False

        return True


@dataclass(slots=True, frozen=True)
class Rejection:
    tradeId: TradeId
    reason: str


class TradeRepository(abc.ABC):
    """Where trades come from and where derived results go."""

    @abc.abstractmethod
    def fetchTrades(self, scope: Scope) -> Iterable[Trade | Rejection]:
        """Return every stored trade inside `scope` (in any order).

        A stored record which can no longer be read as a Trade is returned as a Rejection so
        one bad row doesn't take the rest of the scope down with it.
        """

    @abc.abstractmethod
    def groupedTradeIds(self, userId: str) -> set[TradeId]:
        """Return ids of trades already used by a strategy leg."""

    @abc.abstractmethod
    def fetchStrategies(self, userId: str) -> list[Strategy]:
        ...

    @abc.abstractmethod
    def saveStrategies(self, userId: str, strategies: Sequence[Strategy]) -> None:
        ...

    @abc.abstractmethod
    def saveResults(self, scope: Scope, result: LedgerResult) -> None:
        """Replace stored results for `scope` with `result`. Must be all or nothing."""


@dataclass
class MemoryRepository(TradeRepository):
    trades: list[Trade] = field(default_factory=list)
    strategies: dict[str, dict[str, Strategy]] = field(default_factory=dict)
    results: dict[Scope, LedgerResult] = field(default_factory=dict)

    def add(self, *trades: Trade) -> None:
        self.trades.extend(trades)

    def fetchTrades(self, scope: Scope) -> list[Trade]:
        return [t for t in self.trades if scope.contains(t)]

    def groupedTradeIds(self, userId: str) -> set[TradeId]:
        return {
            leg.tradeId
            for s in self.strategies.get(userId, {}).values()
            for leg in s.legs
        }

    def fetchStrategies(self, userId: str) -> list[Strategy]:
        return list(self.strategies.get(userId, {}).values())

    def saveStrategies(self, userId: str, strategies: Sequence[Strategy]) -> None:
        updated = dict(self.strategies.get(userId, {}))
        updated.update({s.id: s for s in strategies})

        # swap in one assignment so readers never see a half written set
        self.strategies[userId] = updated

    def saveResults(self, scope: Scope, result: LedgerResult) -> None:
        self.results[scope] = result


@dataclass(slots=True)
class Loaded:
    trades: list[Trade] = field(default_factory=list)
    rejections: list[Rejection] = field(default_factory=list)
    duplicates: int = 0


@dataclass
class LedgerLoader:
    repository: TradeRepository
    config: LedgerConfig = field(default_factory=LedgerConfig)

    def load(self, scope: Scope, now: datetime.datetime | None = None) -> list[Trade]:
        return self.fetch(scope, now).trades

    def fetch(self, scope: Scope, now: datetime.datetime | None = None) -> Loaded:
        """Fetch, dedupe, filter, validate, and order trades for `scope`."""
        try:
            fetched = list(self.repository.fetchTrades(scope))
        except Exception as e:
            logger.error("[{}] Trade fetch failed: {}", scope.userId, e)
            raise LoaderError(scope, e) from e

        loaded = Loaded()
        seen: set[TradeId] = set()
        for trade in fetched:
            if isinstance(trade, Rejection):
                loaded.rejections.append(trade)
                continue

            if trade.id in seen:
                loaded.duplicates += 1
                logger.warning("[{}] Dropping duplicate trade {}", scope.userId, trade.id)
                continue

            seen.add(trade.id)

            if trade.action not in POSITION_AFFECTING:
                continue

            if problems := validate_trade(trade, self.config, now):
                for reason in problems:
                    logger.warning(
                        "[{}] Rejecting trade {} ({} {}): {}",
                        scope.userId,
                        trade.id,
                        trade.action.name,
                        trade.symbol,
                        reason,
                    )
                    loaded.rejections.append(Rejection(trade.id, reason))

                continue

            loaded.trades.append(trade)

        loaded.trades = ordered(loaded.trades)

        logger.info(
            "[{}] Loaded {} trades ({} rejected, {} duplicates)",
            scope.userId,
            len(loaded.trades),
            len({r.tradeId for r in loaded.rejections}),
            loaded.duplicates,
        )

        return loaded
