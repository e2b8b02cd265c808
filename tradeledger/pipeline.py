"""Recompute everything derived for a scope.

A run is: load -> match -> positions -> strategies (existing + detected, then attributed).
Nothing is incremental. Every run rebuilds all derived data from the stored trades, so running
the same scope twice against unchanged trades produces byte-identical LedgerResult.dumps().

Concurrent recompute() calls for the same scope share one in-flight run instead of racing each
other, and results are only written (all at once) after the whole run succeeds.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime
from dataclasses import dataclass, field
from enum import Enum

import arrow
import orjson
from loguru import logger

from tradeledger.config import LedgerConfig
from tradeledger.detector import StrategyDetector
from tradeledger.errors import LoaderError, ScopeFatalError
from tradeledger.loader import LedgerLoader, Rejection, Scope, TradeRepository
from tradeledger.lots import ClosedTrade, MatchFlag, match_trades
from tradeledger.positionkey import assign_position_keys
from tradeledger.positions import CachedQuotes, Position, QuoteProvider, aggregate
from tradeledger.strategy import Strategy, attribute, validate_assignments
from tradeledger.trade import TradeId


def canonical(obj):
    """Convert `obj` into plain data with stable names for enums and string keys for dicts."""
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: canonical(getattr(obj, f.name)) for f in dataclasses.fields(obj)}

    match obj:
        case Enum():
            return obj.name
        case dict():
            return {str(k): canonical(v) for k, v in obj.items()}
        case list() | tuple() | set() | frozenset():
            items = [canonical(x) for x in obj]
            return sorted(items, key=str) if isinstance(obj, (set, frozenset)) else items

    return obj


@dataclass(slots=True)
class LedgerResult:
    scope: Scope
    closed: list[ClosedTrade] = field(default_factory=list)
    positions: list[Position] = field(default_factory=list)
    strategies: list[Strategy] = field(default_factory=list)
    flags: list[MatchFlag] = field(default_factory=list)
    rejections: list[Rejection] = field(default_factory=list)
    positionKeys: dict[TradeId, str] = field(default_factory=dict)
    realizedPnl: float = 0.0

    def dumps(self) -> bytes:
        """Canonical JSON for this result (sorted keys, enum names, UTC timestamps)."""
        return orjson.dumps(
            canonical(self), option=orjson.OPT_SORT_KEYS | orjson.OPT_UTC_Z
        )


@dataclass
class LedgerPipeline:
    repository: TradeRepository
    config: LedgerConfig = field(default_factory=LedgerConfig)
    quotes: QuoteProvider | None = None

    inflight: dict[Scope, asyncio.Task] = field(default_factory=dict)

    def __post_init__(self):
        self.loader = LedgerLoader(self.repository, self.config)
        self.detector = StrategyDetector(self.config)

        if self.quotes and not isinstance(self.quotes, CachedQuotes):
            self.quotes = CachedQuotes(self.quotes, ttl=self.config.quoteCacheSeconds)

    def compute(self, scope: Scope, now: datetime.datetime | None = None) -> LedgerResult:
        """Run the whole derivation for `scope` without writing anything."""
        asOf = arrow.get(now).datetime if now else arrow.utcnow().datetime

        loaded = self.loader.fetch(scope, asOf)
        matched = match_trades(loaded.trades, asOf=asOf)

        positions = aggregate(
            matched, self.quotes, includePhantom=self.config.includePhantomShorts
        )

        try:
            existing = self.repository.fetchStrategies(scope.userId)
            grouped = self.repository.groupedTradeIds(scope.userId)
        except Exception as e:
            raise LoaderError(scope, e) from e

        if scope.accountIds is not None:
            existing = [s for s in existing if s.accountId in scope.accountIds]

        detected = self.detector.detect(loaded.trades, grouped)
        strategies = [*existing, *detected]
        validate_assignments(strategies)

        strategies = sorted(
            (attribute(s, matched.closed) for s in strategies),
            key=lambda s: (s.openedAt, s.id),
        )

        return LedgerResult(
            scope=scope,
            closed=matched.closed,
            positions=positions,
            strategies=strategies,
            flags=matched.flags,
            rejections=loaded.rejections,
            positionKeys=assign_position_keys(loaded.trades),
            realizedPnl=round(matched.realized(), 2),
        )

    async def run(self, scope: Scope, now: datetime.datetime | None, save: bool) -> LedgerResult:
        logger.info("[{}] Recomputing ledger", scope.userId)

        try:
            result = await asyncio.to_thread(self.compute, scope, now)

            if save:
                await asyncio.to_thread(self.repository.saveResults, scope, result)
        except ScopeFatalError:
            logger.exception("[{}] Abandoning scope {}", scope.userId, scope)
            raise

        logger.info(
            "[{}] Ledger ready: {} closed, {} open, {} strategies, realized {}",
            scope.userId,
            len(result.closed),
            len(result.positions),
            len(result.strategies),
            result.realizedPnl,
        )

        return result

    async def recompute(
        self, scope: Scope, now: datetime.datetime | None = None, save: bool = True
    ) -> LedgerResult:
        """Recompute `scope`, joining an already running recompute of the same scope if any.

        Cancelling one caller doesn't cancel the shared run for the others.
        """
        if not (task := self.inflight.get(scope)):
            task = asyncio.create_task(self.run(scope, now, save))
            self.inflight[scope] = task

            def forget(done: asyncio.Task) -> None:
                # a newer run may already own the slot
                if self.inflight.get(scope) is done:
                    del self.inflight[scope]

            task.add_done_callback(forget)
        else:
            logger.info("[{}] Joining in-flight recompute", scope.userId)

        return await asyncio.shield(task)
