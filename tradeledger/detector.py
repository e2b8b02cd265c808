"""Find spreads hiding in plain trade history.

Brokers report each leg of a spread as its own execution, so after the fact all we see are
individual option trades. Legs opened together share an account, an underlying, and (nearly)
a timestamp, so candidate groups are built from opening trades by exactly those three things:

    trades -> by account -> by underlying -> chained time windows

A group of exactly two legs with the same right and expiration, different strikes, and one
bought while the other was sold is a vertical spread. Everything else is left ungrouped for the
user to group manually.
"""

from __future__ import annotations

import datetime
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Final

from loguru import logger

from tradeledger.config import LedgerConfig
from tradeledger.strategy import Strategy, StrategyType, build_strategy
from tradeledger.trade import Side, Trade, TradeId

STANDARD_LOTS: Final = frozenset({1, 5, 10})


def vertical_type(a: Trade, b: Trade) -> StrategyType | None:
    """Return which vertical spread legs `a` and `b` form, if any."""
    oa, ob = a.option, b.option
    if not oa or not ob:
        return None

    if oa.right != ob.right or oa.expiration != ob.expiration or oa.strike == ob.strike:
        return None

    if {a.side, b.side} != {Side.BUY, Side.SELL}:
        return None

    longLeg, shortLeg = (oa, ob) if a.side is Side.BUY else (ob, oa)

    if oa.isCall:
        if longLeg.strike < shortLeg.strike:
            return StrategyType.VERTICAL_SPREAD_BULL_CALL

        return StrategyType.VERTICAL_SPREAD_BEAR_CALL

    if longLeg.strike > shortLeg.strike:
        return StrategyType.VERTICAL_SPREAD_BEAR_PUT

    return StrategyType.VERTICAL_SPREAD_BULL_PUT


def confidence(a: Trade, b: Trade) -> float:
    """Score how likely two legs were placed as one spread (0 to 1)."""
    score = 0.0

    qa, qb = abs(a.quantity), abs(b.quantity)
    if qa == qb:
        score += 0.3

    oa, ob = a.option, b.option
    if oa and ob and oa.expiration == ob.expiration:
        score += 0.3

    apart = abs(a.timestamp - b.timestamp)
    if apart < datetime.timedelta(minutes=1):
        score += 0.2
    elif apart < datetime.timedelta(minutes=5):
        score += 0.1

    if qa in STANDARD_LOTS and qb in STANDARD_LOTS:
        score += 0.2

    return min(score, 1.0)


@dataclass(slots=True)
class StrategyDetector:
    config: LedgerConfig = field(default_factory=LedgerConfig)

    def windows(self, trades: Sequence[Trade]) -> list[list[Trade]]:
        """Split time ordered `trades` into runs where each trade is within the window of the last."""
        groups: list[list[Trade]] = []
        current: list[Trade] = []

        for t in trades:
            if current and t.timestamp - current[-1].timestamp > self.config.groupingWindow:
                groups.append(current)
                current = []

            current.append(t)

        if current:
            groups.append(current)

        return [g for g in groups if len(g) >= 2]

    def candidates(
        self, trades: Iterable[Trade], grouped: Iterable[TradeId] = ()
    ) -> list[list[Trade]]:
        """Group ungrouped opening option trades by account, underlying, and time window.

        Closing a spread (or letting it expire) produces legs which look just like a spread of
        the opposite direction, so only opening actions can start a strategy.
        """
        skip = set(grouped)

        partitions: dict[tuple[str, str], list[Trade]] = {}
        for t in trades:
            if not t.isOption or not t.isOpening or t.id in skip:
                continue

            partitions.setdefault((t.accountId, t.underlying), []).append(t)

        found = []
        for key in sorted(partitions):
            found.extend(self.windows(sorted(partitions[key], key=lambda t: t.sortKey)))

        return found

    def detect(
        self, trades: Iterable[Trade], grouped: Iterable[TradeId] = ()
    ) -> list[Strategy]:
        """Return auto-detected strategies among `trades` not already in `grouped`."""
        strategies = []
        for group in self.candidates(trades, grouped):
            if len(group) != 2:
                logger.debug(
                    "[{} {}] Not grouping {} legs (only verticals are detected)",
                    group[0].accountId,
                    group[0].underlying,
                    len(group),
                )
                continue

            a, b = group
            if not (found := vertical_type(a, b)):
                continue

            score = confidence(a, b)
            if score < self.config.minConfidence:
                logger.info(
                    "[{} {}] Skipping {} with confidence {:.2f}",
                    a.accountId,
                    a.underlying,
                    found.name,
                    score,
                )
                continue

            strategies.append(
                build_strategy(group, found, autoDetected=True, confidence=score)
            )

        logger.info("Detected {} strategies", len(strategies))
        return strategies
