"""Realized performance statistics from closed trades.

All figures are rounded for presentation: currency to cents, percentages to one decimal.
Percent returns are measured against each closed trade's cost basis
(entryPrice * quantity * multiplier), so options are compared by contract value, not premium.
"""

from __future__ import annotations

import datetime
from collections.abc import Iterable
from dataclasses import dataclass, field

import arrow
import pandas as pd

from tradeledger.lots import ClosedTrade


@dataclass(slots=True)
class Performance:
    netPnl: float = 0.0
    totalTrades: int = 0
    winningTrades: int = 0
    losingTrades: int = 0
    winRate: float = 0.0
    avgWin: float = 0.0
    avgLoss: float = 0.0
    avgWinPct: float = 0.0
    avgLossPct: float = 0.0

    # None when there are wins but no losses
    profitFactor: float | None = 0.0

    largestWin: float = 0.0
    largestLoss: float = 0.0
    avgTrade: float = 0.0
    mtdPnl: float = 0.0
    ytdPnl: float = 0.0

    # [{date, symbol, pnl, cumulative}] in close order
    cumulative: list[dict] = field(default_factory=list)

    # [{month: "YYYY-MM", pnl}] ascending
    monthly: list[dict] = field(default_factory=list)

    # [{symbol, pnl, trades, winRate}] best first
    bySymbol: list[dict] = field(default_factory=list)


def frame(closed: Iterable[ClosedTrade]) -> pd.DataFrame:
    """One row per closed trade, ordered by close time."""
    df = pd.DataFrame(
        [
            dict(
                symbol=c.symbol,
                accountId=c.accountId,
                pnl=c.pnl,
                costBasis=c.costBasis,
                closedAt=c.closedAt,
            )
            for c in closed
        ],
        columns=["symbol", "accountId", "pnl", "costBasis", "closedAt"],
    )

    if df.empty:
        return df

    df["closedAt"] = pd.to_datetime(df["closedAt"], utc=True)
    return df.sort_values("closedAt", kind="stable").reset_index(drop=True)


def pct(pnl: pd.Series, basis: pd.Series) -> pd.Series:
    # trades without a cost basis (zero priced entries) count as 0%
    return (pnl / basis).where(basis > 0, 0.0) * 100


def performance(
    closed: Iterable[ClosedTrade], asOf: datetime.datetime | None = None
) -> Performance:
    df = frame(closed)
    perf = Performance()

    if df.empty:
        return perf

    now = arrow.get(asOf) if asOf else arrow.utcnow()

    wins = df[df.pnl > 0]
    losses = df[df.pnl < 0]

    totalWins = float(wins.pnl.sum())
    totalLosses = abs(float(losses.pnl.sum()))

    perf.netPnl = round(float(df.pnl.sum()), 2)
    perf.totalTrades = len(df)
    perf.winningTrades = len(wins)
    perf.losingTrades = len(losses)
    perf.winRate = round(len(wins) / len(df) * 100, 1)

    if len(wins):
        perf.avgWin = round(totalWins / len(wins), 2)
        perf.avgWinPct = round(float(pct(wins.pnl, wins.costBasis).mean()), 1)
        perf.largestWin = round(float(wins.pnl.max()), 2)

    if len(losses):
        perf.avgLoss = round(totalLosses / len(losses), 2)
        perf.avgLossPct = round(abs(float(pct(losses.pnl, losses.costBasis).mean())), 1)
        perf.largestLoss = round(float(losses.pnl.min()), 2)

    if totalLosses > 0:
        perf.profitFactor = round(totalWins / totalLosses, 2)
    elif totalWins > 0:
        perf.profitFactor = None

    perf.avgTrade = round(float(df.pnl.mean()), 2)

    monthStart = pd.Timestamp(now.floor("month").datetime)
    yearStart = pd.Timestamp(now.floor("year").datetime)
    perf.mtdPnl = round(float(df[df.closedAt >= monthStart].pnl.sum()), 2)
    perf.ytdPnl = round(float(df[df.closedAt >= yearStart].pnl.sum()), 2)

    running = df.pnl.cumsum()
    perf.cumulative = [
        dict(
            date=row.closedAt.strftime("%Y-%m-%d"),
            symbol=row.symbol,
            pnl=round(float(row.pnl), 2),
            cumulative=round(float(total), 2),
        )
        for row, total in zip(df.itertuples(), running)
    ]

    months = df.groupby(df.closedAt.dt.strftime("%Y-%m")).pnl.sum().sort_index()
    perf.monthly = [
        dict(month=month, pnl=round(float(pnl), 2)) for month, pnl in months.items()
    ]

    symbols = df.groupby("symbol").agg(
        pnl=("pnl", "sum"),
        trades=("pnl", "size"),
        wins=("pnl", lambda s: int((s > 0).sum())),
    )
    symbols = symbols.sort_values("pnl", ascending=False, kind="stable")
    perf.bySymbol = [
        dict(
            symbol=symbol,
            pnl=round(float(row.pnl), 2),
            trades=int(row.trades),
            winRate=int(round(row.wins / row.trades * 100)),
        )
        for symbol, row in symbols.iterrows()
    ]

    return perf
