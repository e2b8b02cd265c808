"""Plain text tables for console output.

Usage:
    result = pipeline.compute(scope)
    print(position_table(result.positions))
    print(closed_table(result.closed))
    print(strategy_table(result.strategies))
"""

from __future__ import annotations

from collections.abc import Sequence

from tradeledger.lots import ClosedTrade
from tradeledger.metrics import Performance
from tradeledger.positions import Position, summarize
from tradeledger.strategy import Strategy


def mn(val):
    """format numeric input as money"""
    if val is None:
        return "-"

    return f"${val:,.2f}".replace("$-", "-$")


def table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    separator = "+" + "+".join("-" * (w + 2) for w in widths) + "+"

    def line(cells):
        return "|" + "|".join(f" {cell:<{widths[i]}} " for i, cell in enumerate(cells)) + "|"

    lines = [separator, line(headers), separator]
    lines.extend(line(row) for row in rows)
    lines.append(separator)

    return "\n".join(lines)


def position_table(positions: Sequence[Position]) -> str:
    if not positions:
        return "No positions found."

    rows = [
        [
            p.accountId,
            p.symbol,
            f"{p.net:,.2f}",
            mn(p.averagePrice),
            "LONG" if p.isLong else "SHORT",
            mn(p.costBasis),
            mn(p.marketValue),
            mn(p.unrealizedPnl),
            p.epoch.strftime("%Y-%m-%d %H:%M"),
        ]
        for p in positions
    ]

    summary = summarize(positions)
    totals = [
        f"Positions: {summary.positions} ({summary.stockPositions} stock, {summary.optionPositions} option)",
        f"Cost Basis: {mn(summary.costBasis)}",
        f"Market Value: {mn(summary.marketValue)}",
        f"Unrealized P&L: {mn(summary.unrealizedPnl)}",
    ]

    if summary.unpriced:
        totals.append(f"Unpriced: {', '.join(summary.unpriced)}")

    return "\n".join(
        [
            table(
                [
                    "Account",
                    "Symbol",
                    "Qty",
                    "Avg Price",
                    "Direction",
                    "Cost Basis",
                    "Value",
                    "Unrealized",
                    "Opened",
                ],
                rows,
            ),
            *totals,
        ]
    )


def closed_table(closed: Sequence[ClosedTrade]) -> str:
    if not closed:
        return "No closed trades found."

    rows = [
        [
            c.accountId,
            c.symbol,
            "SHORT" if c.isShort else "LONG",
            f"{c.quantity:,.2f}",
            mn(c.entryPrice),
            mn(c.exitPrice),
            mn(c.pnl),
            c.openedAt.strftime("%Y-%m-%d"),
            c.closedAt.strftime("%Y-%m-%d"),
        ]
        for c in sorted(closed, key=lambda c: (c.closedAt, c.accountId, c.symbol))
    ]

    return "\n".join(
        [
            table(
                ["Account", "Symbol", "Side", "Qty", "Entry", "Exit", "P&L", "Opened", "Closed"],
                rows,
            ),
            f"Realized P&L: {mn(sum(c.pnl for c in closed))}",
        ]
    )


def strategy_table(strategies: Sequence[Strategy]) -> str:
    if not strategies:
        return "No strategies found."

    lines = ["STRATEGIES", "=" * 50, ""]
    for s in strategies:
        lines.extend(
            [
                f"{s.label}: {s.underlying} ({s.accountId})",
                f"  Status: {s.status}",
                f"  Direction: {s.direction}",
                f"  Net Premium: {mn(s.netPremium)}",
                f"  Max Profit: {mn(s.maxProfit)}",
                f"  Max Loss: {mn(s.maxLoss)}",
                f"  Realized P&L: {mn(s.realizedPnl)}",
            ]
        )

        if s.autoDetected and s.confidence is not None:
            lines.append(f"  Confidence: {s.confidence:.0%}")

        for leg in s.legs:
            lines.append(
                f"    #{leg.legNumber} {leg.legType.name} {leg.symbol}: "
                f"qty={leg.quantity:g} entry={mn(leg.entryPrice)} pnl={mn(leg.realizedPnl)}"
            )

        lines.append("")

    opened = sum(1 for s in strategies if s.status == "open")
    lines.append(f"Summary: {opened} open, {len(strategies) - opened} closed")

    return "\n".join(lines)


def performance_text(perf: Performance) -> str:
    pf = "n/a" if perf.profitFactor is None else f"{perf.profitFactor:.2f}"
    return "\n".join(
        [
            "PERFORMANCE",
            "=" * 50,
            f"Net P&L: {mn(perf.netPnl)}",
            f"Trades: {perf.totalTrades} ({perf.winningTrades} wins, {perf.losingTrades} losses)",
            f"Win Rate: {perf.winRate:.1f}%",
            f"Avg Win: {mn(perf.avgWin)} ({perf.avgWinPct:.1f}%)",
            f"Avg Loss: {mn(perf.avgLoss)} ({perf.avgLossPct:.1f}%)",
            f"Profit Factor: {pf}",
            f"Largest Win: {mn(perf.largestWin)}",
            f"Largest Loss: {mn(perf.largestLoss)}",
            f"MTD: {mn(perf.mtdPnl)}",
            f"YTD: {mn(perf.ytdPnl)}",
        ]
    )
