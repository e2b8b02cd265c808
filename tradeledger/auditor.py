"""Data-quality auditing across users.

The auditor replays a user's trades through the matcher (read only, nothing is stored) and
looks for books which can't be right:

    - phantom shorts: sold without a single buy ever recorded, so some history is missing
    - stale positions: open for years with no trades touching them since
    - extreme symbol counts: more distinct open symbols than any real account holds
    - unmatched closes: closing trades which found nothing to close

Usage:
    auditor = DataQualityAuditor(config)
    report = auditor.scan({"user-1": trades1, "user-2": trades2})
    if report.status != "healthy":
        print(report.text())
"""

from __future__ import annotations

import datetime
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Literal

import arrow
from loguru import logger

from tradeledger import occ
from tradeledger.config import LedgerConfig
from tradeledger.lots import LotBook, MatchFlag, match_trades
from tradeledger.trade import Trade

Severity = Literal["low", "medium", "high"]
Status = Literal["healthy", "warnings", "errors"]


@dataclass(slots=True)
class UserAudit:
    userId: str
    trades: int = 0
    openPositions: int = 0

    phantomSymbols: list[str] = field(default_factory=list)
    staleSymbols: list[str] = field(default_factory=list)
    flags: list[MatchFlag] = field(default_factory=list)

    # more distinct open symbols than extremeSymbolCount
    extreme: bool = False

    severity: Severity = "low"
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def status(self) -> Status:
        if self.errors:
            return "errors"

        if self.warnings:
            return "warnings"

        return "healthy"

    @property
    def issues(self) -> int:
        return len(self.warnings) + len(self.errors)


@dataclass(slots=True)
class AuditReport:
    asOf: datetime.datetime
    users: list[UserAudit] = field(default_factory=list)

    @property
    def status(self) -> Status:
        statuses = {u.status for u in self.users}
        if "errors" in statuses:
            return "errors"

        if "warnings" in statuses:
            return "warnings"

        return "healthy"

    @property
    def flagged(self) -> list[UserAudit]:
        return [u for u in self.users if u.issues]

    @property
    def severities(self) -> dict[str, int]:
        counts = {"high": 0, "medium": 0, "low": 0}
        for u in self.users:
            counts[u.severity] += 1

        return counts

    def text(self) -> str:
        """Console summary of every flagged user."""
        lines = [
            "DATA QUALITY REPORT",
            "=" * 50,
            f"As of: {self.asOf:%Y-%m-%d %H:%M} UTC",
            f"Status: {self.status}",
            f"Users scanned: {len(self.users)}",
            f"Users with issues: {len(self.flagged)}",
            "Severity: "
            + ", ".join(f"{name}={count}" for name, count in self.severities.items()),
            "",
        ]

        for u in self.flagged:
            lines.append(f"User {u.userId} [{u.severity}]")
            lines.extend(f"  Error: {e}" for e in u.errors)
            lines.extend(f"  Warning: {w}" for w in u.warnings)
            lines.append("")

        if not self.flagged:
            lines.append("No issues found.")

        return "\n".join(lines)


@dataclass(slots=True)
class DataQualityAuditor:
    config: LedgerConfig = field(default_factory=LedgerConfig)

    def isOpen(self, book: LotBook, asOf: datetime.datetime) -> bool:
        if abs(book.net) <= self.config.phantomTolerance:
            return False

        # contracts past expiration aren't held anymore even if nothing recorded their expiry
        parsed = occ.parse(book.symbol)
        return not (parsed and parsed.expiresAt < asOf)

    def isPhantom(self, book: LotBook) -> bool:
        return book.sells > 0 and book.buys == 0 and book.net < -self.config.phantomTolerance

    def isStale(self, book: LotBook, cutoff: datetime.datetime) -> bool:
        epoch = book.epoch
        if not epoch or epoch >= cutoff:
            return False

        return not book.lastActivity or book.lastActivity < cutoff

    def audit(
        self,
        userId: str,
        trades: Iterable[Trade],
        asOf: datetime.datetime | None = None,
    ) -> UserAudit:
        """Audit one user's trades. `trades` is only read."""
        when = arrow.get(asOf) if asOf else arrow.utcnow()
        cutoff = when.shift(days=-self.config.staleAfterDays).datetime
        asOf = when.datetime

        trades = list(trades)
        matched = match_trades(trades)

        result = UserAudit(userId, trades=len(trades), flags=list(matched.flags))

        openBooks = [b for b in matched.books.values() if self.isOpen(b, asOf)]
        result.openPositions = len(openBooks)

        for book in openBooks:
            label = f"{book.accountId} {book.symbol}"
            if self.isPhantom(book):
                result.phantomSymbols.append(label)
            elif self.isStale(book, cutoff):
                result.staleSymbols.append(label)

        if result.phantomSymbols:
            message = (
                f"{len(result.phantomSymbols)} phantom positions (sold with no buys recorded): "
                + ", ".join(result.phantomSymbols)
            )

            if len(result.phantomSymbols) > self.config.highSeverityPhantoms:
                result.errors.append(message)
            else:
                result.warnings.append(message)

        if result.staleSymbols:
            result.warnings.append(
                f"{len(result.staleSymbols)} positions open more than "
                f"{self.config.staleAfterDays} days without activity: "
                + ", ".join(result.staleSymbols)
            )

        symbols = {b.symbol for b in openBooks}
        if len(symbols) > self.config.extremeSymbolCount:
            result.extreme = True
            result.warnings.append(
                f"{len(symbols)} distinct open symbols (more than {self.config.extremeSymbolCount})"
            )

        for flag in result.flags:
            result.warnings.append(
                f"{flag.accountId} {flag.symbol}: {flag.action} {flag.tradeId} "
                f"had {flag.unmatched} with nothing to close"
            )

        if len(result.phantomSymbols) > self.config.highSeverityPhantoms:
            result.severity = "high"
        elif result.issues:
            result.severity = "medium"

        if result.issues:
            logger.warning(
                "[{}] {} data quality issues (severity {})",
                userId,
                result.issues,
                result.severity,
            )

        return result

    def scan(
        self,
        tradesByUser: Mapping[str, Iterable[Trade]],
        asOf: datetime.datetime | None = None,
    ) -> AuditReport:
        when = arrow.get(asOf).datetime if asOf else arrow.utcnow().datetime
        report = AuditReport(when)

        for userId in sorted(tradesByUser):
            report.users.append(self.audit(userId, tradesByUser[userId], when))

        logger.info(
            "Scanned {} users, {} with issues ({})",
            len(report.users),
            len(report.flagged),
            report.status,
        )

        return report
