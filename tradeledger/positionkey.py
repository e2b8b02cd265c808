"""Stable identifiers for positions.

A position key names one continuously-open position for its whole life:

    v1|{accountId}|{symbol}|{epoch milliseconds}

where the epoch is the time the position first opened from flat. Adding to (or partially
closing) an open position keeps its key. Going flat and reopening later creates a new key.

Older keys used `{accountId}:{symbol}:{ISO-8601 timestamp}` and are still accepted by parse().
Both account ids and symbols may themselves contain the separators, so parsing anchors on the
version tag and the trailing timestamp instead of splitting blindly.
"""

from __future__ import annotations

import base64
import datetime
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Final

import arrow

from tradeledger.lots import LotBook
from tradeledger.trade import Trade, TradeId

VERSION: Final = "v1"
EPOCH: Final = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)
LEGACY_DATE: Final = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}.+")


@dataclass(slots=True, frozen=True)
class PositionKey:
    accountId: str
    symbol: str
    openedAt: datetime.datetime

    @property
    def epochMs(self) -> int:
        return (self.openedAt - EPOCH) // datetime.timedelta(milliseconds=1)

    def __str__(self) -> str:
        return f"{VERSION}|{self.accountId}|{self.symbol}|{self.epochMs}"

    def encoded(self) -> str:
        return encode(str(self))


def generate(accountId: str, symbol: str, openedAt: datetime.datetime) -> str:
    return str(PositionKey(accountId, symbol, openedAt))


def parse(key: str) -> PositionKey | None:
    """Parse a v1 or legacy key, returning None for anything unrecognizable."""
    parts = key.split("|")

    if parts[0] == VERSION:
        if len(parts) < 4:
            return None

        try:
            ms = int(parts[-1])
        except ValueError:
            return None

        # symbol is everything between the account and the timestamp
        return PositionKey(
            accountId=parts[1],
            symbol="|".join(parts[2:-1]),
            openedAt=EPOCH + datetime.timedelta(milliseconds=ms),
        )

    # legacy: account:symbol:2024-01-15T09:30:00.000Z (symbols may contain colons too)
    if ":" not in key or not (found := LEGACY_DATE.search(key)):
        return None

    try:
        openedAt = arrow.get(found.group()).datetime
    except ValueError:
        return None

    prefix = key[: found.start()].removesuffix(":")
    accountId, sep, symbol = prefix.partition(":")
    if not sep:
        return None

    return PositionKey(accountId=accountId, symbol=symbol, openedAt=openedAt)


def encode(key: str) -> str:
    """URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(key.encode()).decode().rstrip("=")


def decode(encoded: str) -> str:
    return base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4)).decode()


def keyOf(book: LotBook) -> str | None:
    """Return the key of the position currently open in `book` (None if the book is flat).

    If the trade which opened the position was already stored with a v1 key, that key wins
    so positions keep their identity even if a later sync nudges the opening timestamp.
    """
    if book.openedAt is None:
        return None

    if book.openingKey and book.openingKey.startswith(VERSION + "|"):
        return book.openingKey

    return generate(book.accountId, book.symbol, book.openedAt)


def assign_position_keys(trades: Iterable[Trade]) -> dict[TradeId, str]:
    """Map each trade to the key of the position it belongs to.

    Trades which close a position belong to the position they closed (even if they also open
    a new one in the other direction). Splits or other adjustments arriving while flat belong
    to nothing and are left out.
    """
    partitions: dict[tuple[str, str], list[Trade]] = {}
    for trade in trades:
        partitions.setdefault(trade.key, []).append(trade)

    keys: dict[TradeId, str] = {}
    for (accountId, symbol), group in sorted(partitions.items()):
        book = LotBook(accountId, symbol)
        for trade in sorted(group, key=lambda t: t.sortKey):
            before = keyOf(book)
            book.apply(trade)

            if key := before or keyOf(book):
                keys[trade.id] = key

    return keys
