"""Trade records and the action vocabulary every other module consumes.

A Trade is one broker execution after the ingestion side has normalized it:

    - symbol: stock ticker or OCC option symbol
    - action: one of the Action members (broker strings are mapped through parseAction())
    - quantity: usually unsigned; the sign only matters for OPTIONEXPIRATION and SPLIT
    - price: per share or per contract (negative prices are rejected by validate_trade())
    - multiplier: contract multiplier (100 for options, 1 for stock unless told otherwise)

Trades are immutable. Everything derived from them (lots, positions, strategies) is rebuilt
from the ordered trade sequence on every run, so nothing here ever changes after creation.
"""

from __future__ import annotations

import datetime
from collections.abc import Hashable
from dataclasses import dataclass
from enum import Enum
from typing import Final, TypeAlias, assert_never

import arrow
from loguru import logger

from tradeledger import occ
from tradeledger.config import LedgerConfig
from tradeledger.errors import UnrecognizedActionError

TradeId: TypeAlias = Hashable

Instrument: Final = Enum("Instrument", "STOCK OPTION")

# fmt: off
Action: Final = Enum(
    "Action",
    "BUY SELL BUY_TO_OPEN BUY_TO_CLOSE SELL_TO_OPEN SELL_TO_CLOSE "
    "ASSIGNMENT EXERCISES OPTIONEXPIRATION SPLIT DIVIDEND",
)
# fmt: on

# Which queue a trade consumes from / adds to.
#   BUY: closes shorts first, leftover opens longs
#   SELL: closes longs first, leftover opens shorts
#   ADJUST: rescales existing lots (splits)
#   NONE: never touches lots (dividends)
Side: Final = Enum("Side", "BUY SELL ADJUST NONE")

# Everything the loader hands to the matching engine. DIVIDEND is the only excluded action.
POSITION_AFFECTING: Final = frozenset(a for a in Action if a is not Action.DIVIDEND)

# Actions which only make sense against existing opposite-side inventory.
# If these find nothing to close, the ledger history is missing something.
CLOSING: Final = frozenset(
    {
        Action.BUY_TO_CLOSE,
        Action.SELL_TO_CLOSE,
        Action.OPTIONEXPIRATION,
        Action.EXERCISES,
    }
)

# Actions which can start a new position. Strategies are only ever built from these.
OPENING: Final = frozenset(
    {Action.BUY, Action.SELL, Action.BUY_TO_OPEN, Action.SELL_TO_OPEN}
)

# broker spellings we accept beyond the canonical member names
ALIASES: Final = {
    "BTO": Action.BUY_TO_OPEN,
    "BTC": Action.BUY_TO_CLOSE,
    "STO": Action.SELL_TO_OPEN,
    "STC": Action.SELL_TO_CLOSE,
    "EXERCISE": Action.EXERCISES,
    "EXPIRATION": Action.OPTIONEXPIRATION,
    "OPTION_EXPIRATION": Action.OPTIONEXPIRATION,
}


def parseAction(action: str | Action) -> Action:
    """Map a broker action string onto the closed Action vocabulary.

    Unknown strings raise instead of silently becoming "neither buy nor sell."
    """
    if isinstance(action, Action):
        return action

    name = action.strip().upper().replace(" ", "_").replace("-", "_")
    if name in Action.__members__:
        return Action[name]

    if found := ALIASES.get(name):
        return found

    raise UnrecognizedActionError(action)


def classify(action: Action, quantity: float) -> Side:
    """Return which side of the lot queues `action` operates on.

    OPTIONEXPIRATION is the one action where quantity sign matters: a negative quantity
    removes long contracts (acts as a SELL), zero or positive removes short contracts (a BUY).
    """
    match action:
        case Action.BUY | Action.BUY_TO_OPEN | Action.BUY_TO_CLOSE | Action.ASSIGNMENT:
            return Side.BUY
        case Action.SELL | Action.SELL_TO_OPEN | Action.SELL_TO_CLOSE | Action.EXERCISES:
            return Side.SELL
        case Action.OPTIONEXPIRATION:
            return Side.SELL if quantity < 0 else Side.BUY
        case Action.SPLIT:
            return Side.ADJUST
        case Action.DIVIDEND:
            return Side.NONE
        case _:
            assert_never(action)


def asUTC(when: datetime.datetime) -> datetime.datetime:
    """Naive timestamps are assumed to already be UTC."""
    if when.tzinfo is None:
        return when.replace(tzinfo=datetime.timezone.utc)

    return when


@dataclass(slots=True, frozen=True)
class Trade:
    id: TradeId
    accountId: str
    symbol: str
    action: Action
    quantity: float
    price: float
    timestamp: datetime.datetime

    # None means "figure it out from the symbol"
    instrument: Instrument | None = None

    # 0 means "use the default for the instrument"
    multiplier: float = 0

    # total fees/commissions for the whole execution (sign ignored)
    fees: float = 0.0

    # secondary ordering key when timestamps tie; defaults to the execution timestamp
    ingestedAt: datetime.datetime | None = None

    userId: str | None = None

    # key previously assigned by positionkey.assign_position_keys(), if any
    positionKey: str | None = None

    def __post_init__(self):
        # frozen dataclass, so normalization has to go through object.__setattr__
        symbol = self.symbol.strip().upper()
        instrument = self.instrument
        if isinstance(instrument, str):
            instrument = Instrument[instrument.upper()]

        isOcc = occ.isOption(symbol)
        multiplier = self.multiplier

        if instrument is None:
            instrument = Instrument.OPTION if isOcc else Instrument.STOCK
        elif instrument is Instrument.STOCK and isOcc and multiplier in (0, 1):
            # some brokers report options as stock with multiplier 1
            instrument = Instrument.OPTION
            multiplier = 100

        if not multiplier:
            multiplier = 100 if instrument is Instrument.OPTION else 1

        object.__setattr__(self, "symbol", symbol)
        object.__setattr__(self, "action", parseAction(self.action))
        object.__setattr__(self, "instrument", instrument)
        object.__setattr__(self, "multiplier", multiplier)
        object.__setattr__(self, "timestamp", asUTC(self.timestamp))
        object.__setattr__(
            self,
            "ingestedAt",
            asUTC(self.ingestedAt) if self.ingestedAt else self.timestamp,
        )

    @property
    def side(self) -> Side:
        return classify(self.action, self.quantity)

    @property
    def isOption(self) -> bool:
        return self.instrument is Instrument.OPTION

    @property
    def isClosing(self) -> bool:
        return self.action in CLOSING

    @property
    def isOpening(self) -> bool:
        return self.action in OPENING

    @property
    def option(self) -> occ.OptionSymbol | None:
        return occ.parse(self.symbol)

    @property
    def underlying(self) -> str:
        return occ.underlying(self.symbol)

    @property
    def key(self) -> tuple[str, str]:
        """Matching partition: every (account, symbol) pair is matched independently."""
        return (self.accountId, self.symbol)

    @property
    def sortKey(self) -> tuple[datetime.datetime, datetime.datetime, str]:
        """Total order over trades: execution time, then ingestion time, then identifier."""
        return (self.timestamp, self.ingestedAt, str(self.id))  # type: ignore[return-value]


def ordered(trades) -> list[Trade]:
    return sorted(trades, key=lambda t: t.sortKey)


def validate_trade(
    trade: Trade, config: LedgerConfig, now: datetime.datetime | None = None
) -> list[str]:
    """Return reasons `trade` should not be matched (empty if the trade is usable).

    These are local problems: the caller drops the trade and keeps going.
    """
    errors: list[str] = []
    current = arrow.get(now) if now else arrow.utcnow()

    if trade.timestamp > (current + config.futureTolerance).datetime:
        errors.append(f"Trade date {trade.timestamp.isoformat()} is in the future")

    if trade.timestamp < current.shift(years=-config.maxTradeAgeYears).datetime:
        errors.append(
            f"Trade date {trade.timestamp.isoformat()} is more than {config.maxTradeAgeYears} years old"
        )

    if trade.price < 0:
        errors.append(f"Trade has negative price: ${trade.price}")
    elif trade.price == 0 and trade.action not in {Action.OPTIONEXPIRATION, Action.SPLIT}:
        errors.append(f"Trade has invalid price: ${trade.price}")

    if trade.quantity == 0 and trade.action not in {Action.SPLIT, Action.DIVIDEND}:
        errors.append("Trade has zero quantity")

    if (
        trade.instrument is Instrument.STOCK
        and abs(trade.quantity) > config.largeQuantityWarning
    ):
        # suspicious, but not wrong
        logger.warning(
            "[{}] Large quantity detected: {} {} shares",
            trade.id,
            trade.symbol,
            trade.quantity,
        )

    return errors
