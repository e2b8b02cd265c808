import datetime

import pytest

from tradeledger.errors import LedgerError
from tradeledger.lots import Lot, LotBook, match_trades
from tradeledger.positionkey import generate
from tradeledger.positions import CachedQuotes, aggregate, position_from_book, summarize
from tradeledger.trade import Action, Instrument, Trade

T0 = datetime.datetime(2024, 2, 1, 15, tzinfo=datetime.timezone.utc)
OPT = "XYZ240315P00045000"


def at(minutes: float) -> datetime.datetime:
    return T0 + datetime.timedelta(minutes=minutes)


def trade(id, action, qty, price, when=0, symbol="XYZ", account="acct"):
    return Trade(id, account, symbol, action, qty, price, at(when))


class Quotes:
    def __init__(self, marks):
        self.marks = marks
        self.calls = 0

    def quote(self, symbol):
        self.calls += 1
        return self.marks[symbol]


def test_residual_becomes_position():
    result = match_trades(
        [trade(1, Action.BUY, 100, 10.0, 0), trade(2, Action.SELL, 60, 12.0, 1)]
    )

    [position] = aggregate(result)
    assert position.symbol == "XYZ"
    assert position.net == 40
    assert position.epoch == at(0)
    assert position.key == generate("acct", "XYZ", at(0))
    assert position.averagePrice == 10.0
    assert position.costBasis == 400.0
    assert position.marketPrice is None


def test_flat_books_have_no_position():
    result = match_trades(
        [trade(1, Action.BUY, 100, 10.0, 0), trade(2, Action.SELL, 100, 12.0, 1)]
    )
    assert aggregate(result) == []


def test_epoch_is_oldest_open_lot():
    result = match_trades(
        [
            trade(1, Action.BUY, 10, 10.0, 0),
            trade(2, Action.BUY, 10, 11.0, 5),
            trade(3, Action.SELL, 10, 12.0, 10),
        ]
    )

    [position] = aggregate(result)
    assert position.epoch == at(5)

    # the key still belongs to the position which opened at T0
    assert position.key == generate("acct", "XYZ", at(0))


def test_short_position():
    result = match_trades(
        [
            trade(1, Action.BUY_TO_OPEN, 1, 1.0, 0, OPT),
            trade(2, Action.SELL_TO_CLOSE, 3, 1.5, 1, OPT),
        ]
    )

    [position] = aggregate(result)
    assert position.net == -2
    assert position.instrument is Instrument.OPTION
    assert not position.phantom


def test_phantom_excluded_by_default():
    result = match_trades([trade(1, Action.SELL, 50, 10.0)])

    assert aggregate(result) == []

    [position] = aggregate(result, includePhantom=True)
    assert position.phantom
    assert position.net == -50


def test_quotes_enrich_long_and_short():
    result = match_trades(
        [
            trade(1, Action.BUY, 100, 10.0, 0),
            trade(2, Action.SELL_TO_OPEN, 2, 3.0, 0, OPT),
            trade(3, Action.BUY, 1, 1.0, 0, "ABC"),
            trade(4, Action.SELL, 5, 1.0, 1, "ABC"),
        ]
    )

    positions = {
        p.symbol: p for p in aggregate(result, Quotes({"XYZ": 12.5, OPT: 1.0, "ABC": 2.0}))
    }

    assert positions["XYZ"].marketValue == 1250.0
    assert positions["XYZ"].unrealizedPnl == 250.0

    assert positions[OPT].marketValue == -200.0
    assert positions[OPT].unrealizedPnl == 400.0

    # short 4 at 1.0 marked at 2.0
    assert positions["ABC"].unrealizedPnl == -4.0


def test_quote_failure_keeps_position():
    result = match_trades([trade(1, Action.BUY, 100, 10.0, 0)])

    [position] = aggregate(result, Quotes({}))
    assert position.net == 100
    assert position.unrealizedPnl is None
    assert position.marketValue is None
    assert "KeyError" in position.quoteError


def test_non_finite_quote():
    result = match_trades([trade(1, Action.BUY, 100, 10.0, 0)])

    [position] = aggregate(result, Quotes({"XYZ": float("nan")}))
    assert position.unrealizedPnl is None
    assert position.quoteError


def test_cached_quotes():
    provider = Quotes({"XYZ": 1.0})
    quotes = CachedQuotes(provider, ttl=60)

    assert quotes.quote("XYZ") == 1.0
    assert quotes.quote("XYZ") == 1.0
    assert provider.calls == 1


def test_cached_quotes_do_not_cache_failures():
    provider = Quotes({})
    quotes = CachedQuotes(provider)

    for _ in range(2):
        with pytest.raises(KeyError):
            quotes.quote("XYZ")

    assert provider.calls == 2


def test_summarize():
    result = match_trades(
        [
            trade(1, Action.BUY, 100, 10.0, 0),
            trade(2, Action.BUY_TO_OPEN, 2, 3.0, 0, OPT),
            trade(3, Action.BUY, 10, 5.0, 0, "ABC"),
        ]
    )

    summary = summarize(aggregate(result, Quotes({"XYZ": 11.0, OPT: 2.0})))
    assert summary.positions == 3
    assert summary.stockPositions == 2
    assert summary.optionPositions == 1
    assert summary.costBasis == 1000.0 + 600.0 + 50.0
    assert summary.marketValue == 1100.0 + 400.0
    assert summary.unrealizedPnl == 100.0 - 200.0
    assert summary.unpriced == ["ABC"]


def test_open_book_without_opening_time_is_an_error():
    book = LotBook("acct", "XYZ")
    book.longLots.append(Lot(1, 10.0, 5, 1, at(0), Instrument.STOCK))

    with pytest.raises(LedgerError):
        position_from_book(book)
