import datetime
import random

import pytest

from tradeledger.errors import NumericOverflowError
from tradeledger.lots import ClosedTrade, Lot, LotBook, match_trades
from tradeledger.trade import Action, Instrument, Side, Trade

T0 = datetime.datetime(2024, 1, 2, 14, 30, tzinfo=datetime.timezone.utc)
OPT = "XYZ240315C00050000"


def at(minutes: float) -> datetime.datetime:
    return T0 + datetime.timedelta(minutes=minutes)


def trade(id, action, qty, price, when=0, symbol="XYZ", account="acct", **kwargs):
    return Trade(id, account, symbol, action, qty, price, at(when), **kwargs)


def test_partial_close_scenario():
    result = match_trades(
        [trade(1, Action.BUY, 100, 10.0, 0), trade(2, Action.SELL, 60, 12.0, 1)]
    )

    assert result.closed == [
        ClosedTrade(
            accountId="acct",
            symbol="XYZ",
            instrument=Instrument.STOCK,
            pnl=120.0,
            quantity=60,
            entryPrice=10.0,
            exitPrice=12.0,
            openedAt=at(0),
            closedAt=at(1),
            multiplier=1,
            openTradeId=1,
            closeTradeId=2,
        )
    ]

    book = result.books[("acct", "XYZ")]
    assert list(book.longLots) == [
        Lot(
            tradeId=1,
            price=10.0,
            remaining=40,
            multiplier=1,
            openedAt=at(0),
            instrument=Instrument.STOCK,
        )
    ]
    assert not book.shortLots
    assert book.net == 40


def test_short_option_scenario():
    result = match_trades(
        [
            trade(1, Action.SELL_TO_OPEN, 1, 2.00, 0, OPT),
            trade(2, Action.BUY_TO_CLOSE, 1, 0.50, 1, OPT),
        ]
    )

    [closed] = result.closed
    assert closed.pnl == pytest.approx(150.0)
    assert closed.multiplier == 100
    assert closed.isShort
    assert not result.flags
    assert result.open_books() == []


def test_fifo_uses_oldest_lot():
    result = match_trades(
        [
            trade(1, Action.BUY, 100, 10.0, 0),
            trade(2, Action.BUY, 100, 20.0, 1),
            trade(3, Action.SELL, 50, 15.0, 2),
        ]
    )

    [closed] = result.closed
    assert closed.openTradeId == 1
    assert closed.entryPrice == 10.0
    assert closed.pnl == 250.0

    book = result.books[("acct", "XYZ")]
    assert [(lot.tradeId, lot.remaining) for lot in book.longLots] == [(1, 50), (2, 100)]


def test_close_spans_lots():
    result = match_trades(
        [
            trade(1, Action.BUY, 10, 10.0, 0),
            trade(2, Action.BUY, 10, 20.0, 1),
            trade(3, Action.SELL, 15, 30.0, 2),
        ]
    )

    assert [(c.openTradeId, c.quantity, c.pnl) for c in result.closed] == [
        (1, 10, 200.0),
        (2, 5, 50.0),
    ]


def test_close_then_open_never_crosses():
    result = match_trades(
        [trade(1, Action.BUY, 10, 10.0, 0), trade(2, Action.SELL, 25, 11.0, 1)]
    )

    [closed] = result.closed
    assert closed.quantity == 10

    book = result.books[("acct", "XYZ")]
    assert not book.longLots
    assert [(lot.tradeId, lot.remaining, lot.price) for lot in book.shortLots] == [
        (2, 15, 11.0)
    ]


def test_expiration_closes_long_at_zero():
    result = match_trades(
        [
            trade(1, Action.BUY_TO_OPEN, 2, 1.25, 0, OPT),
            trade(2, Action.OPTIONEXPIRATION, -2, 0.0, 10, OPT),
        ]
    )

    [closed] = result.closed
    assert closed.exitPrice == 0
    assert closed.pnl == -250.0
    assert not result.open_books()


def test_expiration_closes_short_at_zero():
    result = match_trades(
        [
            trade(1, Action.SELL_TO_OPEN, 3, 0.40, 0, OPT),
            trade(2, Action.OPTIONEXPIRATION, 3, 0.0, 10, OPT),
        ]
    )

    [closed] = result.closed
    assert closed.exitPrice == 0
    assert closed.isShort
    assert closed.pnl == pytest.approx(120.0)


def test_expiration_ignores_row_price():
    result = match_trades(
        [
            trade(1, Action.BUY_TO_OPEN, 1, 2.00, 0, OPT),
            trade(2, Action.OPTIONEXPIRATION, -1, 0.01, 10, OPT),
        ]
    )

    [closed] = result.closed
    assert closed.exitPrice == 0
    assert closed.pnl == -200.0


def test_unmatched_close_opens_and_flags():
    result = match_trades([trade(1, Action.SELL_TO_CLOSE, 2, 1.0, 0, OPT)])

    assert result.closed == []
    [flag] = result.flags
    assert flag.tradeId == 1
    assert flag.unmatched == 2
    assert flag.action == "SELL_TO_CLOSE"
    assert result.books[("acct", OPT)].net == -2


def test_plain_sell_without_history_is_not_flagged():
    result = match_trades([trade(1, Action.SELL, 50, 10.0)])
    assert result.flags == []
    assert result.books[("acct", "XYZ")].phantom


def test_fees_reduce_pnl_per_unit():
    result = match_trades(
        [
            trade(1, Action.BUY, 100, 10.0, 0),
            trade(2, Action.SELL, 50, 12.0, 1, fees=-5.0),
        ]
    )

    [closed] = result.closed
    assert closed.pnl == pytest.approx(95.0)


def test_split_scales_lots():
    result = match_trades(
        [
            trade(1, Action.BUY, 100, 40.0, 0),
            trade(2, Action.SPLIT, 300, 0.0, 1),
            trade(3, Action.SELL, 400, 11.0, 2),
        ]
    )

    [closed] = result.closed
    assert closed.quantity == pytest.approx(400)
    assert closed.entryPrice == pytest.approx(10.0)
    assert closed.pnl == pytest.approx(400.0)


def test_reverse_split():
    book = LotBook("acct", "XYZ")
    book.apply(trade(1, Action.BUY, 100, 1.0))
    book.apply(trade(2, Action.SPLIT, -90, 0.0, 1))

    [lot] = book.longLots
    assert lot.remaining == pytest.approx(10)
    assert lot.price == pytest.approx(10.0)


def test_auto_expiry():
    trades = [trade(1, Action.BUY_TO_OPEN, 1, 3.0, 0, OPT)]

    assert match_trades(trades).closed == []

    asOf = datetime.datetime(2024, 4, 1, tzinfo=datetime.timezone.utc)
    result = match_trades(trades, asOf=asOf)
    [closed] = result.closed
    assert closed.pnl == -300.0
    assert closed.closeTradeId is None
    assert closed.closedAt == datetime.datetime(
        2024, 3, 15, 23, 59, 59, tzinfo=datetime.timezone.utc
    )
    assert result.open_books() == []


def test_not_yet_expired():
    asOf = datetime.datetime(2024, 3, 15, 12, tzinfo=datetime.timezone.utc)
    result = match_trades([trade(1, Action.SELL_TO_OPEN, 1, 3.0, 0, OPT)], asOf=asOf)
    assert result.closed == []


def test_partitions_are_independent():
    result = match_trades(
        [
            trade(1, Action.BUY, 10, 10.0, 0, account="a"),
            trade(2, Action.SELL, 10, 11.0, 1, account="b"),
            trade(3, Action.BUY, 10, 10.0, 2, symbol="ABC", account="a"),
        ]
    )

    assert result.closed == []
    assert sorted(result.books) == [("a", "ABC"), ("a", "XYZ"), ("b", "XYZ")]


def test_input_order_does_not_matter():
    trades = [
        trade(1, Action.BUY, 10, 10.0, 0),
        trade(2, Action.BUY, 10, 12.0, 1),
        trade(3, Action.SELL, 15, 13.0, 2),
        trade(4, Action.BUY, 5, 9.0, 3, symbol="ABC"),
        trade(5, Action.SELL, 5, 8.0, 4, symbol="ABC"),
    ]

    shuffled = list(reversed(trades))
    assert match_trades(trades).closed == match_trades(shuffled).closed


def test_closed_between():
    result = match_trades(
        [
            trade(1, Action.BUY, 10, 10.0, 0),
            trade(2, Action.SELL, 5, 11.0, 10),
            trade(3, Action.SELL, 5, 12.0, 20),
        ]
    )

    assert result.realized() == pytest.approx(15.0)
    assert [c.closeTradeId for c in result.closed_between(at(5), at(20))] == [2]
    assert [c.closeTradeId for c in result.closed_between(start=at(20))] == [3]
    assert len(result.closed_between()) == 2


def test_overflow_is_fatal():
    with pytest.raises(NumericOverflowError):
        match_trades(
            [
                trade(1, Action.BUY, 10, 1e308, 0),
                trade(2, Action.SELL, 10, 0.01, 1),
            ]
        )


def test_cash_flow_is_conserved():
    rng = random.Random(7)
    actions = [Action.BUY, Action.SELL, Action.BUY_TO_OPEN, Action.SELL_TO_CLOSE]

    trades = []
    for i in range(300):
        trades.append(
            trade(
                i,
                rng.choice(actions),
                rng.randint(1, 50),
                round(rng.uniform(1, 100), 2),
                i,
                symbol=rng.choice(["XYZ", "ABC"]),
            )
        )

    result = match_trades(trades)

    cash = 0.0
    for t in trades:
        flow = t.price * abs(t.quantity) * t.multiplier
        cash += flow if t.side is Side.SELL else -flow

    held = 0.0
    for book in result.books.values():
        held += sum(lot.price * lot.remaining * lot.multiplier for lot in book.longLots)
        held -= sum(lot.price * lot.remaining * lot.multiplier for lot in book.shortLots)

    assert result.realized() == pytest.approx(cash + held)


def test_rerun_is_identical():
    trades = [
        trade(1, Action.BUY, 10, 10.0, 0),
        trade(2, Action.SELL, 4, 11.0, 1),
        trade(3, Action.SELL, 10, 9.5, 2),
    ]

    first = match_trades(trades)
    second = match_trades(trades)
    assert first.closed == second.closed
    assert [b.lots for b in first.books.values()] == [b.lots for b in second.books.values()]
