import asyncio
import datetime

import pytest

from tradeledger.errors import RepositoryError
from tradeledger.loader import LedgerLoader, Scope
from tradeledger.pipeline import LedgerPipeline
from tradeledger.store import SqlRepository, TradeRow, scopeName
from tradeledger.strategy import LegType, StrategyType, build_strategy
from tradeledger.trade import Action, Instrument, Trade

T0 = datetime.datetime(2024, 3, 1, 15, tzinfo=datetime.timezone.utc)
NOW = datetime.datetime(2024, 3, 10, tzinfo=datetime.timezone.utc)

C50 = "XYZ240315C00050000"
C55 = "XYZ240315C00055000"


def at(minutes: float) -> datetime.datetime:
    return T0 + datetime.timedelta(minutes=minutes)


def trade(id, action, qty, price, when=0, symbol="XYZ", account="acct", user="u1", **kwargs):
    return Trade(id, account, symbol, action, qty, price, at(when), userId=user, **kwargs)


def history():
    return [
        trade("t1", Action.BUY, 100, 10.0, 0),
        trade("t2", Action.SELL, 60, 12.0, 60, fees=0.6),
        trade("t3", Action.BUY_TO_OPEN, 1, 3.0, 120, symbol=C50),
        trade("t4", Action.SELL_TO_OPEN, 1, 1.0, 120.5, symbol=C55),
    ]


@pytest.fixture
def repo():
    repo = SqlRepository()
    repo.add(*history())
    return repo


def test_trades_round_trip(repo):
    [t1, t2, t3, t4] = sorted(repo.fetchTrades(Scope("u1")), key=lambda t: t.id)

    assert t1 == history()[0]
    assert t1.timestamp.tzinfo is not None
    assert t3.instrument is Instrument.OPTION
    assert t3.multiplier == 100
    assert t4.action is Action.SELL_TO_OPEN


def test_fetch_filters(repo):
    repo.add(trade("other", Action.BUY, 1, 1.0, 0, user="u2", account="acct2"))

    assert {t.id for t in repo.fetchTrades(Scope("u2"))} == {"other"}
    assert repo.fetchTrades(Scope("u1", accountIds=["nope"])) == []

    window = Scope("u1", start=at(60), end=at(120))
    assert [t.id for t in repo.fetchTrades(window)] == ["t2"]


def test_unreadable_rows_are_rejected(repo):
    bad = TradeRow.fromTrade(trade("t9", Action.BUY, 5, 10.0, 180))
    bad.action = "BOGUS"
    negative = TradeRow.fromTrade(trade("t10", Action.BUY, 5, -1.0, 181))

    with repo.Session.begin() as session:
        session.add_all([bad, negative])

    loaded = LedgerLoader(repo).fetch(Scope("u1"), NOW)
    assert [t.id for t in loaded.trades] == ["t1", "t2", "t3", "t4"]
    assert {r.tradeId for r in loaded.rejections} == {"t9", "t10"}

    [unreadable] = [r for r in loaded.rejections if r.tradeId == "t9"]
    assert "BOGUS" in unreadable.reason


def test_strategies_round_trip(repo):
    t3, t4 = history()[2:]
    spread = build_strategy(
        [t3, t4], StrategyType.VERTICAL_SPREAD_BULL_CALL, autoDetected=True, confidence=1.0
    )
    repo.saveStrategies("u1", [spread])

    assert repo.groupedTradeIds("u1") == {"t3", "t4"}
    assert repo.groupedTradeIds("u2") == set()

    [loaded] = repo.fetchStrategies("u1")
    assert loaded == spread
    assert [leg.legType for leg in loaded.legs] == [LegType.LONG_CALL, LegType.SHORT_CALL]

    # saving again replaces instead of duplicating
    repo.saveStrategies("u1", [spread])
    assert len(repo.fetchStrategies("u1")) == 1


def test_save_results(repo):
    scope = Scope("u1")
    result = asyncio.run(LedgerPipeline(repo).recompute(scope, NOW))

    [closed] = repo.closedTrades(scope)
    assert closed.pnl == pytest.approx(119.4)
    assert closed.openTradeId == "t1"
    assert closed.closeTradeId == "t2"

    assert sorted(p.symbol for p in repo.positions(scope)) == ["XYZ", C50, C55]
    assert [s.id for s in repo.fetchStrategies("u1")] == [s.id for s in result.strategies]

    # recomputing replaces the stored rows
    asyncio.run(LedgerPipeline(repo).recompute(scope, NOW))
    assert len(repo.closedTrades(scope)) == 1
    assert len(repo.positions(scope)) == 3


def test_failed_save_writes_nothing(repo):
    scope = Scope("u1")
    pipeline = LedgerPipeline(repo)
    good = pipeline.compute(scope, NOW)
    repo.saveResults(scope, good)

    # a second strategy claiming t3 violates the one-strategy-per-trade constraint
    t1, _, t3, _ = history()
    bad = pipeline.compute(scope, NOW)
    bad.closed = []
    bad.strategies = [*bad.strategies, build_strategy([t1, t3], StrategyType.CUSTOM)]

    with pytest.raises(RepositoryError):
        repo.saveResults(scope, bad)

    assert len(repo.closedTrades(scope)) == 1
    assert len(repo.fetchStrategies("u1")) == 1


def test_scope_names():
    assert scopeName(Scope("u1")) == "u1|*||"
    assert scopeName(Scope("u1", accountIds=["b", "a"])) == "u1|a,b||"
    assert scopeName(Scope("u1", start=T0)) == f"u1|*|{T0.isoformat()}|"
