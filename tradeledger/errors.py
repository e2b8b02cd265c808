"""Exceptions raised by the ledger.

Per-trade problems never raise: rejected trades become `loader.Rejection` records and
unmatched closes become `lots.MatchFlag` records. Everything raised from here is either
a caller mistake (bad action string, bad manual strategy request) or a scope-fatal
condition where no partial result may be returned.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base for everything tradeledger raises on purpose."""


class UnrecognizedActionError(LedgerError, ValueError):
    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Unrecognized trade action: {action!r}")


class StrategyError(LedgerError, ValueError):
    """A manual strategy request can't be satisfied (too few legs, mixed accounts, ...)"""


class ScopeFatalError(LedgerError):
    """The whole scope must be abandoned. Nothing computed for the scope is kept."""


class LoaderError(ScopeFatalError):
    def __init__(self, scope, cause: BaseException):
        self.scope = scope
        self.cause = cause
        super().__init__(f"Failed loading trades for {scope}: {cause}")


class NumericOverflowError(ScopeFatalError):
    def __init__(self, what: str, value: float):
        self.value = value
        super().__init__(f"Non-finite currency value while computing {what}: {value}")


class CyclicGroupError(ScopeFatalError):
    """A trade is referenced by more than one strategy leg."""

    def __init__(self, tradeId, strategyIds):
        self.tradeId = tradeId
        self.strategyIds = tuple(strategyIds)
        super().__init__(
            f"Trade {tradeId} is referenced by multiple strategy legs: {', '.join(map(str, self.strategyIds))}"
        )


class RepositoryError(ScopeFatalError):
    """Persisting results failed. The transaction was rolled back so nothing was written."""
