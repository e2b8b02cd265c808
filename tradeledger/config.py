"""Runtime thresholds for validation, matching, detection, and auditing.

Values come from (in increasing priority) the dataclass defaults, a `.env.tradeledger`
file in the working directory, then the process environment. Every field can be set
with `TRADELEDGER_` plus the field name in upper case, e.g. `TRADELEDGER_STALEAFTERDAYS=365`.
"""

from __future__ import annotations

import dataclasses
import datetime
import os
from dataclasses import dataclass

from dotenv import dotenv_values
from loguru import logger

PREFIX = "TRADELEDGER_"


@dataclass(slots=True, frozen=True)
class LedgerConfig:
    # trade validation
    futureTolerance: datetime.timedelta = datetime.timedelta(days=1)
    maxTradeAgeYears: int = 10
    largeQuantityWarning: float = 10_000.0

    # strategy detection
    groupingWindow: datetime.timedelta = datetime.timedelta(minutes=5)
    minConfidence: float = 0.5

    # auditing
    phantomTolerance: float = 0.001
    staleAfterDays: int = 730
    extremeSymbolCount: int = 100
    highSeverityPhantoms: int = 5

    # positions
    includePhantomShorts: bool = False
    quoteCacheSeconds: float = 60.0

    @classmethod
    def fromEnv(cls, envfile: str = ".env.tradeledger") -> LedgerConfig:
        """Build a config from `envfile` and the environment (environment wins)."""
        found = {**dotenv_values(envfile), **os.environ}

        updates = {}
        for f in dataclasses.fields(cls):
            raw = found.get(PREFIX + f.name.upper())
            if raw is None:
                continue

            try:
                updates[f.name] = convert(f.default, raw)
            except ValueError:
                logger.error("Ignoring bad config value {}={!r}", PREFIX + f.name.upper(), raw)

        return cls(**updates)


def convert(default, raw: str):
    """Convert string `raw` into the type of `default`.

    timedeltas are read as a number of seconds."""
    match default:
        case bool():
            lowered = raw.strip().lower()
            if lowered in {"1", "true", "yes", "on"}:
                return True

            if lowered in {"0", "false", "no", "off"}:
                return False

            raise ValueError(raw)
        case datetime.timedelta():
            return datetime.timedelta(seconds=float(raw))
        case int():
            return int(raw)
        case float():
            return float(raw)

    return raw
