"""Parse OCC option symbols into their parts.

OCC symbols are a variable-length root (left aligned, optionally space padded to 6 characters)
followed by a fixed 15 character tail:

    AAPL  240119C00150000
    ^root ^YYMMDD^right^strike * 1000 (8 digits)

Anything failing to parse is treated as a plain (stock) symbol by the helpers below.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Final

from cachetools import LRUCache, cached
from lark import Lark, Transformer, v_args
from lark.exceptions import LarkError

lang: Final = r"""
    occ: ROOT DATE right STRIKE

    // root must be followed by a complete OCC tail or the whole symbol is not an option.
    // We allow a leading slash so futures options like /MES210604C04200000 parse too.
    ROOT: /\/?[A-Z][A-Z0-9.]{0,5}(?=\s*\d{6}[CP]\d{8}\s*$)/

    DATE: /\d{6}/
    STRIKE: /\d{8}/

    right: call | put
    call: "C"
    put: "P"

    %ignore " "
"""


@dataclass(slots=True, frozen=True)
class OptionSymbol:
    root: str
    expiration: datetime.date
    right: str
    strike: float

    @property
    def isCall(self) -> bool:
        return self.right == "C"

    @property
    def isPut(self) -> bool:
        return self.right == "P"

    @property
    def optionType(self) -> str:
        return "CALL" if self.isCall else "PUT"

    @property
    def expiresAt(self) -> datetime.datetime:
        """Options stop existing at the end of their expiration day."""
        return datetime.datetime.combine(
            self.expiration, datetime.time(23, 59, 59), datetime.timezone.utc
        )


class TreeToOption(Transformer):
    @v_args(inline=True)
    def occ(self, root, date, right, strike):
        return OptionSymbol(
            root=str(root),
            expiration=datetime.datetime.strptime(str(date), "%y%m%d").date(),
            right=right,
            strike=int(strike) / 1000,
        )

    @v_args(inline=True)
    def right(self, got):
        return got

    def call(self, _):
        return "C"

    def put(self, _):
        return "P"


parser: Final = Lark(lang, start="occ", parser="lalr", transformer=TreeToOption())


@cached(cache=LRUCache(maxsize=8192))
def parse(symbol: str) -> OptionSymbol | None:
    """Return parsed OCC details for `symbol` or None if `symbol` isn't an OCC option symbol."""
    try:
        return parser.parse(symbol.strip().upper())
    except (LarkError, ValueError):
        # ValueError covers impossible dates like 241399 which match the grammar
        return None


def isOption(symbol: str) -> bool:
    return parse(symbol) is not None


def underlying(symbol: str) -> str:
    """Return the option root for OCC symbols or the (trimmed) symbol itself for anything else."""
    if parsed := parse(symbol):
        return parsed.root

    return symbol.strip().upper()


def occEncode(root: str, expiration: datetime.date, right: str, strike: float) -> str:
    """Generate an unpadded OCC symbol like SPY190605C00282000"""
    return f"{root}{expiration:%y%m%d}{right.upper()[0]}{strike * 1000:08.0f}".upper()
