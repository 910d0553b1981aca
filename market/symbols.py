"""
Symbol & Timeframe Reference Data
---------------------------------

Immutable lookup tables for instruments and bar durations.
"""

import logging
from typing import Dict, Optional

from .domain import SymbolSpec

logger = logging.getLogger(__name__)

# Bar duration in seconds. M2 is the finest series held by the data store
# and is used to rebuild coarser timeframes when they are missing.
TF_SECONDS: Dict[str, int] = {
    "M2": 120,
    "M5": 300,
    "M15": 900,
    "M30": 1800,
    "H1": 3600,
    "H2": 7200,
    "H4": 14400,
    "D1": 86400,
}

FALLBACK_TIMEFRAME = "M2"
CUSTOM_SYMBOL = "CUSTOM"

SYMBOL_DIGITS: Dict[str, int] = {
    "AUDUSD": 5,
    "EURAUD": 5,
    "EURJPY": 3,
    "EURUSD": 5,
    "GBPAUD": 5,
    "GBPJPY": 3,
    "GBPUSD": 5,
    "NZDUSD": 5,
    "USDCHF": 5,
    "USDJPY": 3,
    "XAGUSD": 3,
    "XAUUSD": 2,
    CUSTOM_SYMBOL: 5,
}


def timeframe_seconds(timeframe: str) -> int:
    """Returns the bar duration for a timeframe name, e.g. 'H1' -> 3600."""
    try:
        return TF_SECONDS[timeframe]
    except KeyError:
        raise ValueError(f"Unknown timeframe: {timeframe!r}") from None


def contract_size(symbol: str) -> float:
    if symbol == "XAUUSD":
        return 100.0
    if symbol == "XAGUSD":
        return 5000.0
    if len(symbol) == 6 and symbol.isalpha():
        return 100000.0
    return 1.0


def pip_size(symbol: str) -> float:
    if "JPY" in symbol or "XAU" in symbol or "XAG" in symbol:
        return 0.01
    return 0.0001


def price_digits(symbol: str, custom_digits: Optional[int] = None) -> int:
    if symbol == CUSTOM_SYMBOL and custom_digits is not None:
        return custom_digits
    return SYMBOL_DIGITS.get(symbol, 5)


def get_symbol_spec(symbol: str, custom_digits: Optional[int] = None) -> SymbolSpec:
    """Builds the SymbolSpec for a symbol identifier."""
    return SymbolSpec(
        name=symbol,
        contract_size=contract_size(symbol),
        digits=price_digits(symbol, custom_digits),
        pip_size=pip_size(symbol),
    )
