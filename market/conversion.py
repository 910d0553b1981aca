"""
Account-Currency Approximation Layer
------------------------------------

The simulator has no live cross rates. PnL and margin of non-USD-quoted
instruments are approximated with a static table of USD values per unit
of the base currency. This is an approximation, not an FX cross engine;
swap `StaticRateConverter` for another `ICurrencyConverter` to change it.
"""

import logging
from typing import Dict, Mapping, Optional

from .ports import ICurrencyConverter
from .symbols import contract_size

logger = logging.getLogger(__name__)

STATIC_RATES: Dict[str, float] = {
    "EUR": 1.08,
    "GBP": 1.27,
    "AUD": 0.65,
    "NZD": 0.60,
    "CAD": 0.73,
    "CHF": 1.13,
    "USD": 1.0,
}


class StaticRateConverter(ICurrencyConverter):
    """USD account converter backed by `STATIC_RATES`."""

    def __init__(self, rates: Optional[Mapping[str, float]] = None):
        self._rates = dict(rates if rates is not None else STATIC_RATES)

    def base_rate(self, symbol: str) -> float:
        return self._rates.get(symbol[:3], 1.0)

    def convert_to_account_currency(self, symbol: str, raw_pnl: float, price: float) -> float:
        """
        Converts a quote-currency PnL to USD.
        USD-quoted: unchanged. USD-base: divided by price.
        Crosses (e.g. EURJPY): base rate / price.
        """
        if symbol.endswith("USD"):
            return raw_pnl
        if price == 0:
            return 0.0
        return raw_pnl * self.base_rate(symbol) / price

    def required_margin(self, symbol: str, lots: float, price: float, leverage: float) -> float:
        """Margin in USD for `lots` of `symbol` opened at `price`."""
        base_margin = (lots * contract_size(symbol)) / leverage
        if symbol.startswith("USD"):
            return base_margin
        if symbol.endswith("USD"):
            return base_margin * price
        return base_margin * self.base_rate(symbol)
