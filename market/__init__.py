"""
Market Infrastructure Package
=============================

Candle data access, symbol rules, indicators and the domain models of
the replay simulator.

It is structured using Domain-Driven Design (DDD) and Ports & Adapters
principles so the replay core never depends on where candles come from.

Package Structure:
------------------
- domain.py:        Pure data classes (candles, trades, account, snapshots).
- symbols.py:       Timeframe durations and per-symbol contract/price rules.
- ports.py:         Abstract interfaces (Ports) for data, conversion, playback.
- cancellation.py:  Cancellation tokens carried by every fetch.
- sanitizer.py:     Raw row cleaning and timeframe resampling (pandas).
- connector.py:     Manages the HTTP client lifecycle of the data API.
- adapters.py:      REST and in-memory implementations of IMarketDataSource.
- conversion.py:    Static-rate currency conversion and margin.
- indicators.py:    EMA / RSI / MACD calculation and the indicator service.
- utils.py:         Rounding and position sizing helpers.

Public API:
-----------
This __init__.py file acts as a Facade, re-exporting the key public
components, e.g. `from market import Candle, IMarketDataSource`.
"""

import logging

# Set up a default null handler to avoid "No handler found" warnings
# if the consuming application doesn't configure logging.
logging.getLogger(__name__).addHandler(logging.NullHandler())

# Export Domain Models
from .domain import (
    OrderSide,
    OrderType,
    OrderStatus,
    MarketTrend,
    Candle,
    SymbolSpec,
    TradeJournal,
    Trade,
    AccountState,
    SimulationState,
    MarketSnapshot,
    OrderResult,
    StopOutEvent,
    IndicatorType,
    IndicatorConfig,
    IndicatorPoint,
    MacdPoint,
)

# Export Symbol Rules
from .symbols import (
    TF_SECONDS,
    FALLBACK_TIMEFRAME,
    CUSTOM_SYMBOL,
    timeframe_seconds,
    contract_size,
    pip_size,
    price_digits,
    get_symbol_spec,
)

# Export Ports (Interfaces)
from .ports import (
    IMarketDataSource,
    ICurrencyConverter,
    IPlaybackControl,
)

from .cancellation import CancellationToken, FetchCancelled, is_cancelled

from .sanitizer import sanitize_candles, resample_candles

# Export Connection Manager
from .connector import MarketDataConnector

# Export Adapters (Concrete Implementations)
from .adapters import (
    RestMarketDataSource,
    InMemoryMarketDataSource,
)

from .conversion import StaticRateConverter

# Export Indicator Functions
from .indicators import (
    calculate_ema,
    calculate_rsi,
    calculate_macd,
    calculate_macd_line,
)

# Export Utilities
from .utils import (
    round_to_step,
    round_price,
    pip_distance,
    calculate_position_size,
)


__all__ = [
    # Domain
    "OrderSide",
    "OrderType",
    "OrderStatus",
    "MarketTrend",
    "Candle",
    "SymbolSpec",
    "TradeJournal",
    "Trade",
    "AccountState",
    "SimulationState",
    "MarketSnapshot",
    "OrderResult",
    "StopOutEvent",
    "IndicatorType",
    "IndicatorConfig",
    "IndicatorPoint",
    "MacdPoint",

    # Symbols
    "TF_SECONDS",
    "FALLBACK_TIMEFRAME",
    "CUSTOM_SYMBOL",
    "timeframe_seconds",
    "contract_size",
    "pip_size",
    "price_digits",
    "get_symbol_spec",

    # Ports
    "IMarketDataSource",
    "ICurrencyConverter",
    "IPlaybackControl",

    # Cancellation
    "CancellationToken",
    "FetchCancelled",
    "is_cancelled",

    # Infrastructure & Services
    "sanitize_candles",
    "resample_candles",
    "MarketDataConnector",
    "RestMarketDataSource",
    "InMemoryMarketDataSource",
    "StaticRateConverter",
    "calculate_ema",
    "calculate_rsi",
    "calculate_macd",
    "calculate_macd_line",

    # Utilities
    "round_to_step",
    "round_price",
    "pip_distance",
    "calculate_position_size",
]
