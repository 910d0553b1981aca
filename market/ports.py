"""
Replay Application Ports (Interfaces)
-------------------------------------

This file defines the abstract interfaces (Ports) that the replay
core interacts with. This adheres to the Dependency Inversion
Principle (D of SOLID).

The buffer manager, order engine and trend service depend only on
these protocols, not on the concrete HTTP or in-memory data sources.
"""

from typing import Protocol, List, Optional

from .cancellation import CancellationToken
from .domain import Candle


# --- Market Data Port ---

class IMarketDataSource(Protocol):
    """
    Interface for fetching historical bars.
    Every method may return fewer records than requested, or none, and
    never raises for transport failures.
    """

    async def fetch_context(self, symbol: str, timeframe: str, before_time: int, limit: int,
                            token: Optional[CancellationToken] = None) -> List[Candle]:
        """The `limit` bars strictly before `before_time`, oldest -> newest."""
        ...

    async def fetch_future(self, symbol: str, timeframe: str, after_time: int, limit: int,
                           token: Optional[CancellationToken] = None) -> List[Candle]:
        """The `limit` bars strictly after `after_time`, oldest -> newest."""
        ...

    async def fetch_historical(self, symbol: str, timeframe: str, before_time: int, limit: int,
                               token: Optional[CancellationToken] = None) -> List[Candle]:
        """Older bars for backfill. Same contract as `fetch_context`."""
        ...

    async def fetch_first(self, symbol: str, timeframe: Optional[str] = None,
                          token: Optional[CancellationToken] = None) -> Optional[Candle]:
        """The earliest bar available for the symbol."""
        ...

    async def fetch_last(self, symbol: str, timeframe: Optional[str] = None,
                         token: Optional[CancellationToken] = None) -> Optional[Candle]:
        """The newest bar available for the symbol."""
        ...


# --- Currency Port ---

class ICurrencyConverter(Protocol):
    """Converts quote-currency amounts to the account currency."""

    def convert_to_account_currency(self, symbol: str, raw_pnl: float, price: float) -> float:
        ...

    def required_margin(self, symbol: str, lots: float, price: float, leverage: float) -> float:
        ...


# --- Playback Port ---

class IPlaybackControl(Protocol):
    """The part of the simulation clock the order engine may drive."""

    def pause(self) -> None:
        ...
