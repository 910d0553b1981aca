"""
trend_classifier.py

Labels the trend of a candle sequence from its MACD, and builds the
multi-timeframe market-structure panel (D1/H4/H2/M30) for the current
simulated time. Read-only: nothing here feeds back into the order engine.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from market import (
    Candle,
    IMarketDataSource,
    MarketTrend,
    calculate_macd,
)

logger = logging.getLogger(__name__)

MIN_TREND_BARS = 50
STRUCTURE_TIMEFRAMES = ("D1", "H4", "H2", "M30")
STRUCTURE_CONTEXT_BARS = 100
REFRESH_SECONDS = 300


def classify_trend(candles: Sequence[Candle]) -> MarketTrend:
    """
    macd > signal: BULLISH above zero, SIDEWAYS_UP otherwise.
    macd <= signal: BEARISH below zero, SIDEWAYS_DOWN otherwise.
    """
    if len(candles) < MIN_TREND_BARS:
        return MarketTrend.UNKNOWN
    points = calculate_macd(candles)
    if not points:
        return MarketTrend.UNKNOWN
    last = points[-1]
    if last.macd > last.signal:
        return MarketTrend.BULLISH if last.macd > 0 else MarketTrend.SIDEWAYS_UP
    return MarketTrend.BEARISH if last.macd < 0 else MarketTrend.SIDEWAYS_DOWN


# ----------------------------- Data Models ----------------------------------

@dataclass(frozen=True)
class MarketStructure:
    """Trend label per timeframe at a simulated time."""
    symbol: str
    sim_time: int
    trends: Dict[str, MarketTrend] = field(default_factory=dict)


# ----------------------------- Service ----------------------------------

class MarketStructureService:
    """
    Fetches context bars for each structure timeframe concurrently and
    classifies them. Refreshes only when simulated time has moved at
    least `refresh_seconds` since the last refresh, or the symbol changed.
    """

    def __init__(self,
                 source: IMarketDataSource,
                 timeframes: Sequence[str] = STRUCTURE_TIMEFRAMES,
                 context_bars: int = STRUCTURE_CONTEXT_BARS,
                 refresh_seconds: int = REFRESH_SECONDS):
        self._source = source
        self._timeframes: List[str] = list(timeframes)
        self._context_bars = context_bars
        self._refresh_seconds = refresh_seconds
        self._last: Optional[MarketStructure] = None

    @property
    def latest(self) -> Optional[MarketStructure]:
        return self._last

    def needs_refresh(self, symbol: str, sim_time: int) -> bool:
        if self._last is None or self._last.symbol != symbol:
            return True
        return abs(sim_time - self._last.sim_time) >= self._refresh_seconds

    async def refresh(self, symbol: str, sim_time: Optional[int], force: bool = False) -> Optional[MarketStructure]:
        """Returns the (possibly cached) structure for `symbol` at `sim_time`."""
        if sim_time is None:
            return self._last
        if not force and not self.needs_refresh(symbol, sim_time):
            return self._last

        labels = await asyncio.gather(
            *(self._classify_timeframe(symbol, tf, sim_time) for tf in self._timeframes)
        )
        structure = MarketStructure(symbol=symbol, sim_time=sim_time, trends=dict(zip(self._timeframes, labels)))
        self._last = structure
        logger.debug(f"Market structure {symbol} @ {sim_time}: "
                     + ", ".join(f"{tf}={t.value}" for tf, t in structure.trends.items()))
        return structure

    async def _classify_timeframe(self, symbol: str, timeframe: str, sim_time: int) -> MarketTrend:
        try:
            candles = await self._source.fetch_context(symbol, timeframe, sim_time, self._context_bars)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Failed to fetch {symbol} @ {timeframe} for market structure: {e}")
            return MarketTrend.UNKNOWN
        return classify_trend(candles)
