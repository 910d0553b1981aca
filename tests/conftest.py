"""
Pytest configuration and shared fixtures.
"""
from typing import List, Optional, Sequence

import pytest

from market import Candle, InMemoryMarketDataSource

# 2023-11-14 21:00:00 UTC, aligned to every timeframe up to H1
T0 = 1699995600
M15 = 900


def make_candles(count: int,
                 start: int = T0,
                 step_seconds: int = M15,
                 start_price: float = 1.1000,
                 drift: float = 0.0001,
                 closes: Optional[Sequence[float]] = None) -> List[Candle]:
    """Builds a contiguous candle series. Each bar opens at the previous close."""
    if closes is None:
        closes = [start_price + drift * (i + 1) for i in range(count)]
    candles = []
    prev = start_price
    for i, close in enumerate(closes):
        high = max(prev, close) + 0.0002
        low = min(prev, close) - 0.0002
        candles.append(Candle(time=start + i * step_seconds, open=prev, high=high, low=low,
                              close=close, volume=100.0))
        prev = close
    return candles


def bar_time(i: int, start: int = T0, step_seconds: int = M15) -> int:
    return start + i * step_seconds


@pytest.fixture
def eurusd_m15() -> List[Candle]:
    """200 rising EURUSD M15 bars starting at T0."""
    return make_candles(200)


@pytest.fixture
def source(eurusd_m15) -> InMemoryMarketDataSource:
    """An in-memory source holding EURUSD M15 and a shorter GBPUSD M15 series."""
    src = InMemoryMarketDataSource()
    src.load("EURUSD", "M15", eurusd_m15)
    src.load("GBPUSD", "M15", make_candles(120, start_price=1.2500))
    return src
