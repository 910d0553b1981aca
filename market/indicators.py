"""
Technical Indicator Engine
--------------------------

Pure functions computing EMA, RSI (Wilder) and MACD over a candle
sequence with pandas, plus `IndicatorService`, which owns the
indicator configuration, caches results per buffer version and
filters them to what the replay cursor is allowed to see.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .domain import (
    Candle,
    IndicatorConfig,
    IndicatorPoint,
    IndicatorType,
    MacdPoint,
)

logger = logging.getLogger(__name__)

Series = Union[List[IndicatorPoint], List[MacdPoint]]


# --- Pure calculations ---

def _frame(candles: Sequence[Candle]) -> pd.DataFrame:
    return pd.DataFrame(
        {"time": [c.time for c in candles], "close": [c.close for c in candles]},
    )


def _seeded_ema(values: pd.Series, period: int) -> pd.Series:
    """
    EMA seeded with the SMA of the first `period` values.
    The result starts at the `period - 1`th label of `values`.
    """
    if period <= 0:
        raise ValueError(f"EMA period must be positive, got {period}")
    if len(values) < period:
        return pd.Series(dtype=float)
    seeded = values.iloc[period - 1:].astype(float).copy()
    seeded.iloc[0] = values.iloc[:period].mean()
    return seeded.ewm(alpha=2.0 / (period + 1), adjust=False).mean()


def calculate_ema(candles: Sequence[Candle], period: int) -> List[IndicatorPoint]:
    """EMA of closes; the first point is at `candles[period - 1].time`."""
    if period <= 0:
        raise ValueError(f"EMA period must be positive, got {period}")
    if len(candles) < period:
        return []
    df = _frame(candles)
    ema = _seeded_ema(df["close"], period)
    times = df["time"].loc[ema.index]
    return [IndicatorPoint(time=int(t), value=float(v)) for t, v in zip(times, ema)]


def calculate_rsi(candles: Sequence[Candle], period: int = 14) -> List[IndicatorPoint]:
    """
    Wilder RSI. Seeded with the simple average gain/loss of the first
    `period` deltas, so the first value is at `candles[period].time`.
    An average loss of zero yields 100.
    """
    if period <= 0:
        raise ValueError(f"RSI period must be positive, got {period}")
    if len(candles) <= period:
        return []

    df = _frame(candles)
    delta = df["close"].diff()
    gains = delta.clip(lower=0.0)
    losses = (-delta).clip(lower=0.0)

    def wilder(s: pd.Series) -> pd.Series:
        seeded = s.iloc[period:].copy()
        seeded.iloc[0] = s.iloc[1:period + 1].mean()
        return seeded.ewm(alpha=1.0 / period, adjust=False).mean()

    avg_gain = wilder(gains)
    avg_loss = wilder(losses)

    with np.errstate(divide="ignore", invalid="ignore"):
        rs = avg_gain.to_numpy() / avg_loss.to_numpy()
        rsi = np.where(avg_loss.to_numpy() == 0, 100.0, 100.0 - 100.0 / (1.0 + rs))
    rsi = np.clip(rsi, 0.0, 100.0)

    times = df["time"].loc[avg_gain.index]
    return [IndicatorPoint(time=int(t), value=float(v)) for t, v in zip(times, rsi)]


def _macd_line(df: pd.DataFrame, fast: int, slow: int) -> pd.Series:
    return (_seeded_ema(df["close"], fast) - _seeded_ema(df["close"], slow)).dropna()


def calculate_macd_line(candles: Sequence[Candle], fast: int = 12, slow: int = 26) -> List[IndicatorPoint]:
    """EMA(fast) - EMA(slow); the first point is at `candles[max(fast, slow) - 1].time`."""
    if min(fast, slow) <= 0:
        raise ValueError(f"MACD lengths must be positive, got {fast}/{slow}")
    if len(candles) < max(fast, slow):
        return []
    df = _frame(candles)
    line = _macd_line(df, fast, slow)
    times = df["time"].loc[line.index]
    return [IndicatorPoint(time=int(t), value=float(v)) for t, v in zip(times, line)]


def calculate_macd(candles: Sequence[Candle],
                   fast: int = 12,
                   slow: int = 26,
                   signal: int = 9) -> List[MacdPoint]:
    """
    MACD = EMA(fast) - EMA(slow) where both are defined; signal is the
    seeded EMA of the MACD values; histogram = macd - signal.
    Points are emitted only where the signal line exists; `calculate_macd_line`
    gives the MACD values from the first bar where both EMAs are defined.
    """
    if min(fast, slow, signal) <= 0:
        raise ValueError(f"MACD lengths must be positive, got {fast}/{slow}/{signal}")
    if len(candles) < max(fast, slow):
        return []

    df = _frame(candles)
    macd_line = _macd_line(df, fast, slow)
    if len(macd_line) < signal:
        return []

    signal_line = _seeded_ema(macd_line, signal)
    macd_values = macd_line.loc[signal_line.index]
    times = df["time"].loc[signal_line.index]

    points = []
    for t, m, s in zip(times, macd_values, signal_line):
        m, s = float(m), float(s)
        points.append(MacdPoint(time=int(t), macd=m, signal=s, histogram=m - s))
    return points


def compute_indicator(candles: Sequence[Candle], config: IndicatorConfig) -> Series:
    """Dispatches a configured indicator to its calculation."""
    if config.type == IndicatorType.EMA:
        return calculate_ema(candles, config.period)
    if config.type == IndicatorType.RSI:
        return calculate_rsi(candles, config.period)
    if config.type == IndicatorType.MACD:
        return calculate_macd(candles, config.fast, config.slow, config.signal)
    raise ValueError(f"Unsupported indicator type: {config.type}")


def default_indicator_configs() -> List[IndicatorConfig]:
    return [
        IndicatorConfig(id="macd-default", type=IndicatorType.MACD, fast=12, slow=26, signal=9),
        IndicatorConfig(id="rsi-default", type=IndicatorType.RSI, period=14, overbought=70.0, oversold=30.0),
        IndicatorConfig(id="ema-default", type=IndicatorType.EMA, period=14, visible=False),
    ]


# --- Service ---

@dataclass(frozen=True)
class IndicatorInput:
    """The canonical candle sequence an indicator run is computed from."""
    version: int
    warmup: Sequence[Candle]
    visible: Sequence[Candle]


class IndicatorService:
    """
    Holds the indicator configuration and recomputes series whenever the
    buffer version changes. Results handed out are restricted to the
    visible window and to bars at or before the cursor.
    """

    def __init__(self,
                 configs: Optional[List[IndicatorConfig]] = None,
                 exclude_synthetic: bool = False):
        self._configs: List[IndicatorConfig] = list(configs) if configs is not None else default_indicator_configs()
        self._exclude_synthetic = exclude_synthetic
        # config id -> (buffer version, config snapshot, full series)
        self._cache: Dict[str, Tuple[int, IndicatorConfig, Series]] = {}

    # --- Configuration registry ---

    @property
    def configs(self) -> List[IndicatorConfig]:
        return list(self._configs)

    def get(self, indicator_id: str) -> Optional[IndicatorConfig]:
        return next((c for c in self._configs if c.id == indicator_id), None)

    def add(self, config: IndicatorConfig) -> IndicatorConfig:
        if not config.id:
            config = replace(config, id=f"{config.type.value.lower()}-{uuid.uuid4().hex[:6]}")
        if self.get(config.id) is not None:
            raise ValueError(f"Indicator id already exists: {config.id}")
        self._configs.append(config)
        return config

    def remove(self, indicator_id: str) -> bool:
        before = len(self._configs)
        self._configs = [c for c in self._configs if c.id != indicator_id]
        self._cache.pop(indicator_id, None)
        return len(self._configs) < before

    def update(self, indicator_id: str, **changes) -> Optional[IndicatorConfig]:
        for i, c in enumerate(self._configs):
            if c.id == indicator_id:
                updated = replace(c, **changes)
                self._configs[i] = updated
                return updated
        return None

    def toggle(self, indicator_id: str) -> Optional[IndicatorConfig]:
        config = self.get(indicator_id)
        if config is None:
            return None
        return self.update(indicator_id, visible=not config.visible)

    # --- Computation ---

    def _source(self, data: IndicatorInput) -> List[Candle]:
        full = list(data.warmup) + list(data.visible)
        if self._exclude_synthetic:
            full = [c for c in full if not c.synthetic]
        return full

    def _full_series(self, data: IndicatorInput, config: IndicatorConfig) -> Series:
        cached = self._cache.get(config.id)
        if cached is not None and cached[0] == data.version and cached[1] == config:
            return cached[2]
        series = compute_indicator(self._source(data), config)
        self._cache[config.id] = (data.version, replace(config), series)
        logger.debug(f"Recomputed {config.id} for buffer v{data.version}: {len(series)} points")
        return series

    @staticmethod
    def _restrict(series: Series, data: IndicatorInput, cursor_time: Optional[int]) -> Series:
        if not data.visible:
            return []
        start = data.visible[0].time
        end = cursor_time if cursor_time is not None else data.visible[-1].time
        return [p for p in series if start <= p.time <= end]

    def series(self,
               data: IndicatorInput,
               cursor_time: Optional[int],
               visible_only: bool = True) -> Dict[str, Series]:
        """
        Returns {indicator id: points} for each configured indicator,
        filtered to the visible window and to time <= `cursor_time`.
        """
        result: Dict[str, Series] = {}
        for config in self._configs:
            if visible_only and not config.visible:
                continue
            result[config.id] = self._restrict(self._full_series(data, config), data, cursor_time)
        return result

    async def series_async(self,
                           data: IndicatorInput,
                           cursor_time: Optional[int],
                           visible_only: bool = True) -> Dict[str, Series]:
        """Runs the pandas work off the event loop, then fills the cache."""
        pending = [
            c for c in self._configs
            if (not visible_only or c.visible)
            and not (c.id in self._cache and self._cache[c.id][0] == data.version and self._cache[c.id][1] == c)
        ]
        if pending:
            source = self._source(data)
            computed = await asyncio.to_thread(
                lambda: [(c, compute_indicator(source, c)) for c in pending]
            )
            for config, full in computed:
                self._cache[config.id] = (data.version, replace(config), full)
        return self.series(data, cursor_time, visible_only)
