"""
Candle Sanitizer
----------------

Normalizes raw bar records from any upstream source into a canonical
OHLCV sequence: parsed epoch-second times, float prices, no invalid
rows, sorted ascending and unique per timestamp.

Also hosts the resampler used to rebuild a coarse timeframe from the
fine fallback series.
"""

import logging
import math
from typing import Any, Iterable, List, Optional

import numpy as np
import pandas as pd

from .domain import Candle
from .symbols import timeframe_seconds

logger = logging.getLogger(__name__)

PRICE_COLUMNS = ["open", "high", "low", "close"]

# Symbols whose stored prices are sometimes off by a power of ten:
# symbol -> (close below which the row is mis-scaled, multiplier)
SCALE_FIXES = {
    "XAUUSD": (500.0, 100.0),
    "XAGUSD": (5.0, 10.0),
}


def _parse_time(value: Any) -> Optional[float]:
    """Parses an ISO string (naive means UTC) or a numeric epoch-seconds value."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            ts = pd.Timestamp(value.replace(" ", "T", 1))
        except ValueError:
            return None
        if ts is pd.NaT:
            return None
        if ts.tzinfo is None:
            ts = ts.tz_localize("UTC")
        return float(math.floor(ts.timestamp()))
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def sanitize_candles(data: Any, symbol: Optional[str] = None) -> List[Candle]:
    """
    Cleans a list of raw records (dicts with time/open/high/low/close/volume).
    Rows with an unparseable time, a NaN price, or close <= 0 are dropped.
    Duplicated timestamps keep the first occurrence.
    """
    if not isinstance(data, list):
        logger.warning(f"Received non-list candle payload: {type(data).__name__}")
        return []
    if not data:
        return []

    df = pd.DataFrame([row for row in data if isinstance(row, dict)])
    if df.empty:
        return []
    df = df.reindex(columns=["time"] + PRICE_COLUMNS + ["volume"])

    df["time"] = pd.to_numeric(df["time"].map(_parse_time), errors="coerce")
    for col in PRICE_COLUMNS:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df["volume"] = pd.to_numeric(df["volume"], errors="coerce").fillna(0.0)

    if symbol in SCALE_FIXES:
        threshold, factor = SCALE_FIXES[symbol]
        mis_scaled = df["close"] < threshold
        df.loc[mis_scaled, PRICE_COLUMNS] = df.loc[mis_scaled, PRICE_COLUMNS] * factor

    df = df.dropna(subset=["time"] + PRICE_COLUMNS)
    df = df[np.isfinite(df["time"]) & (df["close"] > 0)]
    if df.empty:
        return []

    df["time"] = df["time"].astype(np.int64)
    df = df.sort_values("time", kind="mergesort").drop_duplicates(subset="time", keep="first")

    return [
        Candle(
            time=int(r.time),
            open=float(r.open),
            high=float(r.high),
            low=float(r.low),
            close=float(r.close),
            volume=float(r.volume),
        )
        for r in df.itertuples(index=False)
    ]


def resample_candles(candles: Iterable[Candle], timeframe: str) -> List[Candle]:
    """
    Aggregates bars into `timeframe` buckets (floor(time / period) * period).
    open = first, high = max, low = min, close = last, volume = sum.
    """
    period = timeframe_seconds(timeframe)
    candles = list(candles)
    if not candles:
        return []

    df = pd.DataFrame(
        [(c.time, c.open, c.high, c.low, c.close, c.volume) for c in candles],
        columns=["time"] + PRICE_COLUMNS + ["volume"],
    ).sort_values("time", kind="mergesort")
    df["bucket"] = (df["time"] // period) * period

    agg = df.groupby("bucket", sort=True).agg(
        open=("open", "first"),
        high=("high", "max"),
        low=("low", "min"),
        close=("close", "last"),
        volume=("volume", "sum"),
    )

    return [
        Candle(
            time=int(bucket),
            open=float(r.open),
            high=float(r.high),
            low=float(r.low),
            close=float(r.close),
            volume=float(r.volume),
        )
        for bucket, r in zip(agg.index, agg.itertuples(index=False))
    ]
