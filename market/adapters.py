"""
Market Data Adapters
--------------------

This file contains the concrete implementations (Adapters) of the
`IMarketDataSource` port defined in `ports.py`.

`RestMarketDataSource` translates the replay core's requests
(e.g., `fetch_context`) into PostgREST queries against the candle
table and maps the rows back to `Candle` domain models.
`InMemoryMarketDataSource` serves candles held in memory (custom
uploaded data, tests) with the same contract.

Both rebuild a missing timeframe by resampling the fine fallback series.
"""

import asyncio
import bisect
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import httpx

from .cancellation import CancellationToken, FetchCancelled, is_cancelled
from .connector import MarketDataConnector
from .domain import Candle
from .ports import IMarketDataSource
from .sanitizer import resample_candles, sanitize_candles
from .symbols import FALLBACK_TIMEFRAME, TF_SECONDS, timeframe_seconds

logger = logging.getLogger(__name__)

MAX_FALLBACK_LIMIT = 50000


def fallback_limit(timeframe: str, limit: int) -> int:
    """How many fallback bars are needed to build `limit` bars of `timeframe`."""
    ratio = TF_SECONDS.get(timeframe, 3600) / TF_SECONDS[FALLBACK_TIMEFRAME]
    return min(int(limit * ratio), MAX_FALLBACK_LIMIT)


def to_iso(timestamp: int) -> str:
    """Epoch seconds -> ISO 8601 UTC string for PostgREST filters."""
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).isoformat().replace("+00:00", "Z")


# --- Remote (PostgREST) Adapter ---

class RestMarketDataSource(IMarketDataSource):
    """
    Fetches candles from a PostgREST-style table with columns
    `symbol, tf, time, open, high, low, close, volume`.
    Transport failures are logged and resolve to empty results.
    """

    def __init__(self, connector: MarketDataConnector, fallback_timeframe: str = FALLBACK_TIMEFRAME):
        self._connector = connector
        self._fallback_tf = fallback_timeframe

    async def _get(self, params: Dict[str, str], token: Optional[CancellationToken]) -> Optional[list]:
        """Runs one request bound to `token`. Returns None on failure."""
        if token is not None:
            token.raise_if_cancelled()

        task = asyncio.ensure_future(self._connector.get_rows(params))
        if token is not None:
            token.bind_task(task)
        try:
            rows = await task
        except asyncio.CancelledError:
            if task.cancelled() and is_cancelled(token):
                raise FetchCancelled(token.reason) from None
            raise
        except httpx.HTTPError as e:
            logger.warning(f"Market data request failed ({params.get('symbol')} {params.get('tf')}): {e}")
            return None
        except ValueError as e:
            logger.warning(f"Market data response was not valid JSON: {e}")
            return None

        if token is not None:
            token.raise_if_cancelled()
        return rows

    async def _fetch_raw(self,
                         symbol: str,
                         timeframe: str,
                         operator: str,
                         timestamp: int,
                         limit: int,
                         order: str,
                         token: Optional[CancellationToken]) -> List[Candle]:
        params = {
            "symbol": f"eq.{symbol}",
            "tf": f"eq.{timeframe}",
            "time": f"{operator}.{to_iso(timestamp)}",
            "order": f"time.{order}",
            "limit": str(limit),
        }
        rows = await self._get(params, token)
        if rows is None:
            return []
        return sanitize_candles(rows, symbol)

    async def _fetch_before(self, symbol: str, timeframe: str, before_time: int, limit: int,
                            token: Optional[CancellationToken]) -> List[Candle]:
        candles = await self._fetch_raw(symbol, timeframe, "lt", before_time, limit, "desc", token)
        if candles or timeframe == self._fallback_tf:
            return candles

        base = await self._fetch_raw(symbol, self._fallback_tf, "lt", before_time,
                                     fallback_limit(timeframe, limit), "desc", token)
        if not base:
            return []
        logger.debug(f"Rebuilt {symbol} {timeframe} from {len(base)} {self._fallback_tf} bars")
        return resample_candles(base, timeframe)[-limit:]

    async def fetch_context(self, symbol: str, timeframe: str, before_time: int, limit: int,
                            token: Optional[CancellationToken] = None) -> List[Candle]:
        return await self._fetch_before(symbol, timeframe, before_time, limit, token)

    async def fetch_historical(self, symbol: str, timeframe: str, before_time: int, limit: int,
                               token: Optional[CancellationToken] = None) -> List[Candle]:
        return await self._fetch_before(symbol, timeframe, before_time, limit, token)

    async def fetch_future(self, symbol: str, timeframe: str, after_time: int, limit: int,
                           token: Optional[CancellationToken] = None) -> List[Candle]:
        candles = await self._fetch_raw(symbol, timeframe, "gt", after_time, limit, "asc", token)
        if candles or timeframe == self._fallback_tf:
            return candles

        base = await self._fetch_raw(symbol, self._fallback_tf, "gt", after_time,
                                     fallback_limit(timeframe, limit), "asc", token)
        if not base:
            return []
        resampled = resample_candles(base, timeframe)
        return [c for c in resampled if c.time > after_time][:limit]

    async def _fetch_edge(self, symbol: str, timeframe: Optional[str], order: str,
                          token: Optional[CancellationToken]) -> Optional[Candle]:
        params = {"symbol": f"eq.{symbol}", "order": f"time.{order}", "limit": "1"}
        if timeframe:
            params["tf"] = f"eq.{timeframe}"
        rows = await self._get(params, token)
        if rows is None:
            return None
        candles = sanitize_candles(rows, symbol)
        return candles[0] if candles else None

    async def fetch_first(self, symbol: str, timeframe: Optional[str] = None,
                          token: Optional[CancellationToken] = None) -> Optional[Candle]:
        return await self._fetch_edge(symbol, timeframe, "asc", token)

    async def fetch_last(self, symbol: str, timeframe: Optional[str] = None,
                         token: Optional[CancellationToken] = None) -> Optional[Candle]:
        return await self._fetch_edge(symbol, timeframe, "desc", token)


# --- In-Memory Adapter ---

class InMemoryMarketDataSource(IMarketDataSource):
    """
    Serves candles from memory. A timeframe that was not loaded is built
    by resampling the finest loaded series that is not coarser than it.
    """

    def __init__(self):
        self._series: Dict[Tuple[str, str], List[Candle]] = {}
        self._resampled: Dict[Tuple[str, str], List[Candle]] = {}

    def load(self, symbol: str, timeframe: str, candles: Iterable[Candle]) -> int:
        """Stores an already-clean series. Returns the number of bars held."""
        timeframe_seconds(timeframe)
        by_time = {c.time: c for c in sorted(candles, key=lambda c: c.time)}
        series = [by_time[t] for t in sorted(by_time)]
        self._series[(symbol, timeframe)] = series
        self._resampled = {k: v for k, v in self._resampled.items() if k[0] != symbol}
        logger.info(f"Loaded {len(series)} {symbol} {timeframe} bars into memory")
        return len(series)

    def load_rows(self, symbol: str, timeframe: str, rows: list) -> int:
        """Sanitizes raw records (dicts) and stores them."""
        return self.load(symbol, timeframe, sanitize_candles(rows, symbol))

    def symbols(self) -> List[str]:
        return sorted({s for s, _ in self._series})

    def _resolve(self, symbol: str, timeframe: str) -> List[Candle]:
        key = (symbol, timeframe)
        if key in self._series:
            return self._series[key]
        if key in self._resampled:
            return self._resampled[key]

        target = timeframe_seconds(timeframe)
        sources = sorted(
            (TF_SECONDS[tf], tf) for (s, tf) in self._series
            if s == symbol and TF_SECONDS[tf] <= target
        )
        if not sources:
            return []
        base_tf = sources[0][1]
        resampled = resample_candles(self._series[(symbol, base_tf)], timeframe)
        self._resampled[key] = resampled
        logger.debug(f"Rebuilt {symbol} {timeframe} from {base_tf} ({len(resampled)} bars)")
        return resampled

    async def fetch_context(self, symbol: str, timeframe: str, before_time: int, limit: int,
                            token: Optional[CancellationToken] = None) -> List[Candle]:
        if token is not None:
            token.raise_if_cancelled()
        series = self._resolve(symbol, timeframe)
        end = bisect.bisect_left([c.time for c in series], before_time)
        return list(series[max(0, end - limit):end])

    async def fetch_historical(self, symbol: str, timeframe: str, before_time: int, limit: int,
                               token: Optional[CancellationToken] = None) -> List[Candle]:
        return await self.fetch_context(symbol, timeframe, before_time, limit, token)

    async def fetch_future(self, symbol: str, timeframe: str, after_time: int, limit: int,
                           token: Optional[CancellationToken] = None) -> List[Candle]:
        if token is not None:
            token.raise_if_cancelled()
        series = self._resolve(symbol, timeframe)
        start = bisect.bisect_right([c.time for c in series], after_time)
        return list(series[start:start + limit])

    def _all_for(self, symbol: str, timeframe: Optional[str]) -> List[List[Candle]]:
        if timeframe:
            series = self._resolve(symbol, timeframe)
            return [series] if series else []
        return [v for (s, _), v in self._series.items() if s == symbol and v]

    async def fetch_first(self, symbol: str, timeframe: Optional[str] = None,
                          token: Optional[CancellationToken] = None) -> Optional[Candle]:
        if token is not None:
            token.raise_if_cancelled()
        heads = [series[0] for series in self._all_for(symbol, timeframe)]
        return min(heads, key=lambda c: c.time) if heads else None

    async def fetch_last(self, symbol: str, timeframe: Optional[str] = None,
                         token: Optional[CancellationToken] = None) -> Optional[Candle]:
        if token is not None:
            token.raise_if_cancelled()
        tails = [series[-1] for series in self._all_for(symbol, timeframe)]
        return max(tails, key=lambda c: c.time) if tails else None
