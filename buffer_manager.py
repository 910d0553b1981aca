"""
buffer_manager.py
Owns the candle buffers of the active symbol and timeframe.

The buffer has a warmup region (bars before the session start, used only
to seed indicators) and a visible region (the replayable bars). This
module loads both around an anchor time, streams newer bars as the
cursor approaches the end, splices older bars in on request and
recovers from missing data by starting at the earliest available bar.

Every fetch carries a CancellationToken. Starting a new load cancels the
previous token, so a superseded request can never commit into the buffer.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from market import (
    Candle,
    CancellationToken,
    FetchCancelled,
    IMarketDataSource,
    FALLBACK_TIMEFRAME,
    timeframe_seconds,
)
from market.indicators import IndicatorInput

logger = logging.getLogger(__name__)


# ----------------------------- Domain Layer (DDD) -----------------------------

@dataclass(frozen=True)
class BufferConfig:
    """Window sizes, in bars."""
    visible_candles: int = 1000
    warmup_buffer: int = 500
    min_warmup: int = 200
    buffer_threshold: int = 50
    stream_chunk: int = 100
    history_chunk: int = 500
    fallback_timeframe: str = FALLBACK_TIMEFRAME


class LoadStatus(str, Enum):
    OK = "OK"
    RECOVERED = "RECOVERED"     # No data at the anchor; started at the earliest bar instead
    NO_DATA = "NO_DATA"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class LoadResult:
    status: LoadStatus
    index: int = 0
    sim_time: Optional[int] = None
    visible_count: int = 0
    warmup_count: int = 0

    @property
    def ok(self) -> bool:
        return self.status in (LoadStatus.OK, LoadStatus.RECOVERED)


class BufferChangeKind(str, Enum):
    LOAD = "LOAD"
    APPEND = "APPEND"
    PREPEND = "PREPEND"
    RESTORE = "RESTORE"     # A partial bar was replaced by its full record
    CLEAR = "CLEAR"


@dataclass(frozen=True)
class BufferChange:
    kind: BufferChangeKind
    version: int
    inserted: int = 0
    index_shift: int = 0
    length: int = 0


def synthesize_warmup(first: Candle, count: int, bar_seconds: int) -> List[Candle]:
    """`count` copies of `first` placed on the bar grid immediately before it, flagged synthetic."""
    return [
        replace(first, time=first.time - (count - i) * bar_seconds, volume=0.0, synthetic=True)
        for i in range(count)
    ]


# -------------------------- Buffer Manager ---------------------------

class CandleBufferManager:
    """
    Warmup + visible candle buffers for one symbol/timeframe at a time.
    `version` increases on every mutation; consumers cache on it.
    """

    def __init__(self, source: IMarketDataSource, config: Optional[BufferConfig] = None):
        self._source = source
        self._cfg = config or BufferConfig()

        self.symbol: Optional[str] = None
        self.timeframe: Optional[str] = None
        self._warmup: List[Candle] = []
        self._visible: List[Candle] = []
        self._version = 0

        self._token: Optional[CancellationToken] = None
        self._tasks: Set[asyncio.Task] = set()
        self._extending = False
        self._loading_history = False
        self._exhausted_tail: Optional[int] = None

        # bar time -> full bar, for a visible bar currently shown as a partial aggregate
        self._partial: Dict[int, Candle] = {}
        self.current_real_time_price: Optional[float] = None

        self._listeners: List[Callable[[BufferChange], None]] = []

    # --- Read access ---

    @property
    def config(self) -> BufferConfig:
        return self._cfg

    @property
    def version(self) -> int:
        return self._version

    @property
    def warmup(self) -> List[Candle]:
        return list(self._warmup)

    @property
    def visible(self) -> List[Candle]:
        return list(self._visible)

    def __len__(self) -> int:
        return len(self._visible)

    def candle_at(self, index: int) -> Optional[Candle]:
        if 0 <= index < len(self._visible):
            return self._visible[index]
        return None

    @property
    def bar_seconds(self) -> int:
        if self.timeframe is None:
            raise ValueError("No timeframe loaded")
        return timeframe_seconds(self.timeframe)

    @property
    def is_loading_history(self) -> bool:
        return self._loading_history

    @property
    def is_extending(self) -> bool:
        return self._extending

    @property
    def is_exhausted(self) -> bool:
        """True once a forward fetch found nothing after the current tail."""
        return bool(self._visible) and self._exhausted_tail == self._visible[-1].time

    def indicator_input(self) -> IndicatorInput:
        return IndicatorInput(version=self._version, warmup=tuple(self._warmup), visible=tuple(self._visible))

    def add_listener(self, callback: Callable[[BufferChange], None]) -> None:
        self._listeners.append(callback)

    def _notify(self, kind: BufferChangeKind, inserted: int = 0, index_shift: int = 0) -> None:
        change = BufferChange(kind=kind, version=self._version, inserted=inserted,
                              index_shift=index_shift, length=len(self._visible))
        for cb in list(self._listeners):
            cb(change)

    # --- Cancellation ---

    def cancel_all(self, reason: str = "cancelled") -> None:
        """Discards every in-flight request."""
        if self._token is not None:
            self._token.cancel(reason)
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        self._tasks.clear()

    def _begin(self, reason: str) -> CancellationToken:
        self.cancel_all(reason)
        self._token = CancellationToken()
        return self._token

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def settle(self) -> None:
        """Waits for in-flight background fetches (streaming) to finish."""
        tasks = list(self._tasks)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def aclose(self) -> None:
        """Cancels background work and waits for it to unwind."""
        tasks = list(self._tasks)
        self.cancel_all("closed")
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # --- Initial load ---

    async def load(self,
                   symbol: str,
                   timeframe: str,
                   anchor_time: int,
                   session_start: Optional[int] = None,
                   last_known_price: Optional[float] = None) -> LoadResult:
        """
        Loads the buffers around `anchor_time`. Bars that open before the bar
        holding `session_start` (defaults to the anchor) form the warmup region.
        Returns LoadStatus.NO_DATA when nothing is left to replay.
        A call superseded by a newer load returns LoadStatus.CANCELLED
        without touching the buffer.
        """
        bar_seconds = timeframe_seconds(timeframe)
        token = self._begin(f"superseded by load {symbol} {timeframe} @ {anchor_time}")
        try:
            return await self._load(token, symbol, timeframe, bar_seconds, anchor_time,
                                    anchor_time if session_start is None else session_start,
                                    last_known_price)
        except FetchCancelled as e:
            logger.debug(f"Load of {symbol} {timeframe} discarded: {e}")
            return LoadResult(status=LoadStatus.CANCELLED)

    async def _load(self,
                    token: CancellationToken,
                    symbol: str,
                    timeframe: str,
                    bar_seconds: int,
                    anchor: int,
                    session_start: int,
                    last_known_price: Optional[float]) -> LoadResult:
        cfg = self._cfg
        aligned = (anchor // bar_seconds) * bar_seconds
        start_bar = (session_start // bar_seconds) * bar_seconds

        context, future = await asyncio.gather(
            self._source.fetch_context(symbol, timeframe, aligned + bar_seconds,
                                       cfg.visible_candles + cfg.warmup_buffer, token),
            self._source.fetch_future(symbol, timeframe, aligned, cfg.visible_candles, token),
        )
        token.raise_if_cancelled()

        if not context and not future:
            return await self._recover_from_first(token, symbol, timeframe, bar_seconds)

        warmup = [c for c in context if c.time < start_bar]
        if len(warmup) < cfg.min_warmup:
            first = context[0] if context else future[0]
            warmup = synthesize_warmup(first, cfg.min_warmup - len(warmup), bar_seconds) + warmup

        by_time: Dict[int, Candle] = {c.time: c for c in context if c.time >= start_bar}
        for c in future:
            by_time[c.time] = c
        visible = [by_time[t] for t in sorted(by_time)]
        if not visible:
            logger.warning(f"No {symbol} {timeframe} bars left to replay from {anchor}; "
                           f"the latest bar is {context[-1].time}")
            self._commit(symbol, timeframe, [], [], {})
            self.current_real_time_price = None
            return LoadResult(status=LoadStatus.NO_DATA)

        index = 0
        for i in range(len(visible) - 1, -1, -1):
            if visible[i].time <= anchor:
                index = i
                break

        partial: Dict[int, Candle] = {}
        real_time_price = visible[index].close
        active = visible[index]
        if active.time <= anchor < active.time + bar_seconds:
            rebuilt = await self._partial_bar(token, symbol, timeframe, active, anchor, last_known_price)
            partial[active.time] = active
            visible[index] = rebuilt
            real_time_price = rebuilt.close

        token.raise_if_cancelled()
        self._commit(symbol, timeframe, warmup, visible, partial)
        self.current_real_time_price = real_time_price

        logger.info(
            f"Loaded {symbol} {timeframe} @ {anchor}: {len(visible)} visible, "
            f"{len(warmup)} warmup ({sum(1 for c in warmup if c.synthetic)} synthetic), index {index}"
        )
        return LoadResult(status=LoadStatus.OK, index=index, sim_time=anchor,
                          visible_count=len(visible), warmup_count=len(warmup))

    async def _partial_bar(self,
                           token: CancellationToken,
                           symbol: str,
                           timeframe: str,
                           bar: Candle,
                           anchor: int,
                           last_known_price: Optional[float]) -> Candle:
        """
        The bar as it looked at `anchor`: finer bars that closed by then are
        re-aggregated. Without finer data the bar collapses to open -> last price.
        """
        fine_tf = self._cfg.fallback_timeframe
        fine_seconds = timeframe_seconds(fine_tf)
        span = timeframe_seconds(timeframe)

        fine: List[Candle] = []
        if fine_seconds < span:
            fetched = await self._source.fetch_future(symbol, fine_tf, bar.time - 1,
                                                      span // fine_seconds + 1, token)
            token.raise_if_cancelled()
            fine = [c for c in fetched if bar.time <= c.time and c.time + fine_seconds <= anchor]

        if fine:
            close = fine[-1].close
            return replace(
                bar,
                high=max([bar.open] + [c.high for c in fine]),
                low=min([bar.open] + [c.low for c in fine]),
                close=close,
                volume=sum(c.volume for c in fine),
            )

        close = last_known_price if last_known_price else bar.open
        return replace(bar, high=max(bar.open, close), low=min(bar.open, close), close=close, volume=0.0)

    async def _recover_from_first(self,
                                  token: CancellationToken,
                                  symbol: str,
                                  timeframe: str,
                                  bar_seconds: int) -> LoadResult:
        logger.warning(f"No {symbol} {timeframe} data around the anchor; looking for the earliest bar")
        first = await self._source.fetch_first(symbol, None, token)
        token.raise_if_cancelled()
        future: List[Candle] = []
        if first is not None:
            future = await self._source.fetch_future(symbol, timeframe, first.time - 1,
                                                     self._cfg.visible_candles, token)
            token.raise_if_cancelled()

        if not future:
            logger.warning(f"No data available for {symbol} {timeframe}")
            self._commit(symbol, timeframe, [], [], {})
            self.current_real_time_price = None
            return LoadResult(status=LoadStatus.NO_DATA)

        warmup = synthesize_warmup(future[0], self._cfg.min_warmup, bar_seconds)
        self._commit(symbol, timeframe, warmup, future, {})
        self.current_real_time_price = future[0].close
        logger.info(f"Recovered {symbol} {timeframe} from the earliest bar @ {future[0].time}")
        return LoadResult(status=LoadStatus.RECOVERED, index=0, sim_time=future[0].time + bar_seconds,
                          visible_count=len(future), warmup_count=len(warmup))

    def _commit(self,
                symbol: str,
                timeframe: str,
                warmup: List[Candle],
                visible: List[Candle],
                partial: Dict[int, Candle]) -> None:
        self.symbol = symbol
        self.timeframe = timeframe
        self._warmup = warmup
        self._visible = visible
        self._partial = partial
        self._exhausted_tail = None
        self._version += 1
        self._notify(BufferChangeKind.LOAD if visible else BufferChangeKind.CLEAR)

    async def earliest_available(self, symbol: Optional[str] = None) -> Optional[Candle]:
        """The earliest bar of the active timeframe, else of any timeframe."""
        symbol = symbol or self.symbol
        if symbol is None:
            return None
        token = self._token or CancellationToken()
        try:
            first = None
            if self.timeframe is not None:
                first = await self._source.fetch_first(symbol, self.timeframe, token)
            if first is None:
                first = await self._source.fetch_first(symbol, None, token)
            token.raise_if_cancelled()
            return first
        except FetchCancelled:
            return None

    # --- Cursor hooks ---

    def on_cursor_moved(self, index: int) -> None:
        """
        Restores partial bars behind the cursor and schedules a forward
        fetch once fewer than `buffer_threshold` bars remain ahead.
        The fetch is only scheduled from inside a running event loop.
        """
        if self._partial:
            self._restore_partials_before(index)
        if self._needs_extension(index):
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                logger.warning(f"No running event loop; forward fetch at index {index} not scheduled")
                return
            self._spawn(self.extend_future(index))

    def _restore_partials_before(self, index: int) -> None:
        restored = 0
        for i, candle in enumerate(self._visible[:index]):
            full = self._partial.pop(candle.time, None)
            if full is not None:
                self._visible[i] = full
                restored += 1
        if restored:
            self._version += 1
            self._notify(BufferChangeKind.RESTORE)

    def tradable_price(self, index: int) -> Optional[float]:
        """Close of the bar at `index`; the partial close when it is still forming."""
        candle = self.candle_at(index)
        if candle is None:
            return self.current_real_time_price
        return candle.close

    def _needs_extension(self, index: int) -> bool:
        if not self._visible or self._extending or self._token is None:
            return False
        if len(self._visible) - 1 - index >= self._cfg.buffer_threshold:
            return False
        return self._exhausted_tail != self._visible[-1].time

    # --- Forward streaming ---

    async def extend_future(self, index: int) -> int:
        """Appends up to `stream_chunk` bars newer than the tail. Returns the count appended."""
        if not self._needs_extension(index):
            return 0
        token = self._token
        tail = self._visible[-1].time
        self._extending = True
        try:
            more = await self._source.fetch_future(self.symbol, self.timeframe, tail,
                                                   self._cfg.stream_chunk, token)
            token.raise_if_cancelled()
            newest = self._visible[-1].time
            fresh = [c for c in more if c.time > newest]
            if not fresh:
                self._exhausted_tail = newest
                logger.debug(f"No bars after {newest} for {self.symbol} {self.timeframe}")
                return 0
            self._visible.extend(fresh)
            self._version += 1
            logger.debug(f"Streamed {len(fresh)} bars; buffer now {len(self._visible)}")
            self._notify(BufferChangeKind.APPEND, inserted=len(fresh))
            return len(fresh)
        except FetchCancelled:
            return 0
        finally:
            self._extending = False

    # --- Backfill ---

    async def load_more_history(self) -> int:
        """
        Splices older bars in front of the visible region. Returns `k`, the
        number of bars inserted before the current first visible bar; the
        cursor must shift by `k` to stay on the same bar.
        """
        if self._loading_history or not self._visible or self._token is None:
            return 0
        token = self._token
        cfg = self._cfg
        real_warmup = [c for c in self._warmup if not c.synthetic]
        oldest = real_warmup[0].time if real_warmup else self._visible[0].time

        self._loading_history = True
        try:
            raw = await self._source.fetch_historical(self.symbol, self.timeframe, oldest,
                                                      cfg.history_chunk + cfg.warmup_buffer, token)
            token.raise_if_cancelled()
            raw = [c for c in raw if c.time < oldest]
            if not raw:
                logger.info(f"No history before {oldest} for {self.symbol} {self.timeframe}")
                return 0

            if len(raw) > cfg.warmup_buffer:
                new_warmup = raw[:cfg.warmup_buffer]
                inserted = raw[cfg.warmup_buffer:] + real_warmup
            else:
                new_warmup = synthesize_warmup(raw[0], cfg.min_warmup, self.bar_seconds)
                inserted = raw + real_warmup

            self._warmup = new_warmup
            self._visible = inserted + self._visible
            self._version += 1
            k = len(inserted)
            logger.info(f"Backfilled {k} bars for {self.symbol} {self.timeframe}; buffer now {len(self._visible)}")
            self._notify(BufferChangeKind.PREPEND, inserted=k, index_shift=k)
            return k
        except FetchCancelled:
            return 0
        finally:
            self._loading_history = False
