"""
simulation_clock.py
The replay cursor.

A discrete index over the visible buffer driven by an asyncio tick task.
Exposes play/pause/step/speed controls, jumps to a date or to the first
available data, and reports the current simulated time: the close of
the bar under the cursor (bar open + one bar duration).

Playback and reloads need a running event loop. A step or seek made
outside one still moves the cursor but schedules no forward fetch.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from buffer_manager import (
    BufferChange,
    BufferChangeKind,
    CandleBufferManager,
    LoadResult,
    LoadStatus,
)
from market import SimulationState

logger = logging.getLogger(__name__)

TickListener = Callable[[int, Optional[int], bool], None]


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class SimulationClock:
    """
    Owns `SimulationState`. Listeners receive `(index, sim_time, advanced)`
    after every cursor move and after every completed reload. `advanced` is
    True only when the cursor stepped onto the next bar; seeks and reloads
    report False.
    """

    def __init__(self, buffer: CandleBufferManager, speed_ms: int = 500):
        if speed_ms <= 0:
            raise ValueError(f"speed must be positive, got {speed_ms}")
        self._buffer = buffer
        self._state = SimulationState(is_playing=False, speed=speed_ms, current_index=0, max_index=len(buffer))
        self._task: Optional[asyncio.Task] = None
        self._sim_time: Optional[int] = None
        self._reloading = False
        self._reload_generation = 0
        self.data_error = False
        self._listeners: List[TickListener] = []
        buffer.add_listener(self._on_buffer_change)

    # --- Read access ---

    @property
    def state(self) -> SimulationState:
        return self._state

    @property
    def is_playing(self) -> bool:
        return self._state.is_playing

    @property
    def is_reloading(self) -> bool:
        return self._reloading

    @property
    def current_sim_time(self) -> Optional[int]:
        """None while a reload is in progress."""
        if self._reloading:
            return None
        return self._sim_time

    def add_listener(self, callback: TickListener) -> None:
        self._listeners.append(callback)

    def _emit(self, advanced: bool = False) -> None:
        if self._reloading:
            return
        for cb in list(self._listeners):
            cb(self._state.current_index, self._sim_time, advanced)

    # --- Playback ---

    def play(self) -> None:
        if self._state.is_playing:
            return
        self._state.is_playing = True
        self._task = asyncio.ensure_future(self._run())
        logger.info(f"Playback started at index {self._state.current_index} ({self._state.speed}ms/bar)")

    def pause(self) -> None:
        was_playing = self._state.is_playing
        self._state.is_playing = False
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()
        if was_playing:
            logger.info(f"Playback paused at index {self._state.current_index}")

    def set_speed(self, speed_ms: int) -> None:
        """Takes effect on the next scheduled tick."""
        if speed_ms <= 0:
            raise ValueError(f"speed must be positive, got {speed_ms}")
        self._state.speed = int(speed_ms)

    def step(self) -> bool:
        """Advances one bar. Disabled while playing."""
        if self._state.is_playing:
            return False
        return self._advance()

    async def _run(self) -> None:
        while self._state.is_playing:
            await asyncio.sleep(self._state.speed / 1000)
            if not self._state.is_playing:
                break
            if not self._advance():
                logger.info("Reached the end of the buffer; auto-pausing")
                self.pause()

    def _advance(self) -> bool:
        nxt = self._state.current_index + 1
        if nxt >= self._state.max_index:
            return False
        self._set_index(nxt, advanced=True)
        return True

    def seek(self, index: int) -> None:
        """Moves the cursor to `index` (clamped to the buffer)."""
        if self._state.max_index == 0:
            return
        self._set_index(max(0, min(index, self._state.max_index - 1)))

    def _set_index(self, index: int, advanced: bool = False) -> None:
        self._state.current_index = index
        candle = self._buffer.candle_at(index)
        if candle is not None and not self._reloading:
            self._sim_time = candle.time + self._buffer.bar_seconds
        self._buffer.on_cursor_moved(index)
        self._emit(advanced)

    # --- Buffer sync ---

    def _on_buffer_change(self, change: BufferChange) -> None:
        if change.kind == BufferChangeKind.PREPEND:
            self._state.current_index += change.index_shift
        self._state.max_index = change.length
        if self._state.max_index == 0:
            self._state.current_index = 0
        elif self._state.current_index >= self._state.max_index:
            self._state.current_index = self._state.max_index - 1

    # --- Reloads ---

    async def reload(self,
                     symbol: str,
                     timeframe: str,
                     anchor_time: int,
                     session_start: Optional[int] = None,
                     last_known_price: Optional[float] = None) -> LoadResult:
        """
        Pauses, reloads the buffer around `anchor_time` and resets the
        cursor to the last bar with time <= anchor (or 0).
        """
        self.pause()
        self._reload_generation += 1
        generation = self._reload_generation
        self._reloading = True
        try:
            result = await self._buffer.load(symbol, timeframe, anchor_time, session_start, last_known_price)
        finally:
            if generation == self._reload_generation:
                self._reloading = False

        if result.status == LoadStatus.CANCELLED:
            return result

        self.data_error = result.status == LoadStatus.NO_DATA
        self._state.current_index = result.index
        self._state.max_index = len(self._buffer)
        self._sim_time = result.sim_time
        if result.ok:
            self._emit()
        return result

    async def jump_to_date(self,
                           target_time: int,
                           session_start: Optional[int] = None,
                           last_known_price: Optional[float] = None) -> LoadResult:
        if self._buffer.symbol is None or self._buffer.timeframe is None:
            raise ValueError("Nothing loaded yet; call reload() with a symbol and timeframe first")
        logger.info(f"Jumping to {target_time}")
        return await self.reload(self._buffer.symbol, self._buffer.timeframe, target_time,
                                 session_start, last_known_price)

    async def jump_to_first_data(self) -> LoadResult:
        """Jumps to the earliest bar available for the active symbol."""
        self.pause()
        first = await self._buffer.earliest_available()
        if first is None:
            logger.warning(f"No data available at all for {self._buffer.symbol}")
            self.data_error = True
            return LoadResult(status=LoadStatus.NO_DATA)
        return await self.jump_to_date(first.time, session_start=first.time)

    async def aclose(self) -> None:
        task = self._task
        self.pause()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
