"""
Tests for the simulation clock: stepping, playback with auto-pause,
jumps and cursor stability across buffer changes.
"""
import asyncio

import pytest

from buffer_manager import BufferConfig, CandleBufferManager, LoadStatus
from market import InMemoryMarketDataSource
from simulation_clock import SimulationClock
from tests.conftest import bar_time

CFG = BufferConfig(visible_candles=20, warmup_buffer=10, min_warmup=5, buffer_threshold=3,
                   stream_chunk=5, history_chunk=10)


@pytest.fixture
def clock(source) -> SimulationClock:
    return SimulationClock(CandleBufferManager(source, CFG), speed_ms=5)


async def _wait_until_paused(clock: SimulationClock):
    while clock.is_playing:
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_reload_positions_cursor_and_reports_anchor_time(clock):
    ticks = []
    clock.add_listener(lambda i, t, advanced: ticks.append((i, t, advanced)))

    result = await clock.reload("EURUSD", "M15", bar_time(100))

    assert result.ok
    assert clock.state.current_index == 0
    assert clock.state.max_index == 21
    assert clock.current_sim_time == bar_time(100)
    assert ticks == [(0, bar_time(100), False)]


@pytest.mark.asyncio
async def test_step_reports_bar_close_as_sim_time(clock):
    await clock.reload("EURUSD", "M15", bar_time(100))

    assert clock.step() is True

    assert clock.state.current_index == 1
    assert clock.current_sim_time == bar_time(101) + 900


@pytest.mark.asyncio
async def test_play_advances_and_auto_pauses_at_end(clock):
    await clock.reload("EURUSD", "M15", bar_time(190))
    visited = []
    clock.add_listener(lambda i, t, advanced: visited.append((i, advanced)))

    clock.play()
    assert clock.step() is False
    await asyncio.wait_for(_wait_until_paused(clock), timeout=5)

    assert visited == [(i, True) for i in range(1, 10)]
    assert clock.state.current_index == clock.state.max_index - 1
    assert clock.current_sim_time == bar_time(199) + 900


@pytest.mark.asyncio
async def test_pause_stops_ticking(clock):
    await clock.reload("EURUSD", "M15", bar_time(100))
    clock.set_speed(1000)

    clock.play()
    clock.pause()
    await asyncio.sleep(0.02)

    assert clock.state.current_index == 0
    assert not clock.is_playing


def test_speed_must_be_positive(source):
    with pytest.raises(ValueError):
        SimulationClock(CandleBufferManager(source), speed_ms=0)


@pytest.mark.asyncio
async def test_backfill_keeps_cursor_on_same_bar(clock):
    await clock.reload("EURUSD", "M15", bar_time(100))
    clock.seek(5)
    buffer = clock._buffer
    viewed = buffer.candle_at(5).time

    k = await buffer.load_more_history()

    assert k > 0
    assert clock.state.current_index == 5 + k
    assert buffer.candle_at(clock.state.current_index).time == viewed
    assert clock.state.max_index == len(buffer)


@pytest.mark.asyncio
async def test_streaming_grows_max_index(clock):
    await clock.reload("EURUSD", "M15", bar_time(100))

    clock.seek(18)
    await clock._buffer.settle()

    assert clock.state.max_index == 26


@pytest.mark.asyncio
async def test_jump_requires_a_loaded_symbol(clock):
    with pytest.raises(ValueError):
        await clock.jump_to_date(bar_time(10))


@pytest.mark.asyncio
async def test_jump_to_date_and_first_data(clock):
    await clock.reload("EURUSD", "M15", bar_time(100))

    jumped = await clock.jump_to_date(bar_time(150))
    assert jumped.ok
    assert clock.current_sim_time == bar_time(150)

    first = await clock.jump_to_first_data()
    assert first.ok
    assert clock.current_sim_time == bar_time(0)
    assert clock.state.current_index == 0
    assert not clock.data_error


@pytest.mark.asyncio
async def test_no_data_sets_data_error():
    clock = SimulationClock(CandleBufferManager(InMemoryMarketDataSource(), CFG))

    result = await clock.reload("EURUSD", "M15", bar_time(10))

    assert result.status == LoadStatus.NO_DATA
    assert clock.data_error
    assert clock.current_sim_time is None
    assert (await clock.jump_to_first_data()).status == LoadStatus.NO_DATA


class BlockingSource(InMemoryMarketDataSource):
    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def fetch_context(self, symbol, timeframe, before_time, limit, token=None):
        await self.release.wait()
        return await super().fetch_context(symbol, timeframe, before_time, limit, token)


@pytest.mark.asyncio
async def test_sim_time_is_unavailable_while_reloading(eurusd_m15):
    src = BlockingSource()
    src.load("EURUSD", "M15", eurusd_m15)
    clock = SimulationClock(CandleBufferManager(src, CFG))

    task = asyncio.ensure_future(clock.reload("EURUSD", "M15", bar_time(100)))
    await asyncio.sleep(0)
    assert clock.is_reloading
    assert clock.current_sim_time is None

    src.release.set()
    result = await task

    assert result.ok
    assert not clock.is_reloading
    assert clock.current_sim_time == bar_time(100)


@pytest.mark.asyncio
async def test_newer_reload_wins(eurusd_m15):
    src = BlockingSource()
    src.load("EURUSD", "M15", eurusd_m15)
    clock = SimulationClock(CandleBufferManager(src, CFG))

    stale = asyncio.ensure_future(clock.reload("EURUSD", "M15", bar_time(50)))
    await asyncio.sleep(0)
    fresh = asyncio.ensure_future(clock.reload("EURUSD", "M15", bar_time(120)))
    await asyncio.sleep(0)
    src.release.set()

    stale_result, fresh_result = await asyncio.gather(stale, fresh)

    assert stale_result.status == LoadStatus.CANCELLED
    assert fresh_result.ok
    assert clock.current_sim_time == bar_time(120)
    assert not clock.is_reloading


def test_step_outside_event_loop_keeps_working(source):
    clock = SimulationClock(CandleBufferManager(source, CFG))
    assert asyncio.run(clock.reload("EURUSD", "M15", bar_time(100))).ok

    clock.seek(19)
    assert clock.step() is True

    assert clock.state.current_index == 20
    assert clock.state.max_index == 21
    assert clock.current_sim_time == bar_time(120) + 900
