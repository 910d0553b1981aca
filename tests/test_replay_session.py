"""
Tests for the replay session: profile start/resume, ticks reaching the
order engine, symbol/timeframe switches and the end-date pause.
"""
import asyncio

import pytest

import replay_session
from buffer_manager import BufferConfig
from market import Candle, InMemoryMarketDataSource, OrderSide, OrderStatus, OrderType
from persistence import SQLiteProfileRepository, TraderProfile
from replay_session import ReplaySession
from tests.conftest import T0, bar_time

CFG = BufferConfig(visible_candles=20, warmup_buffer=10, min_warmup=5, buffer_threshold=3,
                   stream_chunk=5, history_chunk=10)


def make_profile(end_date: int = 0) -> TraderProfile:
    return TraderProfile.new("tester", "EURUSD", "M15", start_date=bar_time(100), end_date=end_date,
                             initial_balance=10000.0)


@pytest.fixture
def repository(tmp_path) -> SQLiteProfileRepository:
    return SQLiteProfileRepository(db_path=str(tmp_path / "profiles.db"))


@pytest.fixture
def session(source, repository) -> ReplaySession:
    return ReplaySession(source, repository=repository, buffer_config=CFG, speed_ms=5)


async def _wait_until_paused(session: ReplaySession):
    while session.clock.is_playing:
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_start_opens_at_session_start_with_forming_bar(session, eurusd_m15):
    result = await session.start(make_profile())

    assert result.ok
    assert session.symbol == "EURUSD"
    assert session.current_sim_time == bar_time(100)
    assert session.clock.state.current_index == 0
    assert session.trading_price == pytest.approx(eurusd_m15[100].open)
    assert not session.data_error
    await session.close()


@pytest.mark.asyncio
async def test_step_marks_open_trade_to_market(session, eurusd_m15):
    profile = make_profile()
    await session.start(profile)
    trade_id = session.engine.place_order(OrderSide.LONG, OrderType.MARKET, 0, 0, 0, 0.1).trade_id

    assert session.clock.step()

    trade = session.engine.find(trade_id)
    expected = (eurusd_m15[101].close - eurusd_m15[100].open) * 0.1 * 100000
    assert trade.pnl == pytest.approx(expected)
    assert session.engine.account.equity == pytest.approx(10000.0 + expected)
    assert profile.current_sim_time == bar_time(101) + 900
    await session.close()


@pytest.mark.asyncio
async def test_save_and_resume_at_saved_time(source, session, repository):
    profile = make_profile()
    await session.start(profile)
    trade_id = session.engine.place_order(OrderSide.LONG, OrderType.MARKET, 0, 0, 0, 0.1).trade_id
    session.clock.step()
    session.engine.close_order(trade_id)
    await session.save()
    await session.close()

    stored = await repository.get(profile.id)
    assert stored.current_sim_time == bar_time(101) + 900
    assert stored.account.history[0].status == OrderStatus.CLOSED
    assert stored.account.balance == pytest.approx(session.engine.account.balance)

    resumed = ReplaySession(source, repository=repository, buffer_config=CFG, speed_ms=5)
    result = await resumed.start(stored)

    assert result.ok
    assert resumed.current_sim_time == bar_time(102)
    assert resumed.buffer.candle_at(resumed.clock.state.current_index).time == bar_time(102)
    assert resumed.buffer.visible[0].time == bar_time(100)
    assert resumed.metrics().total_trades == 1
    await resumed.close()


@pytest.mark.asyncio
async def test_time_played_counts_while_session_is_open(session, monkeypatch):
    monkeypatch.setattr(replay_session, "TIME_PLAYED_INTERVAL", 0.01)
    profile = make_profile()
    await session.start(profile)

    await asyncio.sleep(0.1)
    await session.close()
    counted = profile.time_played
    await asyncio.sleep(0.05)

    assert counted >= 2
    assert profile.time_played == counted


@pytest.mark.asyncio
async def test_change_timeframe_reloads_at_current_time(session):
    profile = make_profile()
    await session.start(profile)
    price = session.trading_price

    result = await session.change_timeframe("H1")

    assert result.ok
    assert profile.active_timeframe == "H1"
    assert session.buffer.bar_seconds == 3600
    assert session.current_sim_time == bar_time(100)
    assert session.trading_price == pytest.approx(price)

    with pytest.raises(ValueError):
        await session.change_timeframe("W1")
    await session.close()


@pytest.mark.asyncio
async def test_change_symbol_tracks_selected_symbols(session):
    profile = make_profile()
    await session.start(profile)

    result = await session.change_symbol("GBPUSD")

    assert result.ok
    assert session.symbol == "GBPUSD"
    assert profile.selected_symbols == ["EURUSD", "GBPUSD"]
    assert session.trading_price == pytest.approx(1.25, abs=0.05)
    await session.close()


@pytest.mark.asyncio
async def test_playback_pauses_at_end_date(session):
    end = bar_time(105) + 900
    profile = make_profile(end_date=end)
    await session.start(profile)

    session.clock.play()
    await asyncio.wait_for(_wait_until_paused(session), timeout=5)

    assert session.current_sim_time == end
    assert profile.current_sim_time == end
    assert session.is_finished
    await session.close()


@pytest.mark.asyncio
async def test_operations_without_profile(source):
    session = ReplaySession(source, buffer_config=CFG)

    assert session.is_finished
    assert session.symbol is None
    assert await session.save() is None
    with pytest.raises(ValueError):
        await session.jump_to_first_data()
    await session.close()


@pytest.mark.asyncio
async def test_indicator_series_stop_at_the_cursor(session):
    await session.start(make_profile())
    for _ in range(3):
        session.clock.step()

    series = session.indicator_series()
    offloaded = await session.indicator_series_async()

    assert set(series) == {"macd-default", "rsi-default"}
    assert [p.time for p in series["rsi-default"]] == [bar_time(i) for i in range(100, 104)]
    assert series["macd-default"] == []
    assert offloaded == series
    assert "ema-default" in session.indicator_series(visible_only=False)
    await session.close()


@pytest.mark.asyncio
async def test_market_structure_on_demand(session):
    await session.start(make_profile())

    structure = await session.market_structure(force=True)

    assert structure.symbol == "EURUSD"
    assert list(structure.trends) == ["D1", "H4", "H2", "M30"]
    await session.close()


def dip_then_hold_m2(count: int = 300):
    """EURUSD M2 bars dipping to 1.0950 in the first ten minutes, then flat at 1.1050."""
    candles = []
    for i in range(count):
        t = T0 + i * 120
        if i < 5:
            candles.append(Candle(time=t, open=1.1000, high=1.1000, low=1.0950, close=1.1000, volume=10.0))
        else:
            candles.append(Candle(time=t, open=1.1050, high=1.1050, low=1.1050, close=1.1050, volume=10.0))
    return candles


@pytest.mark.asyncio
async def test_timeframe_switch_does_not_replay_earlier_prices(repository):
    src = InMemoryMarketDataSource()
    src.load("EURUSD", "M2", dip_then_hold_m2())
    session = ReplaySession(src, repository=repository, buffer_config=CFG, speed_ms=5)
    profile = TraderProfile.new("tester", "EURUSD", "M15", start_date=T0 + 1800, end_date=0,
                                initial_balance=10000.0)
    await session.start(profile)
    assert session.trading_price == pytest.approx(1.1050)

    trade_id = session.engine.place_order(OrderSide.LONG, OrderType.MARKET, 0, 1.1000, 0, 0.1).trade_id
    pending_id = session.engine.place_order(OrderSide.LONG, OrderType.LIMIT, 1.0960, 0, 0, 0.1).trade_id

    result = await session.change_timeframe("H1")

    assert result.ok
    assert session.buffer.candle_at(session.clock.state.current_index).low == pytest.approx(1.0950)
    trade = session.engine.find(trade_id)
    assert trade.status == OrderStatus.OPEN
    assert trade.pnl == pytest.approx(0.0)
    assert session.engine.find(pending_id).status == OrderStatus.PENDING
    assert session.engine.account.balance == pytest.approx(10000.0)

    assert session.clock.step()
    assert session.engine.find(trade_id).status == OrderStatus.OPEN
    assert session.engine.find(pending_id).status == OrderStatus.PENDING
    await session.close()


@pytest.mark.asyncio
async def test_change_symbol_freezes_open_trade(session, eurusd_m15):
    await session.start(make_profile())
    trade_id = session.engine.place_order(OrderSide.LONG, OrderType.MARKET, 0, 0, 0, 0.1).trade_id
    session.clock.step()
    frozen = session.engine.find(trade_id).pnl
    assert frozen == pytest.approx((eurusd_m15[101].close - eurusd_m15[100].open) * 0.1 * 100000)

    result = await session.change_symbol("GBPUSD")
    session.clock.step()

    trade = session.engine.find(trade_id)
    assert result.ok
    assert session.engine.active_symbol == "GBPUSD"
    assert trade.status == OrderStatus.OPEN
    assert trade.pnl == pytest.approx(frozen)
    assert session.engine.account.equity == pytest.approx(10000.0 + frozen)

    assert session.engine.close_order(trade_id).success
    assert trade.close_price == trade.entry_price
    assert trade.pnl == pytest.approx(0.0)
    assert session.engine.account.balance == pytest.approx(10000.0)
    await session.close()
