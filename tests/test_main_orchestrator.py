"""
Tests for the headless replay runner: profile creation and resume, and a
full run to the end of the available data.
"""
import pytest

from buffer_manager import BufferConfig
from config import Config
from main_orchestrator import ReplayRunner, to_epoch
from market.adapters import to_iso
from persistence import SQLiteProfileRepository
from replay_session import ReplaySession
from tests.conftest import bar_time

CFG = BufferConfig(visible_candles=20, warmup_buffer=10, min_warmup=5, buffer_threshold=3,
                   stream_chunk=5, history_chunk=10)


def test_to_epoch_treats_naive_values_as_utc():
    assert to_epoch("2024-01-02") == 1704153600
    assert to_epoch("2024-01-02T01:00:00+01:00") == 1704153600
    assert to_epoch(None) is None
    assert to_epoch("") is None


@pytest.fixture
def repository(tmp_path) -> SQLiteProfileRepository:
    return SQLiteProfileRepository(db_path=str(tmp_path / "profiles.db"))


def make_runner(source, repository, **overrides):
    cfg = Config(replay_profile="headless", replay_symbol="EURUSD", replay_timeframe="M15",
                 playback_speed_ms=5, **overrides)
    session = ReplaySession(source, repository=repository, buffer_config=CFG, speed_ms=cfg.playback_speed_ms)
    return ReplayRunner(session, repository, cfg), session


@pytest.mark.asyncio
async def test_profile_requires_start_date_when_missing(source, repository):
    runner, session = make_runner(source, repository, replay_start=None)

    with pytest.raises(ValueError):
        await runner.prepare_profile()
    await session.close()


@pytest.mark.asyncio
async def test_run_to_end_of_data_and_resume(source, repository):
    runner, session = make_runner(source, repository, replay_start=to_iso(bar_time(180)))

    await runner.start()
    await runner.stop()
    await session.close()

    saved = await repository.find_by_name("headless")
    assert saved.start_date == bar_time(180)
    assert saved.current_sim_time == bar_time(199) + 900
    assert saved.account.balance == 10000.0

    again, resumed_session = make_runner(source, repository, replay_start=to_iso(bar_time(0)))
    resumed = await again.prepare_profile()
    assert resumed.id == saved.id
    assert resumed.current_sim_time == saved.current_sim_time
    await resumed_session.close()
