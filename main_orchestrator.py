"""
main_orchestrator.py
The main entry point and orchestrator for the bar-replay simulator.

This module is responsible for:
1. Loading configuration.
2. Setting up all services (Dependency Injection).
3. Running a headless replay of the configured profile.
4. Handling graceful shutdown (the profile is saved on exit).
"""

import asyncio
import logging
import sys
from typing import Optional, Tuple

import pandas as pd

from config import load_config, Config
from market import (
    MarketDataConnector,
    RestMarketDataSource,
    StaticRateConverter,
)
from persistence import SQLiteProfileRepository, TraderProfile, calculate_performance_metrics
from replay_session import ReplaySession

# Setup basic logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)


def to_epoch(value: Optional[str]) -> Optional[int]:
    """ISO date/datetime string -> epoch seconds (naive values are UTC)."""
    if not value:
        return None
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return int(ts.timestamp())


class ReplayRunner:
    """
    Plays the configured profile forward until the data or the session
    end date runs out, or the account is stopped out.
    """

    def __init__(self,
                 session: ReplaySession,
                 repository: SQLiteProfileRepository,
                 config: Config):
        self._session = session
        self._repository = repository
        self._config = config
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def prepare_profile(self) -> TraderProfile:
        """Restores the named profile, or creates it from the REPLAY_* settings."""
        cfg = self._config
        profile = await self._repository.find_by_name(cfg.replay_profile)
        if profile is not None:
            logger.info(f"Resuming profile '{profile.name}' at {profile.current_sim_time} "
                        f"(balance {profile.account.balance:.2f}, played {profile.time_played}s)")
            return profile

        start = to_epoch(cfg.replay_start)
        if start is None:
            raise ValueError(f"Profile '{cfg.replay_profile}' does not exist and REPLAY_START is not set")
        end = to_epoch(cfg.replay_end) or 0
        profile = TraderProfile.new(
            name=cfg.replay_profile,
            symbol=cfg.replay_symbol,
            timeframe=cfg.replay_timeframe,
            start_date=start,
            end_date=end,
            initial_balance=cfg.initial_balance,
        )
        logger.info(f"Created profile '{profile.name}' starting {cfg.replay_start}")
        return profile

    async def start(self):
        """Starts the replay loop and waits for it to finish."""
        profile = await self.prepare_profile()
        result = await self._session.start(profile)
        if not result.ok:
            logger.warning("Nothing to replay at the saved time; jumping to the first available data")
            result = await self._session.jump_to_first_data()
            if not result.ok:
                logger.error(f"No data available for {profile.active_symbol}; nothing to replay.")
                return

        self._running = True
        logger.info(f"ReplayRunner starting. Speed: {self._config.playback_speed_ms}ms/bar")
        self._task = asyncio.create_task(self._run_loop())
        await self._task

    async def _run_loop(self):
        session = self._session
        poll = session.clock.state.speed / 1000
        while self._running:
            session.clock.play()
            while session.clock.is_playing:
                await asyncio.sleep(poll)

            if session.engine.account_blown:
                logger.error("Replay stopped: account blown.")
                break
            if session.is_finished:
                logger.info("Replay finished.")
                break

            # The clock auto-pauses on the last bar; wait for streaming to catch up.
            await session.buffer.settle()
            appended = await session.buffer.extend_future(session.clock.state.current_index)
            state = session.clock.state
            if appended == 0 and state.current_index >= state.max_index - 1:
                logger.info("Replay finished: no newer bars available.")
                break
        self._running = False

    async def stop(self):
        """Stops the loop and saves the profile."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logger.info("ReplayRunner stopped.")
        self._session.clock.pause()

        if self._session.profile is not None:
            await self._session.save()
            m = calculate_performance_metrics(self._session.engine.account, self._config.initial_balance)
            logger.info(
                f"Session summary: {m.total_trades} trades, win rate {m.win_rate:.1f}%, "
                f"net {m.total_net_profit:.2f} ({m.gain_pct:.2f}%), profit factor {m.profit_factor:.2f}, "
                f"max drawdown {m.max_drawdown:.2f}"
            )


async def setup_dependencies(cfg: Config) -> Tuple[ReplaySession, MarketDataConnector, SQLiteProfileRepository]:
    """
    Initializes all services and wires them together (Dependency Injection).
    """
    logger.info("Setting up dependencies...")

    # 1. Market data connection
    connector = MarketDataConnector(
        base_url=cfg.market_data_url,
        api_key=cfg.market_data_key,
        table=cfg.market_data_table,
        timeout=cfg.market_data_timeout,
    )
    await connector.connect()

    # 2. Core services
    source = RestMarketDataSource(connector, fallback_timeframe=cfg.fallback_timeframe)
    repository = SQLiteProfileRepository(db_path=cfg.profile_db_path)

    # 3. Replay engine
    session = ReplaySession(
        source=source,
        repository=repository,
        converter=StaticRateConverter(),
        buffer_config=cfg.buffer,
        engine_config=cfg.engine,
        speed_ms=cfg.playback_speed_ms,
    )

    logger.info("All dependencies initialized successfully.")
    return session, connector, repository


async def main():
    """Main application entry point."""
    connector: Optional[MarketDataConnector] = None
    session: Optional[ReplaySession] = None
    runner: Optional[ReplayRunner] = None

    try:
        # 1. Load Config
        cfg = load_config()
        logging.getLogger().setLevel(cfg.log_level.upper())

        # 2. Setup
        session, connector, repository = await setup_dependencies(cfg)

        # 3. Run
        runner = ReplayRunner(session, repository, cfg)
        await runner.start()

    except ValueError as e:
        logger.error(f"Configuration error: {e}")
    except Exception as e:
        logger.exception(f"Application failed to start: {e}")
    finally:
        # 4. Graceful Shutdown
        if runner:
            await runner.stop()
        if session:
            await session.close()
        if connector and connector.connected:
            await connector.disconnect()
        logger.info("Application shut down.")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user.")


if __name__ == "__main__":
    run()
