"""
replay_session.py
The replay engine instance.

Owns one buffer manager, one simulation clock, one order engine, the
indicator and market-structure services, and the active trader profile.
Every cursor move becomes one MarketSnapshot fed to the order engine.
Only a step onto the next bar carries the bar itself for range checks.
Symbol/timeframe switches and date jumps reload the buffer at the
current simulated time.
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Dict, Optional, Set

from buffer_manager import BufferConfig, CandleBufferManager, LoadResult, LoadStatus
from engine import EngineConfig, OrderEngine
from market import (
    AccountState,
    ICurrencyConverter,
    IMarketDataSource,
    MarketSnapshot,
    StaticRateConverter,
    StopOutEvent,
    timeframe_seconds,
)
from market.indicators import IndicatorService, Series
from persistence import (
    IProfileRepository,
    PerformanceMetrics,
    TraderProfile,
    calculate_performance_metrics,
)
from simulation_clock import SimulationClock
from trend_classifier import MarketStructure, MarketStructureService

logger = logging.getLogger(__name__)

TIME_PLAYED_INTERVAL = 1.0


class ReplaySession:
    """
    Wires buffer, clock and engine together for one profile at a time.
    State changes happen on the event loop only: the clock tick, order
    commands and reload completions never interleave mid-mutation.
    """

    def __init__(self,
                 source: IMarketDataSource,
                 repository: Optional[IProfileRepository] = None,
                 converter: Optional[ICurrencyConverter] = None,
                 buffer_config: Optional[BufferConfig] = None,
                 engine_config: Optional[EngineConfig] = None,
                 speed_ms: int = 500,
                 indicators: Optional[IndicatorService] = None,
                 structure: Optional[MarketStructureService] = None):
        self._source = source
        self._repository = repository
        self._converter = converter or StaticRateConverter()
        self._engine_config = engine_config or EngineConfig()

        self.buffer = CandleBufferManager(source, buffer_config)
        self.clock = SimulationClock(self.buffer, speed_ms)
        self.engine = self._make_engine(AccountState.fresh(0.0), self._engine_config)
        self.indicators = indicators or IndicatorService()
        self.structure = structure or MarketStructureService(source)

        self._profile: Optional[TraderProfile] = None
        self._timer: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self.clock.add_listener(self._on_tick)

    def _make_engine(self, account: AccountState, config: EngineConfig) -> OrderEngine:
        return OrderEngine(account, self._converter, config, playback=self.clock, on_stop_out=self._on_stop_out)

    # --- Read access ---

    @property
    def profile(self) -> Optional[TraderProfile]:
        return self._profile

    @property
    def symbol(self) -> Optional[str]:
        return self._profile.active_symbol if self._profile else None

    @property
    def timeframe(self) -> Optional[str]:
        return self._profile.active_timeframe if self._profile else None

    @property
    def current_sim_time(self) -> Optional[int]:
        return self.clock.current_sim_time

    @property
    def trading_price(self) -> float:
        return self.engine.trading_price

    @property
    def data_error(self) -> bool:
        return self.clock.data_error

    @property
    def is_finished(self) -> bool:
        """True once the cursor reached the profile's end date or the last available bar."""
        if self._profile is None:
            return True
        sim_time = self.clock.current_sim_time
        if sim_time is not None and self._profile.end_date and sim_time >= self._profile.end_date:
            return True
        state = self.clock.state
        return not state.is_playing and state.max_index > 0 and state.current_index >= state.max_index - 1 \
            and self.buffer.is_exhausted

    def _require_profile(self) -> TraderProfile:
        if self._profile is None:
            raise ValueError("No active profile; call start() first")
        return self._profile

    # --- Lifecycle ---

    async def start(self, profile: TraderProfile) -> LoadResult:
        """Activates `profile` and loads its symbol/timeframe at its saved simulated time."""
        await self._stop_timer()
        self._profile = profile
        self.engine = self._make_engine(profile.account,
                                        replace(self._engine_config, custom_digits=profile.custom_digits))
        self._timer = asyncio.ensure_future(self._count_time_played())
        logger.info(f"Starting profile '{profile.name}' on {profile.active_symbol} {profile.active_timeframe} "
                    f"@ {profile.current_sim_time}")
        return await self._reload(profile.current_sim_time or profile.start_date)

    async def _reload(self, anchor: int, last_known_price: Optional[float] = None) -> LoadResult:
        profile = self._require_profile()
        result = await self.clock.reload(profile.active_symbol, profile.active_timeframe, anchor,
                                         session_start=profile.start_date, last_known_price=last_known_price)
        if result.status == LoadStatus.NO_DATA:
            logger.warning(f"No data for {profile.active_symbol} {profile.active_timeframe}; "
                           f"use jump_to_first_data() to recover")
        return result

    def _anchor(self) -> int:
        profile = self._require_profile()
        sim_time = self.clock.current_sim_time
        return sim_time if sim_time else (profile.current_sim_time or profile.start_date)

    async def change_symbol(self, symbol: str) -> LoadResult:
        profile = self._require_profile()
        anchor = self._anchor()
        profile.active_symbol = symbol
        if symbol not in profile.selected_symbols:
            profile.selected_symbols.append(symbol)
        logger.info(f"Switching symbol to {symbol}")
        return await self._reload(anchor)

    async def change_timeframe(self, timeframe: str) -> LoadResult:
        timeframe_seconds(timeframe)
        profile = self._require_profile()
        anchor = self._anchor()
        last_price = self.engine.trading_price or None
        profile.active_timeframe = timeframe
        logger.info(f"Switching timeframe to {timeframe}")
        return await self._reload(anchor, last_known_price=last_price)

    async def jump_to_date(self, target_time: int) -> LoadResult:
        profile = self._require_profile()
        return await self.clock.jump_to_date(target_time, session_start=profile.start_date)

    async def jump_to_first_data(self) -> LoadResult:
        self._require_profile()
        return await self.clock.jump_to_first_data()

    async def load_more_history(self) -> int:
        return await self.buffer.load_more_history()

    async def close(self) -> None:
        """Stops both timers and all background fetches."""
        await self._stop_timer()
        await self.clock.aclose()
        await self.buffer.aclose()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Replay session closed.")

    # --- Tick handling ---

    def _on_tick(self, index: int, sim_time: Optional[int], advanced: bool) -> None:
        profile = self._profile
        if profile is None or sim_time is None:
            return
        price = self.buffer.tradable_price(index)
        if price is None:
            return
        # Only a bar the cursor stepped onto is range-checked; reloads and seeks revalue at the price.
        candle = self.buffer.candle_at(index) if advanced else None
        snapshot = MarketSnapshot(symbol=profile.active_symbol, price=price, time=sim_time, candle=candle)
        self.engine.on_market_update(snapshot)
        profile.current_sim_time = sim_time

        if profile.end_date and sim_time >= profile.end_date and self.clock.is_playing:
            logger.info(f"Reached the session end date {profile.end_date}; pausing")
            self.clock.pause()

        if self.structure.needs_refresh(profile.active_symbol, sim_time):
            self._spawn(self.structure.refresh(profile.active_symbol, sim_time))

    def _on_stop_out(self, event: StopOutEvent) -> None:
        logger.error(f"Account blown at {event.time}: {len(event.closed_trade_ids)} trades liquidated, "
                     f"equity {self.engine.account.equity:.2f}. Trading is disabled for this profile.")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # --- Time invested ---

    async def _count_time_played(self) -> None:
        while True:
            await asyncio.sleep(TIME_PLAYED_INTERVAL)
            if self._profile is not None:
                self._profile.time_played += 1

    async def _stop_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            await asyncio.gather(timer, return_exceptions=True)

    # --- Derived views ---

    def indicator_series(self, visible_only: bool = True) -> Dict[str, Series]:
        """Indicator points of the visible window up to the bar under the cursor."""
        candle = self.buffer.candle_at(self.clock.state.current_index)
        return self.indicators.series(self.buffer.indicator_input(), candle.time if candle else None, visible_only)

    async def indicator_series_async(self, visible_only: bool = True) -> Dict[str, Series]:
        candle = self.buffer.candle_at(self.clock.state.current_index)
        return await self.indicators.series_async(self.buffer.indicator_input(),
                                                  candle.time if candle else None, visible_only)

    async def market_structure(self, force: bool = False) -> Optional[MarketStructure]:
        profile = self._require_profile()
        return await self.structure.refresh(profile.active_symbol, self.clock.current_sim_time, force)

    def metrics(self) -> PerformanceMetrics:
        return calculate_performance_metrics(self.engine.account)

    # --- Persistence ---

    def snapshot(self) -> TraderProfile:
        """Writes the live state back into the active profile and returns it."""
        profile = self._require_profile()
        profile.account = self.engine.account
        sim_time = self.clock.current_sim_time
        if sim_time:
            profile.current_sim_time = sim_time
        profile.last_played = int(time.time())
        return profile

    async def save(self) -> Optional[TraderProfile]:
        if self._repository is None:
            logger.warning("No profile repository configured; nothing saved")
            return None
        profile = self.snapshot()
        await self._repository.save(profile)
        return profile
