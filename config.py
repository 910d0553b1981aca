"""
config.py
Centralized configuration for the bar-replay simulator.

Loads settings from a .env file: the market data API, the profile
database, account rules, buffer window sizes and the headless replay
defaults. Separates configuration from application logic (SOLID's SRP).
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

from market import TF_SECONDS
from buffer_manager import BufferConfig
from engine import EngineConfig

logger = logging.getLogger(__name__)

# --- Load .env file ---
# Create a file named .env in the working directory, for example:
# MARKET_DATA_URL=https://your-project.example.co
# MARKET_DATA_KEY=your-anon-key
# REPLAY_SYMBOL=EURUSD
# REPLAY_START=2024-01-02T00:00:00Z
load_dotenv()


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, default))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, default))


@dataclass(frozen=True)
class Config:
    """
    Holds all configuration for the application, loaded from environment variables.
    """
    # Market Data API
    market_data_url: str = field(default_factory=lambda: os.getenv("MARKET_DATA_URL", ""))
    market_data_key: str = field(default_factory=lambda: os.getenv("MARKET_DATA_KEY", ""))
    market_data_table: str = field(default_factory=lambda: os.getenv("MARKET_DATA_TABLE", "market_data"))
    market_data_timeout: float = field(default_factory=lambda: _env_float("MARKET_DATA_TIMEOUT", 30.0))

    # Persistence
    profile_db_path: str = field(default_factory=lambda: os.getenv("PROFILE_DB_PATH", "replay_profiles.db"))

    # Account Rules
    initial_balance: float = field(default_factory=lambda: _env_float("INITIAL_BALANCE", 10000.0))
    leverage: float = field(default_factory=lambda: _env_float("LEVERAGE", 100.0))
    stop_out_level: float = field(default_factory=lambda: _env_float("STOP_OUT_LEVEL", 0.0))

    # Buffer Windows (bars)
    visible_candles: int = field(default_factory=lambda: _env_int("VISIBLE_CANDLES", 1000))
    warmup_buffer: int = field(default_factory=lambda: _env_int("WARMUP_BUFFER", 500))
    min_warmup: int = field(default_factory=lambda: _env_int("MIN_WARMUP", 200))
    buffer_threshold: int = field(default_factory=lambda: _env_int("BUFFER_THRESHOLD", 50))
    stream_chunk: int = field(default_factory=lambda: _env_int("STREAM_CHUNK", 100))
    history_chunk: int = field(default_factory=lambda: _env_int("HISTORY_CHUNK", 500))
    fallback_timeframe: str = field(default_factory=lambda: os.getenv("FALLBACK_TIMEFRAME", "M2"))

    # Playback
    playback_speed_ms: int = field(default_factory=lambda: _env_int("PLAYBACK_SPEED_MS", 500))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    # Headless Replay
    replay_symbol: str = field(default_factory=lambda: os.getenv("REPLAY_SYMBOL", "EURUSD"))
    replay_timeframe: str = field(default_factory=lambda: os.getenv("REPLAY_TIMEFRAME", "M15"))
    replay_start: Optional[str] = field(default_factory=lambda: os.getenv("REPLAY_START"))
    replay_end: Optional[str] = field(default_factory=lambda: os.getenv("REPLAY_END"))
    replay_profile: str = field(default_factory=lambda: os.getenv("REPLAY_PROFILE", "default"))

    @property
    def buffer(self) -> BufferConfig:
        return BufferConfig(
            visible_candles=self.visible_candles,
            warmup_buffer=self.warmup_buffer,
            min_warmup=self.min_warmup,
            buffer_threshold=self.buffer_threshold,
            stream_chunk=self.stream_chunk,
            history_chunk=self.history_chunk,
            fallback_timeframe=self.fallback_timeframe,
        )

    @property
    def engine(self) -> EngineConfig:
        return EngineConfig(leverage=self.leverage, stop_out_level=self.stop_out_level)


def validate_config(cfg: Config) -> Config:
    """Raises ValueError for settings the simulator cannot run with."""
    if cfg.leverage <= 0:
        raise ValueError(f"LEVERAGE must be positive, got {cfg.leverage}")
    if cfg.initial_balance <= 0:
        raise ValueError(f"INITIAL_BALANCE must be positive, got {cfg.initial_balance}")
    if cfg.playback_speed_ms <= 0:
        raise ValueError(f"PLAYBACK_SPEED_MS must be positive, got {cfg.playback_speed_ms}")
    if cfg.min_warmup > cfg.warmup_buffer:
        raise ValueError(f"MIN_WARMUP ({cfg.min_warmup}) cannot exceed WARMUP_BUFFER ({cfg.warmup_buffer})")
    if cfg.buffer_threshold >= cfg.visible_candles:
        raise ValueError(f"BUFFER_THRESHOLD ({cfg.buffer_threshold}) must be below VISIBLE_CANDLES ({cfg.visible_candles})")
    for name, tf in (("FALLBACK_TIMEFRAME", cfg.fallback_timeframe), ("REPLAY_TIMEFRAME", cfg.replay_timeframe)):
        if tf not in TF_SECONDS:
            raise ValueError(f"{name} '{tf}' is not one of {', '.join(TF_SECONDS)}")

    if not cfg.market_data_url:
        logger.warning("MARKET_DATA_URL is not set; only in-memory data sources will work.")
    return cfg


def load_config() -> Config:
    """Loads and validates the application configuration."""
    cfg = validate_config(Config())
    logger.info(f"Configuration loaded. Symbol: {cfg.replay_symbol} {cfg.replay_timeframe}, "
                f"Leverage: 1:{cfg.leverage:g}, Profiles: {cfg.profile_db_path}")
    return cfg
