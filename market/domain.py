"""
Replay Domain Models
--------------------

This file defines the pure data classes (dataclasses) that represent
the core concepts of the replay trading domain.

These models are independent of any data store, HTTP client or
persistence concern. They are the "nouns" of the system.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Dict


class OrderSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP = "STOP"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class MarketTrend(str, Enum):
    """Coarse trend label derived from the MACD of a timeframe."""
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    SIDEWAYS_UP = "SIDEWAYS_UP"
    SIDEWAYS_DOWN = "SIDEWAYS_DOWN"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class Candle:
    """
    Represents a single OHLCV bar. `time` is the bar open in UTC epoch seconds.

    `synthetic` marks warmup padding fabricated from a real bar; such
    candles are never tradable and can be excluded from indicator input.
    """
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    synthetic: bool = False


@dataclass(frozen=True)
class SymbolSpec:
    """Static reference data for an instrument."""
    name: str
    contract_size: float    # Units per 1.0 lot
    digits: int             # Price precision
    pip_size: float


@dataclass
class TradeJournal:
    """Trader's notes attached to a trade. Never affects financial fields."""
    tags: List[str] = field(default_factory=list)
    confidence: Optional[int] = None        # 1..5
    setup_rating: Optional[int] = None      # 1..5
    notes: str = ""
    screenshot: Optional[str] = None
    checklist: Dict[str, bool] = field(default_factory=dict)


@dataclass
class Trade:
    """
    A simulated order/position.
    PENDING (limit/stop) -> OPEN -> CLOSED, or OPEN (market) -> CLOSED.
    """
    id: str
    symbol: str
    side: OrderSide
    type: OrderType
    entry_price: float
    quantity: float                 # Lots
    status: OrderStatus
    order_time: int
    stop_loss: float = 0.0          # 0 means "not set"
    take_profit: float = 0.0
    initial_stop_loss: float = 0.0
    entry_time: Optional[int] = None
    close_time: Optional[int] = None
    close_price: Optional[float] = None
    pnl: float = 0.0
    journal: Optional[TradeJournal] = None

    @property
    def direction(self) -> int:
        return 1 if self.side == OrderSide.LONG else -1

    @property
    def is_open(self) -> bool:
        return self.status == OrderStatus.OPEN

    @property
    def is_pending(self) -> bool:
        return self.status == OrderStatus.PENDING


@dataclass
class AccountState:
    """
    Simulated account. `equity = balance + sum(pnl of OPEN trades)`.
    Mutated only by the OrderEngine.
    """
    balance: float
    equity: float
    max_equity: float
    max_drawdown: float = 0.0
    history: List[Trade] = field(default_factory=list)

    @classmethod
    def fresh(cls, initial_balance: float) -> "AccountState":
        return cls(balance=initial_balance, equity=initial_balance, max_equity=initial_balance)

    @property
    def open_trades(self) -> List[Trade]:
        return [t for t in self.history if t.status == OrderStatus.OPEN]

    @property
    def pending_trades(self) -> List[Trade]:
        return [t for t in self.history if t.status == OrderStatus.PENDING]

    @property
    def closed_trades(self) -> List[Trade]:
        return [t for t in self.history if t.status == OrderStatus.CLOSED]


@dataclass
class SimulationState:
    """Replay cursor state. Owned exclusively by the SimulationClock."""
    is_playing: bool = False
    speed: int = 500            # Milliseconds per tick
    current_index: int = 0
    max_index: int = 0          # Equals the visible buffer length


@dataclass(frozen=True)
class MarketSnapshot:
    """What the order engine sees on each simulated tick."""
    symbol: str
    price: float
    time: Optional[int]
    candle: Optional[Candle] = None


@dataclass
class OrderResult:
    """Represents the outcome of an order command."""
    success: bool
    trade_id: Optional[str]
    comment: Optional[str]


@dataclass(frozen=True)
class StopOutEvent:
    """Raised once when the account is liquidated."""
    time: Optional[int]
    equity: float
    margin_level: float
    closed_trade_ids: List[str] = field(default_factory=list)


# --- Indicator models ---

class IndicatorType(str, Enum):
    EMA = "EMA"
    RSI = "RSI"
    MACD = "MACD"


@dataclass
class IndicatorConfig:
    """A configured indicator instance on the chart."""
    id: str
    type: IndicatorType
    visible: bool = True
    period: int = 14
    # MACD lengths
    fast: int = 12
    slow: int = 26
    signal: int = 9
    # RSI levels
    overbought: float = 70.0
    oversold: float = 30.0
    color: Optional[str] = None


@dataclass(frozen=True)
class IndicatorPoint:
    time: int
    value: float


@dataclass(frozen=True)
class MacdPoint:
    time: int
    macd: float
    signal: float
    histogram: float
