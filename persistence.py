"""
persistence.py
Handles trader profiles: snapshotting the replay state into a
serializable record, storing profiles in SQLite, and calculating
performance metrics over the closed trades of an account.

Implements the IProfileRepository interface.
"""

import numpy as np
import sqlite3
import json
import logging
import asyncio
import time
import uuid
from dataclasses import dataclass, field, asdict
from typing import List, Optional, Protocol, Callable, Any, Dict

from market import (
    AccountState,
    OrderSide,
    OrderStatus,
    OrderType,
    Trade,
    TradeJournal,
)

logger = logging.getLogger(__name__)

COMPACT_HISTORY = 20
COMPACT_DRAWINGS = 5
COMPACT_MAX_BYTES = 3500
COMPACT_FALLBACK_HISTORY = 5


# ----------------------------- Domain Layer (DDD) -----------------------------

@dataclass
class LotSizeConfig:
    """Settings of the on-chart lot size calculator."""
    show: bool = False
    account_balance: float = 10000.0
    stop_loss_pips: float = 20.0
    risk_percent: float = 1.0
    currency: str = "USD"
    position: str = "top-right"


@dataclass
class TraderProfile:
    """
    A saved replay session: the account plus everything needed to resume
    at the exact simulated time. Drawings are opaque to the core.
    """
    id: str
    name: str
    account: AccountState
    active_symbol: str
    active_timeframe: str
    current_sim_time: int
    start_date: int
    end_date: int
    selected_symbols: List[str] = field(default_factory=list)
    created_at: int = field(default_factory=lambda: int(time.time()))
    last_played: int = field(default_factory=lambda: int(time.time()))
    time_played: int = 0            # Wall-clock seconds spent in the session
    drawings: List[Dict[str, Any]] = field(default_factory=list)
    custom_digits: Optional[int] = None
    lot_size_config: Optional[LotSizeConfig] = None

    @classmethod
    def new(cls,
            name: str,
            symbol: str,
            timeframe: str,
            start_date: int,
            end_date: int,
            initial_balance: float,
            selected_symbols: Optional[List[str]] = None) -> "TraderProfile":
        return cls(
            id=uuid.uuid4().hex,
            name=name,
            account=AccountState.fresh(initial_balance),
            active_symbol=symbol,
            active_timeframe=timeframe,
            current_sim_time=start_date,
            start_date=start_date,
            end_date=end_date,
            selected_symbols=list(selected_symbols or [symbol]),
        )


@dataclass(frozen=True)
class PerformanceMetrics:
    """Holds calculated performance metrics."""
    total_trades: int
    wins: int
    losses: int
    break_evens: int
    win_rate: float             # Percent of decisive trades
    average_win: float
    average_loss: float
    expectancy: float           # Net PnL per closed trade
    profit_factor: float
    average_r_multiple: float
    total_net_profit: float
    gain_pct: float
    average_duration_seconds: float
    max_drawdown: float


# ----------------------------- Serialization ----------------------------------

def trade_to_dict(trade: Trade) -> Dict[str, Any]:
    data = asdict(trade)
    data["side"] = trade.side.value
    data["type"] = trade.type.value
    data["status"] = trade.status.value
    return data


def trade_from_dict(data: Dict[str, Any]) -> Trade:
    journal = data.get("journal")
    return Trade(
        id=str(data["id"]),
        symbol=data["symbol"],
        side=OrderSide(data["side"]),
        type=OrderType(data["type"]),
        entry_price=float(data["entry_price"]),
        quantity=float(data["quantity"]),
        status=OrderStatus(data["status"]),
        order_time=data.get("order_time"),
        stop_loss=float(data.get("stop_loss") or 0.0),
        take_profit=float(data.get("take_profit") or 0.0),
        initial_stop_loss=float(data.get("initial_stop_loss") or 0.0),
        entry_time=data.get("entry_time"),
        close_time=data.get("close_time"),
        close_price=data.get("close_price"),
        pnl=float(data.get("pnl") or 0.0),
        journal=TradeJournal(**journal) if journal else None,
    )


def account_to_dict(account: AccountState) -> Dict[str, Any]:
    return {
        "balance": account.balance,
        "equity": account.equity,
        "max_equity": account.max_equity,
        "max_drawdown": account.max_drawdown,
        "history": [trade_to_dict(t) for t in account.history],
    }


def account_from_dict(data: Dict[str, Any]) -> AccountState:
    return AccountState(
        balance=float(data["balance"]),
        equity=float(data["equity"]),
        max_equity=float(data.get("max_equity", data["equity"])),
        max_drawdown=float(data.get("max_drawdown", 0.0)),
        history=[trade_from_dict(t) for t in data.get("history", [])],
    )


def profile_to_dict(profile: TraderProfile) -> Dict[str, Any]:
    data = {
        "id": profile.id,
        "name": profile.name,
        "created_at": profile.created_at,
        "last_played": profile.last_played,
        "time_played": profile.time_played,
        "account": account_to_dict(profile.account),
        "active_symbol": profile.active_symbol,
        "active_timeframe": profile.active_timeframe,
        "current_sim_time": profile.current_sim_time,
        "selected_symbols": list(profile.selected_symbols),
        "start_date": profile.start_date,
        "end_date": profile.end_date,
        "drawings": list(profile.drawings),
        "custom_digits": profile.custom_digits,
        "lot_size_config": asdict(profile.lot_size_config) if profile.lot_size_config else None,
    }
    return data


def profile_from_dict(data: Dict[str, Any]) -> TraderProfile:
    lot_cfg = data.get("lot_size_config")
    return TraderProfile(
        id=data["id"],
        name=data.get("name", ""),
        account=account_from_dict(data["account"]),
        active_symbol=data["active_symbol"],
        active_timeframe=data["active_timeframe"],
        current_sim_time=int(data["current_sim_time"]),
        start_date=int(data["start_date"]),
        end_date=int(data["end_date"]),
        selected_symbols=list(data.get("selected_symbols", [])),
        created_at=int(data.get("created_at", 0)),
        last_played=int(data.get("last_played", 0)),
        time_played=int(data.get("time_played", 0)),
        drawings=list(data.get("drawings") or []),
        custom_digits=data.get("custom_digits"),
        lot_size_config=LotSizeConfig(**lot_cfg) if lot_cfg else None,
    )


def compact_profile_dict(profile: TraderProfile) -> Dict[str, Any]:
    """
    Size-limited snapshot for small remote stores: the last 20 trades and
    5 drawings, cut to 5 trades and no drawings if still over 3500 bytes.
    """
    data = profile_to_dict(profile)
    data["account"]["history"] = data["account"]["history"][-COMPACT_HISTORY:]
    data["drawings"] = data["drawings"][-COMPACT_DRAWINGS:]
    size = len(json.dumps(data))
    if size > COMPACT_MAX_BYTES:
        logger.warning(f"Profile {profile.id} snapshot is {size} bytes; truncating history further.")
        data["account"]["history"] = data["account"]["history"][-COMPACT_FALLBACK_HISTORY:]
        data["drawings"] = []
    return data


# ----------------------------- Metrics ----------------------------------

def calculate_performance_metrics(account: AccountState, initial_balance: Optional[float] = None) -> PerformanceMetrics:
    """Metrics over filled-and-closed trades (cancelled pending orders are ignored)."""
    closed = [t for t in account.history if t.status == OrderStatus.CLOSED and t.entry_time is not None]
    if not closed:
        return PerformanceMetrics(0, 0, 0, 0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, account.max_drawdown)

    pnl = np.array([t.pnl for t in closed], dtype=float)
    wins = pnl[pnl > 0]
    losses = pnl[pnl < 0]
    decisive = len(wins) + len(losses)

    total_net = float(pnl.sum())
    win_rate = (len(wins) / decisive * 100) if decisive > 0 else 0.0
    avg_win = float(wins.mean()) if len(wins) else 0.0
    avg_loss = float(losses.mean()) if len(losses) else 0.0
    gross_loss = abs(float(losses.sum()))
    profit_factor = float(wins.sum()) / gross_loss if gross_loss > 0 else 0.0

    r_multiples = []
    for t in closed:
        if t.pnl == 0 or t.close_price is None:
            continue
        sl = t.initial_stop_loss if t.initial_stop_loss > 0 else t.stop_loss
        risk = abs(t.entry_price - sl) if sl > 0 else 0.0
        if risk > 0:
            r_multiples.append((t.close_price - t.entry_price) * t.direction / risk)
    avg_r = float(np.mean(r_multiples)) if r_multiples else 0.0

    durations = [t.close_time - t.entry_time for t in closed if t.close_time is not None]
    avg_duration = float(np.sum(durations)) / len(closed) if durations else 0.0

    start_balance = initial_balance if initial_balance is not None else account.balance - total_net
    gain_pct = ((account.balance - start_balance) / start_balance * 100) if start_balance > 0 else 0.0

    return PerformanceMetrics(
        total_trades=len(closed),
        wins=len(wins),
        losses=len(losses),
        break_evens=int(len(closed) - decisive),
        win_rate=win_rate,
        average_win=avg_win,
        average_loss=avg_loss,
        expectancy=total_net / len(closed),
        profit_factor=profit_factor,
        average_r_multiple=avg_r,
        total_net_profit=total_net,
        gain_pct=gain_pct,
        average_duration_seconds=avg_duration,
        max_drawdown=account.max_drawdown,
    )


# --------------------------- Interfaces / Ports (SOLID) ---------------------------

class IProfileRepository(Protocol):
    """Interface for storing and loading trader profiles."""

    async def save(self, profile: TraderProfile) -> None:
        """Inserts or replaces a profile."""
        ...

    async def get(self, profile_id: str) -> Optional[TraderProfile]:
        ...

    async def find_by_name(self, name: str) -> Optional[TraderProfile]:
        ...

    async def list_profiles(self) -> List[TraderProfile]:
        """All profiles, most recently played first."""
        ...

    async def delete(self, profile_id: str) -> bool:
        ...


# --------------------------- Adapters / Implementation ---------------------------

class SQLiteProfileRepository(IProfileRepository):
    """
    SQLite implementation of the profile repository. Profiles are stored
    as JSON documents. All blocking SQLite work runs in asyncio's default
    thread pool.
    """

    def __init__(self, db_path: str = "replay_profiles.db"):
        self._db_path = db_path
        logger.info(f"Profile repository will use database: {db_path}")
        self._initialize_db()

    async def _run_in_executor(self, blocking_func: Callable[..., Any], *args: Any) -> Any:
        """Runs a blocking function in asyncio's default thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, blocking_func, *args)

    def _connect(self) -> sqlite3.Connection:
        """Creates a new database connection. Each blocking task creates its own."""
        conn = sqlite3.connect(self._db_path, timeout=10.0)
        conn.execute("PRAGMA journal_mode=WAL;")
        return conn

    def _initialize_db(self):
        create_profiles_sql = """
        CREATE TABLE IF NOT EXISTS profiles (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            last_played INTEGER NOT NULL DEFAULT 0,
            data TEXT NOT NULL
        );
        """
        conn = None
        try:
            conn = self._connect()
            conn.execute(create_profiles_sql)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_profiles_name ON profiles(name);")
            conn.commit()
            logger.info("Profile database initialized.")
        finally:
            if conn: conn.close()

    def _db_save(self, params: tuple):
        sql = """
        INSERT INTO profiles (id, name, last_played, data) VALUES (?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET name = excluded.name,
                                      last_played = excluded.last_played,
                                      data = excluded.data;
        """
        conn = None
        try:
            conn = self._connect()
            conn.execute(sql, params)
            conn.commit()
        except sqlite3.Error as e:
            logger.exception(f"Failed to save profile {params[0]}: {e}")
            raise
        finally:
            if conn: conn.close()

    async def save(self, profile: TraderProfile) -> None:
        payload = json.dumps(profile_to_dict(profile))
        await self._run_in_executor(self._db_save, (profile.id, profile.name, profile.last_played, payload))
        logger.info(f"Saved profile '{profile.name}' ({profile.id})")

    def _db_fetch(self, sql: str, params: tuple) -> List[TraderProfile]:
        conn = None
        try:
            conn = self._connect()
            rows = conn.execute(sql, params).fetchall()
        finally:
            if conn: conn.close()

        profiles = []
        for (payload,) in rows:
            try:
                profiles.append(profile_from_dict(json.loads(payload)))
            except (ValueError, KeyError, TypeError) as e:
                logger.error(f"Skipping unreadable profile record: {e}")
        return profiles

    async def get(self, profile_id: str) -> Optional[TraderProfile]:
        found = await self._run_in_executor(self._db_fetch, "SELECT data FROM profiles WHERE id = ?", (profile_id,))
        return found[0] if found else None

    async def find_by_name(self, name: str) -> Optional[TraderProfile]:
        found = await self._run_in_executor(
            self._db_fetch,
            "SELECT data FROM profiles WHERE name = ? ORDER BY last_played DESC LIMIT 1",
            (name,),
        )
        return found[0] if found else None

    async def list_profiles(self) -> List[TraderProfile]:
        return await self._run_in_executor(self._db_fetch, "SELECT data FROM profiles ORDER BY last_played DESC", ())

    def _db_delete(self, profile_id: str) -> bool:
        conn = None
        try:
            conn = self._connect()
            cursor = conn.execute("DELETE FROM profiles WHERE id = ?", (profile_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            if conn: conn.close()

    async def delete(self, profile_id: str) -> bool:
        deleted = await self._run_in_executor(self._db_delete, profile_id)
        if deleted:
            logger.info(f"Deleted profile {profile_id}")
        return deleted
