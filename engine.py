"""
engine.py
The simulated order and account engine.

Holds the AccountState, admits or rejects order commands against the
current market snapshot, and on every simulated tick revalues open
positions, checks for stop-out, executes stop-loss/take-profit hits and
triggers pending orders.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

from market import (
    AccountState,
    Candle,
    ICurrencyConverter,
    IPlaybackControl,
    MarketSnapshot,
    OrderResult,
    OrderSide,
    OrderStatus,
    OrderType,
    StopOutEvent,
    Trade,
    TradeJournal,
    contract_size,
    price_digits,
    round_price,
)

logger = logging.getLogger(__name__)

NO_MARGIN_LEVEL = 999999.0


# ----------------------------- Domain Layer (DDD) -----------------------------

@dataclass(frozen=True)
class EngineConfig:
    """Broker rules of the simulated account."""
    leverage: float = 100.0
    stop_out_level: float = 0.0     # Margin level, in percent
    custom_digits: Optional[int] = None


def _reject(reason: str) -> OrderResult:
    logger.warning(f"Order rejected: {reason}")
    return OrderResult(success=False, trade_id=None, comment=reason)


# -------------------------- Engine ---------------------------

class OrderEngine:
    """
    The only writer of AccountState. Mutations happen once per simulated
    tick (`on_market_update`) and once per order command.
    """

    def __init__(self,
                 account: AccountState,
                 converter: ICurrencyConverter,
                 config: Optional[EngineConfig] = None,
                 playback: Optional[IPlaybackControl] = None,
                 on_stop_out: Optional[Callable[[StopOutEvent], None]] = None):
        self._account = account
        self._converter = converter
        self._cfg = config or EngineConfig()
        if self._cfg.leverage <= 0:
            raise ValueError(f"leverage must be positive, got {self._cfg.leverage}")
        self._playback = playback
        self._on_stop_out = on_stop_out
        self._market: Optional[MarketSnapshot] = None
        self.last_stop_out: Optional[StopOutEvent] = None

    # --- Read access ---

    @property
    def account(self) -> AccountState:
        return self._account

    @property
    def config(self) -> EngineConfig:
        return self._cfg

    @property
    def market(self) -> Optional[MarketSnapshot]:
        return self._market

    @property
    def active_symbol(self) -> Optional[str]:
        return self._market.symbol if self._market else None

    @property
    def trading_price(self) -> float:
        return self._market.price if self._market else 0.0

    @property
    def sim_time(self) -> Optional[int]:
        return self._market.time if self._market else None

    @property
    def account_blown(self) -> bool:
        return self._account.equity <= 0

    def _digits(self, symbol: str) -> int:
        return price_digits(symbol, self._cfg.custom_digits)

    def required_margin(self, symbol: str, lots: float, price: float) -> float:
        return self._converter.required_margin(symbol, lots, price, self._cfg.leverage)

    def used_margin(self) -> float:
        return sum(self.required_margin(t.symbol, t.quantity, t.entry_price) for t in self._account.open_trades)

    def free_margin(self) -> float:
        return self._account.equity - self.used_margin()

    def margin_level(self, equity: Optional[float] = None) -> float:
        used = self.used_margin()
        equity = self._account.equity if equity is None else equity
        return (equity / used) * 100 if used > 0 else NO_MARGIN_LEVEL

    def floating_pnl(self, trade: Trade, price: float) -> float:
        """PnL of `trade` at `price`, in account currency."""
        raw = (price - trade.entry_price) * trade.quantity * contract_size(trade.symbol) * trade.direction
        return self._converter.convert_to_account_currency(trade.symbol, raw, price)

    def find(self, trade_id: str) -> Optional[Trade]:
        return next((t for t in self._account.history if t.id == trade_id), None)

    # --- Order commands ---

    def place_order(self,
                    side: OrderSide,
                    order_type: OrderType,
                    entry_price: float,
                    stop_loss: float,
                    take_profit: float,
                    quantity: float) -> OrderResult:
        """
        Places an order on the active symbol. Market orders fill at the
        current trading price; limit/stop orders rest until triggered.
        Invalid commands return a failed OrderResult and change nothing.
        """
        acc = self._account
        if acc.equity <= 0:
            return _reject("Account equity is zero; reset the profile to keep trading")
        if self._market is None:
            return _reject("No market price available")

        symbol = self._market.symbol
        is_market = order_type == OrderType.MARKET
        execution_price = self.trading_price if is_market else entry_price
        if execution_price is None or execution_price <= 0:
            return _reject(f"Invalid execution price: {execution_price}")
        if quantity is None or quantity <= 0:
            return _reject(f"Quantity must be positive, got {quantity}")

        stop_loss = stop_loss or 0.0
        take_profit = take_profit or 0.0

        if not is_market:
            reason = self._wrong_side_of_market(side, order_type, execution_price, symbol)
            if reason:
                return _reject(reason)

        reason = self._invalid_protection(side, execution_price, stop_loss, take_profit)
        if reason:
            return _reject(reason)

        required = self.required_margin(symbol, quantity, execution_price)
        free = self.free_margin()
        if required > free:
            return _reject(f"Insufficient margin: required {required:.2f}, free {free:.2f}")

        now = self.sim_time
        trade = Trade(
            id=uuid.uuid4().hex[:9],
            symbol=symbol,
            side=side,
            type=order_type,
            entry_price=execution_price,
            quantity=quantity,
            status=OrderStatus.OPEN if is_market else OrderStatus.PENDING,
            order_time=now,
            stop_loss=stop_loss,
            take_profit=take_profit,
            initial_stop_loss=stop_loss,
            entry_time=now if is_market else None,
        )
        acc.history.append(trade)
        logger.info(
            f"{trade.status.value} {side.value} {order_type.value} {quantity} {symbol} @ {execution_price} "
            f"(SL {stop_loss}, TP {take_profit}) id={trade.id}"
        )
        return OrderResult(success=True, trade_id=trade.id, comment=f"{order_type.value} order accepted")

    def _wrong_side_of_market(self, side: OrderSide, order_type: OrderType, price: float, symbol: str) -> Optional[str]:
        digits = self._digits(symbol)
        market = round_price(self.trading_price, digits)
        entry = round_price(price, digits)
        wants_below = (side == OrderSide.LONG) == (order_type == OrderType.LIMIT)
        if wants_below and entry >= market:
            return f"{'Buy Limit' if side == OrderSide.LONG else 'Sell Stop'} must be below market ({entry} >= {market})"
        if not wants_below and entry <= market:
            return f"{'Buy Stop' if side == OrderSide.LONG else 'Sell Limit'} must be above market ({entry} <= {market})"
        return None

    @staticmethod
    def _invalid_protection(side: OrderSide, entry: float, stop_loss: float, take_profit: float) -> Optional[str]:
        if stop_loss < 0 or take_profit < 0:
            return "Stop loss and take profit cannot be negative"
        if side == OrderSide.LONG:
            if stop_loss > 0 and stop_loss >= entry:
                return f"Stop loss of a long must be below entry ({stop_loss} >= {entry})"
            if take_profit > 0 and take_profit <= entry:
                return f"Take profit of a long must be above entry ({take_profit} <= {entry})"
        else:
            if stop_loss > 0 and stop_loss <= entry:
                return f"Stop loss of a short must be above entry ({stop_loss} <= {entry})"
            if take_profit > 0 and take_profit >= entry:
                return f"Take profit of a short must be below entry ({take_profit} >= {entry})"
        return None

    def close_order(self, trade_id: str, exit_price: Optional[float] = None) -> OrderResult:
        """
        Closes an OPEN trade at `exit_price`, else at the trading price when
        the trade is on the active symbol, else at its entry price.
        Cancels a PENDING order with zero PnL.
        """
        trade = self.find(trade_id)
        if trade is None:
            return _reject(f"Unknown trade {trade_id}")
        if trade.status == OrderStatus.CLOSED:
            return _reject(f"Trade {trade_id} is already closed")

        if trade.status == OrderStatus.PENDING:
            trade.status = OrderStatus.CLOSED
            trade.pnl = 0.0
            trade.close_time = self.sim_time
            logger.info(f"Cancelled pending order {trade_id}")
            return OrderResult(success=True, trade_id=trade_id, comment="Pending order cancelled")

        if exit_price is None:
            exit_price = self.trading_price if trade.symbol == self.active_symbol and self.trading_price > 0 \
                else trade.entry_price

        realized = self._realize(trade, exit_price)
        self._track_extremes()
        logger.info(f"Closed {trade_id} @ {exit_price}: PnL {realized:.2f}, balance {self._account.balance:.2f}")
        return OrderResult(success=True, trade_id=trade_id, comment=f"Closed with PnL {realized:.2f}")

    def _realize(self, trade: Trade, exit_price: float) -> float:
        previous_floating = trade.pnl
        realized = self.floating_pnl(trade, exit_price)
        trade.status = OrderStatus.CLOSED
        trade.close_price = exit_price
        trade.close_time = self.sim_time
        trade.pnl = realized
        self._account.balance += realized
        self._account.equity += realized - previous_floating
        return realized

    def modify_trade(self,
                     trade_id: str,
                     stop_loss: Optional[float] = None,
                     take_profit: Optional[float] = None) -> OrderResult:
        """Updates SL/TP of a pending or open trade. 0 removes the level."""
        trade = self.find(trade_id)
        if trade is None:
            return _reject(f"Unknown trade {trade_id}")
        if trade.status == OrderStatus.CLOSED:
            return _reject(f"Trade {trade_id} is closed")
        if (stop_loss is not None and stop_loss < 0) or (take_profit is not None and take_profit < 0):
            return _reject("Stop loss and take profit cannot be negative")
        if stop_loss is not None:
            trade.stop_loss = stop_loss
        if take_profit is not None:
            trade.take_profit = take_profit
        return OrderResult(success=True, trade_id=trade_id, comment="Trade modified")

    def modify_pending_entry(self, trade_id: str, entry_price: float) -> OrderResult:
        trade = self.find(trade_id)
        if trade is None:
            return _reject(f"Unknown trade {trade_id}")
        if trade.status != OrderStatus.PENDING:
            return _reject(f"Only pending orders can be moved ({trade_id} is {trade.status.value})")
        if entry_price is None or entry_price <= 0:
            return _reject(f"Invalid entry price: {entry_price}")
        trade.entry_price = entry_price
        return OrderResult(success=True, trade_id=trade_id, comment="Entry price modified")

    def annotate_trade(self, trade_id: str, journal: TradeJournal) -> OrderResult:
        """Attaches a journal to any trade, including closed ones."""
        trade = self.find(trade_id)
        if trade is None:
            return _reject(f"Unknown trade {trade_id}")
        trade.journal = journal
        return OrderResult(success=True, trade_id=trade_id, comment="Journal saved")

    # --- Per-tick evaluation ---

    def on_market_update(self, snapshot: MarketSnapshot) -> None:
        """
        One simulated tick: revalue, stop-out check, SL/TP, pending triggers.
        Stop-out runs first so liquidated trades are never processed twice.
        """
        self._market = snapshot
        if snapshot.price <= 0:
            return

        self._revalue(snapshot.symbol, snapshot.price)
        if self._check_stop_out(snapshot):
            return
        self._track_extremes()

        candle = snapshot.candle
        if candle is None:
            return
        self._check_protection(snapshot.symbol, candle)
        self._trigger_pending(snapshot.symbol, candle)

    def _revalue(self, symbol: str, price: float) -> None:
        acc = self._account
        for trade in acc.open_trades:
            if trade.symbol == symbol:
                trade.pnl = self.floating_pnl(trade, price)
        acc.equity = acc.balance + sum(t.pnl for t in acc.open_trades)

    def _track_extremes(self) -> None:
        acc = self._account
        acc.max_equity = max(acc.max_equity, acc.equity)
        acc.max_drawdown = max(acc.max_drawdown, acc.max_equity - acc.equity)

    def _equity_at(self, symbol: str, price: float) -> float:
        acc = self._account
        return acc.balance + sum(
            self.floating_pnl(t, price) if t.symbol == symbol else t.pnl
            for t in acc.open_trades
        )

    def _breached(self, equity: float) -> Tuple[bool, float]:
        level = self.margin_level(equity)
        return equity <= 0 or level <= self._cfg.stop_out_level, level

    def _check_stop_out(self, snapshot: MarketSnapshot) -> bool:
        if not self._account.open_trades:
            return False

        liquidation_price = snapshot.price
        equity = self._account.equity
        breached, level = self._breached(equity)

        if not breached and snapshot.candle is not None:
            # Intrabar: the bar's low and high are prices the account went through.
            worst: Optional[Tuple[float, float, float]] = None
            for price in (snapshot.candle.low, snapshot.candle.high):
                if price <= 0:
                    continue
                eq = self._equity_at(snapshot.symbol, price)
                hit, lvl = self._breached(eq)
                if hit and (worst is None or eq < worst[1]):
                    worst = (price, eq, lvl)
            if worst is not None:
                breached = True
                liquidation_price, equity, level = worst

        if not breached:
            return False

        self._stop_out(snapshot, liquidation_price, equity, level)
        return True

    def _stop_out(self, snapshot: MarketSnapshot, price: float, equity: float, level: float) -> None:
        acc = self._account
        logger.error(f"STOP OUT: equity {equity:.2f}, margin level {level:.2f}% @ {price}")

        closed: List[str] = []
        for trade in acc.open_trades:
            close_price = price if trade.symbol == snapshot.symbol else trade.entry_price
            if trade.symbol == snapshot.symbol:
                trade.pnl = self.floating_pnl(trade, close_price)
            trade.status = OrderStatus.CLOSED
            trade.close_price = close_price
            trade.close_time = snapshot.time
            closed.append(trade.id)

        clamped = max(0.0, equity)
        acc.balance = clamped
        acc.equity = clamped
        acc.max_drawdown = max(acc.max_drawdown, acc.max_equity - clamped)

        if self._playback is not None:
            self._playback.pause()

        event = StopOutEvent(time=snapshot.time, equity=equity, margin_level=level, closed_trade_ids=closed)
        self.last_stop_out = event
        if self._on_stop_out is not None:
            self._on_stop_out(event)

    def _check_protection(self, symbol: str, candle: Candle) -> None:
        for trade in self._account.open_trades:
            if trade.symbol != symbol:
                continue
            exit_price = self._protection_hit(trade, candle)
            if exit_price is not None:
                kind = "SL" if exit_price == trade.stop_loss else "TP"
                self.close_order(trade.id, exit_price)
                logger.info(f"{kind} hit for {trade.id} on bar {candle.time}")

    @staticmethod
    def _protection_hit(trade: Trade, candle: Candle) -> Optional[float]:
        """Exit price if the bar touched SL or TP. SL wins when both are touched."""
        if trade.side == OrderSide.LONG:
            if trade.stop_loss > 0 and candle.low <= trade.stop_loss:
                return trade.stop_loss
            if trade.take_profit > 0 and candle.high >= trade.take_profit:
                return trade.take_profit
        else:
            if trade.stop_loss > 0 and candle.high >= trade.stop_loss:
                return trade.stop_loss
            if trade.take_profit > 0 and candle.low <= trade.take_profit:
                return trade.take_profit
        return None

    def _trigger_pending(self, symbol: str, candle: Candle) -> None:
        for trade in self._account.pending_trades:
            if trade.symbol != symbol or not self._pending_triggered(trade, candle):
                continue
            trade.status = OrderStatus.OPEN
            trade.entry_time = candle.time
            trade.pnl = 0.0
            logger.info(f"Pending {trade.side.value} {trade.type.value} {trade.id} filled @ {trade.entry_price}")

    @staticmethod
    def _pending_triggered(trade: Trade, candle: Candle) -> bool:
        touched_high = candle.high >= trade.entry_price
        touched_low = candle.low <= trade.entry_price
        if trade.side == OrderSide.LONG:
            return touched_low if trade.type == OrderType.LIMIT else touched_high
        return touched_high if trade.type == OrderType.LIMIT else touched_low

    # --- Bulk helpers ---

    def close_all(self, trade_ids: Optional[Iterable[str]] = None) -> List[OrderResult]:
        ids = list(trade_ids) if trade_ids is not None else [
            t.id for t in self._account.history if t.status != OrderStatus.CLOSED
        ]
        return [self.close_order(i) for i in ids]
