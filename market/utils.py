"""
Utility Functions
-----------------

Stateless helpers for lot sizing and price arithmetic.
"""

import logging
import math
from decimal import Decimal

from .symbols import contract_size, pip_size

logger = logging.getLogger(__name__)

LOT_STEP = 0.01


def round_to_step(value: float, step: float) -> float:
    """
    Rounds a value *down* to the nearest valid step size.
    e.g., round_to_step(0.128, 0.01) -> 0.12
    e.g., round_to_step(0.14, 0.05) -> 0.10
    """
    if step <= 0:
        return value

    step_str = repr(float(step))
    if "e-" in step_str:
        decimals = int(step_str.split("e-")[-1])
    elif "." in step_str:
        decimals = len(step_str.split(".")[-1].rstrip("0")) or 0
    else:
        decimals = 0

    # Small epsilon so that 0.29 / 0.01 = 28.999999999999996 floors to 29
    quantized = math.floor(value / step + 1e-9) * step
    return round(quantized, decimals)


def round_price(price: float, digits: int) -> float:
    return round(price, digits)


def pip_distance(symbol: str, price_a: float, price_b: float) -> float:
    """Absolute distance between two prices in pips."""
    return abs(price_a - price_b) / pip_size(symbol)


def calculate_position_size(account_balance: float,
                            risk_percent: float,
                            entry_price: float,
                            stop_loss: float,
                            symbol: str,
                            volume_step: float = LOT_STEP) -> float:
    """
    Risk-based lot size.

    Args:
        account_balance (float): Current account balance.
        risk_percent (float): Desired risk in percent (e.g., 1.0 for 1%).
        entry_price (float): Planned entry.
        stop_loss (float): Planned stop loss.
        symbol (str): Instrument, used for the contract size.
        volume_step (float): Lot step to round down to.

    Returns:
        float: Lots, rounded down to `volume_step`; 0.0 for a zero stop distance.
    """
    price_diff = abs(entry_price - stop_loss)
    if price_diff == 0 or account_balance <= 0 or risk_percent <= 0:
        logger.warning(
            f"Invalid inputs to calculate_position_size: balance={account_balance}, "
            f"risk={risk_percent}, entry={entry_price}, sl={stop_loss}"
        )
        return 0.0

    risk_amount = Decimal(str(account_balance)) * Decimal(str(risk_percent)) / Decimal(100)
    denom = Decimal(str(price_diff)) * Decimal(str(contract_size(symbol)))
    lots = float(risk_amount / denom)

    return round_to_step(lots, volume_step)
