"""
Tests for symbol reference data, lot sizing helpers and the
account-currency approximation.
"""
import pytest

from market import (
    StaticRateConverter,
    calculate_position_size,
    contract_size,
    get_symbol_spec,
    pip_distance,
    round_price,
    round_to_step,
    timeframe_seconds,
)


def test_symbol_specs():
    jpy = get_symbol_spec("USDJPY")
    gold = get_symbol_spec("XAUUSD")

    assert (jpy.contract_size, jpy.digits, jpy.pip_size) == (100000.0, 3, 0.01)
    assert (gold.contract_size, gold.digits, gold.pip_size) == (100.0, 2, 0.01)
    assert get_symbol_spec("XAGUSD").contract_size == 5000.0
    assert get_symbol_spec("EURUSD").pip_size == 0.0001
    assert get_symbol_spec("CUSTOM", custom_digits=2).digits == 2
    assert contract_size("US30") == 1.0


def test_timeframe_seconds():
    assert timeframe_seconds("M2") == 120
    assert timeframe_seconds("D1") == 86400
    with pytest.raises(ValueError):
        timeframe_seconds("M1")


def test_round_to_step_rounds_down():
    assert round_to_step(0.128, 0.01) == 0.12
    assert round_to_step(0.14, 0.05) == 0.1
    assert round_to_step(0.29, 0.01) == 0.29
    assert round_price(1.234567, 5) == 1.23457


def test_pip_distance():
    assert pip_distance("EURUSD", 1.1000, 1.0950) == pytest.approx(50.0)
    assert pip_distance("USDJPY", 150.00, 150.25) == pytest.approx(25.0)


def test_position_size_from_risk():
    assert calculate_position_size(10000.0, 1.0, 1.1000, 1.0900, "EURUSD") == pytest.approx(0.1)
    assert calculate_position_size(10000.0, 2.0, 2000.0, 1990.0, "XAUUSD") == pytest.approx(0.2)
    assert calculate_position_size(10000.0, 1.0, 1.1000, 1.1000, "EURUSD") == 0.0


def test_currency_approximation():
    conv = StaticRateConverter()

    assert conv.convert_to_account_currency("EURUSD", 100.0, 1.1) == 100.0
    assert conv.convert_to_account_currency("USDJPY", 1500.0, 150.0) == pytest.approx(10.0)
    assert conv.convert_to_account_currency("EURJPY", 1600.0, 160.0) == pytest.approx(10.8)
    assert conv.required_margin("EURUSD", 1.0, 1.1, 100) == pytest.approx(1100.0)
    assert conv.required_margin("USDJPY", 1.0, 150.0, 100) == pytest.approx(1000.0)
    assert conv.required_margin("EURJPY", 1.0, 160.0, 100) == pytest.approx(1080.0)


def test_custom_rate_table():
    conv = StaticRateConverter({"EUR": 1.0})

    assert conv.base_rate("EURJPY") == 1.0
    assert conv.base_rate("GBPJPY") == 1.0
