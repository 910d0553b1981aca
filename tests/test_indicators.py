"""
Tests for the EMA / RSI / MACD calculations and the indicator service.
"""
import numpy as np
import pytest

from market import (
    IndicatorConfig,
    IndicatorType,
    calculate_ema,
    calculate_macd,
    calculate_macd_line,
    calculate_rsi,
)
from market.indicators import IndicatorInput, IndicatorService
from tests.conftest import make_candles


def test_ema_seeds_with_sma_and_starts_at_period_minus_one():
    candles = make_candles(5, closes=[1, 2, 3, 4, 5])

    ema = calculate_ema(candles, 3)

    assert [p.time for p in ema] == [c.time for c in candles[2:]]
    assert [p.value for p in ema] == pytest.approx([2.0, 3.0, 4.0])


def test_ema_of_constant_series_is_constant():
    candles = make_candles(40, closes=[1.25] * 40)

    ema = calculate_ema(candles, 14)

    assert ema[0].time == candles[13].time
    assert all(p.value == pytest.approx(1.25) for p in ema)


def test_ema_needs_at_least_period_bars():
    assert calculate_ema(make_candles(5), 14) == []
    with pytest.raises(ValueError):
        calculate_ema(make_candles(5), 0)


def test_rsi_first_value_at_period_and_rising_series_is_100():
    candles = make_candles(30, drift=0.0005)

    rsi = calculate_rsi(candles, 14)

    assert rsi[0].time == candles[14].time
    assert all(p.value == 100.0 for p in rsi)


def test_rsi_stays_within_bounds_on_random_walk():
    rng = np.random.default_rng(7)
    closes = 1.1 + np.cumsum(rng.normal(0, 0.001, 300))
    candles = make_candles(300, closes=list(closes))

    rsi = calculate_rsi(candles, 14)

    assert len(rsi) == 300 - 14
    assert all(0.0 <= p.value <= 100.0 for p in rsi)
    assert any(p.value < 50 for p in rsi) and any(p.value > 50 for p in rsi)


def test_rsi_of_falling_series_is_zero():
    candles = make_candles(20, drift=-0.0005)

    rsi = calculate_rsi(candles, 14)

    assert all(p.value == pytest.approx(0.0) for p in rsi)


def test_macd_histogram_is_macd_minus_signal():
    rng = np.random.default_rng(3)
    closes = 1.1 + np.cumsum(rng.normal(0, 0.001, 120))
    candles = make_candles(120, closes=list(closes))

    macd = calculate_macd(candles)

    # slow EMA defined from index 25, signal needs 9 MACD values on top
    assert macd[0].time == candles[25 + 8].time
    assert all(p.histogram == p.macd - p.signal for p in macd)


def test_macd_of_short_series_is_empty():
    assert calculate_macd(make_candles(30)) == []


def test_macd_line_starts_where_both_emas_exist():
    rng = np.random.default_rng(5)
    closes = 1.1 + np.cumsum(rng.normal(0, 0.001, 80))
    candles = make_candles(80, closes=list(closes))

    line = calculate_macd_line(candles)
    macd = calculate_macd(candles)

    assert line[0].time == candles[25].time
    assert len(line) == 80 - 25
    by_time = {p.time: p.value for p in line}
    assert [by_time[p.time] for p in macd] == pytest.approx([p.macd for p in macd])
    assert len(calculate_macd_line(make_candles(30))) == 5
    assert calculate_macd_line(make_candles(20)) == []


@pytest.fixture
def indicator_input():
    candles = make_candles(120)
    return IndicatorInput(version=1, warmup=tuple(candles[:60]), visible=tuple(candles[60:]))


def test_service_restricts_series_to_visible_window_and_cursor(indicator_input):
    service = IndicatorService()
    cursor = indicator_input.visible[20].time

    result = service.series(indicator_input, cursor)

    assert set(result) == {"macd-default", "rsi-default"}
    for points in result.values():
        assert points
        assert points[0].time == indicator_input.visible[0].time
        assert points[-1].time == cursor


def test_service_reuses_cache_until_version_changes(indicator_input, monkeypatch):
    import market.indicators as indicators_module

    calls = []
    original = indicators_module.compute_indicator

    def counting(candles, config):
        calls.append(config.id)
        return original(candles, config)

    monkeypatch.setattr(indicators_module, "compute_indicator", counting)
    service = IndicatorService()

    service.series(indicator_input, None)
    service.series(indicator_input, None)
    assert len(calls) == 2

    bumped = IndicatorInput(version=2, warmup=indicator_input.warmup, visible=indicator_input.visible)
    service.series(bumped, None)
    assert len(calls) == 4


def test_service_registry_operations():
    service = IndicatorService()

    added = service.add(IndicatorConfig(id="", type=IndicatorType.EMA, period=50))
    assert added.id.startswith("ema-")
    with pytest.raises(ValueError):
        service.add(IndicatorConfig(id="rsi-default", type=IndicatorType.RSI))

    assert service.toggle("ema-default").visible is True
    assert service.update("rsi-default", period=21).period == 21
    assert service.remove("macd-default") is True
    assert service.remove("macd-default") is False
    assert [c.id for c in service.configs] == ["rsi-default", "ema-default", added.id]


def test_service_can_exclude_synthetic_warmup():
    from buffer_manager import synthesize_warmup

    candles = make_candles(40)
    padding = synthesize_warmup(candles[0], 20, 900)
    data = IndicatorInput(version=1, warmup=tuple(padding), visible=tuple(candles))

    with_padding = IndicatorService(exclude_synthetic=False).series(data, None)["rsi-default"]
    without_padding = IndicatorService(exclude_synthetic=True).series(data, None)["rsi-default"]

    assert len(with_padding) == len(candles)
    assert without_padding[0].time == candles[14].time


@pytest.mark.asyncio
async def test_series_async_matches_sync(indicator_input):
    service = IndicatorService()

    async_result = await service.series_async(indicator_input, None)
    sync_result = IndicatorService().series(indicator_input, None)

    assert async_result == sync_result
