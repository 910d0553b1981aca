"""
Tests for the market data adapters: PostgREST queries over a mocked
transport, timeframe fallback resampling and the in-memory source.
"""
import httpx
import pytest

from market import (
    CancellationToken,
    FetchCancelled,
    InMemoryMarketDataSource,
    MarketDataConnector,
    RestMarketDataSource,
)
from market.adapters import MAX_FALLBACK_LIMIT, fallback_limit, to_iso
from tests.conftest import T0, make_candles


def m2_rows(count: int):
    """Raw rows as the table returns them, newest first."""
    rows = [
        {"time": to_iso(c.time), "open": c.open, "high": c.high, "low": c.low, "close": c.close, "volume": c.volume}
        for c in make_candles(count, step_seconds=120)
    ]
    return list(reversed(rows))


class RecordingHandler:
    def __init__(self, responder):
        self.responder = responder
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)


def make_source(responder, api_key: str = "secret"):
    handler = RecordingHandler(responder)
    connector = MarketDataConnector("https://example.test", api_key=api_key,
                                    transport=httpx.MockTransport(handler))
    return RestMarketDataSource(connector), connector, handler


def test_to_iso_is_utc_with_z_suffix():
    assert to_iso(0) == "1970-01-01T00:00:00Z"
    assert to_iso(T0) == "2023-11-14T21:00:00Z"


def test_fallback_limit_scales_and_caps():
    assert fallback_limit("M15", 4) == 30
    assert fallback_limit("D1", 1000) == MAX_FALLBACK_LIMIT


@pytest.mark.asyncio
async def test_missing_timeframe_is_rebuilt_from_fallback_series():
    def responder(request):
        tf = request.url.params.get("tf")
        return httpx.Response(200, json=m2_rows(30) if tf == "eq.M2" else [])

    source, connector, handler = make_source(responder)
    async with connector:
        candles = await source.fetch_context("EURUSD", "M15", T0 + 3600, 4)

    assert [c.time for c in candles] == [T0, T0 + 900, T0 + 1800, T0 + 2700]
    assert candles[0].volume == 800
    assert candles[1].volume == 700

    first, second = handler.requests
    assert first.url.path == "/rest/v1/market_data"
    assert first.url.params["symbol"] == "eq.EURUSD"
    assert first.url.params["tf"] == "eq.M15"
    assert first.url.params["time"] == f"lt.{to_iso(T0 + 3600)}"
    assert first.url.params["order"] == "time.desc"
    assert second.url.params["tf"] == "eq.M2"
    assert second.url.params["limit"] == "30"
    assert first.headers["apikey"] == "secret"
    assert first.headers["authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_future_fetch_keeps_only_bars_after_anchor():
    def responder(request):
        tf = request.url.params.get("tf")
        return httpx.Response(200, json=list(reversed(m2_rows(30))) if tf == "eq.M2" else [])

    source, connector, handler = make_source(responder)
    async with connector:
        candles = await source.fetch_future("EURUSD", "M15", T0, 2)

    assert [c.time for c in candles] == [T0 + 900, T0 + 1800]
    assert handler.requests[0].url.params["order"] == "time.asc"


@pytest.mark.asyncio
async def test_http_error_resolves_to_empty():
    source, connector, _ = make_source(lambda request: httpx.Response(500, text="boom"))
    async with connector:
        assert await source.fetch_context("EURUSD", "H1", T0, 10) == []
        assert await source.fetch_first("EURUSD", "H1") is None


@pytest.mark.asyncio
async def test_fetch_first_without_timeframe_spans_all_series():
    rows = m2_rows(3)
    source, connector, handler = make_source(lambda request: httpx.Response(200, json=rows[-1:]))
    async with connector:
        first = await source.fetch_first("EURUSD")

    assert first.time == T0
    params = handler.requests[0].url.params
    assert "tf" not in params
    assert params["order"] == "time.asc"
    assert params["limit"] == "1"


@pytest.mark.asyncio
async def test_cancelled_token_aborts_before_request():
    source, connector, handler = make_source(lambda request: httpx.Response(200, json=[]))
    token = CancellationToken()
    token.cancel("symbol changed")

    async with connector:
        with pytest.raises(FetchCancelled):
            await source.fetch_context("EURUSD", "M15", T0, 10, token)

    assert handler.requests == []


@pytest.mark.asyncio
async def test_connector_without_key_sends_no_auth_headers():
    source, connector, handler = make_source(lambda request: httpx.Response(200, json=[]), api_key="")
    await source.fetch_last("EURUSD", "M15")

    assert connector.connected
    assert "authorization" not in handler.requests[0].headers
    await connector.disconnect()
    assert not connector.connected


@pytest.mark.asyncio
async def test_in_memory_source_resamples_and_spans_timeframes():
    src = InMemoryMarketDataSource()
    src.load("EURUSD", "M15", make_candles(8, start=T0 + 3600))
    src.load_rows("EURUSD", "M2", list(reversed(m2_rows(30))))

    h1 = await src.fetch_context("EURUSD", "H1", T0 + 3 * 3600, 10)
    first_any = await src.fetch_first("EURUSD")
    first_m15 = await src.fetch_first("EURUSD", "M15")
    last = await src.fetch_last("EURUSD")

    assert [c.time for c in h1] == [T0]
    assert h1[0].volume == 3000
    assert first_any.time == T0
    assert first_m15.time == T0 + 3600
    assert last.time == T0 + 3600 + 7 * 900
    assert src.symbols() == ["EURUSD"]
    assert await src.fetch_first("GBPUSD") is None
