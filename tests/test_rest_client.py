import asyncio
import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from models.config import BybitSection
from modules.rest_client import LATENCY_WINDOW, BybitClient, MarketDataError, RateLimiter

# ------------------------- Fixtures ------------------------- #

def make_response(payload, status=200):
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=payload)
    return resp


@pytest.fixture
def mock_session():
    session = MagicMock()
    session.get.return_value.__aenter__.return_value = make_response({"retCode": 0, "result": {"list": []}})
    return session


@pytest.fixture
def rest_client(mock_session):
    limiter = MagicMock()
    limiter.acquire = AsyncMock()
    return BybitClient(
        BybitSection(base_url="https://api.example.test/"),
        logger=logging.getLogger("test-rest"),
        session=mock_session,
        rate_limiter=limiter,
    )


def respond_with(session, payload, status=200):
    session.get.return_value.__aenter__.return_value = make_response(payload, status)


# ------------------------- Tests ------------------------- #

class FakeClock:
    def __init__(self, now=1_000.0):
        self.now = now
        self.sleeps = []

    def time(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock():
    clock = FakeClock()
    with patch("modules.rest_client.time", SimpleNamespace(time=clock.time)), \
            patch("modules.rest_client.asyncio.sleep", clock.sleep):
        yield clock


@pytest.mark.asyncio
async def test_rate_limiter_waits_when_window_full(fake_clock):
    limiter = RateLimiter(max_requests_per_10s=2)

    await limiter.acquire()
    await limiter.acquire()
    assert fake_clock.sleeps == []

    await limiter.acquire()
    assert fake_clock.sleeps == [10]
    assert len(limiter.timestamps) == 2


@pytest.mark.asyncio
async def test_rate_limiter_caps_concurrent_callers(fake_clock):
    limiter = RateLimiter(max_requests_per_10s=2)
    grants = []

    async def request():
        await limiter.acquire()
        grants.append(fake_clock.now)

    await asyncio.gather(*(request() for _ in range(6)))

    grants.sort()
    assert len(grants) == 6
    for first, third in zip(grants, grants[2:]):
        assert third - first >= RateLimiter.WINDOW_S


@pytest.mark.asyncio
async def test_hourly_candles_request_and_parse(rest_client, mock_session):
    respond_with(mock_session, {
        "retCode": 0,
        "result": {"list": [
            ["1700003600000", "11", "12", "10", "11.5", "900", "1"],
            ["1700000000000", "10", "11", "9", "10.5", "800", "1"],
        ]},
    })

    df = await rest_client.get_hourly_candles("BTCUSDT", 500)

    url = mock_session.get.call_args.args[0]
    params = mock_session.get.call_args.kwargs["params"]
    assert url == "https://api.example.test/v5/market/kline"
    assert params == {"category": "linear", "symbol": "BTCUSDT", "interval": "60", "limit": 200}
    assert list(df["open_time"]) == [1700000000000, 1700003600000]
    assert rest_client.metrics["requests_sent"] == 1
    rest_client.rate_limiter.acquire.assert_awaited_once()


@pytest.mark.asyncio
async def test_sentiment_ratio_params(rest_client, mock_session):
    respond_with(mock_session, {
        "retCode": 0,
        "result": {"list": [{"symbol": "BTCUSDT", "buyRatio": "0.6", "sellRatio": "0.4", "timestamp": "1700000000000"}]},
    })

    df = await rest_client.get_sentiment_ratio("BTCUSDT", 2)

    params = mock_session.get.call_args.kwargs["params"]
    assert params["period"] == "1h"
    assert params["limit"] == 2
    assert df.iloc[0]["sell_ratio"] == pytest.approx(0.4)


@pytest.mark.asyncio
async def test_funding_history_window(rest_client, mock_session):
    respond_with(mock_session, {
        "retCode": 0,
        "result": {"list": [{"symbol": "BTCUSDT", "fundingRate": "0.0001", "fundingRateTimestamp": "1700000000000"}]},
    })

    df = await rest_client.get_funding_history("BTCUSDT", 1_699_990_000_000, 1_700_010_000_000)

    params = mock_session.get.call_args.kwargs["params"]
    assert params["startTime"] == 1_699_990_000_000
    assert params["endTime"] == 1_700_010_000_000
    assert df["funding_rate"].tolist() == [0.0001]


@pytest.mark.asyncio
async def test_get_symbols_filters_perpetuals(rest_client, mock_session):
    respond_with(mock_session, {
        "retCode": 0,
        "result": {"list": [
            {"symbol": "BTCUSDT", "status": "Trading", "contractType": "LinearPerpetual", "quoteCoin": "USDT"},
            {"symbol": "BTC-27DEC", "status": "Trading", "contractType": "LinearFutures", "quoteCoin": "USDT"},
        ]},
    })

    instruments = await rest_client.get_symbols()
    assert [i.symbol for i in instruments] == ["BTCUSDT"]


@pytest.mark.asyncio
async def test_http_error_raises_and_counts(rest_client, mock_session):
    respond_with(mock_session, {}, status=500)

    with pytest.raises(MarketDataError):
        await rest_client.get_ticker("BTCUSDT")
    assert rest_client.metrics["errors"] == 1


@pytest.mark.asyncio
async def test_api_error_code_raises(rest_client, mock_session):
    respond_with(mock_session, {"retCode": 10001, "retMsg": "params error"})

    with pytest.raises(MarketDataError, match="retCode=10001"):
        await rest_client.get_ticker("BTCUSDT")
    assert rest_client.metrics["errors"] == 1


@pytest.mark.asyncio
async def test_transport_error_is_wrapped(rest_client, mock_session):
    mock_session.get.side_effect = aiohttp.ClientError("connection reset")

    with pytest.raises(MarketDataError):
        await rest_client.get_hourly_candles("BTCUSDT", 3)
    assert rest_client.metrics["errors"] == 1


@pytest.mark.asyncio
async def test_timeout_is_wrapped(rest_client, mock_session):
    mock_session.get.side_effect = asyncio.TimeoutError()

    with pytest.raises(MarketDataError):
        await rest_client.get_sentiment_ratio("BTCUSDT")


@pytest.mark.asyncio
async def test_injected_session_is_not_closed(rest_client, mock_session):
    mock_session.close = AsyncMock()
    await rest_client.close()
    mock_session.close.assert_not_awaited()


@pytest.mark.asyncio
async def test_latency_history_is_bounded(rest_client, mock_session):
    respond_with(mock_session, {"retCode": 0, "result": {"list": []}})

    for _ in range(LATENCY_WINDOW + 5):
        await rest_client.get_ticker("BTCUSDT")

    assert rest_client.metrics["requests_sent"] == LATENCY_WINDOW + 5
    assert len(rest_client.metrics["latencies"]) == LATENCY_WINDOW


def test_log_metrics(rest_client, caplog):
    rest_client.metrics = {
        "requests_sent": 10,
        "errors": 2,
        "latencies": [0.1, 0.2, 0.3],
    }

    with caplog.at_level(logging.INFO, logger="test-rest"):
        rest_client.log_metrics()

    assert "Requests: 10" in caplog.text
    assert "Errors: 2" in caplog.text
    assert "Avg latency" in caplog.text
