"""
rest_client.py
--------------
Asynchronous client for the public Bybit v5 market endpoints used by the
paper engine: instruments, hourly klines, long/short account ratio,
tickers and funding history.

Requests share one ``aiohttp.ClientSession`` and go through a sliding-window
``RateLimiter``.  Transport or API failures raise ``MarketDataError``; the
engine catches those per symbol / per position.
"""

from __future__ import annotations

import asyncio
import logging
import statistics
import time
from collections import deque
from typing import Any, Dict, List, Optional

import aiohttp
import pandas as pd

from models.config import BybitSection
from models.market import Instrument, Ticker
from modules.data_provider import DataProvider


KLINE_MAX_LIMIT = 200
RATIO_MAX_LIMIT = 500
FUNDING_MAX_LIMIT = 200
INSTRUMENTS_MAX_LIMIT = 1000
LATENCY_WINDOW = 500


class MarketDataError(RuntimeError):
    """HTTP or API-level failure talking to the exchange."""


# ---------------------------- rate limiter -------------------------------- #
class RateLimiter:
    """Sliding-window limiter (max N requests per 10 s window).

    Callers queue on a lock so concurrent ``gather`` batches are granted one
    at a time; the window is re-checked after every sleep.
    """

    WINDOW_S = 10

    def __init__(self, max_requests_per_10s: int) -> None:
        self.max_requests = max_requests_per_10s
        self.timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _trim(self, now: float) -> None:
        while self.timestamps and now - self.timestamps[0] >= self.WINDOW_S:
            self.timestamps.popleft()

    async def acquire(self) -> None:
        async with self._lock:
            self._trim(time.time())
            while len(self.timestamps) >= self.max_requests:
                await asyncio.sleep(max(0.0, self.WINDOW_S - (time.time() - self.timestamps[0])))
                self._trim(time.time())
            self.timestamps.append(time.time())


# ------------------------------ client ------------------------------------ #
class BybitClient:
    """Market-data source for USDT linear perpetuals."""

    def __init__(
        self,
        config: BybitSection,
        logger: Optional[logging.Logger] = None,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        data_provider: Optional[DataProvider] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.category = config.category
        self.timeout = aiohttp.ClientTimeout(total=config.timeout_ms / 1000)

        self._session = session
        self._owns_session = session is None
        self.data_provider = data_provider or DataProvider()
        self.rate_limiter = rate_limiter or RateLimiter(config.max_requests_per_10s)

        self.metrics = {
            "requests_sent": 0,
            "errors": 0,
            "latencies": deque(maxlen=LATENCY_WINDOW),
        }

    # -------------------------------------------------------------------- #
    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """GET ``path`` and return the decoded body; raise on HTTP / retCode errors."""
        await self.rate_limiter.acquire()
        session = await self._get_session()
        url = f"{self.base_url}{path}"

        try:
            t0 = time.time()
            async with session.get(url, params=params) as resp:
                self.metrics["requests_sent"] += 1
                if resp.status != 200:
                    raise MarketDataError(f"HTTP {resp.status}: {path}")
                data = await resp.json()
                self.metrics["latencies"].append(time.time() - t0)
        except MarketDataError:
            self.metrics["errors"] += 1
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.metrics["errors"] += 1
            raise MarketDataError(f"request failed {path}: {exc}") from exc

        if not isinstance(data, dict):
            self.metrics["errors"] += 1
            raise MarketDataError(f"unexpected payload from {path}")
        ret_code = data.get("retCode", 0)
        if ret_code != 0:
            self.metrics["errors"] += 1
            raise MarketDataError(f"{path} retCode={ret_code} retMsg={data.get('retMsg')}")
        return data

    # -------------------------------------------------------------------- #
    async def get_symbols(self, limit: int = INSTRUMENTS_MAX_LIMIT) -> List[Instrument]:
        data = await self._get_json(
            "/v5/market/instruments-info",
            {"category": self.category, "limit": max(1, min(limit, INSTRUMENTS_MAX_LIMIT))},
        )
        return self.data_provider.parse_instruments(data)

    async def get_hourly_candles(self, symbol: str, limit: int) -> pd.DataFrame:
        data = await self._get_json(
            "/v5/market/kline",
            {
                "category": self.category,
                "symbol": symbol,
                "interval": "60",
                "limit": max(1, min(limit, KLINE_MAX_LIMIT)),
            },
        )
        return self.data_provider.create_dataframe_from_kline(data)

    async def get_sentiment_ratio(self, symbol: str, limit: int = 10) -> pd.DataFrame:
        data = await self._get_json(
            "/v5/market/account-ratio",
            {
                "category": self.category,
                "symbol": symbol,
                "period": "1h",
                "limit": max(1, min(limit, RATIO_MAX_LIMIT)),
            },
        )
        return self.data_provider.create_dataframe_from_ratio(data)

    async def get_ticker(self, symbol: str) -> Optional[Ticker]:
        data = await self._get_json(
            "/v5/market/tickers", {"category": self.category, "symbol": symbol}
        )
        return self.data_provider.parse_ticker(data, symbol)

    async def get_funding_history(self, symbol: str, start_ms: int, end_ms: int) -> pd.DataFrame:
        start = max(0, int(start_ms))
        end = max(start, int(end_ms))
        data = await self._get_json(
            "/v5/market/funding/history",
            {
                "category": self.category,
                "symbol": symbol,
                "startTime": start,
                "endTime": end,
                "limit": FUNDING_MAX_LIMIT,
            },
        )
        return self.data_provider.create_dataframe_from_funding(data)

    # -------------------------------------------------------------------- #
    def log_metrics(self) -> None:
        avg = statistics.mean(self.metrics["latencies"]) if self.metrics["latencies"] else 0
        self.logger.info(
            "📊 Requests: %s | Errors: %s | Avg latency: %.3fs",
            self.metrics["requests_sent"],
            self.metrics["errors"],
            avg,
        )

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
