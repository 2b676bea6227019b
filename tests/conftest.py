import itertools
import logging

import pandas as pd
import pytest

from models.config import AppConfig
from models.market import Instrument, Ticker
from models.position import NewPosition
from module.persistence.sqlite import PaperStore
from modules.engine import PaperEngine
from notifiers.base import BaseNotifier, IncomingMessage

H = 3_600_000
T0 = 1_699_999_200_000  # hour-aligned


# ------------------------- Fakes ------------------------- #

class FakeMarketClient:
    """In-memory stand-in for BybitClient returning the same frame layouts."""

    def __init__(self):
        self.instruments = []
        self.candles = {}
        self.ratios = {}
        self.tickers = {}
        self.funding = {}
        self.calls = []
        self.fail_symbols = set()

    # setup helpers
    def set_candles(self, symbol, rows):
        self.candles[symbol] = pd.DataFrame(rows, columns=["open_time", "open", "high", "low", "close", "volume"])

    def set_ratios(self, symbol, rows):
        self.ratios[symbol] = pd.DataFrame(
            [(ts, None if sr is None else 1 - sr, sr) for ts, sr in rows],
            columns=["ts_ms", "buy_ratio", "sell_ratio"],
        ).astype({"buy_ratio": "float64", "sell_ratio": "float64"})

    def set_ticker(self, symbol, mark, bid=None, ask=None):
        self.tickers[symbol] = Ticker(symbol=symbol, mark_price=mark, last_price=mark, bid_price=bid, ask_price=ask)

    def set_funding(self, symbol, rows):
        self.funding[symbol] = pd.DataFrame(rows, columns=["ts_ms", "funding_rate"])

    # client surface
    async def get_symbols(self):
        self.calls.append(("symbols",))
        return list(self.instruments)

    async def get_hourly_candles(self, symbol, limit):
        self.calls.append(("candles", symbol, limit))
        if symbol in self.fail_symbols:
            raise RuntimeError(f"boom {symbol}")
        df = self.candles.get(symbol)
        if df is None:
            return pd.DataFrame(columns=["open_time", "open", "high", "low", "close", "volume"])
        return df.tail(limit).reset_index(drop=True)

    async def get_sentiment_ratio(self, symbol, limit=10):
        self.calls.append(("ratio", symbol, limit))
        df = self.ratios.get(symbol)
        if df is None:
            return pd.DataFrame(columns=["ts_ms", "buy_ratio", "sell_ratio"])
        return df.tail(limit).reset_index(drop=True)

    async def get_ticker(self, symbol):
        self.calls.append(("ticker", symbol))
        return self.tickers.get(symbol)

    async def get_funding_history(self, symbol, start_ms, end_ms):
        self.calls.append(("funding", symbol, start_ms, end_ms))
        df = self.funding.get(symbol)
        if df is None:
            return pd.DataFrame(columns=["ts_ms", "funding_rate"])
        return df[(df["ts_ms"] >= start_ms) & (df["ts_ms"] <= end_ms)].reset_index(drop=True)

    def log_metrics(self):
        pass

    async def close(self):
        pass


class FakeNotifier(BaseNotifier):
    def __init__(self, enabled=True):
        self.enabled = enabled
        self.sent = []
        self.updates = []
        self._ids = itertools.count(100)

    async def send(self, text, chat_id=None):
        self.sent.append((chat_id, text))
        return next(self._ids)

    async def get_updates(self, offset):
        return [u for u in self.updates if u.update_id >= offset]

    def push(self, update_id, text, chat_id="42"):
        self.updates.append(IncomingMessage(update_id=update_id, chat_id=chat_id, text=text))

    @property
    def texts(self):
        return [t for _, t in self.sent]


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


# ------------------------- Fixtures ------------------------- #

@pytest.fixture
def config():
    cfg = AppConfig()
    cfg.bybit.request_pause_ms = 0
    cfg.telegram.chat_id = "42"
    cfg.funding.enabled = False
    return cfg


@pytest.fixture
def store():
    s = PaperStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def client():
    return FakeMarketClient()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def clock():
    return Clock(T0 + 10 * H)


@pytest.fixture
def engine(config, client, store, notifier, clock):
    eng = PaperEngine(config, client, store, notifier, logging.getLogger("test-engine"), clock=clock)
    eng.bootstrap()
    return eng


@pytest.fixture
def make_position(store, config):
    """Open a position directly in the store (bypasses signal handling)."""

    def _make(symbol="AAAUSDT", entry_price=100.0, leverage=5.0, margin=100.0,
              entry_ts=T0, entry_sell_ratio=0.40, volume=2_000_000.0, **overrides):
        fields = dict(
            symbol=symbol,
            signal_id=None,
            entry_ts_ms=entry_ts,
            signal_hour_start_ms=entry_ts - H,
            entry_price=entry_price,
            entry_sell_ratio=entry_sell_ratio,
            signal_hour_volume=volume,
            leverage=leverage,
            margin_usd=margin,
            notional_usd=margin * leverage,
            qty=margin * leverage / entry_price,
            take_profit_pct=config.strategy.take_profit_pct,
            delta_exit_threshold=config.strategy.delta_exit_threshold,
            replace_threshold_pct=config.strategy.replace_threshold_pct,
        )
        fields.update(overrides)
        return store.open_position(NewPosition(**fields))

    return _make


@pytest.fixture
def instrument():
    def _make(symbol, status="Trading"):
        return Instrument(symbol=symbol, status=status, contract_type="LinearPerpetual")
    return _make
