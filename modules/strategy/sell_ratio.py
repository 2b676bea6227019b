"""
strategy/sell_ratio.py
----------------------
Close-confirm / next-open short entry:

• the last closed hourly candle traded at least ``min_hour_volume``
• the latest account sell-ratio sample covering that hour is ≤ ``sell_ratio_max``
• the fill is the open of the following (current) candle
"""

from __future__ import annotations

import logging
import math
from typing import Optional

import pandas as pd

from models.config import StrategySection
from models.signal import SignalDecision
from modules.strategy.base import BaseDetector
from utils.time import HOUR_MS

CANDLE_LOOKBACK = 3
RATIO_LOOKBACK = 10


class SellRatioDetector(BaseDetector):
    """Low sell-ratio on a liquid closed hour, entered at the next open."""

    def __init__(self, client, config: StrategySection, logger: Optional[logging.Logger] = None) -> None:
        self.client = client
        self.sell_ratio_max = config.sell_ratio_max
        self.min_hour_volume = config.min_hour_volume
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    async def detect(self, symbol: str) -> Optional[SignalDecision]:
        candles: pd.DataFrame = await self.client.get_hourly_candles(symbol, CANDLE_LOOKBACK)
        if candles is None or len(candles) < 2:
            return None

        candles = candles.sort_values("open_time", kind="stable")
        closed = candles.iloc[-2]
        current = candles.iloc[-1]
        closed_start = int(closed["open_time"])
        if closed_start >= int(current["open_time"]):
            return None
        closed_end = closed_start + HOUR_MS

        volume = float(closed["volume"])
        if not math.isfinite(volume) or volume < self.min_hour_volume:
            return None

        sell_ratio = await self._latest_sell_ratio(symbol, closed_start, closed_end)
        if sell_ratio is None or sell_ratio > self.sell_ratio_max:
            return None

        next_open = float(current["open"])
        if not math.isfinite(next_open) or next_open <= 0:
            return None

        self.logger.debug(
            "signal %s hour=%s vol=%.0f sell_ratio=%.4f next_open=%s",
            symbol, closed_start, volume, sell_ratio, next_open,
        )
        return SignalDecision(
            symbol=symbol,
            closed_hour_start_ms=closed_start,
            closed_hour_end_ms=closed_end,
            closed_hour_volume=volume,
            signal_sell_ratio=sell_ratio,
            close_price=float(closed["close"]),
            next_open_price=next_open,
        )

    async def _latest_sell_ratio(self, symbol: str, closed_start: int, closed_end: int) -> Optional[float]:
        ratios: pd.DataFrame = await self.client.get_sentiment_ratio(symbol, RATIO_LOOKBACK)
        if ratios is None or ratios.empty:
            return None

        in_window = ratios[(ratios["ts_ms"] >= closed_start - HOUR_MS) & (ratios["ts_ms"] <= closed_end)]
        if in_window.empty:
            return None

        latest = in_window.sort_values("ts_ms", kind="stable").iloc[-1]["sell_ratio"]
        if latest is None or pd.isna(latest):
            return None
        latest = float(latest)
        return latest if math.isfinite(latest) else None
