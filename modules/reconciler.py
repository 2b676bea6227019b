"""
reconciler.py
-------------
Downtime exit reconstruction.

When the process was offline, an open short may have hit its liquidation or
take-profit level, crossed the sell-ratio delta threshold, or run out its
hold time.  ``DowntimeReconciler`` replays the exchange's own hourly candles
and account-ratio history over the gap and returns the exit that would have
fired first.  Entries are never backfilled.
"""

from __future__ import annotations

import logging
import math
from typing import List, Optional

import pandas as pd

from models.config import StrategySection
from models.position import OpenPosition
from models.trade_outcome import ExitCandidate, ExitReason
from modules.cost_model import liquidation_price, take_profit_price
from utils.time import HOUR_MS

MIN_CANDLES = 3
MAX_CANDLES = 200
MIN_RATIOS = 2
MAX_RATIOS = 200


def price_at_ts(candles: pd.DataFrame, ts_ms: int) -> Optional[float]:
    """Close of the candle containing ``ts_ms``, else the nearest prior close."""
    if candles is None or candles.empty:
        return None

    containing = candles[(candles["open_time"] <= ts_ms) & (ts_ms < candles["open_time"] + HOUR_MS)]
    if not containing.empty:
        return _positive(containing.iloc[0]["close"])

    prior = candles[candles["open_time"] <= ts_ms]
    if prior.empty:
        return None
    return _positive(prior.iloc[-1]["close"])


def pick_earliest_exit(candidates: List[ExitCandidate]) -> Optional[ExitCandidate]:
    """Earliest timestamp wins; same timestamp resolves LIQ < TP < DELTA < TIME."""
    if not candidates:
        return None
    return sorted(candidates, key=lambda c: c.sort_key)[0]


def _positive(value) -> Optional[float]:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return out if math.isfinite(out) and out > 0 else None


class DowntimeReconciler:
    def __init__(
        self,
        client,
        config: StrategySection,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.client = client
        self.config = config
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    def window_start(self, pos: OpenPosition, last_scan_ts: int, now_ts: int) -> int:
        lookback_ms = int(self.config.downtime_lookback_hours_max * HOUR_MS)
        return max(pos.entry_ts_ms, last_scan_ts, now_ts - lookback_ms)

    async def reconcile(self, pos: OpenPosition, last_scan_ts: int, now_ts: int) -> Optional[ExitCandidate]:
        start = self.window_start(pos, last_scan_ts, now_ts)
        if now_ts <= start:
            return None

        hours = math.ceil((now_ts - start) / HOUR_MS) + 3
        candles = await self.client.get_hourly_candles(pos.symbol, max(MIN_CANDLES, min(MAX_CANDLES, hours)))
        if candles is None or candles.empty:
            return None
        candles = candles.sort_values("open_time", kind="stable").reset_index(drop=True)
        exits = self.config.exits

        candidates: List[ExitCandidate] = []

        price_hit = self._first_price_hit(pos, candles, start, now_ts)
        if price_hit is not None:
            candidates.append(price_hit)

        if exits.time_enabled and self.config.max_hold_hours > 0:
            time_ts = pos.entry_ts_ms + int(self.config.max_hold_hours * HOUR_MS)
            if start <= time_ts <= now_ts:
                candidates.append(
                    ExitCandidate(ExitReason.TIME, time_ts, self._fill_price(candles, time_ts, pos))
                )

        if exits.delta_enabled:
            ratio_limit = max(MIN_RATIOS, min(MAX_RATIOS, hours + 4))
            ratios = await self.client.get_sentiment_ratio(pos.symbol, ratio_limit)
            delta_hit = self._first_delta_hit(pos, ratios, candles, start, now_ts)
            if delta_hit is not None:
                candidates.append(delta_hit)

        chosen = pick_earliest_exit(candidates)
        if chosen is not None:
            self.logger.info(
                "downtime exit %s %s at %s price=%s (candidates=%d)",
                pos.symbol, chosen.reason.value, chosen.exit_ts_ms, chosen.exit_price, len(candidates),
            )
        return chosen

    # -------------------------------------------------------------------- #
    def _first_price_hit(
        self, pos: OpenPosition, candles: pd.DataFrame, start: int, now_ts: int
    ) -> Optional[ExitCandidate]:
        exits = self.config.exits
        if not (exits.liq_enabled or exits.tp_enabled):
            return None

        liq_px = liquidation_price(pos.entry_price, pos.leverage)
        tp_px = take_profit_price(pos.entry_price, pos.take_profit_pct)

        for candle in candles.itertuples(index=False):
            candle_start = int(candle.open_time)
            candle_end = candle_start + HOUR_MS
            if candle_end <= start or candle_start > now_ts:
                continue

            hit_liq = exits.liq_enabled and candle.high >= liq_px
            hit_tp = exits.tp_enabled and candle.low <= tp_px
            if hit_liq:
                return ExitCandidate(ExitReason.LIQ, min(candle_end, now_ts), liq_px)
            if hit_tp:
                return ExitCandidate(ExitReason.TP, min(candle_end, now_ts), tp_px)
        return None

    def _first_delta_hit(
        self,
        pos: OpenPosition,
        ratios: pd.DataFrame,
        candles: pd.DataFrame,
        start: int,
        now_ts: int,
    ) -> Optional[ExitCandidate]:
        if ratios is None or ratios.empty:
            return None

        for sample in ratios.sort_values("ts_ms", kind="stable").itertuples(index=False):
            ts = int(sample.ts_ms)
            if ts < start or ts > now_ts or pd.isna(sample.sell_ratio):
                continue
            if sample.sell_ratio - pos.entry_sell_ratio >= pos.delta_exit_threshold:
                return ExitCandidate(ExitReason.DELTA, ts, self._fill_price(candles, ts, pos))
        return None

    @staticmethod
    def _fill_price(candles: pd.DataFrame, ts_ms: int, pos: OpenPosition) -> float:
        price = price_at_ts(candles, ts_ms)
        if price is None:
            price = _positive(candles.iloc[-1]["close"]) if not candles.empty else None
        return price if price is not None else pos.entry_price
