"""
engine.py
---------
Position lifecycle engine for the paper short book.

One entry point, :meth:`PaperEngine.run_cycle`, is shared by the timer and
the manual ``/scan`` command.  A cycle

1. reads the ``last_scan_ts`` high-water mark,
2. refreshes the tradable symbol universe when due,
3. reconciles downtime exits and marks / exits every open position,
4. scans active symbols in concurrent batches and handles fresh signals,
5. commits ``last_scan_ts`` = cycle start.

Open positions, signals and the live summary are re-read from the store on
every use; the engine keeps no trading state in memory between cycles.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import pandas as pd

from models.alert import AlertEvent
from models.config import AppConfig
from models.market import Ticker
from models.position import NewPosition, OpenPosition, PositionMark
from models.signal import SignalDecision, SignalOutcome
from models.trade_outcome import ExitReason, TradeOutcome
from module.persistence.sqlite import PaperStore
from modules.cost_model import (
    CostOverrides,
    apply_costs,
    estimate_dynamic_slippage_bps,
    funding_usd_from_rates,
    leveraged_return_pct,
    liquidation_threshold_unlevered_pct,
    pnl_usd_from_unlevered_pct,
    qty_from_notional,
    short_unlevered_return_pct,
    take_profit_price,
)
from modules.portfolio import CapacityArbiter
from modules.reconciler import DowntimeReconciler
from modules.strategy.base import BaseDetector
from modules.strategy.sell_ratio import SellRatioDetector
from notifiers import messages
from notifiers.base import BaseNotifier
from utils.time import HOUR_MS, now_ms

DELTA_LIVE_SAMPLES = 2


@dataclass(frozen=True)
class CycleResult:
    executed: bool
    reason: Optional[str] = None


class PaperEngine:
    """Signal handling, mark-to-market and exit decisions for paper shorts."""

    def __init__(
        self,
        config: AppConfig,
        client,
        store: PaperStore,
        notifier: BaseNotifier,
        logger: Optional[logging.Logger] = None,
        *,
        detector: Optional[BaseDetector] = None,
        reconciler: Optional[DowntimeReconciler] = None,
        arbiter: Optional[CapacityArbiter] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.config = config
        self.client = client
        self.store = store
        self.notifier = notifier
        self.clock = clock or now_ms

        strat = config.strategy
        self.detector = detector or SellRatioDetector(client, strat, self.logger)
        self.reconciler = reconciler or DowntimeReconciler(client, strat, self.logger)
        self.arbiter = arbiter or CapacityArbiter(strat.replace_threshold_basis, strat.replace_threshold_pct)

        self.key_last_scan = f"{strat.id}:last_scan_ts"
        self.key_last_refresh = f"{strat.id}:last_symbol_refresh_ts"
        self.key_telegram_offset = f"{strat.id}:telegram_offset"

        self._cycle_lock = asyncio.Lock()

    # ------------------------------------------------------------------ #
    # lifecycle
    # ------------------------------------------------------------------ #
    def bootstrap(self) -> None:
        """Seed continuity markers without touching ones that already exist."""
        self.store.bootstrap_runtime({
            self.key_last_scan: "0",
            self.key_last_refresh: "0",
            self.key_telegram_offset: "0",
        })

    async def startup(self) -> None:
        """Seed markers, then reload the symbol universe regardless of the refresh interval."""
        self.bootstrap()
        try:
            await self.refresh_symbols_if_needed(self.clock(), force=True)
        except Exception:
            # the first cycle retries once the refresh interval allows it
            self.logger.exception("startup symbol refresh failed; keeping stored universe")

    @property
    def cycle_running(self) -> bool:
        return self._cycle_lock.locked()

    async def run_cycle(self, trigger: str = "timer") -> CycleResult:
        # try-lock: overlapping triggers are rejected, never queued
        if self._cycle_lock.locked():
            self.logger.info("cycle skipped (%s): another cycle is running", trigger)
            return CycleResult(False, "cycle_in_progress")

        async with self._cycle_lock:
            started = self.clock()
            try:
                last_scan = self.store.get_runtime_int(self.key_last_scan)
                await self.refresh_symbols_if_needed(started)
                await self.evaluate_open_positions(last_scan, started)
                outcomes = await self.scan_and_handle_signals()
                self.store.set_runtime_value(self.key_last_scan, str(started))
            except Exception:
                self.logger.exception("cycle failed (%s)", trigger)
                return CycleResult(False, "cycle_failed")

            self.logger.info(
                "✅ cycle done (%s) in %d ms | outcomes=%s",
                trigger,
                self.clock() - started,
                {k.value: v for k, v in outcomes.items()},
            )
            self.client.log_metrics()
            return CycleResult(True)

    # ------------------------------------------------------------------ #
    # symbol universe
    # ------------------------------------------------------------------ #
    async def refresh_symbols_if_needed(self, now_ts: int, force: bool = False) -> bool:
        last = self.store.get_runtime_int(self.key_last_refresh)
        interval = self.config.app.symbol_refresh_interval_ms
        if not force and last > 0 and now_ts - last < interval:
            return False

        instruments = await self.client.get_symbols()
        tradable = [i.symbol for i in instruments if i.is_tradable][: self.config.bybit.max_symbols]
        if not tradable:
            self.logger.warning("symbol refresh returned no tradable instruments; keeping current universe")
            return False

        self.store.upsert_symbols(tradable)
        self.store.set_runtime_value(self.key_last_refresh, str(now_ts))
        self.logger.info("symbol universe refreshed: %d active", len(tradable))
        return True

    # ------------------------------------------------------------------ #
    # scanning / signal handling
    # ------------------------------------------------------------------ #
    async def scan_and_handle_signals(self) -> Dict[SignalOutcome, int]:
        symbols = self.store.get_active_symbols()
        batch_size = self.config.bybit.symbol_batch_size
        pause = self.config.bybit.request_pause_ms / 1000
        outcomes: Dict[SignalOutcome, int] = {}

        for i in range(0, len(symbols), batch_size):
            batch = symbols[i:i + batch_size]
            decisions = await asyncio.gather(*(self._detect(s) for s in batch))

            for decision in decisions:
                if decision is None:
                    continue
                try:
                    outcome = await self.handle_signal(decision)
                except Exception:
                    self.logger.exception("signal handling failed for %s", decision.symbol)
                    continue
                outcomes[outcome] = outcomes.get(outcome, 0) + 1

            if pause > 0 and i + batch_size < len(symbols):
                await asyncio.sleep(pause)

        return outcomes

    async def _detect(self, symbol: str) -> Optional[SignalDecision]:
        try:
            return await self.detector.detect(symbol)
        except Exception as exc:
            self.logger.warning("detect failed %s: %s", symbol, exc)
            return None

    async def handle_signal(self, decision: SignalDecision) -> SignalOutcome:
        strat = self.config.strategy
        symbol = decision.symbol

        if self.store.find_signal(symbol, decision.closed_hour_start_ms) is not None:
            return SignalOutcome.SKIPPED_ALREADY_PROCESSED

        signal_id = self.store.create_signal(decision)

        if strat.prevent_duplicate_symbols and self.store.get_open_position_by_symbol(symbol):
            return self._finish(signal_id, symbol, SignalOutcome.MISSED_DUPLICATE, "symbol_already_open")

        summary = self.store.get_summary(strat.starting_equity_usd)
        margin = min(
            summary.current_equity_usd * strat.entry_margin_fraction,
            strat.entry_margin_cap_usd,
            summary.cash_usd,
        )

        entry_price = decision.next_open_price
        if not math.isfinite(entry_price) or entry_price <= 0:
            return self._finish(signal_id, symbol, SignalOutcome.MISSED_INVALID_PRICE, "invalid_next_open_price")

        if not math.isfinite(margin) or margin < strat.min_active_cash_usd:
            return self._finish(signal_id, symbol, SignalOutcome.MISSED_NO_CASH, "insufficient_cash")

        replaced: Optional[OpenPosition] = None
        replaced_trade: Optional[TradeOutcome] = None
        open_positions = self.store.get_open_positions()
        if len(open_positions) >= strat.max_open_positions:
            arbitration = self.arbiter.decide(open_positions)
            if not arbitration.allowed:
                return self._finish(
                    signal_id, symbol, SignalOutcome.MISSED_CAPACITY, "capacity_no_replace_candidate"
                )
            replaced = arbitration.candidate
            exit_mark = replaced.latest_mark_price if replaced.latest_mark_price is not None else replaced.entry_price
            replaced_trade = await self.close_position_with_alert(
                replaced, ExitReason.REPLACE, self.clock(), exit_mark
            )

        notional = margin * strat.leverage
        entry_bps = self.entry_slippage_bps(decision)
        position = self.store.open_position(NewPosition(
            symbol=symbol,
            signal_id=signal_id,
            entry_ts_ms=decision.closed_hour_end_ms,
            signal_hour_start_ms=decision.closed_hour_start_ms,
            entry_price=entry_price,
            entry_sell_ratio=decision.signal_sell_ratio,
            signal_hour_volume=decision.closed_hour_volume,
            leverage=strat.leverage,
            margin_usd=margin,
            notional_usd=notional,
            qty=qty_from_notional(notional, entry_price),
            take_profit_pct=strat.take_profit_pct,
            delta_exit_threshold=strat.delta_exit_threshold,
            replace_threshold_pct=strat.replace_threshold_pct,
            entry_slippage_bps=entry_bps,
        ))

        if replaced is not None:
            outcome = self._finish(signal_id, symbol, SignalOutcome.OPENED_REPLACEMENT, f"replaced:{replaced.symbol}")
        else:
            outcome = self._finish(signal_id, symbol, SignalOutcome.OPENED, "opened")

        event = AlertEvent(
            type=messages.ENTRY_REPLACE if replaced else messages.ENTRY_OPEN,
            symbol=symbol,
            sell_ratio=decision.signal_sell_ratio,
            sell_ratio_threshold=strat.sell_ratio_max,
            hour_volume=decision.closed_hour_volume,
            volume_threshold=strat.min_hour_volume,
            entry_price=entry_price,
            take_profit_price=take_profit_price(entry_price, strat.take_profit_pct),
            entry_slippage_bps=entry_bps,
            leverage=strat.leverage,
        )
        if replaced is not None:
            event.replaced_symbol = replaced.symbol
            if replaced_trade is not None:
                event.replaced_pnl_pct = replaced_trade.leveraged_return_pct
                event.replaced_unlevered_pct = replaced_trade.unlevered_return_pct
            else:
                event.replaced_pnl_pct = replaced.latest_leveraged_return_pct
                event.replaced_unlevered_pct = replaced.latest_unlevered_return_pct

        text = messages.format_entry_message(strat.title, event, self.store.get_summary(strat.starting_equity_usd))
        await self._dispatch(event.type, symbol, text, position.id)

        self.logger.info(
            "📉 opened short %s @ %s margin=%.2f notional=%.2f%s",
            symbol, entry_price, margin, notional,
            f" (replaced {replaced.symbol})" if replaced else "",
        )
        return outcome

    def _finish(self, signal_id: int, symbol: str, outcome: SignalOutcome, reason: str) -> SignalOutcome:
        self.store.set_signal_outcome(signal_id, outcome, reason)
        if outcome.is_missed:
            self.logger.info("signal %s %s (%s)", symbol, outcome.value, reason)
        return outcome

    # ------------------------------------------------------------------ #
    # exit evaluation
    # ------------------------------------------------------------------ #
    async def evaluate_open_positions(self, last_scan_ts: int, now_ts: int) -> None:
        for pos in self.store.get_open_positions():
            try:
                await self.evaluate_position(pos, last_scan_ts, now_ts)
            except Exception:
                self.logger.exception("exit evaluation failed for %s (position %s)", pos.symbol, pos.id)

    async def evaluate_position(self, pos: OpenPosition, last_scan_ts: int, now_ts: int) -> Optional[ExitReason]:
        if self.config.strategy.reconcile_downtime_exits and last_scan_ts > 0:
            reconciled = await self.reconciler.reconcile(pos, last_scan_ts, now_ts)
            if reconciled is not None:
                await self.close_position_with_alert(pos, reconciled.reason, reconciled.exit_ts_ms, reconciled.exit_price)
                return reconciled.reason

        ticker = await self.client.get_ticker(pos.symbol)
        if ticker is None or not math.isfinite(ticker.mark_price) or ticker.mark_price <= 0:
            self.logger.debug("no usable mark for %s; skipping this cycle", pos.symbol)
            return None

        mark = ticker.mark_price
        unlev = short_unlevered_return_pct(pos.entry_price, mark)
        lev = leveraged_return_pct(unlev, pos.leverage)
        gross = pnl_usd_from_unlevered_pct(pos.margin_usd, pos.leverage, unlev)
        funding_usd, new_points = await self.funding_accrual(pos, now_ts)

        self.store.update_position_mark(pos.id, PositionMark(
            mark_price=mark,
            mark_ts_ms=now_ts,
            unlevered_return_pct=unlev,
            leveraged_return_pct=lev,
            unrealized_pnl_usd=gross,
            funding_accrued_usd=funding_usd,
        ))
        await self._notify_funding_change(pos, funding_usd, new_points)

        reason = await self.decide_exit(pos, unlev, now_ts)
        if reason is None:
            return None
        await self.close_position_with_alert(pos, reason, now_ts, mark, ticker)
        return reason

    async def decide_exit(self, pos: OpenPosition, unlevered_pct: float, now_ts: int) -> Optional[ExitReason]:
        """First matching trigger in LIQ -> TP -> DELTA -> TIME order."""
        strat = self.config.strategy
        exits = strat.exits

        if exits.liq_enabled and unlevered_pct <= liquidation_threshold_unlevered_pct(pos.leverage):
            return ExitReason.LIQ

        if exits.tp_enabled and unlevered_pct >= pos.take_profit_pct * 100:
            return ExitReason.TP

        if exits.delta_enabled:
            ratios = await self.client.get_sentiment_ratio(pos.symbol, DELTA_LIVE_SAMPLES)
            if ratios is not None and not ratios.empty:
                latest = ratios.sort_values("ts_ms", kind="stable").iloc[-1]["sell_ratio"]
                if not pd.isna(latest) and latest - pos.entry_sell_ratio >= pos.delta_exit_threshold:
                    return ExitReason.DELTA

        if exits.time_enabled and strat.max_hold_hours > 0:
            if now_ts - pos.entry_ts_ms >= strat.max_hold_hours * HOUR_MS:
                return ExitReason.TIME

        return None

    async def close_position_with_alert(
        self,
        pos: OpenPosition,
        reason: ExitReason,
        exit_ts_ms: int,
        exit_price: float,
        ticker: Optional[Ticker] = None,
    ) -> Optional[TradeOutcome]:
        unlev = short_unlevered_return_pct(pos.entry_price, exit_price)
        lev = leveraged_return_pct(unlev, pos.leverage)
        gross = pnl_usd_from_unlevered_pct(pos.margin_usd, pos.leverage, unlev)

        exit_bps = self.exit_slippage_bps(pos, exit_price, ticker)
        overrides = None
        if self.config.costs.dynamic_slippage.enabled:
            overrides = CostOverrides(entry_slippage_bps=pos.entry_slippage_bps, exit_slippage_bps=exit_bps)
        costs = apply_costs(pos.notional_usd, self.config.costs, overrides)
        funding = await self.compute_funding_usd(pos.symbol, pos.notional_usd, pos.entry_ts_ms, exit_ts_ms)

        trade = TradeOutcome(
            position_id=pos.id,
            symbol=pos.symbol,
            exit_ts_ms=exit_ts_ms,
            exit_price=exit_price,
            exit_reason=reason,
            unlevered_return_pct=unlev,
            leveraged_return_pct=lev,
            pnl_usd=gross - costs.total_cost_usd + funding,
            fees_usd=costs.total_fees_usd,
            slippage_usd=costs.total_slippage_usd,
            net_funding_fee_usd=funding,
            exit_slippage_bps=exit_bps,
        )
        if not self.store.close_position(trade):
            self.logger.warning("position %s (%s) was already closed; skipping %s", pos.id, pos.symbol, reason.value)
            return None

        strat = self.config.strategy
        event = AlertEvent(
            type="EXIT",
            symbol=pos.symbol,
            exit_reason=reason.value,
            leverage=pos.leverage,
            leveraged_return_pct=lev,
            unlevered_return_pct=unlev,
            entry_slippage_bps=pos.entry_slippage_bps,
            exit_slippage_bps=exit_bps,
            net_funding_fee_usd=funding,
        )
        text = messages.format_exit_message(strat.title, event, self.store.get_summary(strat.starting_equity_usd))
        await self._dispatch(f"EXIT_{reason.value}", pos.symbol, text, pos.id)

        self.logger.info(
            "closed %s %s @ %s unlev=%.2f%% pnl=%.4f funding=%.4f",
            pos.symbol, reason.value, exit_price, unlev, trade.pnl_usd, funding,
        )
        return trade

    # ------------------------------------------------------------------ #
    # funding
    # ------------------------------------------------------------------ #
    async def _funding_history(self, symbol: str, notional_usd: float, start_ms: int, end_ms: int) -> pd.DataFrame:
        if not self.config.funding.enabled:
            return pd.DataFrame(columns=["ts_ms", "funding_rate"])
        if not math.isfinite(notional_usd) or notional_usd <= 0 or end_ms <= start_ms:
            return pd.DataFrame(columns=["ts_ms", "funding_rate"])
        return await self.client.get_funding_history(symbol, start_ms, end_ms)

    async def compute_funding_usd(self, symbol: str, notional_usd: float, entry_ts_ms: int, exit_ts_ms: int) -> float:
        """Net funding over the hold; 0 when disabled or the window is empty."""
        history = await self._funding_history(symbol, notional_usd, entry_ts_ms, exit_ts_ms)
        if history is None or history.empty:
            return 0.0
        return funding_usd_from_rates(
            notional_usd,
            history["funding_rate"].tolist(),
            self.config.funding.short_receives_when_positive,
        )

    async def funding_accrual(self, pos: OpenPosition, now_ts: int) -> Tuple[float, int]:
        """Funding accrued from entry to ``now_ts`` and how many settlements are new since the last mark."""
        history = await self._funding_history(pos.symbol, pos.notional_usd, pos.entry_ts_ms, now_ts)
        if history is None or history.empty:
            return 0.0, 0
        accrued = funding_usd_from_rates(
            pos.notional_usd,
            history["funding_rate"].tolist(),
            self.config.funding.short_receives_when_positive,
        )
        since = pos.latest_mark_ts_ms or pos.entry_ts_ms
        return accrued, int((history["ts_ms"] > since).sum())

    async def _notify_funding_change(self, pos: OpenPosition, accrued_usd: float, new_points: int) -> None:
        if not self.config.funding.notify_updates:
            return
        delta = accrued_usd - (pos.latest_funding_accrued_usd or 0.0)
        if abs(delta) < 1e-9:
            return
        text = messages.format_funding_message(self.config.strategy.title, pos.symbol, delta, new_points)
        await self._dispatch(messages.FUNDING_UPDATE, pos.symbol, text, pos.id)

    # ------------------------------------------------------------------ #
    # slippage
    # ------------------------------------------------------------------ #
    def entry_slippage_bps(self, decision: SignalDecision) -> float:
        costs = self.config.costs
        if not costs.use_slippage:
            return 0.0
        dyn = costs.dynamic_slippage
        if not dyn.enabled:
            return costs.entry_slippage_bps
        return estimate_dynamic_slippage_bps(
            dyn,
            costs.entry_slippage_bps,
            decision.closed_hour_volume * decision.close_price,
            bias_bps=dyn.entry_bias_bps,
        )

    def exit_slippage_bps(self, pos: OpenPosition, exit_price: float, ticker: Optional[Ticker] = None) -> float:
        costs = self.config.costs
        if not costs.use_slippage:
            return 0.0
        dyn = costs.dynamic_slippage
        if not dyn.enabled:
            return costs.exit_slippage_bps
        return estimate_dynamic_slippage_bps(
            dyn,
            costs.exit_slippage_bps,
            pos.signal_hour_volume * exit_price,
            spread_bps=ticker.spread_bps if ticker is not None else None,
            bias_bps=dyn.exit_bias_bps,
        )

    # ------------------------------------------------------------------ #
    # alerts
    # ------------------------------------------------------------------ #
    async def _dispatch(self, event_type: str, symbol: str, text: str, position_id: Optional[int]) -> None:
        message_id = await self.notifier.send(text)
        self.store.insert_alert(event_type, symbol, text, position_id, message_id)
