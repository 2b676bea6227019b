# --------------------------------------------------------------------
# models/position.py
# Paper short positions as read from / written to the store, and the
# live portfolio summary aggregated over them.
# --------------------------------------------------------------------
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass
class NewPosition:
    symbol: str
    signal_id: Optional[int]
    entry_ts_ms: int
    signal_hour_start_ms: int
    entry_price: float
    entry_sell_ratio: float
    signal_hour_volume: float
    leverage: float
    margin_usd: float
    notional_usd: float
    qty: float
    take_profit_pct: float
    delta_exit_threshold: float
    replace_threshold_pct: float
    entry_slippage_bps: float = 0.0


@dataclass
class OpenPosition:
    id: int
    symbol: str
    signal_id: Optional[int]
    status: str
    entry_ts_ms: int
    signal_hour_start_ms: int
    entry_price: float
    entry_sell_ratio: float
    signal_hour_volume: float
    leverage: float
    margin_usd: float
    notional_usd: float
    qty: float
    take_profit_pct: float
    delta_exit_threshold: float
    replace_threshold_pct: float
    entry_slippage_bps: float = 0.0
    latest_mark_price: Optional[float] = None
    latest_mark_ts_ms: Optional[int] = None
    latest_unlevered_return_pct: Optional[float] = None
    latest_leveraged_return_pct: Optional[float] = None
    latest_unrealized_pnl_usd: Optional[float] = None
    latest_funding_accrued_usd: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.status == "OPEN"


@dataclass
class PositionMark:
    mark_price: float
    mark_ts_ms: int
    unlevered_return_pct: float
    leveraged_return_pct: float
    unrealized_pnl_usd: float
    funding_accrued_usd: Optional[float] = None


@dataclass
class LiveSummary:
    entries: int = 0
    live_entries: int = 0
    missed_trades: int = 0
    winners: int = 0
    losers: int = 0
    liquidated: int = 0
    replaced: int = 0
    open_positions: int = 0
    cash_usd: float = 0.0
    margin_in_use_usd: float = 0.0
    open_notional_usd: float = 0.0
    unrealized_pnl_usd: float = 0.0
    open_funding_accrued_usd: float = 0.0
    realized_pnl_usd: float = 0.0
    current_equity_usd: float = 0.0
    total_pnl_usd: float = 0.0
    pnl_pct: float = 0.0
    win_pct: float = 0.0
