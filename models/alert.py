# models/alert.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass
class AlertEvent:
    """Content of one entry/exit notification before formatting."""

    type: str
    symbol: str
    sell_ratio: Optional[float] = None
    sell_ratio_threshold: Optional[float] = None
    hour_volume: Optional[float] = None
    volume_threshold: Optional[float] = None
    entry_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    entry_slippage_bps: Optional[float] = None
    exit_slippage_bps: Optional[float] = None
    replaced_symbol: Optional[str] = None
    replaced_pnl_pct: Optional[float] = None
    replaced_unlevered_pct: Optional[float] = None
    exit_reason: Optional[str] = None
    leverage: Optional[float] = None
    leveraged_return_pct: Optional[float] = None
    unlevered_return_pct: Optional[float] = None
    net_funding_fee_usd: Optional[float] = None


@dataclass
class AlertRecord:
    id: int
    event_type: str
    symbol: str
    message_text: str
    position_id: Optional[int]
    telegram_message_id: Optional[int]
    created_at: str
