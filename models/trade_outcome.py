# --------------------------------------------------------------------
# models/trade_outcome.py
# Exit reasons, exit candidates and the immutable settlement record
# written once when a paper position closes.
# --------------------------------------------------------------------
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


class ExitReason(str, Enum):
    LIQ = "LIQ"
    TP = "TP"
    DELTA = "DELTA"
    TIME = "TIME"
    REPLACE = "REPLACE"


# lower wins when two exits land on the same timestamp
EXIT_PRIORITY: Dict[ExitReason, int] = {
    ExitReason.LIQ: 1,
    ExitReason.TP: 2,
    ExitReason.DELTA: 3,
    ExitReason.TIME: 4,
}

WINNING_REASONS = (ExitReason.TP, ExitReason.DELTA, ExitReason.TIME)


@dataclass(frozen=True)
class ExitCandidate:
    reason: ExitReason
    exit_ts_ms: int
    exit_price: float

    @property
    def priority(self) -> int:
        return EXIT_PRIORITY.get(self.reason, len(EXIT_PRIORITY) + 1)

    @property
    def sort_key(self) -> tuple:
        return (self.exit_ts_ms, self.priority)


@dataclass(frozen=True)
class TradeOutcome:
    position_id: int
    symbol: str
    exit_ts_ms: int  # epoch-ms
    exit_price: float
    exit_reason: ExitReason
    unlevered_return_pct: float
    leveraged_return_pct: float
    pnl_usd: float
    fees_usd: float = 0.0
    slippage_usd: float = 0.0
    net_funding_fee_usd: float = 0.0
    exit_slippage_bps: Optional[float] = None
