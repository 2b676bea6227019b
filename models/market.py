# models/market.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Instrument:
    symbol: str
    status: str
    contract_type: str

    @property
    def is_tradable(self) -> bool:
        return self.status.lower() in ("trading", "settling")


@dataclass(frozen=True)
class Ticker:
    symbol: str
    mark_price: float
    last_price: Optional[float] = None
    bid_price: Optional[float] = None
    ask_price: Optional[float] = None

    @property
    def spread_bps(self) -> Optional[float]:
        """Quoted bid/ask spread in bps of mid, or None when unquoted."""
        if not self.bid_price or not self.ask_price or self.bid_price <= 0 or self.ask_price < self.bid_price:
            return None
        mid = (self.bid_price + self.ask_price) / 2
        return (self.ask_price - self.bid_price) / mid * 10_000
