# --------------------------------------------------------------------
# models/signal.py
# Confirmed entry decision produced by a detector, plus the terminal
# outcomes a stored signal row can end in.
# --------------------------------------------------------------------
from __future__ import annotations

import math
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class SignalOutcome(str, Enum):
    PENDING = "PENDING"
    OPENED = "OPENED"
    OPENED_REPLACEMENT = "OPENED_REPLACEMENT"
    MISSED_DUPLICATE = "MISSED_DUPLICATE"
    MISSED_CAPACITY = "MISSED_CAPACITY"
    MISSED_NO_CASH = "MISSED_NO_CASH"
    MISSED_INVALID_PRICE = "MISSED_INVALID_PRICE"
    SKIPPED_ALREADY_PROCESSED = "SKIPPED_ALREADY_PROCESSED"

    @property
    def is_missed(self) -> bool:
        return self.value.startswith("MISSED_")


class SignalDecision(BaseModel):
    """One confirmed close-confirm / next-open short entry."""

    symbol: str = Field(..., min_length=1)
    closed_hour_start_ms: int = Field(..., ge=0)
    closed_hour_end_ms: int = Field(..., ge=0)
    closed_hour_volume: float = Field(..., ge=0)
    signal_sell_ratio: float
    close_price: float
    # validated downstream so the engine can record MISSED_INVALID_PRICE
    next_open_price: float

    @field_validator("signal_sell_ratio")
    @classmethod
    def finite_ratio(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("sell ratio must be finite")
        return v
