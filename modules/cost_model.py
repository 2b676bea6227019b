"""
cost_model.py
-------------
Pure pricing helpers for paper shorts: returns, quantity, fee and slippage
breakdown, liquidation / take-profit levels and funding.

Nothing in here raises on bad numeric input; degenerate prices or sizes
collapse to ``0`` so a single broken quote cannot abort a scan cycle.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional

from models.config import CostsSection, DynamicSlippage


def _finite(*values: float) -> bool:
    return all(isinstance(v, (int, float)) and math.isfinite(v) for v in values)


@dataclass(frozen=True)
class CostOverrides:
    """Per-trade replacements for the configured bps values."""

    taker_fee_bps: Optional[float] = None
    entry_slippage_bps: Optional[float] = None
    exit_slippage_bps: Optional[float] = None


@dataclass(frozen=True)
class CostBreakdown:
    entry_fee_usd: float
    exit_fee_usd: float
    entry_slippage_usd: float
    exit_slippage_usd: float

    @property
    def total_fees_usd(self) -> float:
        return self.entry_fee_usd + self.exit_fee_usd

    @property
    def total_slippage_usd(self) -> float:
        return self.entry_slippage_usd + self.exit_slippage_usd

    @property
    def total_cost_usd(self) -> float:
        return self.total_fees_usd + self.total_slippage_usd


# --------------------------------------------------------------------------- #
# returns / sizing
# --------------------------------------------------------------------------- #
def short_unlevered_return_pct(entry_price: float, exit_price: float) -> float:
    """Price move in the short's favour, in percent of entry."""
    if not _finite(entry_price, exit_price) or entry_price <= 0 or exit_price <= 0:
        return 0.0
    return (entry_price - exit_price) / entry_price * 100


def leveraged_return_pct(unlevered_pct: float, leverage: float) -> float:
    return unlevered_pct * leverage


def qty_from_notional(notional_usd: float, price: float) -> float:
    if not _finite(notional_usd, price) or notional_usd <= 0 or price <= 0:
        return 0.0
    return notional_usd / price


def pnl_usd_from_unlevered_pct(margin_usd: float, leverage: float, unlevered_pct: float) -> float:
    if not _finite(margin_usd, leverage, unlevered_pct):
        return 0.0
    return margin_usd * leverage * unlevered_pct / 100


# --------------------------------------------------------------------------- #
# costs
# --------------------------------------------------------------------------- #
def apply_costs(
    notional_usd: float,
    costs: CostsSection,
    overrides: Optional[CostOverrides] = None,
) -> CostBreakdown:
    """Round-trip taker fees plus entry/exit slippage on ``notional_usd``."""
    if not _finite(notional_usd) or notional_usd <= 0:
        return CostBreakdown(0.0, 0.0, 0.0, 0.0)

    overrides = overrides or CostOverrides()
    fee_bps = costs.taker_fee_bps if overrides.taker_fee_bps is None else overrides.taker_fee_bps
    entry_bps = costs.entry_slippage_bps if overrides.entry_slippage_bps is None else overrides.entry_slippage_bps
    exit_bps = costs.exit_slippage_bps if overrides.exit_slippage_bps is None else overrides.exit_slippage_bps

    fee = notional_usd * fee_bps / 10_000 if costs.use_fees else 0.0
    entry_slip = notional_usd * entry_bps / 10_000 if costs.use_slippage else 0.0
    exit_slip = notional_usd * exit_bps / 10_000 if costs.use_slippage else 0.0

    return CostBreakdown(
        entry_fee_usd=fee,
        exit_fee_usd=fee,
        entry_slippage_usd=entry_slip,
        exit_slippage_usd=exit_slip,
    )


def estimate_dynamic_slippage_bps(
    cfg: DynamicSlippage,
    base_bps: float,
    volume_usd: Optional[float],
    spread_bps: Optional[float] = None,
    bias_bps: float = 0.0,
) -> float:
    """
    Size-aware slippage estimate.

    Thin markets (``volume_usd`` below the reference) scale ``base_bps`` up by
    ``(reference / volume) ** exponent``; half the quoted spread is added on
    top.  The result is clamped to ``[min_bps, max_bps]``.
    """
    if volume_usd is None or not _finite(volume_usd) or volume_usd <= 0:
        return cfg.max_bps

    size_component = base_bps * (cfg.volume_reference_usd / volume_usd) ** cfg.volume_exponent
    spread_component = 0.0
    if spread_bps is not None and _finite(spread_bps) and spread_bps > 0:
        spread_component = cfg.spread_multiplier * spread_bps / 2

    bps = size_component + spread_component + bias_bps
    return min(cfg.max_bps, max(cfg.min_bps, bps))


# --------------------------------------------------------------------------- #
# risk levels
# --------------------------------------------------------------------------- #
def liquidation_threshold_unlevered_pct(leverage: float) -> float:
    """Unlevered loss (negative %) at which the short's margin is gone."""
    if not _finite(leverage) or leverage <= 0:
        return -100.0
    return -(100 / leverage)


def liquidation_price(entry_price: float, leverage: float) -> float:
    if not _finite(leverage) or leverage <= 0:
        return entry_price * 2
    return entry_price * (1 + 1 / leverage)


def take_profit_price(entry_price: float, take_profit_pct: float) -> float:
    return entry_price * (1 - take_profit_pct)


# --------------------------------------------------------------------------- #
# funding
# --------------------------------------------------------------------------- #
def funding_usd_from_rates(
    notional_usd: float,
    rates: Iterable[float],
    short_receives_when_positive: bool = True,
) -> float:
    """Net funding for a short; positive means cash received."""
    if not _finite(notional_usd) or notional_usd <= 0:
        return 0.0
    total = sum(r for r in rates if _finite(r))
    signed = total if short_receives_when_positive else -total
    return notional_usd * signed
