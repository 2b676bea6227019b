"""
models/config.py
----------------
Typed, validated runtime configuration.

``core.initialization.load_configuration`` assembles a nested dict from
``config.env`` / environment variables; ``utils.config_validator`` turns it
into an :class:`AppConfig`.  Every field has a default so a bare environment
boots a paper engine against the public Bybit API with Telegram disabled.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field

ReplaceBasis = Literal["unlevered", "levered"]


class _Section(BaseModel):
    model_config = {"extra": "ignore"}


class AppSection(_Section):
    version: str = "v16"
    scan_interval_ms: int = Field(60_000, gt=0)
    symbol_refresh_interval_ms: int = Field(6 * 60 * 60 * 1000, gt=0)


class BybitSection(_Section):
    base_url: str = "https://api.bybit.com"
    category: Literal["linear"] = "linear"
    timeout_ms: int = Field(10_000, gt=0)
    symbol_batch_size: int = Field(10, gt=0)
    max_symbols: int = Field(500, gt=0)
    request_pause_ms: int = Field(250, ge=0)
    max_requests_per_10s: int = Field(100, gt=0)


class TelegramSection(_Section):
    enabled: bool = False
    token: Optional[str] = None
    chat_id: Optional[str] = None
    parse_mode: Literal["HTML"] = "HTML"
    command_poll_ms: int = Field(3_000, gt=0)


class ExitToggles(_Section):
    liq_enabled: bool = True
    tp_enabled: bool = True
    delta_enabled: bool = True
    time_enabled: bool = True


class StrategySection(_Section):
    id: str = Field("xsp_v16", min_length=1)
    title: str = Field("XSP v16 Paper", min_length=1)
    sell_ratio_max: float = Field(0.45, gt=0, allow_inf_nan=False)
    min_hour_volume: float = Field(1_000_000, ge=0, allow_inf_nan=False)
    leverage: float = Field(5, gt=0, allow_inf_nan=False)
    take_profit_pct: float = Field(0.10, gt=0, allow_inf_nan=False)
    delta_exit_threshold: float = Field(0.05, gt=0, allow_inf_nan=False)
    max_hold_hours: float = Field(0, ge=0, allow_inf_nan=False)
    max_open_positions: int = Field(10, gt=0)
    prevent_duplicate_symbols: bool = True
    replace_threshold_pct: float = Field(0.20, gt=0, allow_inf_nan=False)
    replace_threshold_basis: ReplaceBasis = "unlevered"
    starting_equity_usd: float = Field(10_000, gt=0, allow_inf_nan=False)
    entry_margin_fraction: float = Field(0.10, gt=0, le=1, allow_inf_nan=False)
    entry_margin_cap_usd: float = Field(500, gt=0, allow_inf_nan=False)
    min_active_cash_usd: float = Field(10, ge=0, allow_inf_nan=False)
    reconcile_downtime_exits: bool = True
    downtime_lookback_hours_max: float = Field(72, gt=0, allow_inf_nan=False)
    exits: ExitToggles = Field(default_factory=ExitToggles)


class DynamicSlippage(_Section):
    enabled: bool = False
    min_bps: float = Field(1, ge=0, allow_inf_nan=False)
    max_bps: float = Field(50, ge=0, allow_inf_nan=False)
    volume_reference_usd: float = Field(5_000_000, gt=0, allow_inf_nan=False)
    volume_exponent: float = Field(0.5, ge=0, allow_inf_nan=False)
    spread_multiplier: float = Field(1.0, ge=0, allow_inf_nan=False)
    entry_bias_bps: float = Field(0, allow_inf_nan=False)
    exit_bias_bps: float = Field(0, allow_inf_nan=False)


class CostsSection(_Section):
    use_fees: bool = True
    use_slippage: bool = True
    taker_fee_bps: float = Field(5.5, ge=0, allow_inf_nan=False)
    entry_slippage_bps: float = Field(5, ge=0, allow_inf_nan=False)
    exit_slippage_bps: float = Field(5, ge=0, allow_inf_nan=False)
    dynamic_slippage: DynamicSlippage = Field(default_factory=DynamicSlippage)


class FundingSection(_Section):
    enabled: bool = True
    short_receives_when_positive: bool = True
    notify_updates: bool = False


class StorageSection(_Section):
    db_path: str = "data/paper.db"


class AppConfig(BaseModel):
    app: AppSection = Field(default_factory=AppSection)
    bybit: BybitSection = Field(default_factory=BybitSection)
    telegram: TelegramSection = Field(default_factory=TelegramSection)
    strategy: StrategySection = Field(default_factory=StrategySection)
    costs: CostsSection = Field(default_factory=CostsSection)
    funding: FundingSection = Field(default_factory=FundingSection)
    storage: StorageSection = Field(default_factory=StorageSection)
