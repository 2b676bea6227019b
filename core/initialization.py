"""
core/initialization.py
----------------------
Loads configuration from .env into the nested section layout validated by
``models.config``, and wires all runtime components with simple
dependency-injection (DI) overrides.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from core.command_handler import CommandService
from core.scheduler import Scheduler
from models.config import AppConfig
from module.persistence.sqlite import PaperStore
from modules.engine import PaperEngine
from modules.rest_client import BybitClient
from notifiers.telegram import TelegramNotifier
from utils.config_validator import validate_config
from utils.logger import setup_logger


# env var -> (section, dotted key inside the section)
ENV_MAP: Dict[str, tuple] = {
    "APP_VERSION": ("app", "version"),
    "SCAN_INTERVAL_MS": ("app", "scan_interval_ms"),
    "SYMBOL_REFRESH_INTERVAL_MS": ("app", "symbol_refresh_interval_ms"),

    "BYBIT_BASE_URL": ("bybit", "base_url"),
    "BYBIT_CATEGORY": ("bybit", "category"),
    "BYBIT_TIMEOUT_MS": ("bybit", "timeout_ms"),
    "BYBIT_SYMBOL_BATCH_SIZE": ("bybit", "symbol_batch_size"),
    "BYBIT_MAX_SYMBOLS": ("bybit", "max_symbols"),
    "BYBIT_REQUEST_PAUSE_MS": ("bybit", "request_pause_ms"),
    "BYBIT_MAX_REQUESTS_PER_10S": ("bybit", "max_requests_per_10s"),

    "TELEGRAM_ENABLED": ("telegram", "enabled"),
    "TELEGRAM_TOKEN": ("telegram", "token"),
    "TELEGRAM_CHAT_ID": ("telegram", "chat_id"),
    "TELEGRAM_PARSE_MODE": ("telegram", "parse_mode"),
    "TELEGRAM_COMMAND_POLL_MS": ("telegram", "command_poll_ms"),

    "STRATEGY_ID": ("strategy", "id"),
    "STRATEGY_TITLE": ("strategy", "title"),
    "SELL_RATIO_MAX": ("strategy", "sell_ratio_max"),
    "MIN_HOUR_VOLUME": ("strategy", "min_hour_volume"),
    "LEVERAGE": ("strategy", "leverage"),
    "TAKE_PROFIT_PCT": ("strategy", "take_profit_pct"),
    "DELTA_EXIT_THRESHOLD": ("strategy", "delta_exit_threshold"),
    "MAX_HOLD_HOURS": ("strategy", "max_hold_hours"),
    "MAX_OPEN_POSITIONS": ("strategy", "max_open_positions"),
    "PREVENT_DUPLICATE_SYMBOLS": ("strategy", "prevent_duplicate_symbols"),
    "REPLACE_THRESHOLD_PCT": ("strategy", "replace_threshold_pct"),
    "REPLACE_THRESHOLD_BASIS": ("strategy", "replace_threshold_basis"),
    "STARTING_EQUITY_USD": ("strategy", "starting_equity_usd"),
    "ENTRY_MARGIN_FRACTION": ("strategy", "entry_margin_fraction"),
    "ENTRY_MARGIN_CAP_USD": ("strategy", "entry_margin_cap_usd"),
    "MIN_ACTIVE_CASH_USD": ("strategy", "min_active_cash_usd"),
    "RECONCILE_DOWNTIME_EXITS": ("strategy", "reconcile_downtime_exits"),
    "DOWNTIME_LOOKBACK_HOURS_MAX": ("strategy", "downtime_lookback_hours_max"),
    "EXIT_LIQ_ENABLED": ("strategy", "exits.liq_enabled"),
    "EXIT_TP_ENABLED": ("strategy", "exits.tp_enabled"),
    "EXIT_DELTA_ENABLED": ("strategy", "exits.delta_enabled"),
    "EXIT_TIME_ENABLED": ("strategy", "exits.time_enabled"),

    "USE_FEES": ("costs", "use_fees"),
    "USE_SLIPPAGE": ("costs", "use_slippage"),
    "TAKER_FEE_BPS": ("costs", "taker_fee_bps"),
    "ENTRY_SLIPPAGE_BPS": ("costs", "entry_slippage_bps"),
    "EXIT_SLIPPAGE_BPS": ("costs", "exit_slippage_bps"),
    "DYNAMIC_SLIPPAGE_ENABLED": ("costs", "dynamic_slippage.enabled"),
    "DYNAMIC_SLIPPAGE_MIN_BPS": ("costs", "dynamic_slippage.min_bps"),
    "DYNAMIC_SLIPPAGE_MAX_BPS": ("costs", "dynamic_slippage.max_bps"),
    "DYNAMIC_SLIPPAGE_VOLUME_REFERENCE_USD": ("costs", "dynamic_slippage.volume_reference_usd"),
    "DYNAMIC_SLIPPAGE_VOLUME_EXPONENT": ("costs", "dynamic_slippage.volume_exponent"),
    "DYNAMIC_SLIPPAGE_SPREAD_MULTIPLIER": ("costs", "dynamic_slippage.spread_multiplier"),
    "DYNAMIC_SLIPPAGE_ENTRY_BIAS_BPS": ("costs", "dynamic_slippage.entry_bias_bps"),
    "DYNAMIC_SLIPPAGE_EXIT_BIAS_BPS": ("costs", "dynamic_slippage.exit_bias_bps"),

    "FUNDING_ENABLED": ("funding", "enabled"),
    "FUNDING_SHORT_RECEIVES_WHEN_POSITIVE": ("funding", "short_receives_when_positive"),
    "FUNDING_NOTIFY_UPDATES": ("funding", "notify_updates"),

    "DB_PATH": ("storage", "db_path"),
}


def _set_dotted(target: Dict[str, Any], dotted: str, value: Any) -> None:
    *parents, leaf = dotted.split(".")
    for key in parents:
        target = target.setdefault(key, {})
    target[leaf] = value


def load_configuration(env_path: str = "config.env") -> Dict[str, Any]:
    """
    Load settings from an .env-style file and return a nested config dict.

    Only variables that are actually set are included; pydantic supplies the
    defaults and coerces strings ("true", "0.45", ...) during validation.
    """
    log = logging.getLogger(__name__)
    load_dotenv(dotenv_path=env_path)

    conf: Dict[str, Any] = {}
    for env_key, (section, dotted) in ENV_MAP.items():
        raw = os.getenv(env_key)
        if raw is None or raw.strip() == "":
            continue
        _set_dotted(conf.setdefault(section, {}), dotted, raw.strip())

    log.debug("config sections from env: %s", {k: sorted(v) for k, v in conf.items()})
    return conf


def initialize_components(
    config: AppConfig,
    overrides: Optional[Dict[str, object]] = None,
    logger: Optional[logging.Logger] = None,
) -> Dict[str, object]:
    """
    Construct and wire together all runtime components (supports DI via overrides).

    Keys you can override:
    {"logger", "client", "store", "notifier", "engine", "scheduler", "commands"}
    """
    overrides = overrides or {}

    # 1) Logger
    logger = overrides.get("logger") or logger or setup_logger("PaperEngine")

    # 2) Market data
    client = overrides.get("client") or BybitClient(config.bybit, logger=logger)

    # 3) Storage
    store = overrides.get("store") or PaperStore(config.storage.db_path)

    # 4) Notification sink
    notifier = overrides.get("notifier") or TelegramNotifier(config.telegram)

    # 5) Engine
    engine = overrides.get("engine") or PaperEngine(config, client, store, notifier, logger)

    # 6) Timer + command surface
    scheduler = overrides.get("scheduler") or Scheduler(
        config.app.scan_interval_ms, lambda: engine.run_cycle("timer"), logger, name="scan-cycle"
    )
    commands = overrides.get("commands") or CommandService(config, engine, store, notifier, logger)

    logger.info("✅ Logger initialized.")
    logger.info("✅ Market client initialized: %s", client.__class__.__name__)
    logger.info("✅ Store initialized: %s", config.storage.db_path)
    logger.info("✅ Notifier initialized (enabled=%s).", getattr(notifier, "enabled", False))
    logger.info("✅ Engine initialized: %s", config.strategy.id)

    return {
        "logger": logger,
        "client": client,
        "store": store,
        "notifier": notifier,
        "engine": engine,
        "scheduler": scheduler,
        "commands": commands,
    }


def build_config(env_path: str = "config.env") -> AppConfig:
    return validate_config(load_configuration(env_path))
