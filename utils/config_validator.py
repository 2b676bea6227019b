"""
utils/config_validator.py
-------------------------
Fail-fast validation of the nested config dict built by
``core.initialization.load_configuration``.
"""
from __future__ import annotations

from typing import Any, Dict

from pydantic import ValidationError

from models.config import AppConfig


def validate_config(config: Dict[str, Any]) -> AppConfig:
    """Return a typed :class:`AppConfig` or raise ``ValueError`` listing every problem."""
    if not isinstance(config, dict):
        raise TypeError("config must be a dictionary.")

    try:
        cfg = AppConfig.model_validate(config)
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        ]
        raise ValueError(f"Invalid configuration: {problems}") from exc

    if cfg.telegram.enabled:
        missing = [k for k in ("token", "chat_id") if not getattr(cfg.telegram, k)]
        if missing:
            raise ValueError(f"Telegram is enabled but missing: {missing}")

    dyn = cfg.costs.dynamic_slippage
    if dyn.max_bps < dyn.min_bps:
        raise ValueError("costs.dynamic_slippage.max_bps must be >= min_bps.")

    return cfg
