import logging
import os
from unittest.mock import patch

import pytest

from core.initialization import ENV_MAP, build_config, initialize_components, load_configuration
from models.config import AppConfig
from utils.config_validator import validate_config


@pytest.fixture
def clean_env():
    with patch.dict(os.environ, clear=False):
        for key in ENV_MAP:
            os.environ.pop(key, None)
        yield os.environ


def test_defaults_boot_without_env(clean_env, tmp_path):
    cfg = build_config(str(tmp_path / "missing.env"))

    assert cfg.strategy.id == "xsp_v16"
    assert cfg.strategy.sell_ratio_max == 0.45
    assert cfg.strategy.replace_threshold_basis == "unlevered"
    assert cfg.telegram.enabled is False
    assert cfg.funding.enabled is True
    assert cfg.app.scan_interval_ms == 60_000


def test_env_vars_map_into_sections(clean_env, tmp_path):
    clean_env.update({
        "SELL_RATIO_MAX": "0.4",
        "LEVERAGE": "3",
        "EXIT_TIME_ENABLED": "false",
        "DYNAMIC_SLIPPAGE_ENABLED": "true",
        "DYNAMIC_SLIPPAGE_MAX_BPS": "30",
        "REPLACE_THRESHOLD_BASIS": "levered",
        "BYBIT_MAX_SYMBOLS": "",
    })

    raw = load_configuration(str(tmp_path / "missing.env"))
    assert raw["strategy"]["exits"] == {"time_enabled": "false"}
    assert "bybit" not in raw

    cfg = validate_config(raw)
    assert cfg.strategy.sell_ratio_max == 0.4
    assert cfg.strategy.leverage == 3
    assert cfg.strategy.exits.time_enabled is False
    assert cfg.strategy.exits.tp_enabled is True
    assert cfg.strategy.replace_threshold_basis == "levered"
    assert cfg.costs.dynamic_slippage.enabled is True
    assert cfg.costs.dynamic_slippage.max_bps == 30


def test_dotenv_file_is_read(clean_env, tmp_path):
    env_file = tmp_path / "config.env"
    env_file.write_text("STRATEGY_TITLE=My Paper Book\nDB_PATH=/tmp/x.db\n", encoding="utf-8")

    cfg = build_config(str(env_file))
    assert cfg.strategy.title == "My Paper Book"
    assert cfg.storage.db_path == "/tmp/x.db"


def test_validate_rejects_non_dict():
    with pytest.raises(TypeError):
        validate_config(["not", "a", "dict"])


@pytest.mark.parametrize("raw", [
    {"strategy": {"leverage": "0"}},
    {"strategy": {"entry_margin_fraction": "1.5"}},
    {"strategy": {"replace_threshold_basis": "gross"}},
    {"strategy": {"sell_ratio_max": "nan"}},
    {"app": {"scan_interval_ms": "-1"}},
])
def test_validate_rejects_bad_values(raw):
    with pytest.raises(ValueError, match="Invalid configuration"):
        validate_config(raw)


def test_telegram_enabled_requires_credentials():
    with pytest.raises(ValueError, match="token"):
        validate_config({"telegram": {"enabled": "true", "chat_id": "1"}})


def test_dynamic_slippage_bounds():
    with pytest.raises(ValueError, match="max_bps"):
        validate_config({"costs": {"dynamic_slippage": {"min_bps": "20", "max_bps": "10"}}})


def test_initialize_components_honours_overrides(store, client, notifier):
    cfg = AppConfig()
    components = initialize_components(
        cfg, {"store": store, "client": client, "notifier": notifier}, logging.getLogger("test-init")
    )

    assert components["store"] is store
    assert components["client"] is client
    assert components["engine"].store is store
    assert components["commands"].engine is components["engine"]
    assert components["scheduler"].every_s == 60
