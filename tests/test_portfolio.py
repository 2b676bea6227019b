import pytest

from models.position import OpenPosition
from modules.portfolio import CapacityArbiter


def pos(pid, unlev=None, lev=None, symbol=None):
    return OpenPosition(
        id=pid, symbol=symbol or f"S{pid}USDT", signal_id=None, status="OPEN",
        entry_ts_ms=0, signal_hour_start_ms=0, entry_price=100, entry_sell_ratio=0.4,
        signal_hour_volume=1, leverage=5, margin_usd=100, notional_usd=500, qty=5,
        take_profit_pct=0.1, delta_exit_threshold=0.05, replace_threshold_pct=0.2,
        latest_unlevered_return_pct=unlev, latest_leveraged_return_pct=lev,
    )


def test_selects_worst_on_unlevered_basis():
    arb = CapacityArbiter("unlevered", 0.2)
    positions = [pos(1, unlev=-5), pos(2, unlev=-25), pos(3, unlev=3)]
    assert arb.select_candidate(positions).id == 2


def test_levered_basis_uses_leveraged_return():
    arb = CapacityArbiter("levered", 0.2)
    positions = [pos(1, unlev=-30, lev=-10), pos(2, unlev=-1, lev=-50)]
    assert arb.select_candidate(positions).id == 2


def test_unmarked_positions_count_as_flat():
    arb = CapacityArbiter("unlevered", 0.2)
    positions = [pos(1, unlev=None), pos(2, unlev=1)]
    assert arb.select_candidate(positions).id == 1
    assert arb.metric(positions[0]) == 0


def test_ties_keep_input_order():
    arb = CapacityArbiter("unlevered", 0.2)
    positions = [pos(7, unlev=-30), pos(3, unlev=-30), pos(5, unlev=-30)]
    assert arb.select_candidate(positions).id == 7


def test_empty_book_has_no_candidate():
    arb = CapacityArbiter("unlevered", 0.2)
    decision = arb.decide([])
    assert decision.candidate is None
    assert decision.allowed is False


@pytest.mark.parametrize("metric,allowed", [(-18, False), (-19.99, False), (-20, True), (-22, True)])
def test_eviction_line(metric, allowed):
    arb = CapacityArbiter("unlevered", 0.2)
    decision = arb.decide([pos(1, unlev=metric), pos(2, unlev=5)])
    assert decision.candidate.id == 1
    assert decision.allowed is allowed


def test_never_evicts_better_than_line():
    arb = CapacityArbiter("levered", 0.2)
    decision = arb.decide([pos(1, unlev=-50, lev=-19.5)])
    assert decision.allowed is False
