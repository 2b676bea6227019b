import sqlite3

import pytest

from models.position import PositionMark
from models.signal import SignalDecision, SignalOutcome
from models.trade_outcome import ExitReason, TradeOutcome

H = 3_600_000
T0 = 1_699_999_200_000


def decision(symbol="AAAUSDT", start=T0):
    return SignalDecision(
        symbol=symbol, closed_hour_start_ms=start, closed_hour_end_ms=start + H,
        closed_hour_volume=2e6, signal_sell_ratio=0.4, close_price=100, next_open_price=100,
    )


def trade(pos, reason=ExitReason.TP, pnl=10.0):
    return TradeOutcome(
        position_id=pos.id, symbol=pos.symbol, exit_ts_ms=T0 + 5 * H, exit_price=90,
        exit_reason=reason, unlevered_return_pct=10, leveraged_return_pct=50, pnl_usd=pnl,
    )


# ------------------------- runtime ------------------------- #

def test_bootstrap_does_not_overwrite(store):
    store.set_runtime_value("x:last_scan_ts", "123")
    store.bootstrap_runtime({"x:last_scan_ts": "0", "x:telegram_offset": "0"})
    assert store.get_runtime_int("x:last_scan_ts") == 123
    assert store.get_runtime_int("x:telegram_offset") == 0
    assert store.get_runtime_int("missing", default=7) == 7


def test_upsert_symbols_replaces_universe(store):
    store.upsert_symbols(["AUSDT", "BUSDT"])
    store.upsert_symbols(["BUSDT", "CUSDT"])
    assert store.get_active_symbols() == ["BUSDT", "CUSDT"]


# ------------------------- signals ------------------------- #

def test_signal_uniqueness(store):
    sid = store.create_signal(decision())
    assert store.find_signal("AAAUSDT", T0)["id"] == sid
    assert store.find_signal("AAAUSDT", T0)["outcome"] == "PENDING"
    with pytest.raises(sqlite3.IntegrityError):
        store.create_signal(decision())


def test_set_signal_outcome(store):
    sid = store.create_signal(decision())
    store.set_signal_outcome(sid, SignalOutcome.MISSED_CAPACITY, "capacity_no_replace_candidate")
    row = store.find_signal("AAAUSDT", T0)
    assert row["outcome"] == "MISSED_CAPACITY"
    assert row["outcome_reason"] == "capacity_no_replace_candidate"
    assert row["processed_at"] is not None


# ------------------------- positions ------------------------- #

def test_new_position_has_null_marks(make_position):
    pos = make_position()
    assert pos.status == "OPEN"
    assert pos.latest_mark_price is None
    assert pos.latest_unlevered_return_pct is None
    assert pos.latest_funding_accrued_usd == 0


def test_update_mark_and_query(store, make_position):
    pos = make_position()
    store.update_position_mark(pos.id, PositionMark(85, T0 + H, 15, 75, 75, None))
    fresh = store.get_open_position_by_symbol(pos.symbol)
    assert fresh.latest_mark_price == 85
    assert fresh.latest_leveraged_return_pct == 75
    assert fresh.latest_funding_accrued_usd == 0


def test_close_position_writes_trade_once(store, make_position):
    pos = make_position()
    assert store.close_position(trade(pos)) is True
    assert store.close_position(trade(pos)) is False
    assert store.count_trades(pos.id) == 1
    assert store.get_open_positions() == []
    closed = store.get_position(pos.id)
    assert closed.status == "CLOSED"


def test_open_positions_ordered_by_entry(store, make_position):
    make_position("BUSDT", entry_ts=T0 + H)
    make_position("AUSDT", entry_ts=T0)
    assert [p.symbol for p in store.get_open_positions()] == ["AUSDT", "BUSDT"]


# ------------------------- alerts ------------------------- #

def test_recent_alerts_newest_first_and_clamped(store):
    for i in range(60):
        store.insert_alert("ENTRY_OPEN_SHORT", "AUSDT", f"msg {i}", None, i)
    recent = store.get_recent_alerts(5)
    assert [a.message_text for a in recent] == ["msg 59", "msg 58", "msg 57", "msg 56", "msg 55"]
    assert len(store.get_recent_alerts(500)) == 50
    assert len(store.get_recent_alerts(0)) == 1


# ------------------------- summary ------------------------- #

def test_summary_aggregates(store, make_position):
    # missed signal
    sid = store.create_signal(decision("MISSUSDT"))
    store.set_signal_outcome(sid, SignalOutcome.MISSED_NO_CASH, "insufficient_cash")

    winner = make_position("WUSDT", margin=100)
    loser = make_position("LUSDT", margin=100)
    liq = make_position("QUSDT", margin=100)
    repl = make_position("RUSDT", margin=100)
    still_open = make_position("OUSDT", margin=200)

    store.close_position(trade(winner, ExitReason.TP, 50))
    store.close_position(trade(loser, ExitReason.TIME, -10))
    store.close_position(trade(liq, ExitReason.LIQ, -100))
    store.close_position(trade(repl, ExitReason.REPLACE, -30))
    store.update_position_mark(still_open.id, PositionMark(95, T0, 5, 25, 50, 2.0))

    s = store.get_summary(10_000)
    assert s.entries == 5
    assert s.open_positions == s.live_entries == 1
    assert s.missed_trades == 1
    assert (s.winners, s.losers, s.liquidated, s.replaced) == (1, 1, 1, 1)
    assert s.realized_pnl_usd == pytest.approx(-90)
    assert s.margin_in_use_usd == pytest.approx(200)
    assert s.open_notional_usd == pytest.approx(1000)
    assert s.unrealized_pnl_usd == pytest.approx(50)
    assert s.open_funding_accrued_usd == pytest.approx(2)
    assert s.cash_usd == pytest.approx(10_000 - 90 + 2 - 200)
    assert s.current_equity_usd == pytest.approx(10_000 - 90 + 50)
    assert s.total_pnl_usd == pytest.approx(-40)
    assert s.pnl_pct == pytest.approx(-0.4)
    assert s.win_pct == pytest.approx(100 / 3)


def test_summary_empty_book(store):
    s = store.get_summary(10_000)
    assert s.cash_usd == 10_000
    assert s.current_equity_usd == 10_000
    assert s.win_pct == 0
