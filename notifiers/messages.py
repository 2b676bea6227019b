"""
notifiers/messages.py
---------------------
HTML message builders for Telegram: entry / exit alerts, the status
command and funding updates.  All user-supplied text goes through
``escape_html``.
"""
from __future__ import annotations

from typing import List, Sequence

from models.alert import AlertEvent
from models.position import LiveSummary, OpenPosition
from utils.format import escape_html, fmt_num, fmt_pct, fmt_usd, ticker_link
from utils.time import format_elapsed_hhmm

ENTRY_OPEN = "ENTRY_OPEN_SHORT"
ENTRY_REPLACE = "ENTRY_REPLACE_OPEN_SHORT"
FUNDING_UPDATE = "FUNDING_UPDATE"

_EXIT_HEADERS = {
    "TP": "✅ <b>EXIT TP</b>",
    "DELTA": "📈 <b>EXIT DELTA</b>",
    "TIME": "⏱️ <b>EXIT TIME</b>",
    "LIQ": "🟥 <b>EXIT LIQUIDATED</b>",
    "REPLACE": "♻️ <b>EXIT REPLACE</b>",
}


def format_summary_block(summary: LiveSummary) -> List[str]:
    return [
        "Totals:",
        f"Entries: {summary.entries}",
        f"Live Entries: {summary.live_entries}",
        f"Missed Trades: {summary.missed_trades}",
        f"Winners: {summary.winners}",
        f"Losers: {summary.losers}",
        f"Liquidated: {summary.liquidated}",
        f"Replaced: {summary.replaced}",
        f"Open Positions: {summary.open_positions}",
        f"Current Equity: {fmt_usd(summary.current_equity_usd)}",
        f"Cash: {fmt_usd(summary.cash_usd)}",
        f"Margin In Use: {fmt_usd(summary.margin_in_use_usd)}",
        f"Open Notional: {fmt_usd(summary.open_notional_usd)}",
        f"Unrealized PnL: {fmt_usd(summary.unrealized_pnl_usd)}",
        f"Open Funding Accrued: {fmt_usd(summary.open_funding_accrued_usd)}",
        f"PnL (vs start): {fmt_pct(summary.pnl_pct)} | {fmt_usd(summary.total_pnl_usd)}",
        f"Win %: {summary.win_pct:.2f}%",
    ]


def format_entry_message(title: str, event: AlertEvent, summary: LiveSummary) -> str:
    is_replace = event.type == ENTRY_REPLACE
    lines = [
        f"🚨 <b>{escape_html(title)}</b>",
        "",
        "♻️ <b>ENTRY REPLACE SHORT</b>" if is_replace else "📉 <b>ENTRY OPEN SHORT</b>",
        ticker_link(event.symbol),
        f"Entry Cond 1: Sell Ratio ≤ {fmt_num(event.sell_ratio_threshold or 0, 3)} "
        f"(now {fmt_num(event.sell_ratio or 0, 3)})",
        f"Entry Cond 2: 1h Volume ≥ {fmt_num(event.volume_threshold or 0, 0)} "
        f"(now {fmt_num(event.hour_volume or 0, 0)})",
        f"Entry Price: {fmt_usd(event.entry_price or 0)}",
        f"Take Profit Price: {fmt_usd(event.take_profit_price or 0)}",
        f"Realized Entry Slippage: {fmt_num(event.entry_slippage_bps or 0, 2)} bps",
    ]
    if is_replace and event.replaced_symbol:
        lines += [
            f"Old Ticker: {ticker_link(event.replaced_symbol)}",
            f"Old Trade PnL: {fmt_pct(event.replaced_pnl_pct or 0)}",
            f"Old Trade Unlev: {fmt_pct(event.replaced_unlevered_pct or 0)}",
        ]
    lines += ["", *format_summary_block(summary)]
    return "\n".join(lines)


def format_exit_message(title: str, event: AlertEvent, summary: LiveSummary) -> str:
    header = _EXIT_HEADERS.get(event.exit_reason or "", _EXIT_HEADERS["REPLACE"])
    entry_bps = event.entry_slippage_bps or 0
    exit_bps = event.exit_slippage_bps or 0
    return "\n".join([
        f"🚨 <b>{escape_html(title)}</b>",
        "",
        header,
        ticker_link(event.symbol),
        f"PnL: {fmt_pct(event.leveraged_return_pct or 0)}",
        f"Leverage: {fmt_num(event.leverage or 0, 2)}x | Unlev: {fmt_pct(event.unlevered_return_pct or 0)}",
        f"Realized Exit Slippage: {fmt_num(exit_bps, 2)} bps",
        f"Realized Roundtrip Slippage: {fmt_num(entry_bps + exit_bps, 2)} bps",
        f"Net funding fee: {fmt_usd(event.net_funding_fee_usd or 0)}",
        "",
        *format_summary_block(summary),
    ])


def format_status_command(
    title: str, summary: LiveSummary, rows: Sequence[OpenPosition], now_ts_ms: int
) -> str:
    lines = [
        f"🎯 <b>{escape_html(title)}</b>",
        "Exchange: BYBIT",
        "Scope: global strategy tracking only",
        f"Tracked coins: {len(rows)}",
        "",
        "📉 Open Positions",
        "",
        "Ticker | Price at alert | pnl% | time since alert",
        "",
        f"<b>OPEN SHORT</b> - Open Positions: {len(rows)}",
    ]
    if not rows:
        lines.append("(none)")
    for i, r in enumerate(rows, start=1):
        lines.append(
            f"{i}. {ticker_link(r.symbol)} | {fmt_usd(r.entry_price)} | "
            f"{fmt_pct(r.latest_leveraged_return_pct or 0)} | "
            f"{format_elapsed_hhmm(r.entry_ts_ms, now_ts_ms)}"
        )
    lines += ["", "📊 Live Totals", *format_summary_block(summary)]
    return "\n".join(lines)


def format_funding_message(title: str, symbol: str, funding_delta_usd: float, points: int) -> str:
    flow = "coming in" if funding_delta_usd >= 0 else "leaving"
    return "\n".join([
        f"🚨 <b>{escape_html(title)}</b>",
        "",
        "💸 <b>FUNDING UPDATE</b>",
        ticker_link(symbol),
        f"Net Funding: {fmt_usd(funding_delta_usd)} ({flow})",
        f"Settlements in update: {fmt_num(points, 0)}",
    ])


def format_help(title: str) -> str:
    return "\n".join([
        f"🤖 <b>{escape_html(title)}</b>",
        "",
        "/status – open positions and live totals",
        "/scan – run a scan cycle now",
        "/alerts – replay the last 5 alerts",
        "/help – this message",
    ])
