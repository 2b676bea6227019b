# utils/format.py
"""Number / HTML helpers shared by the Telegram message builders."""
from __future__ import annotations

import html
from urllib.parse import quote


def fmt_num(value: float, max_digits: int = 2) -> str:
    """Thousands-separated, at most ``max_digits`` decimals, trailing zeros dropped."""
    text = f"{value:,.{max_digits}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    if text in ("-0", ""):
        text = "0"
    return text


def fmt_usd(value: float) -> str:
    sign = "" if value >= 0 else "-"
    return f"{sign}${fmt_num(abs(value), 4)}"


def fmt_pct(value: float, digits: int = 2) -> str:
    sign = "+" if value > 0 else ""
    return f"{sign}{value:.{digits}f}%"


def bybit_ticker_url(symbol: str) -> str:
    return f"https://www.bybit.com/trade/usdt/{quote(symbol, safe='')}"


def escape_html(value: str) -> str:
    return html.escape(value, quote=True)


def ticker_link(symbol: str) -> str:
    return f'<b><a href="{escape_html(bybit_ticker_url(symbol))}">{escape_html(symbol)}</a></b>'
