"""
data_provider.py
-----------------

Normalises raw Bybit v5 market responses into clean Pandas DataFrames and
small dataclasses.  Every v5 endpoint wraps its rows in
``{"retCode": 0, "result": {"list": [...]}}``; rows arrive as strings and,
for klines and account ratios, newest first.  The ``DataProvider`` hides
these details: numeric columns are floats, timestamps are epoch-ms integers
and every frame is sorted ascending by time.

If a response is malformed or missing, an empty DataFrame (or an empty
list / ``None``) is returned so callers can treat "no data" uniformly.
No exceptions are raised from within this class; malformed rows are
dropped individually.

Example usage::

    provider = DataProvider()
    raw = await client._get_json("/v5/market/kline", params)
    df = provider.create_dataframe_from_kline(raw)
    if not df.empty:
        closed = df.iloc[-2]
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

import pandas as pd

from models.market import Instrument, Ticker


def _rows(data: Any) -> List[Any]:
    if not isinstance(data, dict):
        return []
    result = data.get("result")
    if not isinstance(result, dict):
        return []
    rows = result.get("list")
    return rows if isinstance(rows, list) else []


def _num(value: Any) -> Optional[float]:
    """Parse a Bybit numeric field; ``None`` for blanks and junk."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return out if math.isfinite(out) else None


def _ts(value: Any) -> Optional[int]:
    n = _num(value)
    if n is None or n <= 0:
        return None
    return int(n)


class DataProvider:
    """Convert raw Bybit v5 JSON into DataFrames / dataclasses.

    Frame layouts:

    - klines: ``open_time`` (ms), ``open``, ``high``, ``low``, ``close``, ``volume``
    - account ratio: ``ts_ms``, ``buy_ratio``, ``sell_ratio`` (NaN when absent)
    - funding history: ``ts_ms``, ``funding_rate``
    """

    kline_columns: List[str] = ["open_time", "open", "high", "low", "close", "volume"]
    ratio_columns: List[str] = ["ts_ms", "buy_ratio", "sell_ratio"]
    funding_columns: List[str] = ["ts_ms", "funding_rate"]

    def create_dataframe_from_kline(self, data: Dict[str, Any]) -> pd.DataFrame:
        """Return hourly candles ascending by ``open_time``.

        Each raw row is ``[startTime, open, high, low, close, volume, turnover]``.
        Rows with a missing start time or any non-numeric price are skipped.
        """
        rows: List[Dict[str, Any]] = []
        for raw in _rows(data):
            if not isinstance(raw, (list, tuple)) or len(raw) < 6:
                continue
            open_time = _ts(raw[0])
            values = [_num(v) for v in raw[1:6]]
            if open_time is None or any(v is None for v in values):
                continue
            rows.append(dict(zip(self.kline_columns, [open_time, *values])))
        return self._frame(rows, self.kline_columns, "open_time")

    def create_dataframe_from_ratio(self, data: Dict[str, Any]) -> pd.DataFrame:
        """Return long/short account ratio samples ascending by ``ts_ms``."""
        rows: List[Dict[str, Any]] = []
        for raw in _rows(data):
            if not isinstance(raw, dict):
                continue
            ts = _ts(raw.get("timestamp"))
            if ts is None:
                continue
            rows.append({
                "ts_ms": ts,
                "buy_ratio": _num(raw.get("buyRatio")),
                "sell_ratio": _num(raw.get("sellRatio")),
            })
        return self._frame(rows, self.ratio_columns, "ts_ms")

    def create_dataframe_from_funding(self, data: Dict[str, Any]) -> pd.DataFrame:
        rows: List[Dict[str, Any]] = []
        for raw in _rows(data):
            if not isinstance(raw, dict):
                continue
            ts = _ts(raw.get("fundingRateTimestamp"))
            rate = _num(raw.get("fundingRate"))
            if ts is None or rate is None:
                continue
            rows.append({"ts_ms": ts, "funding_rate": rate})
        return self._frame(rows, self.funding_columns, "ts_ms")

    def parse_instruments(self, data: Dict[str, Any]) -> List[Instrument]:
        """USDT-quoted perpetual contracts only."""
        out: List[Instrument] = []
        for raw in _rows(data):
            if not isinstance(raw, dict):
                continue
            symbol = str(raw.get("symbol") or "").strip().upper()
            contract_type = str(raw.get("contractType") or "")
            quote = str(raw.get("quoteCoin") or "").upper()
            if not symbol or "perpetual" not in contract_type.lower() or quote != "USDT":
                continue
            out.append(Instrument(symbol=symbol, status=str(raw.get("status") or ""), contract_type=contract_type))
        return out

    def parse_ticker(self, data: Dict[str, Any], symbol: str) -> Optional[Ticker]:
        rows = _rows(data)
        if not rows or not isinstance(rows[0], dict):
            return None
        raw = rows[0]
        return Ticker(
            symbol=str(raw.get("symbol") or symbol).upper(),
            mark_price=_num(raw.get("markPrice")) or 0.0,
            last_price=_num(raw.get("lastPrice")),
            bid_price=_num(raw.get("bid1Price")),
            ask_price=_num(raw.get("ask1Price")),
        )

    @staticmethod
    def _frame(rows: List[Dict[str, Any]], columns: List[str], sort_col: str) -> pd.DataFrame:
        if not rows:
            return pd.DataFrame(columns=columns)
        df = pd.DataFrame(rows, columns=columns)
        df[sort_col] = df[sort_col].astype("int64")
        for col in columns:
            if col != sort_col:
                df[col] = df[col].astype("float64")
        return df.sort_values(sort_col, kind="stable").reset_index(drop=True)
