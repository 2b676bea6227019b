"""
persistence/sqlite.py
---------------------
SQLite store for the paper engine: runtime markers, symbol universe,
signals, positions, trades and the outbound alert log.

The store is the only state authority.  Nothing is cached in memory; the
live summary is aggregated from rows on every call.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from models.alert import AlertRecord
from models.position import LiveSummary, NewPosition, OpenPosition, PositionMark
from models.signal import SignalDecision, SignalOutcome
from models.trade_outcome import TradeOutcome, WINNING_REASONS, ExitReason

SCHEMA = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS runtime_state (
    key        TEXT PRIMARY KEY,
    value_text TEXT,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS symbols (
    symbol     TEXT PRIMARY KEY,
    is_active  INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS signals (
    id              INTEGER PRIMARY KEY,
    symbol          TEXT    NOT NULL,
    hour_start_ms   INTEGER NOT NULL,
    hour_end_ms     INTEGER NOT NULL,
    sell_ratio      REAL    NOT NULL,
    hour_volume     REAL    NOT NULL,
    close_price     REAL    NOT NULL,
    next_open_price REAL    NOT NULL,
    outcome         TEXT    NOT NULL DEFAULT 'PENDING',
    outcome_reason  TEXT,
    processed_at    TEXT,
    created_at      TEXT    NOT NULL DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (symbol, hour_start_ms)
);

CREATE TABLE IF NOT EXISTS positions (
    id                     INTEGER PRIMARY KEY,
    symbol                 TEXT    NOT NULL,
    signal_id              INTEGER REFERENCES signals(id) ON DELETE SET NULL,
    status                 TEXT    NOT NULL CHECK (status IN ('OPEN', 'CLOSED')),

    entry_ts_ms            INTEGER NOT NULL,
    signal_hour_start_ms   INTEGER NOT NULL,
    entry_price            REAL    NOT NULL,
    entry_sell_ratio       REAL    NOT NULL,
    signal_hour_volume     REAL    NOT NULL,

    leverage               REAL    NOT NULL,
    margin_usd             REAL    NOT NULL,
    notional_usd           REAL    NOT NULL,
    qty                    REAL    NOT NULL,

    take_profit_pct        REAL    NOT NULL,
    delta_exit_threshold   REAL    NOT NULL,
    replace_threshold_pct  REAL    NOT NULL,
    entry_slippage_bps     REAL    NOT NULL DEFAULT 0,

    latest_mark_price            REAL,
    latest_mark_ts_ms            INTEGER,
    latest_unlevered_return_pct  REAL,
    latest_leveraged_return_pct  REAL,
    latest_unrealized_pnl_usd    REAL,
    latest_funding_accrued_usd   REAL NOT NULL DEFAULT 0,

    exit_ts_ms                     INTEGER,
    exit_price                     REAL,
    exit_reason                    TEXT,
    realized_unlevered_return_pct  REAL,
    realized_leveraged_return_pct  REAL,
    realized_pnl_usd               REAL,
    fees_usd                       REAL,
    slippage_usd                   REAL,
    net_funding_fee_usd            REAL,

    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_positions_status        ON positions(status);
CREATE INDEX IF NOT EXISTS idx_positions_symbol_status ON positions(symbol, status);

CREATE TABLE IF NOT EXISTS trades (
    id                   INTEGER PRIMARY KEY,
    position_id          INTEGER NOT NULL REFERENCES positions(id) ON DELETE CASCADE,
    symbol               TEXT    NOT NULL,
    exit_ts_ms           INTEGER NOT NULL,
    exit_price           REAL    NOT NULL,
    exit_reason          TEXT    NOT NULL,
    unlevered_return_pct REAL    NOT NULL,
    leveraged_return_pct REAL    NOT NULL,
    pnl_usd              REAL    NOT NULL,
    fees_usd             REAL    NOT NULL DEFAULT 0,
    slippage_usd         REAL    NOT NULL DEFAULT 0,
    net_funding_fee_usd  REAL    NOT NULL DEFAULT 0,
    created_at           TEXT    NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS alerts (
    id                  INTEGER PRIMARY KEY,
    event_type          TEXT NOT NULL,
    symbol              TEXT NOT NULL,
    position_id         INTEGER,
    telegram_message_id INTEGER,
    message_text        TEXT NOT NULL,
    created_at          TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""

_MISSED = tuple(o.value for o in SignalOutcome if o.is_missed)
_WINNING = tuple(r.value for r in WINNING_REASONS)


def _placeholders(values: Iterable) -> str:
    return ",".join("?" for _ in values)


class PaperStore:
    def __init__(self, db_path: str = "data/paper.db"):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.executescript(SCHEMA)
        self.conn.commit()

    # -------------------------- RUNTIME STATE ---------------------------- #
    def bootstrap_runtime(self, defaults: Dict[str, str]) -> None:
        """Seed missing markers; existing values are left untouched."""
        with self.conn:
            self.conn.executemany(
                "INSERT OR IGNORE INTO runtime_state (key, value_text) VALUES (?, ?)",
                list(defaults.items()),
            )

    def get_runtime_value(self, key: str) -> Optional[str]:
        row = self.conn.execute(
            "SELECT value_text FROM runtime_state WHERE key = ?", (key,)
        ).fetchone()
        return row["value_text"] if row else None

    def set_runtime_value(self, key: str, value: str) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO runtime_state (key, value_text, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET
                  value_text = excluded.value_text,
                  updated_at = excluded.updated_at
                """,
                (key, value),
            )

    def get_runtime_int(self, key: str, default: int = 0) -> int:
        raw = self.get_runtime_value(key)
        try:
            return int(raw) if raw is not None else default
        except ValueError:
            return default

    # ----------------------------- SYMBOLS ------------------------------- #
    def upsert_symbols(self, symbols: List[str]) -> None:
        """Make ``symbols`` the active universe; anything else is deactivated."""
        with self.conn:
            self.conn.executemany(
                """
                INSERT INTO symbols (symbol, is_active, updated_at)
                VALUES (?, 1, CURRENT_TIMESTAMP)
                ON CONFLICT(symbol) DO UPDATE SET
                  is_active = 1,
                  updated_at = excluded.updated_at
                """,
                [(s,) for s in symbols],
            )
            if symbols:
                self.conn.execute(
                    f"UPDATE symbols SET is_active = 0 WHERE symbol NOT IN ({_placeholders(symbols)})",
                    symbols,
                )
            else:
                self.conn.execute("UPDATE symbols SET is_active = 0")

    def get_active_symbols(self) -> List[str]:
        rows = self.conn.execute(
            "SELECT symbol FROM symbols WHERE is_active = 1 ORDER BY symbol"
        ).fetchall()
        return [r["symbol"] for r in rows]

    # ----------------------------- SIGNALS ------------------------------- #
    def find_signal(self, symbol: str, hour_start_ms: int) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM signals WHERE symbol = ? AND hour_start_ms = ?",
            (symbol, hour_start_ms),
        ).fetchone()

    def create_signal(self, decision: SignalDecision) -> int:
        with self.conn:
            cur = self.conn.execute(
                """
                INSERT INTO signals (symbol, hour_start_ms, hour_end_ms, sell_ratio,
                                     hour_volume, close_price, next_open_price)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    decision.symbol,
                    decision.closed_hour_start_ms,
                    decision.closed_hour_end_ms,
                    decision.signal_sell_ratio,
                    decision.closed_hour_volume,
                    decision.close_price,
                    decision.next_open_price,
                ),
            )
        return int(cur.lastrowid)

    def set_signal_outcome(self, signal_id: int, outcome: SignalOutcome, reason: str) -> None:
        with self.conn:
            self.conn.execute(
                """
                UPDATE signals
                   SET outcome = ?, outcome_reason = ?, processed_at = CURRENT_TIMESTAMP
                 WHERE id = ?
                """,
                (outcome.value, reason, signal_id),
            )

    # ---------------------------- POSITIONS ------------------------------ #
    def open_position(self, pos: NewPosition) -> OpenPosition:
        with self.conn:
            cur = self.conn.execute(
                """
                INSERT INTO positions (
                    symbol, signal_id, status, entry_ts_ms, signal_hour_start_ms,
                    entry_price, entry_sell_ratio, signal_hour_volume, leverage,
                    margin_usd, notional_usd, qty, take_profit_pct,
                    delta_exit_threshold, replace_threshold_pct, entry_slippage_bps
                )
                VALUES (:symbol, :signal_id, 'OPEN', :entry_ts_ms, :signal_hour_start_ms,
                        :entry_price, :entry_sell_ratio, :signal_hour_volume, :leverage,
                        :margin_usd, :notional_usd, :qty, :take_profit_pct,
                        :delta_exit_threshold, :replace_threshold_pct, :entry_slippage_bps)
                """,
                vars(pos),
            )
        return self.get_position(int(cur.lastrowid))

    def update_position_mark(self, position_id: int, mark: PositionMark) -> None:
        with self.conn:
            self.conn.execute(
                """
                UPDATE positions
                   SET latest_mark_price = ?,
                       latest_mark_ts_ms = ?,
                       latest_unlevered_return_pct = ?,
                       latest_leveraged_return_pct = ?,
                       latest_unrealized_pnl_usd = ?,
                       latest_funding_accrued_usd = COALESCE(?, latest_funding_accrued_usd),
                       updated_at = CURRENT_TIMESTAMP
                 WHERE id = ? AND status = 'OPEN'
                """,
                (
                    mark.mark_price,
                    mark.mark_ts_ms,
                    mark.unlevered_return_pct,
                    mark.leveraged_return_pct,
                    mark.unrealized_pnl_usd,
                    mark.funding_accrued_usd,
                    position_id,
                ),
            )

    def close_position(self, outcome: TradeOutcome) -> bool:
        """Flip the position to CLOSED and write its trade row in one transaction.

        Returns ``False`` (and writes nothing) when the position is not OPEN.
        """
        with self.conn:
            cur = self.conn.execute(
                """
                UPDATE positions
                   SET status = 'CLOSED',
                       exit_ts_ms = ?,
                       exit_price = ?,
                       exit_reason = ?,
                       realized_unlevered_return_pct = ?,
                       realized_leveraged_return_pct = ?,
                       realized_pnl_usd = ?,
                       fees_usd = ?,
                       slippage_usd = ?,
                       net_funding_fee_usd = ?,
                       updated_at = CURRENT_TIMESTAMP
                 WHERE id = ? AND status = 'OPEN'
                """,
                (
                    outcome.exit_ts_ms,
                    outcome.exit_price,
                    outcome.exit_reason.value,
                    outcome.unlevered_return_pct,
                    outcome.leveraged_return_pct,
                    outcome.pnl_usd,
                    outcome.fees_usd,
                    outcome.slippage_usd,
                    outcome.net_funding_fee_usd,
                    outcome.position_id,
                ),
            )
            if cur.rowcount == 0:
                return False
            self.conn.execute(
                """
                INSERT INTO trades (position_id, symbol, exit_ts_ms, exit_price, exit_reason,
                                    unlevered_return_pct, leveraged_return_pct, pnl_usd,
                                    fees_usd, slippage_usd, net_funding_fee_usd)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    outcome.position_id,
                    outcome.symbol,
                    outcome.exit_ts_ms,
                    outcome.exit_price,
                    outcome.exit_reason.value,
                    outcome.unlevered_return_pct,
                    outcome.leveraged_return_pct,
                    outcome.pnl_usd,
                    outcome.fees_usd,
                    outcome.slippage_usd,
                    outcome.net_funding_fee_usd,
                ),
            )
        return True

    def get_position(self, position_id: int) -> Optional[OpenPosition]:
        row = self.conn.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()
        return self._to_position(row) if row else None

    def get_open_positions(self) -> List[OpenPosition]:
        rows = self.conn.execute(
            "SELECT * FROM positions WHERE status = 'OPEN' ORDER BY entry_ts_ms, id"
        ).fetchall()
        return [self._to_position(r) for r in rows]

    def get_open_position_by_symbol(self, symbol: str) -> Optional[OpenPosition]:
        row = self.conn.execute(
            "SELECT * FROM positions WHERE status = 'OPEN' AND symbol = ? ORDER BY id LIMIT 1",
            (symbol,),
        ).fetchone()
        return self._to_position(row) if row else None

    def count_trades(self, position_id: Optional[int] = None) -> int:
        if position_id is None:
            row = self.conn.execute("SELECT COUNT(*) AS n FROM trades").fetchone()
        else:
            row = self.conn.execute(
                "SELECT COUNT(*) AS n FROM trades WHERE position_id = ?", (position_id,)
            ).fetchone()
        return int(row["n"])

    @staticmethod
    def _to_position(row: sqlite3.Row) -> OpenPosition:
        fields = OpenPosition.__dataclass_fields__
        return OpenPosition(**{k: row[k] for k in row.keys() if k in fields})

    # ----------------------------- ALERTS -------------------------------- #
    def insert_alert(
        self,
        event_type: str,
        symbol: str,
        text: str,
        position_id: Optional[int] = None,
        message_id: Optional[int] = None,
    ) -> int:
        with self.conn:
            cur = self.conn.execute(
                """
                INSERT INTO alerts (event_type, symbol, position_id, telegram_message_id, message_text)
                VALUES (?, ?, ?, ?, ?)
                """,
                (event_type, symbol, position_id, message_id, text),
            )
        return int(cur.lastrowid)

    def get_recent_alerts(self, limit: int = 5) -> List[AlertRecord]:
        """Newest first."""
        limit = max(1, min(int(limit), 50))
        rows = self.conn.execute(
            "SELECT * FROM alerts ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [
            AlertRecord(
                id=r["id"],
                event_type=r["event_type"],
                symbol=r["symbol"],
                message_text=r["message_text"],
                position_id=r["position_id"],
                telegram_message_id=r["telegram_message_id"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # ----------------------------- SUMMARY ------------------------------- #
    def get_summary(self, starting_equity_usd: float) -> LiveSummary:
        missed = self.conn.execute(
            f"SELECT COUNT(*) AS n FROM signals WHERE outcome IN ({_placeholders(_MISSED)})",
            _MISSED,
        ).fetchone()["n"]

        p = self.conn.execute(
            """
            SELECT
              COUNT(*) AS entries,
              COALESCE(SUM(CASE WHEN status = 'OPEN' THEN 1 ELSE 0 END), 0) AS open_positions,
              COALESCE(SUM(CASE WHEN status = 'OPEN' THEN margin_usd END), 0) AS margin,
              COALESCE(SUM(CASE WHEN status = 'OPEN' THEN notional_usd END), 0) AS notional,
              COALESCE(SUM(CASE WHEN status = 'OPEN' THEN latest_unrealized_pnl_usd END), 0) AS unrealized,
              COALESCE(SUM(CASE WHEN status = 'OPEN' THEN latest_funding_accrued_usd END), 0) AS funding
            FROM positions
            """
        ).fetchone()

        win = _placeholders(_WINNING)
        t = self.conn.execute(
            f"""
            SELECT
              COALESCE(SUM(CASE WHEN exit_reason IN ({win}) AND pnl_usd > 0 THEN 1 ELSE 0 END), 0) AS winners,
              COALESCE(SUM(CASE WHEN exit_reason IN ({win}) AND pnl_usd <= 0 THEN 1 ELSE 0 END), 0) AS losers,
              COALESCE(SUM(CASE WHEN exit_reason = ? THEN 1 ELSE 0 END), 0) AS liquidated,
              COALESCE(SUM(CASE WHEN exit_reason = ? THEN 1 ELSE 0 END), 0) AS replaced,
              COALESCE(SUM(pnl_usd), 0) AS realized
            FROM trades
            """,
            (*_WINNING, *_WINNING, ExitReason.LIQ.value, ExitReason.REPLACE.value),
        ).fetchone()

        realized = float(t["realized"])
        unrealized = float(p["unrealized"])
        margin = float(p["margin"])
        funding = float(p["funding"])
        equity = starting_equity_usd + realized + unrealized
        total_pnl = equity - starting_equity_usd
        decided = t["winners"] + t["losers"] + t["liquidated"]

        return LiveSummary(
            entries=int(p["entries"]),
            live_entries=int(p["open_positions"]),
            missed_trades=int(missed),
            winners=int(t["winners"]),
            losers=int(t["losers"]),
            liquidated=int(t["liquidated"]),
            replaced=int(t["replaced"]),
            open_positions=int(p["open_positions"]),
            cash_usd=starting_equity_usd + realized + funding - margin,
            margin_in_use_usd=margin,
            open_notional_usd=float(p["notional"]),
            unrealized_pnl_usd=unrealized,
            open_funding_accrued_usd=funding,
            realized_pnl_usd=realized,
            current_equity_usd=equity,
            total_pnl_usd=total_pnl,
            pnl_pct=(total_pnl / starting_equity_usd * 100) if starting_equity_usd > 0 else 0.0,
            win_pct=(t["winners"] / decided * 100) if decided > 0 else 0.0,
        )

    def close(self) -> None:
        self.conn.close()
