"""Persistence for token snapshots, classified trades, holders and raw events."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol

from ..utils.constants import VOLUME_WINDOWS, utc_now
from .schemas import (
    ClassifiedTrade,
    EventType,
    HolderBalance,
    ProgramEventRecord,
    TokenMetrics,
    TradeSide,
    VolumeStats,
)


class TradeStore(Protocol):
    """Interface the ingestion pipeline writes to."""

    def upsert_token_metrics(self, metrics: TokenMetrics) -> None:
        ...

    def get_volume_stats(self, mint: str) -> Optional[VolumeStats]:
        ...

    def record_token_tx(
        self, signature: str, mint: str, side: TradeSide, block_time: Optional[datetime]
    ) -> None:
        ...

    def record_volume(self, mint: str, volume: float, block_time: Optional[datetime]) -> None:
        ...

    def record_ohlc_trade(
        self, mint: str, price: Optional[float], volume_quote: float, block_time: Optional[datetime]
    ) -> None:
        ...

    def insert_trade(self, trade: ClassifiedTrade) -> None:
        ...

    def record_holder(self, holder: HolderBalance) -> None:
        ...

    def upsert_event(self, event: ProgramEventRecord) -> None:
        ...


SCHEMA_VERSION = 1

CREATE_TOKEN_TABLE = """
CREATE TABLE IF NOT EXISTS tokens (
    mint_address TEXT PRIMARY KEY,
    decimals INTEGER,
    supply REAL,
    price REAL,
    market_cap REAL,
    liquidity REAL,
    pools TEXT,
    volume_5m REAL,
    trades_5m INTEGER,
    volume_1h REAL,
    trades_1h INTEGER,
    volume_6h REAL,
    trades_6h INTEGER,
    volume_24h REAL,
    trades_24h INTEGER,
    tx_count INTEGER NOT NULL DEFAULT 0,
    buy_count INTEGER NOT NULL DEFAULT 0,
    sell_count INTEGER NOT NULL DEFAULT 0,
    last_trade_at TEXT,
    updated_at TEXT
);
"""

CREATE_TOKEN_TX_LOG_TABLE = """
CREATE TABLE IF NOT EXISTS token_tx_log (
    signature TEXT NOT NULL,
    mint_address TEXT NOT NULL,
    side TEXT NOT NULL,
    block_time TEXT,
    PRIMARY KEY (signature, mint_address)
);
"""

CREATE_TRADE_TABLE = """
CREATE TABLE IF NOT EXISTS token_transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    signature TEXT NOT NULL,
    mint_address TEXT NOT NULL,
    side TEXT NOT NULL,
    amount REAL,
    price REAL,
    value REAL,
    trader_address TEXT,
    block_time TEXT NOT NULL,
    UNIQUE (signature, mint_address)
);
"""

CREATE_VOLUME_TABLE = """
CREATE TABLE IF NOT EXISTS volume_trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    mint_address TEXT NOT NULL,
    volume REAL NOT NULL,
    block_time TEXT NOT NULL
);
"""

CREATE_OHLC_TRADE_TABLE = """
CREATE TABLE IF NOT EXISTS ohlc_trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    mint_address TEXT NOT NULL,
    price REAL NOT NULL,
    volume_quote REAL NOT NULL,
    block_time TEXT NOT NULL
);
"""

CREATE_HOLDER_TABLE = """
CREATE TABLE IF NOT EXISTS token_holders (
    mint_address TEXT NOT NULL,
    holder_address TEXT NOT NULL,
    balance REAL NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (mint_address, holder_address)
);
"""

CREATE_EVENT_TABLE = """
CREATE TABLE IF NOT EXISTS events (
    signature TEXT NOT NULL,
    instruction_index INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    program_id TEXT NOT NULL,
    block_time TEXT,
    parsed TEXT,
    raw_logs TEXT,
    PRIMARY KEY (signature, instruction_index)
);
"""

CREATE_SCHEMA_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER NOT NULL
);
"""

CREATE_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_volume_mint_time ON volume_trades (mint_address, block_time)",
    "CREATE INDEX IF NOT EXISTS idx_trades_mint_time ON token_transactions (mint_address, block_time)",
    "CREATE INDEX IF NOT EXISTS idx_ohlc_mint_time ON ohlc_trades (mint_address, block_time)",
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class SQLiteStorage:
    """SQLite-backed implementation of :class:`TradeStore`."""

    def __init__(self, database_path: Path) -> None:
        self._database_path = Path(database_path).resolve()
        self._initialize()

    def _initialize(self) -> None:
        self._database_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as con:
            con.execute(CREATE_TOKEN_TABLE)
            con.execute(CREATE_TOKEN_TX_LOG_TABLE)
            con.execute(CREATE_TRADE_TABLE)
            con.execute(CREATE_VOLUME_TABLE)
            con.execute(CREATE_OHLC_TRADE_TABLE)
            con.execute(CREATE_HOLDER_TABLE)
            con.execute(CREATE_EVENT_TABLE)
            con.execute(CREATE_SCHEMA_VERSION_TABLE)
            for statement in CREATE_INDEXES:
                con.execute(statement)
            self._apply_migrations(con)
            con.commit()

    def _apply_migrations(self, con: sqlite3.Connection) -> None:
        current = self._get_schema_version(con)
        if current != SCHEMA_VERSION:
            con.execute("DELETE FROM schema_migrations")
            con.execute("INSERT INTO schema_migrations (version) VALUES (?)", (SCHEMA_VERSION,))

    def _get_schema_version(self, con: sqlite3.Connection) -> int:
        row = con.execute("SELECT version FROM schema_migrations ORDER BY ROWID DESC LIMIT 1").fetchone()
        if row is None:
            return 0
        return int(row[0])

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(self._database_path)
        try:
            yield con
        finally:
            con.close()

    def upsert_token_metrics(self, metrics: TokenMetrics) -> None:
        payload = metrics.to_upsert_payload()
        payload["pools"] = json.dumps(payload["pools"], separators=(",", ":"))
        payload["updated_at"] = utc_now().isoformat()
        columns = list(payload.keys())
        placeholders = ", ".join("?" for _ in columns)
        # Columns absent from the payload keep their stored values.
        updates = ", ".join(
            f"{column} = excluded.{column}" for column in columns if column != "mint_address"
        )
        with self._connect() as con:
            con.execute(
                f"""
                INSERT INTO tokens ({", ".join(columns)})
                VALUES ({placeholders})
                ON CONFLICT(mint_address) DO UPDATE SET {updates}
                """,
                [payload[column] for column in columns],
            )
            con.commit()

    def get_token(self, mint_address: str) -> Optional[Dict[str, Any]]:
        with self._connect() as con:
            con.row_factory = sqlite3.Row
            row = con.execute("SELECT * FROM tokens WHERE mint_address = ?", (mint_address,)).fetchone()
        if row is None:
            return None
        token = dict(row)
        token["pools"] = json.loads(token["pools"]) if token.get("pools") else []
        return token

    def record_token_tx(
        self, signature: str, mint: str, side: TradeSide, block_time: Optional[datetime]
    ) -> None:
        side_value = TradeSide(side).value
        with self._connect() as con:
            cur = con.execute(
                """
                INSERT OR IGNORE INTO token_tx_log (signature, mint_address, side, block_time)
                VALUES (?, ?, ?, ?)
                """,
                (signature, mint, side_value, _iso(block_time)),
            )
            if cur.rowcount:
                con.execute(
                    "INSERT OR IGNORE INTO tokens (mint_address) VALUES (?)",
                    (mint,),
                )
                con.execute(
                    """
                    UPDATE tokens SET
                        tx_count = tx_count + 1,
                        buy_count = buy_count + ?,
                        sell_count = sell_count + ?,
                        last_trade_at = CASE
                            WHEN ? IS NULL THEN last_trade_at
                            WHEN last_trade_at IS NULL OR last_trade_at < ? THEN ?
                            ELSE last_trade_at
                        END
                    WHERE mint_address = ?
                    """,
                    (
                        1 if side_value == TradeSide.BUY.value else 0,
                        1 if side_value == TradeSide.SELL.value else 0,
                        _iso(block_time),
                        _iso(block_time),
                        _iso(block_time),
                        mint,
                    ),
                )
            con.commit()

    def record_volume(self, mint: str, volume: float, block_time: Optional[datetime]) -> None:
        if block_time is None:
            return
        with self._connect() as con:
            con.execute(
                "INSERT INTO volume_trades (mint_address, volume, block_time) VALUES (?, ?, ?)",
                (mint, float(volume), block_time.isoformat()),
            )
            con.commit()

    def get_volume_stats(self, mint: str, now: Optional[datetime] = None) -> Optional[VolumeStats]:
        reference = now or utc_now()
        values: Dict[str, Any] = {}
        with self._connect() as con:
            for label, seconds in VOLUME_WINDOWS.items():
                since = (reference - timedelta(seconds=seconds)).isoformat()
                volume, trades = con.execute(
                    """
                    SELECT COALESCE(SUM(volume), 0), COUNT(*)
                    FROM volume_trades
                    WHERE mint_address = ? AND block_time >= ?
                    """,
                    (mint, since),
                ).fetchone()
                values[f"volume_{label}"] = float(volume) or None
                values[f"trades_{label}"] = int(trades) or None
        return VolumeStats(**values)

    def cleanup_volume(self, older_than: timedelta, now: Optional[datetime] = None) -> int:
        cutoff = ((now or utc_now()) - older_than).isoformat()
        with self._connect() as con:
            cur = con.execute("DELETE FROM volume_trades WHERE block_time < ?", (cutoff,))
            con.commit()
            return cur.rowcount

    def record_ohlc_trade(
        self, mint: str, price: Optional[float], volume_quote: float, block_time: Optional[datetime]
    ) -> None:
        if block_time is None or price is None or not price > 0:
            return
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO ohlc_trades (mint_address, price, volume_quote, block_time)
                VALUES (?, ?, ?, ?)
                """,
                (mint, float(price), float(volume_quote), block_time.isoformat()),
            )
            con.commit()

    def list_ohlc_trades(self, mint: str, limit: int = 500) -> List[Dict[str, Any]]:
        with self._connect() as con:
            con.row_factory = sqlite3.Row
            rows = con.execute(
                """
                SELECT price, volume_quote, block_time FROM ohlc_trades
                WHERE mint_address = ? ORDER BY block_time ASC LIMIT ?
                """,
                (mint, limit),
            ).fetchall()
        return [dict(row) for row in rows]

    def insert_trade(self, trade: ClassifiedTrade) -> None:
        if trade.block_time is None:
            return
        with self._connect() as con:
            con.execute(
                """
                INSERT OR IGNORE INTO token_transactions (
                    signature, mint_address, side, amount, price, value, trader_address, block_time
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    trade.signature,
                    trade.primary_mint,
                    trade.side.value,
                    trade.base_amount,
                    trade.price,
                    trade.quote_value,
                    trade.trader,
                    trade.block_time.isoformat(),
                ),
            )
            con.commit()

    def list_trades(self, mint: str, limit: int = 200) -> List[Dict[str, Any]]:
        with self._connect() as con:
            con.row_factory = sqlite3.Row
            rows = con.execute(
                """
                SELECT signature, mint_address, side, amount, price, value, trader_address, block_time
                FROM token_transactions WHERE mint_address = ?
                ORDER BY block_time DESC LIMIT ?
                """,
                (mint, limit),
            ).fetchall()
        return [dict(row) for row in rows]

    def record_holder(self, holder: HolderBalance) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO token_holders (mint_address, holder_address, balance, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(mint_address, holder_address) DO UPDATE SET
                    balance = excluded.balance,
                    updated_at = excluded.updated_at
                """,
                (holder.mint, holder.owner, float(holder.balance), utc_now().isoformat()),
            )
            con.commit()

    def list_holders(self, mint: str) -> List[HolderBalance]:
        with self._connect() as con:
            rows = con.execute(
                """
                SELECT mint_address, holder_address, balance FROM token_holders
                WHERE mint_address = ? AND balance > 0 ORDER BY balance DESC
                """,
                (mint,),
            ).fetchall()
        return [HolderBalance(mint=row[0], owner=row[1], balance=row[2]) for row in rows]

    def upsert_event(self, event: ProgramEventRecord) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO events (
                    signature, instruction_index, event_type, program_id, block_time, parsed, raw_logs
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(signature, instruction_index) DO UPDATE SET
                    event_type = excluded.event_type,
                    program_id = excluded.program_id,
                    block_time = excluded.block_time,
                    parsed = excluded.parsed,
                    raw_logs = excluded.raw_logs
                """,
                (
                    event.signature,
                    event.instruction_index,
                    event.event_type.value,
                    event.program_id,
                    _iso(event.block_time),
                    json.dumps(event.parsed, separators=(",", ":"), default=str),
                    json.dumps(event.raw_logs, separators=(",", ":")),
                ),
            )
            con.commit()

    def list_events(self, limit: int = 200, signature: Optional[str] = None) -> List[ProgramEventRecord]:
        query = (
            "SELECT signature, instruction_index, event_type, program_id, block_time, parsed, raw_logs"
            " FROM events"
        )
        params: List[object] = []
        if signature:
            query += " WHERE signature = ?"
            params.append(signature)
        query += " ORDER BY signature, instruction_index LIMIT ?"
        params.append(limit)
        with self._connect() as con:
            rows = con.execute(query, params).fetchall()
        return [
            ProgramEventRecord(
                signature=row[0],
                instruction_index=row[1],
                event_type=EventType(row[2]),
                program_id=row[3],
                block_time=datetime.fromisoformat(row[4]) if row[4] else None,
                parsed=json.loads(row[5]) if row[5] else {},
                raw_logs=json.loads(row[6]) if row[6] else [],
            )
            for row in rows
        ]


__all__ = ["SCHEMA_VERSION", "SQLiteStorage", "TradeStore"]
