from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from solana_trade_indexer.datalake.schemas import (
    ClassifiedTrade,
    EventType,
    HolderBalance,
    PoolKind,
    PoolQuote,
    ProgramEventRecord,
    TokenMetrics,
    TradeSide,
    VolumeStats,
)
from solana_trade_indexer.datalake.storage import SQLiteStorage

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
MINT = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"


def _trade(signature: str, side: TradeSide = TradeSide.BUY, amount: float = 10.0) -> ClassifiedTrade:
    return ClassifiedTrade(
        signature=signature,
        primary_mint=MINT,
        side=side,
        base_amount=amount,
        price=0.5,
        quote_value=amount * 0.5,
        trader="trader",
        block_time=NOW,
        event_type=EventType(side.value),
        reference_delta=-amount * 0.5,
    )


def test_token_upsert_keeps_unknown_fields(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "indexer.sqlite3")
    pool = PoolQuote(
        pool_address="pool",
        token_a=MINT,
        token_b="ref",
        price=1.5,
        liquidity=30.0,
        kind=PoolKind.POOL,
    )
    storage.upsert_token_metrics(
        TokenMetrics(
            mint=MINT,
            price=1.5,
            liquidity=30.0,
            supply=1_000.0,
            decimals=6,
            market_cap=1_500.0,
            pools=[pool],
            volume=VolumeStats(volume_24h=9.0, trades_24h=2),
        )
    )
    storage.upsert_token_metrics(TokenMetrics(mint=MINT, price=2.0, liquidity=40.0))

    token = storage.get_token(MINT)

    assert token is not None
    assert token["price"] == 2.0
    assert token["liquidity"] == 40.0
    assert token["supply"] == 1_000.0
    assert token["decimals"] == 6
    assert token["volume_24h"] == 9.0
    assert token["trades_24h"] == 2
    assert token["pools"] == []


def test_pools_are_stored_as_json(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "indexer.sqlite3")
    pool = PoolQuote(
        pool_address="curve",
        token_a=MINT,
        token_b="ref",
        price=0.1,
        liquidity=5.0,
        kind=PoolKind.CURVE,
        curve_progress=0.7,
    )
    storage.upsert_token_metrics(TokenMetrics(mint=MINT, price=0.1, pools=[pool]))

    token = storage.get_token(MINT)

    assert token is not None
    assert token["pools"][0]["kind"] == "curve"
    assert token["pools"][0]["curve_progress"] == 0.7


def test_trade_insert_is_unique_per_signature_and_mint(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "indexer.sqlite3")
    storage.insert_trade(_trade("sig-1"))
    storage.insert_trade(_trade("sig-1", amount=99.0))
    storage.insert_trade(_trade("sig-2", side=TradeSide.SELL))

    trades = storage.list_trades(MINT)

    assert sorted(trade["signature"] for trade in trades) == ["sig-1", "sig-2"]
    first = next(trade for trade in trades if trade["signature"] == "sig-1")
    assert first["amount"] == 10.0


def test_token_tx_counters_are_idempotent(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "indexer.sqlite3")
    storage.record_token_tx("sig-1", MINT, TradeSide.BUY, NOW)
    storage.record_token_tx("sig-1", MINT, TradeSide.BUY, NOW)
    storage.record_token_tx("sig-2", MINT, TradeSide.SELL, NOW + timedelta(minutes=1))
    storage.record_token_tx("sig-3", MINT, TradeSide.UNKNOWN, None)

    token = storage.get_token(MINT)

    assert token is not None
    assert token["tx_count"] == 3
    assert token["buy_count"] == 1
    assert token["sell_count"] == 1
    assert token["last_trade_at"] == (NOW + timedelta(minutes=1)).isoformat()


def test_volume_windows_and_cleanup(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "indexer.sqlite3")
    storage.record_volume(MINT, 1.0, NOW - timedelta(minutes=2))
    storage.record_volume(MINT, 2.0, NOW - timedelta(minutes=30))
    storage.record_volume(MINT, 4.0, NOW - timedelta(hours=3))
    storage.record_volume(MINT, 8.0, NOW - timedelta(hours=20))
    storage.record_volume(MINT, 16.0, NOW - timedelta(hours=30))
    storage.record_volume("other", 100.0, NOW)
    storage.record_volume(MINT, 5.0, None)

    stats = storage.get_volume_stats(MINT, now=NOW)

    assert stats is not None
    assert stats.volume_5m == 1.0 and stats.trades_5m == 1
    assert stats.volume_1h == 3.0 and stats.trades_1h == 2
    assert stats.volume_6h == 7.0 and stats.trades_6h == 3
    assert stats.volume_24h == 15.0 and stats.trades_24h == 4

    removed = storage.cleanup_volume(timedelta(hours=24), now=NOW)

    assert removed == 1
    assert storage.get_volume_stats(MINT, now=NOW) == stats


def test_empty_volume_windows_are_unknown(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "indexer.sqlite3")

    assert storage.get_volume_stats(MINT, now=NOW) == VolumeStats()


def test_ohlc_trades_need_a_positive_price(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "indexer.sqlite3")
    storage.record_ohlc_trade(MINT, 0.25, 4.0, NOW)
    storage.record_ohlc_trade(MINT, None, 4.0, NOW)
    storage.record_ohlc_trade(MINT, 0.0, 4.0, NOW)

    rows = storage.list_ohlc_trades(MINT)

    assert [(row["price"], row["volume_quote"]) for row in rows] == [(0.25, 4.0)]


def test_holders_keep_latest_balance(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "indexer.sqlite3")
    storage.record_holder(HolderBalance(mint=MINT, owner="alice", balance=5.0))
    storage.record_holder(HolderBalance(mint=MINT, owner="bob", balance=7.0))
    storage.record_holder(HolderBalance(mint=MINT, owner="alice", balance=0.0))

    holders = storage.list_holders(MINT)

    assert holders == [HolderBalance(mint=MINT, owner="bob", balance=7.0)]


def test_events_upsert_per_instruction(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "indexer.sqlite3")
    event = ProgramEventRecord(
        signature="sig-1",
        instruction_index=0,
        event_type=EventType.UNKNOWN,
        program_id="program",
        block_time=NOW,
        parsed={"primaryMint": MINT},
        raw_logs=["Program log: hello"],
    )
    storage.upsert_event(event)
    event.event_type = EventType.BUY
    storage.upsert_event(event)

    events = storage.list_events(signature="sig-1")

    assert len(events) == 1
    assert events[0].event_type is EventType.BUY
    assert events[0].parsed == {"primaryMint": MINT}
    assert events[0].raw_logs == ["Program log: hello"]
    assert events[0].block_time == NOW


def test_storage_creates_parent_directories(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "nested" / "dir" / "indexer.sqlite3")

    assert storage.list_trades(MINT) == []
    assert storage.get_token(MINT) is None
    assert (tmp_path / "nested" / "dir" / "indexer.sqlite3").exists()


@pytest.mark.parametrize("side", [TradeSide.BUY, TradeSide.SELL])
def test_trade_without_block_time_is_not_stored(tmp_path: Path, side: TradeSide) -> None:
    storage = SQLiteStorage(tmp_path / "indexer.sqlite3")
    trade = _trade("sig-x", side=side)
    trade.block_time = None

    storage.insert_trade(trade)

    assert storage.list_trades(MINT) == []
